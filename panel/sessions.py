"""Bearer tokens handed out by ``POST /auth/login``.

Tokens live in memory, so restarting the API container logs everybody out.
A token expires at a fixed time after issue; using it does not extend it.
"""

from __future__ import annotations

import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

DEFAULT_TOKEN_TTL = timedelta(hours=8)


@dataclass(frozen=True)
class IssuedToken:
    value: str
    user_id: int
    expires_at: datetime

    def expired(self, now: datetime) -> bool:
        return self.expires_at <= now


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenStore:
    """Issue, resolve and revoke API tokens."""

    def __init__(
        self,
        *,
        ttl: timedelta = DEFAULT_TOKEN_TTL,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.ttl = ttl
        self._clock = clock
        self._tokens: Dict[str, IssuedToken] = {}
        # Sync endpoints resolve tokens from the threadpool while login runs on the event loop.
        self._lock = threading.Lock()

    def __len__(self) -> int:
        now = self._clock()
        with self._lock:
            return sum(1 for token in self._tokens.values() if not token.expired(now))

    def issue(self, user_id: int) -> IssuedToken:
        now = self._clock()
        token = IssuedToken(value=secrets.token_urlsafe(32), user_id=user_id, expires_at=now + self.ttl)
        with self._lock:
            self._purge(now)
            self._tokens[token.value] = token
        return token

    def resolve(self, value: str) -> Optional[int]:
        """Return the user id behind ``value`` or ``None`` for unknown and expired tokens."""

        with self._lock:
            token = self._tokens.get(value)
            if token is None:
                return None
            if token.expired(self._clock()):
                del self._tokens[value]
                return None
            return token.user_id

    def revoke(self, value: str) -> bool:
        with self._lock:
            return self._tokens.pop(value, None) is not None

    def revoke_user(self, user_id: int) -> int:
        """Drop every token of ``user_id``; returns how many were dropped."""

        with self._lock:
            doomed = [value for value, token in self._tokens.items() if token.user_id == user_id]
            for value in doomed:
                del self._tokens[value]
        return len(doomed)

    def _purge(self, now: datetime) -> None:
        for value in [value for value, token in self._tokens.items() if token.expired(now)]:
            del self._tokens[value]


__all__ = ["DEFAULT_TOKEN_TTL", "IssuedToken", "TokenStore"]
