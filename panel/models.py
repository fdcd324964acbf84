"""Domain models persisted by the panel store."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional

APP_TYPES = ("wordpress", "nodejs", "php", "python", "static")
APP_STATUSES = ("running", "stopped", "creating", "error")
USER_ROLES = ("admin", "user")
USER_STATUSES = ("active", "inactive")


@dataclass(frozen=True)
class User:
    """Represents a panel account."""

    id: int
    username: str
    email: str
    role: str
    status: str
    created_at: datetime
    updated_at: datetime

    @property
    def is_active(self) -> bool:
        return self.status == "active"


@dataclass(frozen=True)
class Application:
    """A deployed application owned by a user."""

    id: int
    user_id: int
    name: str
    type: str
    domain: Optional[str]
    port: Optional[int]
    status: str
    config: Dict[str, object] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "type": self.type,
            "domain": self.domain,
            "port": self.port,
            "status": self.status,
            "config": dict(self.config),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass(frozen=True)
class Domain:
    """A domain routed by the web server, optionally with TLS material."""

    id: int
    user_id: Optional[int]
    domain: str
    ssl_enabled: bool
    ssl_cert_path: Optional[str]
    ssl_key_path: Optional[str]
    status: str
    created_at: datetime


__all__ = [
    "APP_STATUSES",
    "APP_TYPES",
    "Application",
    "Domain",
    "USER_ROLES",
    "USER_STATUSES",
    "User",
]
