"""SQLite-backed persistence for panel users, applications and domains."""
from __future__ import annotations

import json
import secrets
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Set

from passlib.context import CryptContext

from .models import APP_STATUSES, APP_TYPES, USER_ROLES, Application, Domain, User

SEED_USERS = (
    ("admin", "admin@panelo.com", "admin"),
    ("user", "user@panelo.com", "user"),
)

_pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def _ensure_directory(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def resolve_database_path(env_value: Optional[str]) -> Path:
    """Resolve the on-disk path for the panel database."""

    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    base_dir = Path(__file__).resolve().parent.parent / "data"
    return (base_dir / "panel.sqlite3").resolve(strict=False)


def _current_timestamp() -> datetime:
    return datetime.now(timezone.utc)


def _serialize_datetime(value: datetime) -> str:
    return value.isoformat()


def _parse_datetime(value: str) -> datetime:
    return datetime.fromisoformat(value)


def hash_password(password: str) -> str:
    return _pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    try:
        return _pwd_context.verify(password, hashed)
    except ValueError:
        return False


def generate_password(length: int = 24) -> str:
    return secrets.token_urlsafe(length)[:length]


class Database:
    """Simple wrapper around SQLite for the panel's users, applications and domains."""

    def __init__(self, path: Path) -> None:
        _ensure_directory(path)
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def initialize(self) -> None:
        """Create the required tables if they do not already exist."""

        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    username TEXT NOT NULL UNIQUE,
                    email TEXT NOT NULL UNIQUE,
                    password TEXT NOT NULL,
                    role TEXT NOT NULL DEFAULT 'user' CHECK (role IN ('admin', 'user')),
                    status TEXT NOT NULL DEFAULT 'active' CHECK (status IN ('active', 'inactive')),
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS applications (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    name TEXT NOT NULL,
                    type TEXT NOT NULL CHECK (type IN ('wordpress', 'nodejs', 'php', 'python', 'static')),
                    domain TEXT,
                    port INTEGER UNIQUE,
                    status TEXT NOT NULL DEFAULT 'creating'
                        CHECK (status IN ('running', 'stopped', 'creating', 'error')),
                    config TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (user_id, name)
                );

                CREATE TABLE IF NOT EXISTS domains (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER REFERENCES users(id) ON DELETE CASCADE,
                    domain TEXT NOT NULL UNIQUE,
                    ssl_enabled INTEGER NOT NULL DEFAULT 0,
                    ssl_cert_path TEXT,
                    ssl_key_path TEXT,
                    status TEXT NOT NULL DEFAULT 'active' CHECK (status IN ('active', 'inactive')),
                    created_at TEXT NOT NULL
                );
                """
            )

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------
    def create_user(
        self,
        username: str,
        email: str,
        password: str,
        *,
        role: str = "user",
    ) -> User:
        """Create a new account and return it."""

        normalized_username = username.strip().lower()
        normalized_email = email.strip().lower()
        if not normalized_username:
            raise ValueError("Username must not be empty")
        if not normalized_email:
            raise ValueError("Email must not be empty")
        if not password:
            raise ValueError("Password must not be empty")
        if role not in USER_ROLES:
            raise ValueError(f"Unsupported role '{role}'")

        now = _current_timestamp()
        with self._connect() as conn:
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO users (username, email, password, role, status, created_at, updated_at)
                    VALUES (?, ?, ?, ?, 'active', ?, ?)
                    """,
                    (
                        normalized_username,
                        normalized_email,
                        hash_password(password),
                        role,
                        _serialize_datetime(now),
                        _serialize_datetime(now),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise ValueError("A user with that username or email already exists") from exc
            user_id = cursor.lastrowid

        return User(
            id=int(user_id),
            username=normalized_username,
            email=normalized_email,
            role=role,
            status="active",
            created_at=now,
            updated_at=now,
        )

    def seed_default_users(self, passwords: Dict[str, str]) -> List[User]:
        """Insert the two default accounts unless they already exist."""

        created: List[User] = []
        for username, email, role in SEED_USERS:
            if self.get_user_by_email(email) is not None:
                continue
            password = passwords.get(username) or generate_password()
            created.append(self.create_user(username, email, password, role=role))
        return created

    def has_users(self) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 FROM users LIMIT 1").fetchone()
        return row is not None

    def get_user(self, user_id: int) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE email = ?",
                (email.strip().lower(),),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE username = ?",
                (username.strip().lower(),),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    def list_users(self) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM users ORDER BY id").fetchall()
        return [self._row_to_user(row) for row in rows]

    def authenticate_user(self, email: str, password: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE email = ?",
                (email.strip().lower(),),
            ).fetchone()
        if row is None or row["status"] != "active":
            return None
        if not verify_password(password, str(row["password"])):
            return None
        return self._row_to_user(row)

    def set_user_status(self, user_id: int, status: str) -> None:
        if status not in ("active", "inactive"):
            raise ValueError(f"Unsupported user status '{status}'")
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE users SET status = ?, updated_at = ? WHERE id = ?",
                (status, _serialize_datetime(_current_timestamp()), user_id),
            )
        if cursor.rowcount == 0:
            raise ValueError("User not found")

    def delete_user(self, user_id: int) -> bool:
        """Delete a user; applications and domains go with it."""

        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Applications
    # ------------------------------------------------------------------
    def create_application(
        self,
        user_id: int,
        name: str,
        app_type: str,
        *,
        domain: Optional[str],
        port: Optional[int],
        config: Optional[Dict[str, object]] = None,
        status: str = "creating",
    ) -> Application:
        if app_type not in APP_TYPES:
            raise ValueError(f"Unsupported application type '{app_type}'")
        if status not in APP_STATUSES:
            raise ValueError(f"Unsupported application status '{status}'")

        now = _serialize_datetime(_current_timestamp())
        with self._connect() as conn:
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO applications (user_id, name, type, domain, port, status, config, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (user_id, name, app_type, domain, port, status, json.dumps(config or {}), now, now),
                )
            except sqlite3.IntegrityError as exc:
                raise ValueError(
                    f"Application '{name}' already exists for this user or port {port} is taken"
                ) from exc
            app_id = cursor.lastrowid

        application = self.get_application(int(app_id))
        assert application is not None
        return application

    def update_application(
        self,
        app_id: int,
        *,
        domain: Optional[str] = None,
        port: Optional[int] = None,
        status: Optional[str] = None,
        config: Optional[Dict[str, object]] = None,
    ) -> Application:
        assignments: List[str] = []
        params: List[object] = []
        if domain is not None:
            assignments.append("domain = ?")
            params.append(domain)
        if port is not None:
            assignments.append("port = ?")
            params.append(port)
        if status is not None:
            if status not in APP_STATUSES:
                raise ValueError(f"Unsupported application status '{status}'")
            assignments.append("status = ?")
            params.append(status)
        if config is not None:
            assignments.append("config = ?")
            params.append(json.dumps(config))
        assignments.append("updated_at = ?")
        params.append(_serialize_datetime(_current_timestamp()))
        params.append(app_id)

        with self._connect() as conn:
            try:
                cursor = conn.execute(
                    f"UPDATE applications SET {', '.join(assignments)} WHERE id = ?",
                    params,
                )
            except sqlite3.IntegrityError as exc:
                raise ValueError(f"Port {port} is already assigned to another application") from exc
        if cursor.rowcount == 0:
            raise ValueError("Application not found")

        application = self.get_application(app_id)
        assert application is not None
        return application

    def get_application(self, app_id: int) -> Optional[Application]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM applications WHERE id = ?", (app_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_application(row)

    def find_application(self, user_id: int, name: str) -> Optional[Application]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM applications WHERE user_id = ? AND name = ?",
                (user_id, name),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_application(row)

    def list_applications(self, *, user_id: Optional[int] = None) -> List[Application]:
        with self._connect() as conn:
            if user_id is None:
                rows = conn.execute("SELECT * FROM applications ORDER BY id").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM applications WHERE user_id = ? ORDER BY id",
                    (user_id,),
                ).fetchall()
        return [self._row_to_application(row) for row in rows]

    def delete_application(self, app_id: int) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM applications WHERE id = ?", (app_id,))
        return cursor.rowcount > 0

    def assigned_ports(self, *, exclude_app_id: Optional[int] = None) -> Set[int]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id, port FROM applications WHERE port IS NOT NULL"
            ).fetchall()
        return {int(row["port"]) for row in rows if row["id"] != exclude_app_id}

    # ------------------------------------------------------------------
    # Domains
    # ------------------------------------------------------------------
    def upsert_domain(
        self,
        domain: str,
        *,
        user_id: Optional[int],
        ssl_enabled: bool,
        ssl_cert_path: Optional[str] = None,
        ssl_key_path: Optional[str] = None,
        status: str = "active",
    ) -> Domain:
        normalized = domain.strip().lower()
        if not normalized:
            raise ValueError("Domain must not be empty")

        existing = self.get_domain(normalized)
        if existing is not None:
            if user_id is not None and existing.user_id is not None and existing.user_id != user_id:
                raise ValueError(f"Domain '{normalized}' already belongs to another user")
            if not ssl_enabled:
                # A plain upsert never drops an issued certificate; delete_domain does.
                ssl_enabled = existing.ssl_enabled
                ssl_cert_path = ssl_cert_path or existing.ssl_cert_path
                ssl_key_path = ssl_key_path or existing.ssl_key_path
        with self._connect() as conn:
            if existing is None:
                conn.execute(
                    """
                    INSERT INTO domains (user_id, domain, ssl_enabled, ssl_cert_path, ssl_key_path, status, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        user_id,
                        normalized,
                        int(ssl_enabled),
                        ssl_cert_path,
                        ssl_key_path,
                        status,
                        _serialize_datetime(_current_timestamp()),
                    ),
                )
            else:
                conn.execute(
                    """
                    UPDATE domains
                    SET user_id = COALESCE(?, user_id), ssl_enabled = ?, ssl_cert_path = ?, ssl_key_path = ?, status = ?
                    WHERE domain = ?
                    """,
                    (user_id, int(ssl_enabled), ssl_cert_path, ssl_key_path, status, normalized),
                )

        stored = self.get_domain(normalized)
        assert stored is not None
        return stored

    def get_domain(self, domain: str) -> Optional[Domain]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM domains WHERE domain = ?",
                (domain.strip().lower(),),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_domain(row)

    def list_domains(self, *, ssl_only: bool = False) -> List[Domain]:
        query = "SELECT * FROM domains"
        if ssl_only:
            query += " WHERE ssl_enabled = 1"
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY domain").fetchall()
        return [self._row_to_domain(row) for row in rows]

    def delete_domain(self, domain: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM domains WHERE domain = ?",
                (domain.strip().lower(),),
            )
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _row_to_user(self, row: sqlite3.Row) -> User:
        return User(
            id=int(row["id"]),
            username=str(row["username"]),
            email=str(row["email"]),
            role=str(row["role"]),
            status=str(row["status"]),
            created_at=_parse_datetime(str(row["created_at"])),
            updated_at=_parse_datetime(str(row["updated_at"])),
        )

    def _row_to_application(self, row: sqlite3.Row) -> Application:
        try:
            config = json.loads(row["config"] or "{}")
        except json.JSONDecodeError:
            config = {}
        return Application(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            name=str(row["name"]),
            type=str(row["type"]),
            domain=row["domain"],
            port=int(row["port"]) if row["port"] is not None else None,
            status=str(row["status"]),
            config=config,
            created_at=_parse_datetime(str(row["created_at"])),
            updated_at=_parse_datetime(str(row["updated_at"])),
        )

    def _row_to_domain(self, row: sqlite3.Row) -> Domain:
        return Domain(
            id=int(row["id"]),
            user_id=int(row["user_id"]) if row["user_id"] is not None else None,
            domain=str(row["domain"]),
            ssl_enabled=bool(row["ssl_enabled"]),
            ssl_cert_path=row["ssl_cert_path"],
            ssl_key_path=row["ssl_key_path"],
            status=str(row["status"]),
            created_at=_parse_datetime(str(row["created_at"])),
        )


__all__ = [
    "Database",
    "SEED_USERS",
    "generate_password",
    "hash_password",
    "resolve_database_path",
    "verify_password",
]
