"""Placeholder JSON API served by the panel backend container."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, status
from fastapi.security import (
    HTTPAuthorizationCredentials,
    HTTPBasic,
    HTTPBasicCredentials,
    HTTPBearer,
)
from pydantic import BaseModel, Field

from .database import Database
from .models import User
from .sessions import TokenStore
from .sysinfo import collect_system_info

logger = logging.getLogger("serverpanel.api")

API_NAME = "Server Panel API"

ENDPOINTS: Dict[str, str] = {
    "auth": "/auth",
    "login": "/auth/login",
    "logout": "/auth/logout",
    "system": "/system",
    "apps": "/apps",
    "health": "/health",
}


class LoginRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=1)


class UserView(BaseModel):
    id: int
    username: str
    email: str
    role: str


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime
    user: UserView


class ApplicationView(BaseModel):
    id: int
    user_id: int
    name: str
    type: str
    domain: Optional[str]
    port: Optional[int]
    status: str
    config: Dict[str, object]


class ApplicationListResponse(BaseModel):
    applications: List[ApplicationView]


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _public_config(config: Dict[str, object]) -> Dict[str, object]:
    return {key: value for key, value in config.items() if "password" not in key}


def _build_auth_dependency(database: Database, tokens: TokenStore) -> Callable[..., User]:
    basic_security = HTTPBasic(auto_error=False)
    bearer_security = HTTPBearer(auto_error=False)

    def dependency(
        credentials: HTTPBasicCredentials | None = Depends(basic_security),
        bearer: HTTPAuthorizationCredentials | None = Depends(bearer_security),
    ) -> User:
        if bearer is not None:
            user_id = tokens.resolve(bearer.credentials)
            user = database.get_user(user_id) if user_id is not None else None
            if user is not None and user.is_active:
                return user
            if user_id is not None:
                tokens.revoke_user(user_id)

        if credentials is not None:
            user = database.authenticate_user(credentials.username, credentials.password)
            if user is not None:
                return user

        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return dependency


def register_api_routes(app: FastAPI, database: Database, tokens: TokenStore, *, version: str) -> None:
    current_user = _build_auth_dependency(database, tokens)
    bearer_security = HTTPBearer(auto_error=False)

    @app.get("/")
    async def index() -> Dict[str, object]:
        return {"name": API_NAME, "version": version, "endpoints": ENDPOINTS}

    @app.get("/auth")
    async def auth_methods() -> Dict[str, object]:
        return {
            "methods": ["password"],
            "login": ENDPOINTS["login"],
            "logout": ENDPOINTS["logout"],
        }

    @app.post("/auth/login", response_model=LoginResponse)
    async def login(request: LoginRequest) -> LoginResponse:
        user = database.get_user_by_email(request.email)
        if user is not None and not user.is_active:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account is inactive")
        user = database.authenticate_user(request.email, request.password)
        if user is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid email or password",
            )
        issued = tokens.issue(user.id)
        logger.info("User %s logged in", user.email)
        return LoginResponse(
            access_token=issued.value,
            expires_at=issued.expires_at,
            user=UserView(id=user.id, username=user.username, email=user.email, role=user.role),
        )

    @app.post("/auth/logout")
    async def logout(
        bearer: HTTPAuthorizationCredentials | None = Depends(bearer_security),
    ) -> Dict[str, object]:
        revoked = tokens.revoke(bearer.credentials) if bearer is not None else False
        return {"status": "logged_out", "revoked": revoked}

    @app.get("/system")
    async def system() -> Dict[str, object]:
        return collect_system_info()

    @app.get("/apps", response_model=ApplicationListResponse)
    async def list_apps(user: Optional[str] = None, viewer: User = Depends(current_user)) -> ApplicationListResponse:
        owner_id: Optional[int] = None
        if user is not None:
            owner = database.get_user_by_username(user)
            if owner is None:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
            owner_id = owner.id
        if viewer.role != "admin":
            if owner_id is not None and owner_id != viewer.id:
                raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")
            owner_id = viewer.id

        applications = database.list_applications(user_id=owner_id)
        return ApplicationListResponse(
            applications=[
                ApplicationView(
                    id=app_record.id,
                    user_id=app_record.user_id,
                    name=app_record.name,
                    type=app_record.type,
                    domain=app_record.domain,
                    port=app_record.port,
                    status=app_record.status,
                    config=_public_config(app_record.config),
                )
                for app_record in applications
            ]
        )

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(status="healthy", timestamp=_now())


__all__ = ["API_NAME", "ENDPOINTS", "register_api_routes"]
