"""FastAPI application factories for the panel services."""

from __future__ import annotations

import logging
import os

from fastapi import FastAPI

from .api import register_api_routes
from .database import Database, resolve_database_path
from .sessions import TokenStore
from .web import register_dashboard_routes

logger = logging.getLogger("serverpanel.service")

VERSION = "1.0.0"


def _new_app(description: str) -> FastAPI:
    return FastAPI(title="Server Panel", version=VERSION, description=description)


def create_api_app(*, database: Database | None = None, tokens: TokenStore | None = None) -> FastAPI:
    """Return an application exposing only the JSON API."""

    db = database or Database(resolve_database_path(os.getenv("PANEL_DB_PATH")))
    db.initialize()

    app = _new_app("Placeholder API of the hosting control panel.")
    app.state.database = db
    app.state.tokens = tokens or TokenStore()
    register_api_routes(app, db, app.state.tokens, version=VERSION)
    return app


def create_dashboard_app(*, api_port: int = 3001) -> FastAPI:
    """Return an application exposing only the HTML dashboard."""

    app = _new_app("Dashboard of the hosting control panel.")
    register_dashboard_routes(app, version=VERSION, api_port=api_port)
    return app


def create_app(
    *,
    database: Database | None = None,
    tokens: TokenStore | None = None,
    include_api: bool = True,
    include_dashboard: bool = True,
    api_port: int = 3001,
) -> FastAPI:
    """Instantiate the panel services; with both enabled the API is mounted under ``/api``."""

    if include_api and not include_dashboard:
        return create_api_app(database=database, tokens=tokens)
    if include_dashboard and not include_api:
        return create_dashboard_app(api_port=api_port)
    if not include_api and not include_dashboard:
        raise ValueError("At least one of the API or the dashboard must be enabled")

    app = create_dashboard_app(api_port=api_port)
    app.mount("/api", create_api_app(database=database, tokens=tokens))
    return app


__all__ = ["VERSION", "create_api_app", "create_app", "create_dashboard_app"]
