"""Provisioner and placeholder services of the Server Panel hosting control panel."""

from __future__ import annotations

from typing import Any

from .database import Database, resolve_database_path

__version__ = "1.0.0"


def create_app(*args: Any, **kwargs: Any):
    """Factory function that returns the combined dashboard + API application."""

    from .service import create_app as _create_app

    return _create_app(*args, **kwargs)


def create_api_app(*args: Any, **kwargs: Any):
    """Factory function for the API-only application."""

    from .service import create_api_app as _create_api_app

    return _create_api_app(*args, **kwargs)


def create_dashboard_app(*args: Any, **kwargs: Any):
    """Factory function for the dashboard-only application."""

    from .service import create_dashboard_app as _create_dashboard_app

    return _create_dashboard_app(*args, **kwargs)


__all__ = [
    "Database",
    "__version__",
    "create_api_app",
    "create_app",
    "create_dashboard_app",
    "resolve_database_path",
]
