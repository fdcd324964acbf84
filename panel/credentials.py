"""Generated passwords and the administrator credentials summary."""
from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Dict, Mapping

from .config import PanelSettings
from .database import generate_password
from .environment import Environment

logger = logging.getLogger("serverpanel.credentials")

SECRET_KEYS = (
    "mysql_root_password",
    "database_password",
    "admin_password",
    "user_password",
    "grafana_password",
    "filemanager_password",
)


def _write_private(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.tmp")
    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(content)
    os.replace(tmp_path, path)
    path.chmod(0o600)


def load_secrets(path: Path) -> Dict[str, str]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as handle:
        data = json.load(handle)
    if not isinstance(data, dict):
        raise ValueError(f"Secrets file {path} must contain a JSON object")
    return {str(key): str(value) for key, value in data.items()}


def load_or_create_secrets(path: Path, *, dry_run: bool = False) -> Dict[str, str]:
    """Return the persisted secrets, generating any that are missing.

    Existing values are never rotated; a re-run reuses them.
    """

    secrets = load_secrets(path)
    missing = [key for key in SECRET_KEYS if not secrets.get(key)]
    for key in missing:
        secrets[key] = generate_password()
    if missing and not dry_run:
        _write_private(path, json.dumps(secrets, indent=2, sort_keys=True) + "\n")
        logger.info("Generated %d secret(s) in %s", len(missing), path)
    return secrets


def render_credentials(settings: PanelSettings, environment: Environment, secrets: Mapping[str, str]) -> str:
    host = environment.domain
    lines = [
        "Server Panel credentials",
        "========================",
        "",
        f"Dashboard:      http://{host}:{settings.dashboard_port}/",
        f"API:            http://{host}:{settings.api_port}/",
        "",
        "Panel accounts",
        f"  admin@panelo.com  {secrets['admin_password']}",
        f"  user@panelo.com   {secrets['user_password']}",
        "",
        "Services",
        f"  File manager (admin):  http://{host}:8080/  {secrets['filemanager_password']}",
        f"  Grafana (admin):       http://{host}:3002/  {secrets['grafana_password']}",
        f"  Database root:         {secrets['mysql_root_password']}",
        f"  Database panel_user:   {secrets['database_password']}",
        "",
        "Keep this file private and delete it once the passwords are stored elsewhere.",
        "",
    ]
    return "\n".join(lines)


def write_credentials_once(
    path: Path,
    settings: PanelSettings,
    environment: Environment,
    secrets: Mapping[str, str],
) -> bool:
    """Write the credentials summary unless it already exists."""

    if path.exists():
        logger.info("Credentials file %s already exists; leaving it untouched", path)
        return False
    _write_private(path, render_credentials(settings, environment, secrets))
    logger.info("Credentials written to %s", path)
    return True


__all__ = [
    "SECRET_KEYS",
    "load_or_create_secrets",
    "load_secrets",
    "render_credentials",
    "write_credentials_once",
]
