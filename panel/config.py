"""Configuration management for the server panel provisioner."""
from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, Mapping, Optional

import yaml

DEFAULT_COMPONENTS: tuple[str, ...] = (
    "base",
    "docker",
    "nginx",
    "mysql",
    "wordpress",
    "php",
    "nodejs",
    "python",
    "static",
    "filemanager",
    "ssl",
    "monitoring",
    "backup",
    "panel",
    "firewall",
    "supervisor",
)

_TRUE_VALUES = {"1", "true", "yes", "on", "y"}
_FALSE_VALUES = {"0", "false", "no", "off", "n"}

_PATH_FIELDS = {
    "install_root",
    "data_root",
    "log_dir",
    "systemd_dir",
    "cron_dir",
    "nginx_dir",
    "apache_dir",
    "letsencrypt_dir",
    "webroot",
    "docker_config_dir",
    "database_path",
}
_BOOL_FIELDS = {"auto_install", "rollback_on_failure", "dry_run"}
_INT_FIELDS = {"backup_retention_days", "api_port", "dashboard_port"}


def parse_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise ValueError(f"Invalid boolean value: {value!r}")


def parse_component_list(value: object) -> FrozenSet[str]:
    """Accept a YAML list or a comma/space separated string of component names."""

    if value is None:
        return frozenset()
    if isinstance(value, str):
        items: Iterable[str] = value.replace(",", " ").split()
    else:
        items = (str(item) for item in value)  # type: ignore[union-attr]
    return frozenset(item.strip().lower() for item in items if item.strip())


@dataclass(frozen=True)
class PanelSettings:
    """Static settings shared by every provisioning step."""

    install_root: Path = Path("/opt/server-panel")
    data_root: Path = Path("/var/server-panel")
    log_dir: Path = Path("/var/log/server-panel")
    network: str = "server-panel"
    domain: Optional[str] = None
    email: Optional[str] = None
    components: FrozenSet[str] = field(default_factory=lambda: frozenset(DEFAULT_COMPONENTS))
    auto_install: bool = True
    rollback_on_failure: bool = True
    dry_run: bool = False
    docker_bin: str = "docker"
    systemd_dir: Path = Path("/etc/systemd/system")
    cron_dir: Path = Path("/etc/cron.d")
    nginx_dir: Path = Path("/etc/nginx")
    apache_dir: Path = Path("/etc/apache2")
    letsencrypt_dir: Path = Path("/etc/letsencrypt")
    webroot: Path = Path("/var/www/html")
    docker_config_dir: Path = Path("/etc/docker")
    backup_retention_days: int = 30
    api_port: int = 3001
    dashboard_port: int = 3000
    database_path: Optional[Path] = None

    @staticmethod
    def from_dict(data: Mapping[str, object], base_path: Path | None = None) -> "PanelSettings":
        """Create :class:`PanelSettings` from raw dictionary data."""

        known = {item.name for item in fields(PanelSettings)}
        unknown = set(data.keys()) - known
        if unknown:
            raise ValueError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")

        values: Dict[str, object] = {}
        for key, raw in data.items():
            if raw is None:
                continue
            if key in _PATH_FIELDS:
                path = Path(str(raw)).expanduser()
                if not path.is_absolute() and base_path is not None:
                    path = base_path / path
                values[key] = path
            elif key in _BOOL_FIELDS:
                values[key] = parse_bool(raw)
            elif key in _INT_FIELDS:
                values[key] = int(raw)  # type: ignore[arg-type]
            elif key == "components":
                values[key] = parse_component_list(raw)
            else:
                values[key] = str(raw)
        return PanelSettings(**values)  # type: ignore[arg-type]

    def with_overrides(self, **changes: object) -> "PanelSettings":
        cleaned = {key: value for key, value in changes.items() if value is not None}
        return replace(self, **cleaned)  # type: ignore[arg-type]

    @property
    def users_dir(self) -> Path:
        return self.data_root / "users"

    @property
    def backups_dir(self) -> Path:
        return self.data_root / "backups"

    @property
    def ssl_dir(self) -> Path:
        return self.data_root / "ssl"

    @property
    def journal_dir(self) -> Path:
        return self.data_root / "journal"

    @property
    def secrets_path(self) -> Path:
        return self.data_root / ".secrets.json"

    @property
    def credentials_path(self) -> Path:
        return self.data_root / "admin-credentials.txt"

    @property
    def resolved_database_path(self) -> Path:
        return self.database_path or (self.data_root / "panel.sqlite3")


_ENV_OVERRIDES = {
    "PANEL_INSTALL_ROOT": "install_root",
    "PANEL_DATA_ROOT": "data_root",
    "PANEL_LOG_DIR": "log_dir",
    "PANEL_NETWORK": "network",
    "PANEL_DOMAIN": "domain",
    "PANEL_EMAIL": "email",
    "PANEL_COMPONENTS": "components",
    "PANEL_AUTO_INSTALL": "auto_install",
    "PANEL_ROLLBACK_ON_FAILURE": "rollback_on_failure",
    "PANEL_DRY_RUN": "dry_run",
    "PANEL_DOCKER_BIN": "docker_bin",
    "PANEL_SYSTEMD_DIR": "systemd_dir",
    "PANEL_CRON_DIR": "cron_dir",
    "PANEL_BACKUP_RETENTION_DAYS": "backup_retention_days",
    "PANEL_DB_PATH": "database_path",
}


def load_settings(
    config_path: Path | None = None,
    *,
    environ: Mapping[str, str] | None = None,
) -> PanelSettings:
    """Load settings from a YAML file and apply ``PANEL_*`` environment overrides."""

    raw: Dict[str, object] = {}
    base_path: Path | None = None
    if config_path is not None and config_path.exists():
        with config_path.open("r", encoding="utf-8") as handle:
            loaded = yaml.safe_load(handle) or {}
        if not isinstance(loaded, dict):
            raise ValueError(f"Configuration file {config_path} must contain a mapping")
        raw.update(loaded)
        base_path = config_path.parent

    env = os.environ if environ is None else environ
    for variable, key in _ENV_OVERRIDES.items():
        value = env.get(variable)
        if value is not None and value.strip():
            raw[key] = value.strip()

    return PanelSettings.from_dict(raw, base_path=base_path)


def resolve_config_path(env_value: Optional[str]) -> Path:
    """Resolve the path to the configuration file."""
    if env_value:
        candidate = Path(env_value).expanduser().resolve(strict=False)
    else:
        candidate = (Path(__file__).resolve().parent.parent / "config" / "panel.yaml").resolve(strict=False)
    return candidate


__all__ = [
    "DEFAULT_COMPONENTS",
    "PanelSettings",
    "load_settings",
    "parse_bool",
    "parse_component_list",
    "resolve_config_path",
]
