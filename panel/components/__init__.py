"""Registry of installable components, keyed by manifest name."""
from __future__ import annotations

from typing import Callable, Dict

from .apps import ApplicationRuntime
from .backup import BackupManager
from .base import Component, StepResult
from .certificates import CertificateManager
from .databases import MySQLServer, PostgresServer
from .filemanager import FileManager
from .firewall import Firewall
from .monitoring import MonitoringStack
from .packages import BaseDependencies
from .panel_services import PanelServices
from .runtime import ContainerRuntime
from .supervisor import ServiceSupervisor
from .webserver import ApacheServer, NginxServer

COMPONENTS: Dict[str, Callable[[], Component]] = {
    "base": BaseDependencies,
    "docker": ContainerRuntime,
    "nginx": NginxServer,
    "apache": ApacheServer,
    "mysql": MySQLServer,
    "postgres": PostgresServer,
    "wordpress": lambda: ApplicationRuntime("wordpress"),
    "php": lambda: ApplicationRuntime("php"),
    "nodejs": lambda: ApplicationRuntime("nodejs"),
    "python": lambda: ApplicationRuntime("python"),
    "static": lambda: ApplicationRuntime("static"),
    "filemanager": FileManager,
    "ssl": CertificateManager,
    "monitoring": MonitoringStack,
    "backup": BackupManager,
    "panel": PanelServices,
    "firewall": Firewall,
    "supervisor": ServiceSupervisor,
}


def get_component(name: str) -> Component:
    try:
        factory = COMPONENTS[name]
    except KeyError as exc:
        raise ValueError(
            f"Unknown component '{name}'. Available components: {', '.join(COMPONENTS)}"
        ) from exc
    return factory()


__all__ = ["COMPONENTS", "Component", "StepResult", "get_component"]
