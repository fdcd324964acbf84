"""The context object threaded through every provisioning step."""
from __future__ import annotations

import logging
import sys
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import TYPE_CHECKING, List, Mapping, Optional

from .config import PanelSettings
from .database import Database
from .docker import Docker
from .environment import Environment
from .journal import ProvisioningJournal
from .plan import Plan
from .ports import PortAllocator
from .reconcile import Reconciler
from .shell import CommandResult, CommandRunner

if TYPE_CHECKING:  # pragma: no cover
    from .components.base import Component
    from .components.webserver import WebServer

logger = logging.getLogger("serverpanel.context")


@dataclass(frozen=True)
class ProvisionContext:
    """Immutable bundle of everything a step may read.

    Steps never mutate the context; values they discover are returned in
    ``StepResult.updates`` and folded in with :meth:`evolve`.
    """

    settings: PanelSettings
    runner: CommandRunner
    database: Database
    journal: ProvisioningJournal
    environment: Optional[Environment] = None
    plan: Optional[Plan] = None
    secrets: Mapping[str, str] = field(default_factory=dict)

    def evolve(self, **changes: object) -> "ProvisionContext":
        return replace(self, **changes)  # type: ignore[arg-type]

    @property
    def docker(self) -> Docker:
        return Docker(self.runner, binary=self.settings.docker_bin, journal=self.journal)

    @property
    def files(self) -> Reconciler:
        return Reconciler(self.journal, dry_run=self.settings.dry_run)

    @property
    def ports(self) -> PortAllocator:
        return PortAllocator(self.database)

    def require_environment(self) -> Environment:
        if self.environment is None:
            raise RuntimeError("The host environment has not been detected yet")
        return self.environment

    def secret(self, key: str) -> str:
        try:
            return self.secrets[key]
        except KeyError as exc:
            raise RuntimeError(f"Secret '{key}' has not been generated; run the installer first") from exc

    def is_enabled(self, name: str) -> bool:
        if self.plan is not None:
            return name in self.plan
        return name in self.settings.components

    def component(self, name: str) -> "Component":
        from .components import get_component

        return get_component(name)

    def webserver(self) -> Optional["WebServer"]:
        for name in ("nginx", "apache"):
            if self.is_enabled(name):
                return self.component(name)  # type: ignore[return-value]
        return None

    def systemctl(self, *args: str, check: bool = True) -> Optional[CommandResult]:
        if self.runner.which("systemctl") is None:
            logger.info("systemctl not available; skipping: systemctl %s", " ".join(args))
            return None
        return self.runner.run(["systemctl", *args], check=check)

    def cli_command(self, *args: str) -> List[str]:
        """Command line that re-enters this CLI from cron or systemd."""

        entrypoint = self.settings.install_root / "main.py"
        return [sys.executable, str(entrypoint), *args]

    def app_dir(self, user: str, name: str) -> Path:
        return self.settings.users_dir / user / name


__all__ = ["ProvisionContext"]
