"""OS package installation and the base dependency step."""
from __future__ import annotations

import logging
import os
from typing import Iterable, List, Sequence

from ..context import ProvisionContext
from ..docker import DependencyError
from ..shell import CommandError
from .base import Component, StepResult

logger = logging.getLogger("serverpanel.packages")

BASE_PACKAGES = ("curl", "wget", "git", "unzip", "htop", "nano", "vim", "fail2ban")
FIREWALL_PACKAGES = {"debian": "ufw", "rhel": "firewalld", "fedora": "firewalld"}


class PackageManager:
    """Installs distribution packages, skipping those already present."""

    def __init__(self, runner, *, family: str, manager: str) -> None:
        self._runner = runner
        self.family = family
        self.manager = manager
        self._index_updated = False

    @classmethod
    def for_context(cls, ctx: ProvisionContext) -> "PackageManager":
        environment = ctx.require_environment()
        return cls(ctx.runner, family=environment.os_family, manager=environment.package_manager)

    def is_installed(self, package: str) -> bool:
        if self.family == "debian":
            result = self._runner.run(["dpkg-query", "-W", "-f=${Status}", package], check=False)
            return result.exit_status == 0 and "install ok installed" in result.stdout
        result = self._runner.run(["rpm", "-q", package], check=False)
        return result.exit_status == 0

    def missing(self, packages: Iterable[str]) -> List[str]:
        return [package for package in packages if not self.is_installed(package)]

    def _env(self) -> dict:
        env = dict(os.environ)
        env["DEBIAN_FRONTEND"] = "noninteractive"
        return env

    def update_index(self) -> None:
        if self._index_updated or self.family != "debian":
            return
        self._runner.run([self.manager, "update", "-q"], env=self._env(), timeout=900)
        self._index_updated = True

    def install(self, packages: Sequence[str], *, journal=None) -> List[str]:
        """Install the missing subset of ``packages`` and return what was installed."""

        pending = self.missing(packages)
        if not pending:
            logger.info("Packages already installed: %s", ", ".join(packages))
            return []

        self.update_index()
        try:
            self._runner.run([self.manager, "install", "-y", "-q", *pending], env=self._env(), timeout=1800)
        except CommandError as exc:
            raise DependencyError(f"Failed to install packages {', '.join(pending)}: {exc}") from exc
        if journal is not None:
            journal.record(f"Installed packages: {', '.join(pending)}")
        return pending


def base_packages(family: str) -> List[str]:
    packages = list(BASE_PACKAGES)
    packages.append(FIREWALL_PACKAGES[family])
    if family == "rhel":
        packages.insert(0, "epel-release")
    return packages


class BaseDependencies(Component):
    name = "base"

    def install(self, ctx: ProvisionContext) -> StepResult:
        environment = ctx.require_environment()
        manager = PackageManager.for_context(ctx)
        installed = manager.install(base_packages(environment.os_family), journal=ctx.journal)
        if "fail2ban" in installed:
            ctx.systemctl("enable", "--now", "fail2ban", check=False)
        if not installed:
            return self.result("install", False, "Base packages already installed")
        return self.result("install", True, f"Installed {len(installed)} package(s)", packages=installed)

    def status(self, ctx: ProvisionContext) -> StepResult:
        environment = ctx.require_environment()
        missing = PackageManager.for_context(ctx).missing(base_packages(environment.os_family))
        message = "all installed" if not missing else f"missing: {', '.join(missing)}"
        return self.result("status", False, message, missing=missing)


__all__ = ["BASE_PACKAGES", "BaseDependencies", "PackageManager", "base_packages"]
