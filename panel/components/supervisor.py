"""systemd unit that starts and stops the panel at boot."""
from __future__ import annotations

import logging
import shlex
from pathlib import Path

from ..context import ProvisionContext
from ..templating import render
from .base import STANDARD_ACTIONS, Component, StepResult

logger = logging.getLogger("serverpanel.supervisor")

SERVICE_NAME = "server-panel"


class ServiceSupervisor(Component):
    name = "supervisor"
    actions = STANDARD_ACTIONS

    def unit_path(self, ctx: ProvisionContext) -> Path:
        return ctx.settings.systemd_dir / f"{SERVICE_NAME}.service"

    def render_unit(self, ctx: ProvisionContext) -> str:
        return render(
            "systemd/server-panel.service.j2",
            working_dir=str(ctx.settings.install_root),
            exec_start=shlex.join(ctx.cli_command("start")),
            exec_stop=shlex.join(ctx.cli_command("stop")),
            config_path=str(ctx.settings.install_root / "config" / "panel.yaml"),
        )

    def install(self, ctx: ProvisionContext) -> StepResult:
        path = self.unit_path(ctx)
        changed = ctx.files.ensure_file(path, self.render_unit(ctx), mode=0o644)
        if changed:
            logger.info("Wrote systemd service unit to %s", path)
            ctx.systemctl("daemon-reload")
        else:
            logger.info("Systemd service unit already up to date at %s", path)
        ctx.systemctl("enable", SERVICE_NAME)
        return self.result("install", changed, f"{SERVICE_NAME}.service enabled", unit=str(path))

    def start(self, ctx: ProvisionContext) -> StepResult:
        ctx.systemctl("start", SERVICE_NAME)
        return self.result("start", True, f"Started {SERVICE_NAME}")

    def stop(self, ctx: ProvisionContext) -> StepResult:
        ctx.systemctl("stop", SERVICE_NAME)
        return self.result("stop", True, f"Stopped {SERVICE_NAME}")

    def status(self, ctx: ProvisionContext) -> StepResult:
        result = ctx.systemctl("is-active", SERVICE_NAME, check=False)
        state = "unknown" if result is None else (result.stdout.strip() or "inactive")
        return self.result("status", False, state, state=state, unit=str(self.unit_path(ctx)))


__all__ = ["SERVICE_NAME", "ServiceSupervisor"]
