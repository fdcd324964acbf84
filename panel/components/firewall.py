"""Host firewall rules for the panel's published ports."""
from __future__ import annotations

import logging
import re
from typing import List, Sequence, Set

from ..context import ProvisionContext
from .base import STANDARD_ACTIONS, Component, StepResult
from .packages import PackageManager

logger = logging.getLogger("serverpanel.firewall")

SSH_PORT = 22

_UFW_RULE = re.compile(r"^(\d+)/tcp\s+ALLOW", re.IGNORECASE)


def parse_ufw_status(output: str) -> Set[int]:
    """Ports with an ``ALLOW`` rule in ``ufw status`` output."""

    ports = set()
    for line in output.splitlines():
        match = _UFW_RULE.match(line.strip())
        if match:
            ports.add(int(match.group(1)))
    return ports


class Firewall(Component):
    name = "firewall"
    actions = STANDARD_ACTIONS

    def ports(self, ctx: ProvisionContext) -> List[int]:
        ports = set(ctx.plan.ports) if ctx.plan is not None else set()
        ports.add(SSH_PORT)
        return sorted(ports)

    def backend(self, ctx: ProvisionContext) -> str:
        return "ufw" if ctx.require_environment().os_family == "debian" else "firewalld"

    def install(self, ctx: ProvisionContext) -> StepResult:
        backend = self.backend(ctx)
        binary = "ufw" if backend == "ufw" else "firewall-cmd"
        if ctx.runner.which(binary) is None:
            PackageManager.for_context(ctx).install([backend], journal=ctx.journal)

        ports = self.ports(ctx)
        if backend == "ufw":
            opened = self._configure_ufw(ctx, ports)
        else:
            opened = self._configure_firewalld(ctx, ports)

        message = f"Opened {', '.join(map(str, opened))}" if opened else "All ports already open"
        return self.result("install", bool(opened), message, backend=backend, ports=ports, opened=opened)

    def _configure_ufw(self, ctx: ProvisionContext, ports: Sequence[int]) -> List[int]:
        runner = ctx.runner
        status = runner.run(["ufw", "status"], check=False)
        existing = parse_ufw_status(status.stdout)
        opened = []
        for port in ports:
            if port in existing:
                continue
            runner.run(["ufw", "allow", f"{port}/tcp"])
            ctx.journal.record(
                f"Opened {port}/tcp in ufw",
                undo={"kind": "command", "args": ["ufw", "delete", "allow", f"{port}/tcp"]},
            )
            opened.append(port)
        if "Status: active" not in status.stdout:
            runner.run(["ufw", "--force", "enable"])
        return opened

    def _configure_firewalld(self, ctx: ProvisionContext, ports: Sequence[int]) -> List[int]:
        runner = ctx.runner
        ctx.systemctl("enable", "--now", "firewalld")
        opened = []
        for port in ports:
            query = runner.run(["firewall-cmd", "--permanent", f"--query-port={port}/tcp"], check=False)
            if query.exit_status == 0 and query.stdout.strip() == "yes":
                continue
            runner.run(["firewall-cmd", "--permanent", f"--add-port={port}/tcp"])
            ctx.journal.record(
                f"Opened {port}/tcp in firewalld",
                undo={"kind": "command", "args": ["firewall-cmd", "--permanent", f"--remove-port={port}/tcp"]},
            )
            opened.append(port)
        if opened:
            runner.run(["firewall-cmd", "--reload"])
        return opened

    def status(self, ctx: ProvisionContext) -> StepResult:
        backend = self.backend(ctx)
        if backend == "ufw":
            result = ctx.runner.run(["ufw", "status"], check=False)
            state = "active" if "Status: active" in result.stdout else "inactive"
            ports = sorted(parse_ufw_status(result.stdout))
        else:
            result = ctx.runner.run(["firewall-cmd", "--state"], check=False)
            state = result.stdout.strip() or "inactive"
            listed = ctx.runner.run(["firewall-cmd", "--list-ports"], check=False)
            ports = sorted(int(item.split("/")[0]) for item in listed.stdout.split() if item.split("/")[0].isdigit())
        return self.result("status", False, f"{backend} {state}", backend=backend, state=state, ports=ports)


__all__ = ["Firewall", "SSH_PORT", "parse_ufw_status"]
