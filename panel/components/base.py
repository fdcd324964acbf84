"""Shared contract for installable components."""
from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from typing import Dict, Mapping, Tuple

from ..context import ProvisionContext

logger = logging.getLogger("serverpanel.components")

STANDARD_ACTIONS: Tuple[str, ...] = ("install", "start", "stop", "status", "restart")


@dataclass(frozen=True)
class StepResult:
    """Outcome of one component action."""

    component: str
    action: str
    changed: bool
    message: str = ""
    details: Mapping[str, object] = field(default_factory=dict)
    updates: Mapping[str, object] = field(default_factory=dict)


class Component:
    """Base class for every provisioning step.

    Subclasses implement :meth:`install` and any extra verbs listed in
    ``actions``. Verbs with dashes on the command line map to methods with
    underscores (``add-proxy`` -> ``add_proxy``).
    """

    name: str = ""
    actions: Tuple[str, ...] = STANDARD_ACTIONS

    def result(
        self,
        action: str,
        changed: bool,
        message: str = "",
        *,
        updates: Mapping[str, object] | None = None,
        **details: object,
    ) -> StepResult:
        return StepResult(
            component=self.name,
            action=action,
            changed=changed,
            message=message,
            details=details,
            updates=dict(updates or {}),
        )

    def install(self, ctx: ProvisionContext) -> StepResult:
        raise NotImplementedError

    def start(self, ctx: ProvisionContext) -> StepResult:
        return self.result("start", False, f"{self.name} has no long-running service")

    def stop(self, ctx: ProvisionContext) -> StepResult:
        return self.result("stop", False, f"{self.name} has no long-running service")

    def status(self, ctx: ProvisionContext) -> StepResult:
        return self.result("status", False, "installed")

    def restart(self, ctx: ProvisionContext) -> StepResult:
        self.stop(ctx)
        started = self.start(ctx)
        return self.result("restart", True, started.message, **dict(started.details))

    def run_action(self, ctx: ProvisionContext, action: str, *args: str) -> StepResult:
        if action not in self.actions:
            raise ValueError(
                f"Unsupported action '{action}' for {self.name}. "
                f"Available actions: {', '.join(self.actions)}"
            )

        method = getattr(self, action.replace("-", "_"))
        try:
            inspect.signature(method).bind(ctx, *args)
        except TypeError as exc:
            raise ValueError(f"Invalid arguments for '{self.name} {action}': {exc}") from exc

        logger.info("Running %s %s", self.name, action)
        return method(ctx, *args)


class ServiceComponent(Component):
    """A component backed by a host service managed through systemctl."""

    service: str = ""

    def service_name(self, ctx: ProvisionContext) -> str:
        return self.service

    def start(self, ctx: ProvisionContext) -> StepResult:
        service = self.service_name(ctx)
        ctx.systemctl("start", service)
        return self.result("start", True, f"Started {service}")

    def stop(self, ctx: ProvisionContext) -> StepResult:
        service = self.service_name(ctx)
        ctx.systemctl("stop", service)
        return self.result("stop", True, f"Stopped {service}")

    def restart(self, ctx: ProvisionContext) -> StepResult:
        service = self.service_name(ctx)
        ctx.systemctl("restart", service)
        return self.result("restart", True, f"Restarted {service}")

    def status(self, ctx: ProvisionContext) -> StepResult:
        result = ctx.systemctl("is-active", self.service_name(ctx), check=False)
        if result is None:
            return self.result("status", False, "unknown", state="unknown")
        state = result.stdout.strip() or "inactive"
        return self.result("status", False, state, state=state)


def describe(results: Dict[str, StepResult]) -> str:
    lines = []
    for name, result in results.items():
        marker = "changed" if result.changed else "ok"
        lines.append(f"{name:<12} {marker:<8} {result.message}")
    return "\n".join(lines)


__all__ = ["Component", "STANDARD_ACTIONS", "ServiceComponent", "StepResult", "describe"]
