"""The provisioning driver behind ``main.py``.

:class:`Installer` owns one run: it builds the :class:`ProvisionContext`,
walks the plan under the provisioning journal and rolls back when a step
fails. The day-two commands (``start``, ``stop``, ``status``, ``component``,
``deploy`` and ``rollback``) reuse the state persisted by the last install.
"""
from __future__ import annotations

import json
import logging
import shutil
from dataclasses import asdict
from pathlib import Path
from typing import Callable, Dict, FrozenSet, List, Optional, TextIO

from .components import get_component
from .components.base import Component, StepResult
from .config import PanelSettings
from .context import ProvisionContext
from .credentials import load_or_create_secrets, load_secrets, write_credentials_once
from .database import Database
from .environment import (
    OS_RELEASE_PATH,
    Environment,
    check_root,
    detect_environment,
    fetch_public_address,
)
from .journal import ProvisioningJournal
from .plan import EXCLUSIVE_GROUPS, Plan, build_plan, optional_components
from .prompts import interactive_prompt_io, print_prompt_message, prompt_choice, prompt_yes_no
from .shell import CommandError, CommandRunner

logger = logging.getLogger("serverpanel.installer")

PROJECT_ROOT = Path(__file__).resolve().parent.parent
STATE_FILE_NAME = "state.json"
SOURCE_ITEMS = ("panel", "main.py", "pyproject.toml")


class ProvisioningError(RuntimeError):
    """A plan step failed; ``cause`` is the original exception."""

    def __init__(self, step: str, cause: BaseException) -> None:
        super().__init__(f"Step '{step}' failed: {cause}")
        self.step = step
        self.cause = cause

    @property
    def exit_status(self) -> int:
        if isinstance(self.cause, CommandError):
            return self.cause.exit_status or 1
        return 1


def select_components(
    settings: PanelSettings,
    *,
    stdin: TextIO | None = None,
    stdout: TextIO | None = None,
) -> FrozenSet[str]:
    """Ask which optional components to install, defaulting to ``settings.components``."""

    current = settings.components
    selected = set()

    for group, choices in (("webserver", ("nginx", "apache")), ("database", ("mysql", "postgres"))):
        default = next((name for name in choices if name in current), "none")
        answer = prompt_choice(
            f"Which {group} should be installed?",
            [*choices, "none"],
            default=default,
            stdin=stdin,
            stdout=stdout,
        )
        if answer != "none":
            selected.add(answer)

    for spec in optional_components():
        if spec.group in EXCLUSIVE_GROUPS:
            continue
        if prompt_yes_no(f"Install {spec.description}?", default=spec.name in current, stdin=stdin, stdout=stdout):
            selected.add(spec.name)

    print_prompt_message(f"Selected components: {', '.join(sorted(selected)) or 'none'}", stdout)
    return frozenset(selected)


class Installer:
    """Runs provisioning plans and component actions for one host."""

    def __init__(
        self,
        settings: PanelSettings,
        *,
        runner: Optional[CommandRunner] = None,
        database: Optional[Database] = None,
        component_factory: Callable[[str], Component] = get_component,
        fetch: Callable[..., Optional[str]] = fetch_public_address,
        os_release_path: Path = OS_RELEASE_PATH,
        hostname: Optional[str] = None,
        euid: Optional[int] = None,
        source_root: Path = PROJECT_ROOT,
    ) -> None:
        self.settings = settings
        self.runner = runner or CommandRunner(dry_run=settings.dry_run)
        self.database = database or Database(settings.resolved_database_path)
        self._component = component_factory
        self._fetch = fetch
        self._os_release_path = os_release_path
        self._hostname = hostname
        self._euid = euid
        self._source_root = source_root

    @property
    def state_path(self) -> Path:
        return self.settings.data_root / STATE_FILE_NAME

    # ------------------------------------------------------------------
    # Context construction
    # ------------------------------------------------------------------
    def _new_journal(self) -> ProvisioningJournal:
        directory = None if self.settings.dry_run else self.settings.journal_dir
        return ProvisioningJournal(directory=directory)

    def _detect(self, settings: PanelSettings) -> Environment:
        return detect_environment(
            settings,
            self.runner,
            os_release_path=self._os_release_path,
            fetch=self._fetch,
            hostname=self._hostname,
        )

    def select_plan(self) -> Plan:
        if self.settings.auto_install:
            return build_plan(self.settings.components)
        with interactive_prompt_io() as (stdin, stdout):
            components = select_components(self.settings, stdin=stdin, stdout=stdout)
        return build_plan(components)

    def prepare(self, domain: Optional[str] = None, email: Optional[str] = None) -> ProvisionContext:
        """Check the host and build the context for an install run."""

        if not self.settings.dry_run:
            check_root(self._euid)
        self.settings = self.settings.with_overrides(domain=domain or None, email=email or None)
        settings = self.settings

        ctx = ProvisionContext(
            settings=settings,
            runner=self.runner,
            database=self.database,
            journal=self._new_journal(),
        )
        ctx.journal.begin_step("setup")
        environment = self._detect(settings)
        self._create_directories(ctx)
        self._stage_sources(ctx)
        secrets = load_or_create_secrets(settings.secrets_path, dry_run=settings.dry_run)
        plan = self.select_plan()
        ctx.journal.finish_step("setup", "succeeded")
        return ctx.evolve(environment=environment, plan=plan, secrets=secrets)

    def _create_directories(self, ctx: ProvisionContext) -> None:
        settings = ctx.settings
        for path in (
            settings.install_root,
            settings.install_root / "config",
            settings.data_root,
            settings.users_dir,
            settings.data_root / "apps",
            settings.ssl_dir,
            settings.journal_dir,
            settings.log_dir,
        ):
            ctx.files.ensure_directory(path)
        ctx.files.ensure_directory(settings.backups_dir, mode=0o700)

    def _stage_sources(self, ctx: ProvisionContext) -> None:
        """Copy the panel sources into the install root unless running from there."""

        target = ctx.settings.install_root
        source = self._source_root
        if source.resolve() == target.resolve() or ctx.settings.dry_run:
            return
        for item in SOURCE_ITEMS:
            origin = source / item
            if not origin.exists():
                continue
            destination = target / item
            existed = destination.exists()
            if origin.is_dir():
                shutil.copytree(
                    origin,
                    destination,
                    dirs_exist_ok=True,
                    ignore=shutil.ignore_patterns("__pycache__", "*.pyc"),
                )
            else:
                shutil.copy2(origin, destination)
            if not existed:
                ctx.journal.record(
                    f"Staged {item} into {target}",
                    undo={"kind": "remove_path", "path": str(destination)},
                )
        logger.info("Panel sources staged in %s", target)

    def _save_state(self, ctx: ProvisionContext) -> None:
        state = {
            "environment": asdict(ctx.require_environment()),
            "components": list(ctx.plan.names) if ctx.plan is not None else [],
        }
        ctx.files.ensure_file(self.state_path, json.dumps(state, indent=2, sort_keys=True) + "\n", mode=0o600)

    def load_context(self) -> ProvisionContext:
        """Context for day-two commands, built from the last install's state."""

        settings = self.settings
        environment: Optional[Environment] = None
        components = settings.components
        if self.state_path.exists():
            state = json.loads(self.state_path.read_text(encoding="utf-8"))
            environment = Environment(**state["environment"])
            components = frozenset(state.get("components", ()))
        else:
            logger.warning("No install state found at %s; detecting the environment", self.state_path)
            environment = self._detect(settings)

        self.database.initialize()
        return ProvisionContext(
            settings=settings,
            runner=self.runner,
            database=self.database,
            journal=self._new_journal(),
            environment=environment,
            plan=build_plan(components),
            secrets=load_secrets(settings.secrets_path),
        )

    # ------------------------------------------------------------------
    # Journaled execution
    # ------------------------------------------------------------------
    def _rollback_steps(self, journal: ProvisioningJournal) -> List[str]:
        """Undo every step of the run except ``setup``.

        The setup step owns the data root holding the secrets, the panel
        database and the journal itself; only an explicit ``rollback`` removes it.
        """

        undone: List[str] = []
        for step in reversed(list(journal.steps)):
            if step != "setup":
                undone += journal.rollback(self.runner, step=step)
        return undone

    def _run_step(self, ctx: ProvisionContext, step: str, action: Callable[[], StepResult]) -> StepResult:
        journal = ctx.journal
        journal.begin_step(step)
        try:
            result = action()
        except Exception as exc:
            journal.finish_step(step, "failed")
            logger.error("Step %s failed: %s", step, exc)
            if self.settings.rollback_on_failure:
                undone = self._rollback_steps(journal)
                logger.warning("Rolled back %d change(s) from run %s", len(undone), journal.run_id)
            else:
                logger.warning("Rollback disabled; run 'main.py rollback %s' to undo this run", journal.run_id)
            if isinstance(exc, ValueError):
                raise
            raise ProvisioningError(step, exc) from exc
        journal.finish_step(step, "succeeded")
        return result

    def install(self, domain: Optional[str] = None, email: Optional[str] = None) -> Dict[str, StepResult]:
        """Provision every component of the plan in order."""

        ctx = self.prepare(domain, email)
        assert ctx.plan is not None
        logger.info("Provisioning run %s: %s", ctx.journal.run_id, ", ".join(ctx.plan.names))
        for name, reason in ctx.plan.skipped:
            logger.warning("Not installing %s: %s", name, reason)

        results: Dict[str, StepResult] = {}
        for spec in ctx.plan.components:
            component = self._component(spec.name)
            result = self._run_step(ctx, spec.name, lambda: component.install(ctx))
            if result.updates:
                ctx = ctx.evolve(**result.updates)
            results[spec.name] = result
            logger.info("%s: %s", spec.name, result.message or ("changed" if result.changed else "ok"))

        if not self.settings.dry_run:
            self._save_state(ctx)
            write_credentials_once(
                self.settings.credentials_path,
                self.settings,
                ctx.require_environment(),
                ctx.secrets,
            )
        return results

    def summary(self, results: Dict[str, StepResult]) -> str:
        settings = self.settings
        changed = sum(1 for result in results.values() if result.changed)
        lines = [
            f"Provisioned {len(results)} component(s), {changed} changed.",
            f"Dashboard: http://{settings.domain or 'localhost'}:{settings.dashboard_port}/",
            f"API:       http://{settings.domain or 'localhost'}:{settings.api_port}/",
            f"Credentials: {settings.credentials_path}",
        ]
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Day-two commands
    # ------------------------------------------------------------------
    def start(self) -> Dict[str, StepResult]:
        ctx = self.load_context()
        assert ctx.plan is not None
        return {spec.name: self._component(spec.name).start(ctx) for spec in ctx.plan.supervised}

    def stop(self) -> Dict[str, StepResult]:
        ctx = self.load_context()
        assert ctx.plan is not None
        return {spec.name: self._component(spec.name).stop(ctx) for spec in reversed(ctx.plan.supervised)}

    def status(self) -> Dict[str, StepResult]:
        ctx = self.load_context()
        assert ctx.plan is not None
        results: Dict[str, StepResult] = {}
        for spec in ctx.plan.components:
            component = self._component(spec.name)
            try:
                results[spec.name] = component.status(ctx)
            except (CommandError, RuntimeError) as exc:
                results[spec.name] = StepResult(spec.name, "status", False, f"error: {exc}")
        return results

    def run_component(self, name: str, action: str, *args: str) -> StepResult:
        component = self._component(name)
        ctx = self.load_context()
        if action == "install":
            return self._run_step(ctx, name, lambda: component.install(ctx))
        return component.run_action(ctx, action, *args)

    def deploy(
        self,
        app_type: str,
        name: str,
        domain: str,
        *,
        variant: str = "",
        version: str = "",
        user: str = "admin",
        tls: bool = True,
    ) -> StepResult:
        component = self._component(app_type)
        deploy = getattr(component, "deploy", None)
        if deploy is None:
            raise ValueError(f"Component '{app_type}' does not deploy applications")
        ctx = self.load_context()
        if app_type not in ctx.plan:  # type: ignore[operator]
            raise ValueError(f"Runtime '{app_type}' is not installed on this host")
        return self._run_step(
            ctx,
            f"deploy:{app_type}:{name}",
            lambda: deploy(ctx, name, domain, variant, version, user, tls=tls),
        )

    def rollback(self, run_id: Optional[str] = None) -> List[str]:
        journal = ProvisioningJournal.load(self.settings.journal_dir, run_id)
        undone = journal.rollback(self.runner)
        logger.info("Rolled back %d change(s) from run %s", len(undone), journal.run_id)
        return undone


__all__ = ["Installer", "ProvisioningError", "STATE_FILE_NAME", "select_components"]
