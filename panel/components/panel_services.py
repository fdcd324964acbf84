"""The panel's own API and dashboard containers."""
from __future__ import annotations

import hashlib
import logging
from pathlib import Path
from typing import Dict, List, Optional

import httpx

from ..context import ProvisionContext
from ..docker import ContainerSpec, env_pairs
from ..templating import render
from .base import STANDARD_ACTIONS, Component, StepResult

logger = logging.getLogger("serverpanel.panel")

IMAGE = "server-panel:latest"
BACKEND = "server-panel-backend"
FRONTEND = "server-panel-frontend"
SOURCE_LABEL = "server-panel.source"
PYTHON_VERSION = "3.11"
HEALTH_TIMEOUT = 5.0


def source_fingerprint(root: Path) -> str:
    """Hash of the files baked into the panel image."""

    digest = hashlib.sha256()
    candidates: List[Path] = [root / "pyproject.toml", root / "main.py"]
    package = root / "panel"
    if package.is_dir():
        candidates += sorted(path for path in package.rglob("*") if path.is_file() and "__pycache__" not in path.parts)
    for path in candidates:
        if not path.is_file():
            continue
        digest.update(str(path.relative_to(root)).encode("utf-8"))
        digest.update(path.read_bytes())
    return digest.hexdigest()[:16]


def probe_health(url: str, *, transport: Optional[httpx.BaseTransport] = None) -> str:
    try:
        with httpx.Client(transport=transport, timeout=HEALTH_TIMEOUT) as client:
            response = client.get(url)
    except httpx.HTTPError as exc:
        logger.debug("Health probe %s failed: %s", url, exc)
        return "unreachable"
    if response.status_code != 200:
        return f"http {response.status_code}"
    try:
        payload = response.json()
    except ValueError:
        return "invalid response"
    return str(payload.get("status", "unknown"))


class PanelServices(Component):
    name = "panel"
    actions = STANDARD_ACTIONS

    def __init__(self, *, transport: Optional[httpx.BaseTransport] = None) -> None:
        self._transport = transport

    def _environment(self, ctx: ProvisionContext) -> Dict[str, str]:
        settings = ctx.settings
        return {
            "PANEL_DATA_ROOT": str(settings.data_root),
            "PANEL_DB_PATH": str(settings.resolved_database_path),
        }

    def container_specs(self, ctx: ProvisionContext, source: str) -> List[ContainerSpec]:
        settings = ctx.settings
        common = {
            "image": IMAGE,
            "network": settings.network,
            "volumes": (f"{settings.data_root}:{settings.data_root}",),
            "env": env_pairs(self._environment(ctx)),
            "labels": (("server-panel.component", self.name), (SOURCE_LABEL, source)),
        }
        return [
            ContainerSpec(
                name=BACKEND,
                ports=(f"{settings.api_port}:{settings.api_port}",),
                command=("python", "main.py", "serve-api", "--host", "0.0.0.0", "--port", str(settings.api_port)),
                **common,  # type: ignore[arg-type]
            ),
            ContainerSpec(
                name=FRONTEND,
                ports=(f"{settings.dashboard_port}:{settings.dashboard_port}",),
                command=(
                    "python",
                    "main.py",
                    "serve-dashboard",
                    "--host",
                    "0.0.0.0",
                    "--port",
                    str(settings.dashboard_port),
                    "--api-port",
                    str(settings.api_port),
                ),
                **common,  # type: ignore[arg-type]
            ),
        ]

    def install(self, ctx: ProvisionContext) -> StepResult:
        settings = ctx.settings
        root = settings.install_root
        files = ctx.files
        changed = files.ensure_file(
            root / "Dockerfile",
            render(
                "panel/Dockerfile.j2",
                python_version=PYTHON_VERSION,
                workdir=str(root),
                api_port=settings.api_port,
                dashboard_port=settings.dashboard_port,
            ),
        )
        changed |= files.ensure_file(root / ".dockerignore", render("panel/dockerignore.j2"))

        docker = ctx.docker
        source = source_fingerprint(root)
        if docker.image_label(IMAGE, SOURCE_LABEL) != source:
            docker.build(IMAGE, root, labels={SOURCE_LABEL: source})
            changed = True
        else:
            logger.info("Panel image is up to date")

        if not ctx.settings.dry_run:
            ctx.database.initialize()
        for spec in self.container_specs(ctx, source):
            changed |= docker.ensure_container(spec)
            docker.wait_until_running(spec.name)

        message = f"API on {settings.api_port}, dashboard on {settings.dashboard_port}"
        return self.result("install", changed, message, containers=[BACKEND, FRONTEND])

    def start(self, ctx: ProvisionContext) -> StepResult:
        for name in (BACKEND, FRONTEND):
            ctx.docker.start(name)
        return self.result("start", True, "Started the panel services")

    def stop(self, ctx: ProvisionContext) -> StepResult:
        for name in (FRONTEND, BACKEND):
            ctx.docker.stop(name)
        return self.result("stop", True, "Stopped the panel services")

    def status(self, ctx: ProvisionContext) -> StepResult:
        settings = ctx.settings
        states = {name: ctx.docker.container_state(name) or "missing" for name in (BACKEND, FRONTEND)}
        health = {
            BACKEND: probe_health(f"http://127.0.0.1:{settings.api_port}/health", transport=self._transport),
            FRONTEND: probe_health(f"http://127.0.0.1:{settings.dashboard_port}/health", transport=self._transport),
        }
        message = ", ".join(f"{name}: {states[name]} ({health[name]})" for name in states)
        return self.result("status", False, message, containers=states, health=health)


__all__ = ["BACKEND", "FRONTEND", "IMAGE", "PanelServices", "probe_health", "source_fingerprint"]
