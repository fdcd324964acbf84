"""Container runtime installation and the shared panel network."""
from __future__ import annotations

import json
import logging

from ..context import ProvisionContext
from ..docker import DependencyError
from ..shell import CommandError
from .base import STANDARD_ACTIONS, Component, StepResult

logger = logging.getLogger("serverpanel.runtime")

DOCKER_INSTALL_SCRIPT_URL = "https://get.docker.com"
COMPOSE_FALLBACK_VERSION = "v2.21.0"
COMPOSE_PLUGIN_DIR = "/usr/local/lib/docker/cli-plugins"

DAEMON_CONFIG = {
    "log-driver": "json-file",
    "log-opts": {"max-size": "10m", "max-file": "3"},
    "storage-driver": "overlay2",
    "live-restore": True,
    "default-address-pools": [{"base": "172.20.0.0/16", "size": 24}],
}


def render_daemon_config() -> str:
    return json.dumps(DAEMON_CONFIG, indent=2) + "\n"


class ContainerRuntime(Component):
    name = "docker"
    actions = STANDARD_ACTIONS + ("cleanup",)

    def _install_engine(self, ctx: ProvisionContext) -> None:
        script = "/tmp/get-docker.sh"
        try:
            ctx.runner.run(["curl", "-fsSL", DOCKER_INSTALL_SCRIPT_URL, "-o", script])
            ctx.runner.run(["sh", script], timeout=1800)
        except CommandError as exc:
            raise DependencyError(f"Docker installation failed: {exc}") from exc
        ctx.journal.record("Installed the docker engine")

    def _ensure_compose(self, ctx: ProvisionContext) -> bool:
        binary = ctx.settings.docker_bin
        if ctx.runner.run([binary, "compose", "version"], check=False).exit_status == 0:
            return False

        logger.warning("docker compose plugin missing; installing %s", COMPOSE_FALLBACK_VERSION)
        uname = ctx.runner.run(["uname", "-m"], check=False).stdout.strip() or "x86_64"
        url = (
            "https://github.com/docker/compose/releases/download/"
            f"{COMPOSE_FALLBACK_VERSION}/docker-compose-linux-{uname}"
        )
        target = f"{COMPOSE_PLUGIN_DIR}/docker-compose"
        try:
            ctx.runner.run(["mkdir", "-p", COMPOSE_PLUGIN_DIR])
            ctx.runner.run(["curl", "-fsSL", url, "-o", target])
            ctx.runner.run(["chmod", "+x", target])
        except CommandError as exc:
            raise DependencyError(f"Failed to install docker compose: {exc}") from exc
        ctx.journal.record(f"Installed docker compose {COMPOSE_FALLBACK_VERSION}", undo={"kind": "remove_path", "path": target})
        return True

    def install(self, ctx: ProvisionContext) -> StepResult:
        docker = ctx.docker
        changed = False
        fresh_install = False

        if docker.available():
            logger.info("Docker already installed; skipping engine installation")
        else:
            self._install_engine(ctx)
            changed = fresh_install = True

        changed |= self._ensure_compose(ctx)

        daemon_path = ctx.settings.docker_config_dir / "daemon.json"
        config_changed = ctx.files.ensure_file(daemon_path, render_daemon_config())
        changed |= config_changed

        ctx.systemctl("enable", "--now", "docker")
        if config_changed and not fresh_install:
            ctx.systemctl("restart", "docker")

        if fresh_install:
            smoke = ctx.runner.run([ctx.settings.docker_bin, "run", "--rm", "hello-world"], check=False)
            if smoke.exit_status != 0:
                raise DependencyError(f"Docker smoke test failed: {smoke.stderr.strip() or smoke.stdout.strip()}")

        changed |= docker.ensure_network(ctx.settings.network)

        message = "Docker configured" if changed else "Docker already configured"
        return self.result("install", changed, message, network=ctx.settings.network)

    def start(self, ctx: ProvisionContext) -> StepResult:
        ctx.systemctl("start", "docker")
        return self.result("start", True, "Started docker")

    def stop(self, ctx: ProvisionContext) -> StepResult:
        ctx.systemctl("stop", "docker")
        return self.result("stop", True, "Stopped docker")

    def status(self, ctx: ProvisionContext) -> StepResult:
        docker = ctx.docker
        if not docker.available():
            return self.result("status", False, "not installed", state="missing")
        network = docker.network_exists(ctx.settings.network)
        message = "running" + ("" if network else f" (network {ctx.settings.network} missing)")
        return self.result("status", False, message, state="running", network=network)

    def cleanup(self, ctx: ProvisionContext) -> StepResult:
        ctx.runner.run([ctx.settings.docker_bin, "system", "prune", "-f"])
        return self.result("cleanup", True, "Removed unused containers, networks and images")


__all__ = ["ContainerRuntime", "DAEMON_CONFIG", "render_daemon_config"]
