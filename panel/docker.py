"""Thin wrapper around the docker CLI."""
from __future__ import annotations

import hashlib
import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Sequence, Tuple

from .journal import ProvisioningJournal
from .shell import CommandError, CommandResult

logger = logging.getLogger("serverpanel.docker")

FINGERPRINT_LABEL = "server-panel.fingerprint"


class DependencyError(RuntimeError):
    """Raised when a package, image or service cannot be brought up."""


@dataclass(frozen=True)
class ContainerSpec:
    """Desired configuration of a long-running container."""

    name: str
    image: str
    network: Optional[str] = None
    ports: Tuple[str, ...] = ()
    volumes: Tuple[str, ...] = ()
    env: Tuple[Tuple[str, str], ...] = ()
    labels: Tuple[Tuple[str, str], ...] = ()
    command: Tuple[str, ...] = ()
    workdir: Optional[str] = None
    restart: str = "unless-stopped"
    extra_args: Tuple[str, ...] = field(default=())

    @property
    def fingerprint(self) -> str:
        payload = {
            "image": self.image,
            "network": self.network,
            "ports": list(self.ports),
            "volumes": list(self.volumes),
            "env": [list(item) for item in self.env],
            "labels": [list(item) for item in self.labels],
            "command": list(self.command),
            "workdir": self.workdir,
            "restart": self.restart,
            "extra_args": list(self.extra_args),
        }
        digest = hashlib.sha256(json.dumps(payload, sort_keys=True).encode("utf-8"))
        return digest.hexdigest()[:16]

    def run_args(self) -> list[str]:
        args = ["run", "-d", f"--restart={self.restart}", "--name", self.name]
        if self.network:
            args += ["--network", self.network]
        for port in self.ports:
            args += ["-p", port]
        for volume in self.volumes:
            args += ["-v", volume]
        for key, value in self.env:
            args += ["-e", f"{key}={value}"]
        for key, value in self.labels:
            args += ["--label", f"{key}={value}"]
        args += ["--label", f"{FINGERPRINT_LABEL}={self.fingerprint}"]
        if self.workdir:
            args += ["-w", self.workdir]
        args += list(self.extra_args)
        args.append(self.image)
        args += list(self.command)
        return args


class Docker:
    """Runs docker commands through a command runner and journals what it creates."""

    def __init__(
        self,
        runner,
        *,
        binary: str = "docker",
        journal: ProvisioningJournal | None = None,
    ) -> None:
        self._runner = runner
        self._binary = binary
        self._journal = journal

    def _cmd(self, *args: str) -> list[str]:
        return [self._binary, *args]

    def _run(self, *args: str, check: bool = True, timeout: int = 600, input: Optional[str] = None) -> CommandResult:
        return self._runner.run(self._cmd(*args), check=check, timeout=timeout, input=input)

    def _record(self, description: str, undo_args: Sequence[str] | None) -> None:
        if self._journal is None:
            return
        undo = {"kind": "command", "args": list(undo_args)} if undo_args else None
        self._journal.record(description, undo=undo)

    def available(self) -> bool:
        return self._runner.which(self._binary) is not None

    # ------------------------------------------------------------------
    # Networks
    # ------------------------------------------------------------------
    def network_exists(self, name: str) -> bool:
        return self._run("network", "inspect", name, check=False).exit_status == 0

    def ensure_network(self, name: str) -> bool:
        if self.network_exists(name):
            logger.info("Docker network %s already exists", name)
            return False
        self._run("network", "create", name)
        self._record(f"Created docker network {name}", self._cmd("network", "rm", name))
        return True

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------
    def image_exists(self, image: str) -> bool:
        return self._run("image", "inspect", image, check=False).exit_status == 0

    def ensure_image(self, image: str) -> bool:
        if self.image_exists(image):
            return False
        try:
            self._run("pull", image, timeout=1800)
        except CommandError as exc:
            raise DependencyError(f"Failed to pull image {image}: {exc}") from exc
        self._record(f"Pulled image {image}", None)
        return True

    def image_label(self, image: str, label: str) -> Optional[str]:
        result = self._run("image", "inspect", "-f", f'{{{{ index .Config.Labels "{label}" }}}}', image, check=False)
        if result.exit_status != 0:
            return None
        value = result.stdout.strip()
        return value if value and value != "<no value>" else None

    def build(
        self,
        tag: str,
        context_dir: Path,
        *,
        dockerfile: Path | None = None,
        labels: Dict[str, str] | None = None,
    ) -> None:
        args = ["build", "-t", tag]
        if dockerfile is not None:
            args += ["-f", str(dockerfile)]
        for key, value in (labels or {}).items():
            args += ["--label", f"{key}={value}"]
        args.append(str(context_dir))
        try:
            self._run(*args, timeout=1800)
        except CommandError as exc:
            raise DependencyError(f"Failed to build image {tag}: {exc}") from exc
        self._record(f"Built image {tag}", None)

    # ------------------------------------------------------------------
    # Containers
    # ------------------------------------------------------------------
    def container_state(self, name: str) -> Optional[str]:
        """Return the container state (``running``, ``exited``...) or ``None`` when absent."""

        result = self._run("inspect", "-f", "{{.State.Status}}", name, check=False)
        if result.exit_status != 0:
            return None
        return result.stdout.strip() or None

    def container_label(self, name: str, label: str) -> Optional[str]:
        result = self._run("inspect", "-f", f'{{{{ index .Config.Labels "{label}" }}}}', name, check=False)
        if result.exit_status != 0:
            return None
        value = result.stdout.strip()
        return value if value and value != "<no value>" else None

    def container_fingerprint(self, name: str) -> Optional[str]:
        return self.container_label(name, FINGERPRINT_LABEL)

    def ensure_container(self, spec: ContainerSpec) -> bool:
        """Run ``spec`` unless an identical container is already running."""

        state = self.container_state(spec.name)
        if state is not None:
            if self.container_fingerprint(spec.name) == spec.fingerprint:
                if state != "running":
                    self.start(spec.name)
                    return True
                logger.info("Container %s already running with the desired configuration", spec.name)
                return False
            logger.info("Container %s configuration changed; recreating", spec.name)
            self._run("rm", "-f", spec.name)

        try:
            self._run(*spec.run_args())
        except CommandError as exc:
            raise DependencyError(f"Failed to start container {spec.name}: {exc}") from exc
        self._record(f"Started container {spec.name}", self._cmd("rm", "-f", spec.name))
        return True

    def remove_container(self, name: str) -> bool:
        if self.container_state(name) is None:
            return False
        self._run("rm", "-f", name)
        self._record(f"Removed container {name}", None)
        return True

    def start(self, name: str) -> None:
        self._run("start", name)

    def stop(self, name: str) -> None:
        self._run("stop", name)

    def exec(
        self,
        name: str,
        args: Sequence[str],
        *,
        input: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        check: bool = True,
    ) -> CommandResult:
        exec_args = ["exec"]
        if input is not None:
            exec_args.append("-i")
        for key, value in (env or {}).items():
            exec_args += ["-e", f"{key}={value}"]
        return self._run(*exec_args, name, *args, check=check, input=input)

    def logs(self, name: str, *, tail: int = 100) -> str:
        result = self._run("logs", "--tail", str(tail), name, check=False)
        return result.stdout + result.stderr

    def wait_until_running(self, name: str, *, attempts: int = 15, interval: float = 2.0) -> str:
        """Poll the container state with a bounded retry count."""

        if self._runner.dry_run:
            return "running"
        state: Optional[str] = None
        for attempt in range(1, attempts + 1):
            state = self.container_state(name)
            if state == "running":
                return state
            if state in ("exited", "dead"):
                break
            if attempt < attempts:
                time.sleep(interval)
        detail = self.logs(name, tail=20).strip() if state is not None else ""
        message = f"Container {name} is not running (state: {state or 'missing'})"
        if detail:
            message = f"{message}\n{detail}"
        raise DependencyError(message)

    # ------------------------------------------------------------------
    # Compose
    # ------------------------------------------------------------------
    def compose(self, compose_file: Path, project: str, *args: str, check: bool = True) -> CommandResult:
        return self._run("compose", "-f", str(compose_file), "-p", project, *args, check=check, timeout=1800)


def env_pairs(values: Dict[str, str]) -> Tuple[Tuple[str, str], ...]:
    return tuple(sorted(values.items()))


__all__ = ["ContainerSpec", "DependencyError", "Docker", "FINGERPRINT_LABEL", "env_pairs"]
