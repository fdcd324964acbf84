"""Shared fixtures: a fake host that simulates the commands the provisioner runs."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from panel.components.filemanager import ADD_USER_SCRIPT
from panel.config import PanelSettings
from panel.context import ProvisionContext
from panel.credentials import SECRET_KEYS
from panel.database import Database
from panel.environment import Environment
from panel.journal import ProvisioningJournal
from panel.plan import build_plan
from panel.shell import CommandError, CommandResult, format_command

DEFAULT_BINARIES = ("docker", "systemctl", "openssl", "nginx", "certbot", "ufw")

# docker options that consume the following argument
_RUN_VALUE_OPTIONS = {"--name", "--network", "-p", "-v", "-e", "--label", "-w"}


def write_certificate(cert_path: Path, key_path: Path, *, days: int = 90, common_name: str = "localhost") -> None:
    """Write a real self-signed PEM certificate valid for ``days`` days."""

    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.now(timezone.utc)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=days))
        .sign(key, hashes.SHA256())
    )
    cert_path.parent.mkdir(parents=True, exist_ok=True)
    key_path.parent.mkdir(parents=True, exist_ok=True)
    cert_path.write_bytes(certificate.public_bytes(serialization.Encoding.PEM))
    key_path.write_bytes(
        key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.TraditionalOpenSSL,
            serialization.NoEncryption(),
        )
    )


def _label_from_format(fmt: str) -> Optional[str]:
    # '{{ index .Config.Labels "name" }}'
    if '"' not in fmt:
        return None
    return fmt.split('"')[1]


class FakeRunner:
    """Command runner that keeps enough state to behave like a real host."""

    def __init__(
        self,
        *,
        binaries: Iterable[str] = DEFAULT_BINARIES,
        packages: Iterable[str] = (),
    ) -> None:
        self.dry_run = False
        self.calls: List[List[str]] = []
        self.binaries = set(binaries)
        self.packages = set(packages)
        self.networks: set = set()
        self.images: Dict[str, Dict[str, str]] = {}
        self.containers: Dict[str, Dict[str, object]] = {}
        self.filebrowser_users: List[str] = []
        self.ufw_rules: set = set()
        self.ufw_active = False
        self.database_ready = True
        self.certificate_days = 90
        self.dump_output = "-- database dump\n"
        self.route_output: Optional[str] = None
        self.compose_up = False
        self._failures: List[Tuple[Tuple[str, ...], CommandResult]] = []

    # ------------------------------------------------------------------
    # Runner interface
    # ------------------------------------------------------------------
    def which(self, name: str) -> Optional[str]:
        return f"/usr/bin/{name}" if name in self.binaries else None

    def run(
        self,
        args: Sequence[str],
        *,
        timeout: Optional[int] = 600,
        check: bool = True,
        input: Optional[str] = None,
        env=None,
    ) -> CommandResult:
        command = [str(part) for part in args]
        self.calls.append(command)
        result = self._failure_for(command) or self._dispatch(command)
        if check and result.exit_status != 0:
            raise CommandError(f"Command failed: {format_command(command)}", result)
        return result

    # ------------------------------------------------------------------
    # Helpers for tests
    # ------------------------------------------------------------------
    def fail(self, *prefix: str, exit_status: int = 1, stderr: str = "boom") -> None:
        """Make every command starting with ``prefix`` exit with ``exit_status``."""

        result = CommandResult(command=list(prefix), exit_status=exit_status, stdout="", stderr=stderr)
        self._failures.append((tuple(prefix), result))

    def matching(self, *prefix: str) -> List[List[str]]:
        return [call for call in self.calls if call[: len(prefix)] == list(prefix)]

    def _failure_for(self, command: List[str]) -> Optional[CommandResult]:
        for prefix, result in self._failures:
            if tuple(command[: len(prefix)]) == prefix:
                return result
        return None

    @staticmethod
    def _ok(command: List[str], stdout: str = "") -> CommandResult:
        return CommandResult(command=command, exit_status=0, stdout=stdout, stderr="")

    @staticmethod
    def _missing(command: List[str], status: int = 1) -> CommandResult:
        return CommandResult(command=command, exit_status=status, stdout="", stderr="not found")

    # ------------------------------------------------------------------
    # Simulated programs
    # ------------------------------------------------------------------
    def _dispatch(self, command: List[str]) -> CommandResult:
        program = command[0]
        if program == "docker":
            return self._docker(command)
        if program == "dpkg-query":
            if command[-1] in self.packages:
                return self._ok(command, "install ok installed")
            return self._missing(command)
        if program == "rpm":
            return self._ok(command) if command[-1] in self.packages else self._missing(command)
        if program in ("apt-get", "yum", "dnf") and command[1] == "install":
            names = [part for part in command[2:] if not part.startswith("-")]
            self.packages.update(names)
            self.binaries.update(names)
            return self._ok(command)
        if program == "openssl":
            cert = Path(command[command.index("-out") + 1])
            key = Path(command[command.index("-keyout") + 1])
            write_certificate(cert, key, days=self.certificate_days)
            return self._ok(command)
        if program == "ufw":
            return self._ufw(command)
        if program == "ip":
            if self.route_output is None:
                return self._missing(command, 2)
            return self._ok(command, self.route_output)
        return self._ok(command)

    def _ufw(self, command: List[str]) -> CommandResult:
        action = command[1]
        if action == "status":
            lines = ["Status: active" if self.ufw_active else "Status: inactive", ""]
            lines += [f"{rule:<26}ALLOW       Anywhere" for rule in sorted(self.ufw_rules)]
            return self._ok(command, "\n".join(lines) + "\n")
        if action == "allow":
            self.ufw_rules.add(command[2])
        elif action == "delete":
            self.ufw_rules.discard(command[-1])
        elif action == "--force":
            self.ufw_active = True
        return self._ok(command)

    def _docker(self, command: List[str]) -> CommandResult:
        rest = command[1:]
        verb = rest[0]

        if verb == "network":
            name = rest[2]
            if rest[1] == "inspect":
                return self._ok(command) if name in self.networks else self._missing(command)
            if rest[1] == "create":
                self.networks.add(name)
            elif rest[1] == "rm":
                self.networks.discard(name)
            return self._ok(command)

        if verb == "image" and rest[1] == "inspect":
            image = rest[-1]
            if image not in self.images:
                return self._missing(command)
            if "-f" in rest:
                label = _label_from_format(rest[rest.index("-f") + 1])
                return self._ok(command, self.images[image].get(label or "", "<no value>") + "\n")
            return self._ok(command, "[]")

        if verb == "pull":
            self.images.setdefault(rest[1], {})
            return self._ok(command)

        if verb == "build":
            tag = rest[rest.index("-t") + 1]
            labels = {}
            for index, part in enumerate(rest):
                if part == "--label":
                    key, _, value = rest[index + 1].partition("=")
                    labels[key] = value
            self.images[tag] = labels
            return self._ok(command)

        if verb == "inspect":
            name = rest[-1]
            container = self.containers.get(name)
            if container is None:
                return self._missing(command)
            fmt = rest[rest.index("-f") + 1]
            if ".State.Status" in fmt:
                return self._ok(command, f"{container['state']}\n")
            labels = container["labels"]
            return self._ok(command, labels.get(_label_from_format(fmt) or "", "<no value>") + "\n")  # type: ignore[union-attr]

        if verb == "run":
            return self._docker_run(command, rest[1:])

        if verb == "rm":
            self.containers.pop(rest[-1], None)
            return self._ok(command)

        if verb in ("start", "stop"):
            container = self.containers.get(rest[1])
            if container is None:
                return self._missing(command)
            container["state"] = "running" if verb == "start" else "exited"
            return self._ok(command)

        if verb == "exec":
            return self._docker_exec(command, rest[1:])

        if verb == "compose":
            if "ps" in rest:
                if not self.compose_up:
                    return self._ok(command)
                return self._ok(command, "grafana running\nprometheus running\nalertmanager running\n")
            if "up" in rest:
                self.compose_up = True
            elif rest[-1] in ("down", "stop"):
                self.compose_up = False
            return self._ok(command)

        return self._ok(command)

    def _docker_run(self, command: List[str], args: List[str]) -> CommandResult:
        if "--rm" in args:
            return self._ok(command)
        name = ""
        labels: Dict[str, str] = {}
        index = 0
        while index < len(args):
            part = args[index]
            if part in _RUN_VALUE_OPTIONS:
                value = args[index + 1]
                if part == "--name":
                    name = value
                elif part == "--label":
                    key, _, label_value = value.partition("=")
                    labels[key] = label_value
                index += 2
                continue
            if part.startswith("-"):
                index += 1
                continue
            break
        image = args[index] if index < len(args) else ""
        self.containers[name] = {"state": "running", "labels": labels, "image": image, "args": list(args)}
        return self._ok(command)

    def _docker_exec(self, command: List[str], args: List[str]) -> CommandResult:
        if any(part in args for part in ("mysqladmin", "pg_isready")) and not self.database_ready:
            return self._missing(command)
        if "mysqldump" in args or "pg_dumpall" in args:
            return self._ok(command, self.dump_output)
        if ADD_USER_SCRIPT in args:
            self.filebrowser_users.append(args[args.index(ADD_USER_SCRIPT) + 1])
            return self._ok(command)
        if "filebrowser" in args:
            position = args.index("filebrowser")
            sub = args[position + 1 : position + 3]
            if sub == ["users", "ls"]:
                rows = ["ID  Username  Scope  Locale  V. Mode  Admin"]
                rows += [f"{number}   {user}   /srv   en   list   true" for number, user in enumerate(self.filebrowser_users, 1)]
                return self._ok(command, "\n".join(rows) + "\n")
            if sub == ["users", "add"]:
                self.filebrowser_users.append(args[position + 3])
            elif sub == ["users", "rm"]:
                self.filebrowser_users.remove(args[position + 3])
        return self._ok(command)


SECRETS = {key: f"{key.replace('_', '-')}-value" for key in SECRET_KEYS}


@pytest.fixture()
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture()
def settings(tmp_path: Path) -> PanelSettings:
    return PanelSettings(
        install_root=tmp_path / "opt" / "server-panel",
        data_root=tmp_path / "var" / "server-panel",
        log_dir=tmp_path / "log",
        systemd_dir=tmp_path / "systemd",
        cron_dir=tmp_path / "cron.d",
        nginx_dir=tmp_path / "nginx",
        apache_dir=tmp_path / "apache2",
        letsencrypt_dir=tmp_path / "letsencrypt",
        webroot=tmp_path / "www",
        docker_config_dir=tmp_path / "docker",
    )


@pytest.fixture()
def environment() -> Environment:
    return Environment(
        os_id="ubuntu",
        os_family="debian",
        os_version="22.04",
        package_manager="apt-get",
        public_address="203.0.113.10",
        address_kind="ipv4",
        hostname="panel-host",
        domain="panel.example.com",
        email="admin@example.com",
    )


@pytest.fixture()
def database(settings: PanelSettings) -> Database:
    db = Database(settings.resolved_database_path)
    db.initialize()
    return db


@pytest.fixture()
def make_context(settings, runner, database, environment):
    """Build a :class:`ProvisionContext` for the given enabled components."""

    def _make(components: Iterable[str] = ("nginx", "mysql", "wordpress", "ssl"), **changes) -> ProvisionContext:
        ctx = ProvisionContext(
            settings=settings,
            runner=runner,
            database=database,
            journal=ProvisioningJournal(directory=settings.journal_dir),
            environment=environment,
            plan=build_plan(components),
            secrets=dict(SECRETS),
        )
        return ctx.evolve(**changes) if changes else ctx

    return _make


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    monkeypatch.setattr("panel.docker.time.sleep", lambda seconds: None)
    monkeypatch.setattr("panel.components.databases.time.sleep", lambda seconds: None)
