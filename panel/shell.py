"""Local command execution used by every provisioning step."""
from __future__ import annotations

import logging
import re
import shlex
import shutil
import subprocess
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

logger = logging.getLogger("serverpanel.shell")

REDACTED = "********"
_SENSITIVE_ASSIGNMENT = re.compile(r"^(?P<key>[^=\s]*(?:PASSWORD|PASSWD|PWD|SECRET|TOKEN)[^=\s]*)=", re.IGNORECASE)


@dataclass
class CommandResult:
    """Result of an executed command."""

    command: Sequence[str]
    exit_status: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


class CommandError(RuntimeError):
    """Raised when a command exits with a non-zero status."""

    def __init__(self, message: str, result: CommandResult | None = None) -> None:
        super().__init__(message)
        self.result = result

    @property
    def exit_status(self) -> int:
        if self.result is None or self.result.exit_status == 0:
            return 1
        return self.result.exit_status


def redact(part: str) -> str:
    """Mask the value of a ``KEY=value`` argument whose key names a credential."""

    match = _SENSITIVE_ASSIGNMENT.match(part)
    if match is None:
        return part
    return f"{match.group('key')}={REDACTED}"


def format_command(args: Sequence[str]) -> str:
    """Render ``args`` for logs and error messages, with credentials masked."""

    return " ".join(shlex.quote(redact(str(part))) for part in args)


class CommandRunner:
    """Executes commands on the local host."""

    def __init__(self, *, dry_run: bool = False) -> None:
        self.dry_run = dry_run

    def which(self, name: str) -> Optional[str]:
        return shutil.which(name)

    def run(
        self,
        args: Sequence[str],
        *,
        timeout: Optional[int] = 600,
        check: bool = True,
        input: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> CommandResult:
        printable = format_command(args)
        logger.info("-> %s", printable)
        if self.dry_run:
            return CommandResult(command=list(args), exit_status=0, stdout="", stderr="")

        try:
            completed = subprocess.run(
                [str(part) for part in args],
                input=input,
                capture_output=True,
                text=True,
                timeout=timeout,
                env=dict(env) if env is not None else None,
                check=False,
            )
        except FileNotFoundError as exc:
            result = CommandResult(command=list(args), exit_status=127, stdout="", stderr=str(exc))
            if check:
                raise CommandError(f"Command not found: {args[0]}", result) from exc
            return result
        except subprocess.TimeoutExpired as exc:
            result = CommandResult(command=list(args), exit_status=124, stdout="", stderr=str(exc))
            if check:
                raise CommandError(f"Command timed out after {timeout} seconds: {printable}", result) from exc
            return result

        result = CommandResult(
            command=list(args),
            exit_status=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )
        if check and completed.returncode != 0:
            detail = result.stderr.strip() or result.stdout.strip()
            message = f"Command failed with exit code {completed.returncode}: {printable}"
            if detail:
                message = f"{message}\n{detail}"
            raise CommandError(message, result)
        return result


__all__ = ["CommandError", "CommandResult", "CommandRunner", "REDACTED", "format_command", "redact"]
