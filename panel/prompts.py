"""Interactive questions asked when components are not selected up front."""

from __future__ import annotations

import contextlib
import os
import sys
from typing import Iterator, Optional, Sequence, TextIO, Tuple


class UserInputError(RuntimeError):
    """Raised when the installer cannot obtain interactive user input."""


@contextlib.contextmanager
def _temporary_stdio(stdin: TextIO | None, stdout: TextIO | None):
    """Temporarily replace ``sys.stdin`` and ``sys.stdout``."""

    original_stdin, original_stdout = sys.stdin, sys.stdout
    try:
        if stdin is not None:
            sys.stdin = stdin
        if stdout is not None:
            sys.stdout = stdout
        yield
    finally:
        sys.stdin = original_stdin
        sys.stdout = original_stdout


def _prompt_input(prompt: str, *, stdin: TextIO | None = None, stdout: TextIO | None = None) -> str:
    if stdin is None and stdout is None:
        return input(prompt)

    with _temporary_stdio(stdin, stdout):
        return input(prompt)


def print_prompt_message(message: str, stdout: TextIO | None) -> None:
    if stdout is None or stdout is sys.stdout:
        print(message, flush=True)
        return
    print(message, file=stdout, flush=True)


@contextlib.contextmanager
def interactive_prompt_io() -> Iterator[Tuple[Optional[TextIO], Optional[TextIO]]]:
    """Yield streams for prompting, falling back to the controlling terminal.

    When standard input/output are already interactive ``None`` is yielded for
    both so the default ``input``/``print`` behaviour is kept. Otherwise
    ``/dev/tty`` is opened, which lets ``curl ... | sudo python3 main.py`` still
    ask questions.
    """

    if sys.stdin.isatty() and sys.stdout.isatty():
        yield None, None
        return

    try:
        # /dev/tty is not seekable, so it cannot be opened in "r+" mode.
        tty_in = open("/dev/tty", "r", encoding="utf-8", buffering=1)
        tty_out = open("/dev/tty", "w", encoding="utf-8", buffering=1)
    except OSError as exc:
        if getattr(sys.stdin, "closed", False) or getattr(sys.stdout, "closed", False):
            raise UserInputError(
                "Unable to ask which components to install because no terminal is available. "
                "Set PANEL_AUTO_INSTALL=true or pass --components."
            ) from exc
        yield sys.stdin, sys.stdout
        return

    try:
        yield tty_in, tty_out
    finally:
        tty_in.close()
        tty_out.close()


def prompt_yes_no(
    question: str,
    *,
    default: bool = True,
    stdin: TextIO | None = None,
    stdout: TextIO | None = None,
) -> bool:
    suffix = "[Y/n]" if default else "[y/N]"
    while True:
        try:
            answer = _prompt_input(f"{question} {suffix}: ", stdin=stdin, stdout=stdout)
        except EOFError as exc:
            raise UserInputError("Input stream closed while waiting for a response.") from exc
        answer = answer.strip().lower()
        if not answer:
            return default
        if answer in ("y", "yes"):
            return True
        if answer in ("n", "no"):
            return False
        print_prompt_message("Please answer 'y' or 'n'.", stdout)


def prompt_choice(
    question: str,
    choices: Sequence[str],
    *,
    default: Optional[str] = None,
    stdin: TextIO | None = None,
    stdout: TextIO | None = None,
) -> str:
    options = "/".join(choice.upper() if choice == default else choice for choice in choices)
    while True:
        try:
            answer = _prompt_input(f"{question} ({options}): ", stdin=stdin, stdout=stdout)
        except EOFError as exc:
            raise UserInputError("Input stream closed while waiting for a response.") from exc
        answer = answer.strip().lower()
        if not answer and default is not None:
            return default
        if answer in choices:
            return answer
        print_prompt_message(f"Please choose one of: {', '.join(choices)}.", stdout)


__all__ = [
    "UserInputError",
    "interactive_prompt_io",
    "print_prompt_message",
    "prompt_choice",
    "prompt_yes_no",
]
