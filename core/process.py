"""Structured external command execution.

Commands are argument vectors, never shell strings. Arguments that carry
secrets are flagged so that :meth:`Command.display` can redact them before
anything reaches a log line.
"""
from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple

from .logging_utils import redact_secret

__all__ = ["Command", "CommandResult", "CommandRunner"]

LOGGER = logging.getLogger("mariadb_backup.process")

_SECRET_OPTIONS = ("--password=", "--encrypt-key=")


@dataclass(frozen=True, slots=True)
class Command:
    """One external program invocation."""

    program: str
    args: Tuple[str, ...] = ()
    prefix: Tuple[str, ...] = ()
    label: str = ""

    @property
    def argv(self) -> list[str]:
        return [*self.prefix, self.program, *self.args]

    def display(self) -> str:
        parts = []
        for arg in self.argv:
            for option in _SECRET_OPTIONS:
                if arg.startswith(option):
                    arg = option + redact_secret(arg[len(option):])
                    break
            parts.append(arg)
        return " ".join(parts)


@dataclass(slots=True)
class CommandResult:
    command: Command
    returncode: int
    stdout: str = ""
    stderr: str = ""
    stdout_path: Optional[Path] = None

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def stderr_tail(self, lines: int = 10) -> str:
        return "\n".join(self.stderr.strip().splitlines()[-lines:])


@dataclass(slots=True)
class CommandRunner:
    """Run :class:`Command` objects with :func:`subprocess.run`.

    Output is captured as text. When *stdout_path* is given, standard output
    is appended to that file instead of being captured, which keeps large
    streams (binlog decoding, for example) out of memory.
    """

    timeout: Optional[float] = None
    env: Optional[dict] = field(default=None)

    def run(
        self,
        command: Command,
        *,
        stdin_path: Optional[Path] = None,
        stdout_path: Optional[Path] = None,
        input_text: Optional[str] = None,
    ) -> CommandResult:
        LOGGER.debug("exec %s", command.display())
        stdin_handle = None
        stdout_handle = None
        try:
            if stdin_path is not None:
                stdin_handle = open(stdin_path, "rb")
            if stdout_path is not None:
                stdout_handle = open(stdout_path, "ab")
            try:
                completed = subprocess.run(
                    command.argv,
                    stdin=stdin_handle,
                    input=input_text.encode("utf-8") if input_text is not None else None,
                    stdout=stdout_handle if stdout_handle is not None else subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    timeout=self.timeout,
                    env=self.env,
                    check=False,
                )
            except FileNotFoundError as exc:
                return CommandResult(command=command, returncode=127, stderr=str(exc))
            except OSError as exc:
                return CommandResult(command=command, returncode=126, stderr=str(exc))
            except subprocess.TimeoutExpired as exc:
                return CommandResult(command=command, returncode=124, stderr=f"timed out after {exc.timeout}s")
        finally:
            if stdin_handle is not None:
                stdin_handle.close()
            if stdout_handle is not None:
                stdout_handle.close()
        stdout = completed.stdout.decode("utf-8", "replace") if completed.stdout else ""
        stderr = completed.stderr.decode("utf-8", "replace") if completed.stderr else ""
        return CommandResult(
            command=command,
            returncode=completed.returncode,
            stdout=stdout,
            stderr=stderr,
            stdout_path=stdout_path,
        )
