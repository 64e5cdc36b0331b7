"""Run validation commands (test suites, linters) against a workspace."""

from __future__ import annotations

import logging
import shlex
import shutil
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Literal

__all__ = ["CommandResult", "CommandValidator"]

LOGGER = logging.getLogger(__name__)

CommandStatus = Literal["passed", "failed", "missing", "timeout"]


@dataclass(slots=True)
class CommandResult:
    """Outcome of a single validation command."""

    command: str
    status: CommandStatus
    exit_code: int | None
    stdout: str
    stderr: str

    @property
    def passed(self) -> bool:
        return self.status == "passed"

    def short_message(self) -> str:
        if self.passed:
            return f"{self.command}: passed"
        detail = self.stderr.strip() or self.stdout.strip()
        snippet = detail.splitlines()[0] if detail else f"status={self.status}"
        return f"{self.command}: {self.status} ({snippet})"


class CommandValidator:
    """Execute shell-free commands and report pass/fail per command.

    Commands are split with :func:`shlex.split` and executed without a shell.
    A missing executable, a non-zero exit or a timeout all count as failure.
    """

    def __init__(self, *, timeout: float | None = 600) -> None:
        self.timeout = timeout

    def run(self, commands: Sequence[str], cwd: Path | str) -> Dict[str, bool]:
        return {result.command: result.passed for result in self.run_detailed(commands, cwd)}

    def run_detailed(self, commands: Sequence[str], cwd: Path | str) -> List[CommandResult]:
        workdir = Path(cwd)
        return [self._run_one(command, workdir) for command in commands]

    def _run_one(self, command: str, cwd: Path) -> CommandResult:
        try:
            argv = shlex.split(command)
        except ValueError as error:
            return CommandResult(command, "failed", None, "", f"Unable to parse command: {error}")
        if not argv:
            return CommandResult(command, "failed", None, "", "Empty command")

        executable = argv[0]
        if shutil.which(executable) is None and not (cwd / executable).is_file():
            LOGGER.info("Validation command skipped; executable not available: %s", executable)
            return CommandResult(command, "missing", None, "", f"Executable not available: {executable}")

        try:
            process = subprocess.run(  # noqa: S603  # commands come from workspace configuration
                argv,
                cwd=cwd,
                check=False,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as error:
            return CommandResult(command, "timeout", None, _as_text(error.stdout), _as_text(error.stderr))
        except OSError as error:
            return CommandResult(command, "missing", None, "", str(error))

        status: CommandStatus = "passed" if process.returncode == 0 else "failed"
        result = CommandResult(command, status, process.returncode, process.stdout, process.stderr)
        LOGGER.debug("Validation command finished: %s", result.short_message())
        return result


def _as_text(payload: str | bytes | None) -> str:
    if payload is None:
        return ""
    if isinstance(payload, bytes):
        return payload.decode("utf-8", errors="replace")
    return payload
