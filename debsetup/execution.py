"""Command execution utilities."""

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass, replace
from typing import Sequence

from .errors import CommandTimeoutError, ExecutionError, NonZeroExit

DEFAULT_TIMEOUT = 30
PROBE_TIMEOUT = 15
INSTALL_TIMEOUT = 1800
UPGRADE_TIMEOUT = 3600

# Fixed locale so probe output is parseable; apt must never prompt.
COMMAND_ENV = {
    "LC_ALL": "C",
    "DEBIAN_FRONTEND": "noninteractive",
}

_logging = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunOptions:
    dry_run: bool = False
    timeout: float = DEFAULT_TIMEOUT


@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    stdout: str
    stderr: str
    dry_run: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        """Combined output, stripped, for step detail."""
        parts = [self.stdout.strip(), self.stderr.strip()]
        return "\n".join(p for p in parts if p)


def format_command(command: Sequence[str]) -> str:
    return shlex.join(command)


class CommandRunner:
    """Runs external commands without a shell.

    ``options`` are the defaults for every call; per-call options override
    them. Standard input passed via ``input`` is never logged.
    """

    def __init__(self, options: RunOptions | None = None):
        self.options = options or RunOptions()

    @property
    def dry_run(self) -> bool:
        return self.options.dry_run

    def with_options(self, **changes) -> RunOptions:
        """Return the default options with some fields replaced."""
        return replace(self.options, **changes)

    def run(
        self,
        command: Sequence[str],
        options: RunOptions | None = None,
        input: str | None = None,
    ) -> CommandResult:
        options = options or self.options
        display = format_command(command)

        if options.dry_run:
            _logging.info(f"[DRY-RUN] Would execute: {display}")
            return CommandResult(exit_code=0, stdout="", stderr="", dry_run=True)

        _logging.debug(f"Running command: {display}")
        try:
            completed = subprocess.run(
                list(command),
                input=input,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=options.timeout,
                env={**os.environ, **COMMAND_ENV},
            )
        except FileNotFoundError as e:
            raise ExecutionError(f"Command not found: {command[0]}") from e
        except PermissionError as e:
            raise ExecutionError(f"Permission denied running: {command[0]}") from e
        except subprocess.TimeoutExpired as e:
            _logging.error(f"Command timed out after {options.timeout} seconds: {display}")
            raise CommandTimeoutError(display, options.timeout) from e
        except OSError as e:
            raise ExecutionError(f"Cannot run '{display}': {e}") from e

        result = CommandResult(
            exit_code=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )
        if result.stderr:
            _logging.debug(f"stderr: {result.stderr.strip()}")
        if not result.ok:
            raise NonZeroExit(display, result)
        return result


__all__ = [
    "DEFAULT_TIMEOUT",
    "PROBE_TIMEOUT",
    "INSTALL_TIMEOUT",
    "UPGRADE_TIMEOUT",
    "RunOptions",
    "CommandResult",
    "CommandRunner",
    "format_command",
]
