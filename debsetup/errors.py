"""Error types and error formatting utilities.

Every failure the provisioning engine knows about derives from
``ProvisionError``. Probe and apply errors are captured per step by the
orchestrator; ``InvalidPlanError`` and ``ConfigError`` are raised before any
host mutation and are mapped to exit code 2 by the CLI.

Error Style Guide:
- User-facing errors use 'Error: ' prefix
- Use present tense: 'must be', 'is required'
- Include actionable hints where helpful
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .execution import CommandResult


class ProvisionError(Exception):
    """Base class for all provisioning failures."""


class ProbeError(ProvisionError):
    """Host state could not be determined.

    Means "unknown", never "false".
    """


class PrivilegeError(ProbeError):
    """The inspection command refused to answer without root."""


class ExecutionError(ProvisionError):
    """External binary is missing or could not be started."""


class NonZeroExit(ProvisionError):
    """Command ran and signaled failure."""

    def __init__(self, command: str, result: "CommandResult"):
        self.command = command
        self.result = result
        detail = (result.stderr or result.stdout).strip()
        message = f"'{command}' exited with status {result.exit_code}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)

    @property
    def exit_code(self) -> int:
        return self.result.exit_code


class CommandTimeoutError(ProvisionError, TimeoutError):
    """Command exceeded its allotted time."""

    def __init__(self, command: str, timeout: float):
        self.command = command
        self.timeout = timeout
        super().__init__(f"'{command}' timed out after {timeout:g} seconds")


class InvalidPlanError(ProvisionError):
    """The step registry violates its construction invariants."""


class SecretConsumedError(ProvisionError):
    """A one-shot secret was read a second time."""


class SecretCancelledError(ProvisionError):
    """The operator cancelled a secret prompt."""


def format_error(message: str) -> str:
    """Format an error message with consistent prefix.

    Examples:
        >>> format_error("config file not found")
        'Error: config file not found'
    """
    return f"Error: {message}"


def format_suggestion(message: str, suggestion: str) -> str:
    """Format an error message with a helpful suggestion.

    Examples:
        >>> format_suggestion("must be run as root", "use sudo or --dry-run")
        'Error: must be run as root. Hint: use sudo or --dry-run'
    """
    return f"{format_error(message)}. Hint: {suggestion}"


__all__ = [
    "ProvisionError",
    "ProbeError",
    "PrivilegeError",
    "ExecutionError",
    "NonZeroExit",
    "CommandTimeoutError",
    "InvalidPlanError",
    "SecretConsumedError",
    "SecretCancelledError",
    "format_error",
    "format_suggestion",
]
