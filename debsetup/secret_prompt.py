"""Interactive collection of account passwords.

The plaintext never reaches a log, a report or an exception message. It is
wrapped in a ``SecretValue`` that can be revealed exactly once, by the step
that consumes it.
"""

import logging
import sys
from typing import Callable

import click

from .errors import SecretCancelledError, SecretConsumedError

_logging = logging.getLogger(__name__)

DEFAULT_MIN_LENGTH = 12

SecretReader = Callable[[str], str]


class SecretValue:
    """Opaque one-shot holder for a secret."""

    __slots__ = ("_value", "_consumed")

    def __init__(self, value: str):
        self._value: str | None = value
        self._consumed = False

    @property
    def consumed(self) -> bool:
        return self._consumed

    def reveal(self) -> str:
        if self._consumed or self._value is None:
            raise SecretConsumedError("Secret has already been used")
        value = self._value
        self._value = None
        self._consumed = True
        return value

    def __repr__(self) -> str:
        state = "consumed" if self._consumed else "****"
        return f"SecretValue({state})"

    __str__ = __repr__


def _tty_reader(message: str) -> str:
    from prompt_toolkit import prompt

    return prompt(message, is_password=True)


def _click_reader(message: str) -> str:
    return click.prompt(
        message.rstrip(": "), hide_input=True, default="", show_default=False
    )


def default_reader() -> SecretReader:
    """prompt_toolkit on a TTY, click as fallback for headless runs."""
    if sys.stdin.isatty() and sys.stdout.isatty():
        return _tty_reader
    return _click_reader


class SecretPrompt:
    """Collects a secret with confirmation and a minimum length.

    Retries until both entries match and the length requirement holds.
    """

    def __init__(
        self,
        reader: SecretReader | None = None,
        notify: Callable[[str], None] | None = None,
        label: str = "Password",
    ):
        self.reader = reader or default_reader()
        self.notify = notify or (lambda msg: click.secho(msg, fg="yellow", err=True))
        self.label = label

    def collect(self, min_length: int = DEFAULT_MIN_LENGTH) -> SecretValue:
        if min_length < 1:
            raise ValueError("min_length must be at least 1")

        while True:
            try:
                first = self.reader(f"{self.label}: ")
                second = self.reader(f"Confirm {self.label.lower()}: ")
            except (KeyboardInterrupt, EOFError, click.Abort) as e:
                raise SecretCancelledError(f"{self.label} entry cancelled") from e

            if first != second:
                self.notify("Entries do not match, try again.")
                _logging.debug("Secret confirmation mismatch")
                continue
            if len(first) < min_length:
                self.notify(f"Must be at least {min_length} characters, try again.")
                _logging.debug("Secret below minimum length")
                continue

            return SecretValue(first)


__all__ = [
    "DEFAULT_MIN_LENGTH",
    "SecretValue",
    "SecretPrompt",
    "default_reader",
]
