"""Shared utility functions for commands."""

import logging
import os
import signal
import sys
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

import click

from debsetup.config import (
    ConfigError,
    ProvisionConfig,
    apply_overrides,
    load_config,
    validate_config,
)
from debsetup.errors import SecretCancelledError
from debsetup.execution import CommandRunner, RunOptions
from debsetup.paths import get_config_path
from debsetup.provisioner import FailurePolicy
from debsetup.secret_prompt import SecretPrompt, SecretValue

_logging = logging.getLogger(__name__)

# Exit codes
EXIT_SUCCESS = 0
EXIT_FAILED = 1
EXIT_CONFIG_ERROR = 2

STOP_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def config_options(func):
    """Options shared by every command that builds the plan."""
    options = [
        click.option(
            "--config",
            "config_path",
            type=click.Path(dir_okay=False, path_type=Path),
            default=None,
            help="YAML config file (default: $DEBSETUP_CONFIG or ~/.config/debsetup/config.yaml)",
        ),
        click.option("--timezone", default=None, help="Target timezone (default: UTC)"),
        click.option(
            "--ssh-port",
            type=click.IntRange(1, 65535),
            default=None,
            help="SSH port, shared by the SSH policy and firewall (default: 22)",
        ),
        click.option(
            "--admin-user",
            default=None,
            help="Administrative account to create or verify",
        ),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def resolve_config(
    config_path: Path | None,
    timezone: str | None = None,
    ssh_port: int | None = None,
    admin_user: str | None = None,
    failure_policy: FailurePolicy | None = None,
) -> ProvisionConfig:
    """Build the run config: defaults, then the config file, then CLI flags.

    An explicit --config must exist; the default location is optional.

    Raises:
        ConfigError: If the file is unreadable or any value is invalid
    """
    if config_path is None:
        default_path = get_config_path()
        data = load_config(default_path) if default_path.exists() else {}
        source = default_path if default_path.exists() else "built-in defaults"
    else:
        data = load_config(config_path)
        source = config_path
    _logging.debug(f"Loaded config from {source}")

    config = validate_config(data)
    return apply_overrides(
        config,
        timezone=timezone,
        ssh_port=ssh_port,
        admin_user=admin_user,
        failure_policy=failure_policy,
    )


def make_runner(dry_run: bool = False) -> CommandRunner:
    return CommandRunner(RunOptions(dry_run=dry_run))


def is_root() -> bool:
    return os.geteuid() == 0


def secret_source(config: ProvisionConfig, stop_event: threading.Event | None = None):
    """Password source for the admin-user step; prompts only when called.

    Cancelling the prompt fails the step and requests a stop, so the rest of
    the run is reported as aborted.
    """

    def collect() -> SecretValue:
        click.echo(f"Set a password for '{config.admin_user}'.")
        try:
            return SecretPrompt().collect(config.password_min_length)
        except SecretCancelledError:
            if stop_event is not None:
                stop_event.set()
            raise

    return collect


@contextmanager
def stop_on_signals(stop_event: threading.Event) -> Iterator[threading.Event]:
    """Turn SIGINT/SIGTERM into a stop request for the duration of the block.

    The running step finishes; the remaining ones are reported as aborted.
    Previous handlers are restored on exit.
    """

    def handler(signum, frame):
        _logging.warning(f"Received {signal.Signals(signum).name}, stopping after the current step")
        stop_event.set()

    previous = {}
    for sig in STOP_SIGNALS:
        try:
            previous[sig] = signal.signal(sig, handler)
        except (AttributeError, ValueError):
            # Not in the main thread
            pass
    try:
        yield stop_event
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


def fail(message: str, code: int = EXIT_CONFIG_ERROR):
    """Print a user-facing error and exit."""
    click.echo(message, err=True)
    sys.exit(code)


__all__ = [
    "EXIT_SUCCESS",
    "EXIT_FAILED",
    "EXIT_CONFIG_ERROR",
    "ConfigError",
    "config_options",
    "resolve_config",
    "make_runner",
    "is_root",
    "secret_source",
    "stop_on_signals",
    "fail",
]
