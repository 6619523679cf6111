"""Idempotent provisioning of fresh Debian servers."""

import logging

from .config import ConfigError, ProvisionConfig, load_config, validate_config
from .errors import ProvisionError, format_error, format_suggestion
from .execution import CommandRunner, RunOptions

__version__ = "0.1.0"

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(debug: bool = False) -> None:
    """Configure root logging: DEBUG with --debug, WARNING otherwise."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
    )


__all__ = [
    "__version__",
    "setup_logging",
    "ConfigError",
    "ProvisionConfig",
    "load_config",
    "validate_config",
    "ProvisionError",
    "format_error",
    "format_suggestion",
    "CommandRunner",
    "RunOptions",
]
