"""Configuration path helpers for debsetup."""

import os
from pathlib import Path

CONFIG_ENV_VAR = "DEBSETUP_CONFIG"


def get_config_dir() -> Path:
    """Return XDG-compliant config directory: ~/.config/debsetup"""
    base = os.environ.get("XDG_CONFIG_HOME")
    if base:
        return Path(base) / "debsetup"
    return Path.home() / ".config" / "debsetup"


def get_config_path() -> Path:
    """Return path to the user config file.

    Priority:
    1. DEBSETUP_CONFIG environment variable (if set)
    2. ~/.config/debsetup/config.yaml (default XDG location)

    The file is optional; callers check for existence.
    """
    if CONFIG_ENV_VAR in os.environ:
        return Path(os.environ[CONFIG_ENV_VAR])
    return get_config_dir() / "config.yaml"
