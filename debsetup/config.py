"""Configuration loading and validation."""

import re
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

import yaml

from .execution import INSTALL_TIMEOUT
from .provisioner.models import FailurePolicy


class ConfigError(Exception):
    """Raised when config loading or validation fails.

    Syntax errors carry line and column information and a caret indicator.
    """
    pass


DEFAULT_PACKAGES = (
    "sudo",
    "curl",
    "wget",
    "git",
    "vim",
    "nano",
    "htop",
    "ufw",
    "fail2ban",
    "tzdata",
    "ca-certificates",
    "lsb-release",
    "unattended-upgrades",
)
DEFAULT_WEB_PORTS = (80, 443)

ROOT_LOGIN_VALUES = ("yes", "no", "prohibit-password")

_TIMEZONE_RE = re.compile(r"^[A-Za-z0-9_+\-]+(/[A-Za-z0-9_+\-]+)*$")
_USERNAME_RE = re.compile(r"^[a-z_][a-z0-9_-]{0,31}$")
_PACKAGE_RE = re.compile(r"^[a-z0-9][a-z0-9+.\-]+$")
# fail2ban time abbreviations: 600, 10m, 1h, 1d, 1w
_DURATION_RE = re.compile(r"^\d+[smhdw]?$")


def _check_port(value: Any, name: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{name} must be an integer")
    if not 1 <= value <= 65535:
        raise ValueError(f"{name} must be between 1 and 65535, got {value}")


@dataclass(frozen=True)
class Fail2banSettings:
    maxretry: int = 5
    bantime: str = "1h"
    findtime: str = "10m"

    def __post_init__(self):
        if isinstance(self.maxretry, bool) or not isinstance(self.maxretry, int):
            raise ValueError("fail2ban.maxretry must be an integer")
        if self.maxretry < 1:
            raise ValueError("fail2ban.maxretry must be at least 1")
        for name in ("bantime", "findtime"):
            value = getattr(self, name)
            if not isinstance(value, str) or not _DURATION_RE.match(value):
                raise ValueError(
                    f"fail2ban.{name} must be a duration like '600', '10m' or '1h'"
                )


@dataclass(frozen=True)
class ProvisionConfig:
    """Immutable settings for one provisioning run."""
    timezone: str = "UTC"
    ssh_port: int = 22
    admin_user: str | None = None
    packages: tuple[str, ...] = DEFAULT_PACKAGES
    web_ports: tuple[int, ...] = DEFAULT_WEB_PORTS
    password_authentication: bool = True
    permit_root_login: str | None = None
    password_min_length: int = 12
    fail2ban: Fail2banSettings = field(default_factory=Fail2banSettings)
    index_max_age: int = 3600
    apt_timeout: int = INSTALL_TIMEOUT
    failure_policy: FailurePolicy = FailurePolicy.FAIL_FAST

    def __post_init__(self):
        object.__setattr__(self, "packages", tuple(self.packages))
        object.__setattr__(self, "web_ports", tuple(self.web_ports))

        if not isinstance(self.timezone, str) or not _TIMEZONE_RE.match(self.timezone):
            raise ValueError(f"timezone is not a valid identifier: {self.timezone!r}")
        _check_port(self.ssh_port, "ssh_port")

        if self.admin_user is not None:
            if not isinstance(self.admin_user, str) or not _USERNAME_RE.match(
                self.admin_user
            ):
                raise ValueError(f"admin_user is not a valid user name: {self.admin_user!r}")
            if self.admin_user == "root":
                raise ValueError("admin_user must not be root")

        if not self.packages:
            raise ValueError("packages must not be empty")
        for pkg in self.packages:
            if not isinstance(pkg, str) or not _PACKAGE_RE.match(pkg):
                raise ValueError(f"packages contains an invalid package name: {pkg!r}")

        for port in self.web_ports:
            _check_port(port, "web_ports entry")
        if self.ssh_port in self.web_ports:
            raise ValueError("ssh_port must not also be listed in web_ports")

        if not isinstance(self.password_authentication, bool):
            raise ValueError("password_authentication must be a boolean")
        if (
            self.permit_root_login is not None
            and self.permit_root_login not in ROOT_LOGIN_VALUES
        ):
            raise ValueError(
                f"permit_root_login must be one of: {', '.join(ROOT_LOGIN_VALUES)}"
            )

        for name in ("password_min_length", "index_max_age", "apt_timeout"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise ValueError(f"{name} must be a positive integer")

    @property
    def root_login(self) -> str:
        """Effective PermitRootLogin; root keeps key access unless an admin exists."""
        if self.permit_root_login:
            return self.permit_root_login
        return "no" if self.admin_user else "prohibit-password"

    @property
    def firewall_ports(self) -> tuple[int, ...]:
        """SSH first, so it is never locked out while rules are added."""
        return (self.ssh_port, *self.web_ports)


_SCALAR_KEYS = {f.name for f in fields(ProvisionConfig)} - {"fail2ban", "failure_policy"}


def validate_config(data: dict) -> ProvisionConfig:
    """Validate and convert a raw dict to ProvisionConfig.

    Args:
        data: Raw dict, usually from load_config()

    Returns:
        ProvisionConfig with defaults for missing keys

    Raises:
        ConfigError: If validation fails
    """
    if not isinstance(data, dict):
        raise ConfigError(f"Config must be a mapping, got {type(data).__name__}")

    unknown = set(data) - _SCALAR_KEYS - {"fail2ban", "failure_policy"}
    if unknown:
        raise ConfigError(f"Unknown config key(s): {', '.join(sorted(unknown))}")

    kwargs: dict[str, Any] = {k: v for k, v in data.items() if k in _SCALAR_KEYS}

    # YAML 1.1 reads bare yes/no as booleans.
    if isinstance(kwargs.get("permit_root_login"), bool):
        kwargs["permit_root_login"] = "yes" if kwargs["permit_root_login"] else "no"

    for list_key in ("packages", "web_ports"):
        if list_key in kwargs and not isinstance(kwargs[list_key], (list, tuple)):
            raise ConfigError(
                f"{list_key} must be a list, got {type(kwargs[list_key]).__name__}"
            )

    if "failure_policy" in data:
        try:
            kwargs["failure_policy"] = FailurePolicy(data["failure_policy"])
        except ValueError:
            choices = ", ".join(p.value for p in FailurePolicy)
            raise ConfigError(f"failure_policy must be one of: {choices}")

    jail = data.get("fail2ban")
    if jail is not None:
        if not isinstance(jail, dict):
            raise ConfigError(f"fail2ban must be a mapping, got {type(jail).__name__}")
        extra = set(jail) - {f.name for f in fields(Fail2banSettings)}
        if extra:
            raise ConfigError(f"Unknown fail2ban key(s): {', '.join(sorted(extra))}")
        try:
            kwargs["fail2ban"] = Fail2banSettings(**jail)
        except ValueError as e:
            raise ConfigError(str(e))

    try:
        return ProvisionConfig(**kwargs)
    except (ValueError, TypeError) as e:
        raise ConfigError(str(e))


def apply_overrides(config: ProvisionConfig, **overrides: Any) -> ProvisionConfig:
    """Return config with non-None overrides applied (CLI flags win)."""
    changes = {k: v for k, v in overrides.items() if v is not None}
    if not changes:
        return config
    try:
        return replace(config, **changes)
    except (ValueError, TypeError) as e:
        raise ConfigError(str(e))


def _format_syntax_error(original_text: str, error: yaml.MarkedYAMLError) -> str:
    """Format a YAML syntax error with line, caret, and context."""
    mark = error.problem_mark
    problem = error.problem or "invalid syntax"
    if mark is None:
        return f"Config syntax error: {problem}"

    msg_parts = [f"Config syntax error at line {mark.line + 1}, col {mark.column + 1}: {problem}"]
    lines = original_text.split("\n")
    if 0 <= mark.line < len(lines):
        msg_parts.append(lines[mark.line])
        msg_parts.append(" " * mark.column + "^")
    return "\n".join(msg_parts)


def load_config(path_or_text: Path | str) -> dict:
    """Load and parse a YAML config file.

    Args:
        path_or_text: Either a Path to a YAML file, or a string containing YAML

    Returns:
        A dict containing the parsed config data (empty for an empty document)

    Raises:
        ConfigError: If the file cannot be read or contains syntax errors.
        TypeError: If path_or_text is neither Path nor str.
    """
    if isinstance(path_or_text, Path):
        try:
            original_text = path_or_text.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise ConfigError(f"Config file not found: {path_or_text}")
        except PermissionError:
            raise ConfigError(f"Permission denied reading config file: {path_or_text}")
        except UnicodeDecodeError:
            raise ConfigError(f"Config file is not valid UTF-8: {path_or_text}")
        except OSError as e:
            raise ConfigError(f"Error reading config file {path_or_text}: {e}")
    elif isinstance(path_or_text, str):
        original_text = path_or_text
    else:
        raise TypeError(f"path_or_text must be Path or str, got {type(path_or_text).__name__}")

    try:
        result = yaml.safe_load(original_text)
    except yaml.MarkedYAMLError as e:
        raise ConfigError(_format_syntax_error(original_text, e)) from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Config syntax error: {e}") from e

    if result is None:
        return {}
    if not isinstance(result, dict):
        raise ConfigError(f"Config must be a mapping, got {type(result).__name__}")
    return result


__all__ = [
    "ConfigError",
    "DEFAULT_PACKAGES",
    "DEFAULT_WEB_PORTS",
    "Fail2banSettings",
    "ProvisionConfig",
    "validate_config",
    "apply_overrides",
    "load_config",
]
