"""Read-only inspection of live host state.

Every query runs a side-effect-free inspection command through the
``CommandRunner`` and parses its output. Queries always execute for real, even
when the runner is in dry-run mode, and nothing is cached between calls.

A query that cannot be answered raises ``ProbeError``; callers must treat that
as "unknown", never as "no".
"""

import logging
import re
import shlex
import time
from dataclasses import dataclass
from typing import Iterable, Sequence

from .errors import (
    CommandTimeoutError,
    ExecutionError,
    NonZeroExit,
    PrivilegeError,
    ProbeError,
)
from .execution import PROBE_TIMEOUT, CommandResult, CommandRunner, RunOptions

_logging = logging.getLogger(__name__)

APT_LISTS_DIR = "/var/lib/apt/lists"
# Touched after every successful index refresh, even when no list changed
APT_UPDATE_STAMP = "/var/lib/apt/periodic/update-success-stamp"
APT_ARCHIVES = "/var/cache/apt/archives"
OS_RELEASE = "/etc/os-release"

# How inspection tools refuse to answer a non-root caller
_PRIVILEGE_RE = re.compile(
    r"need to be root|must be root|may not view or modify|permission denied|operation not permitted",
    re.IGNORECASE,
)

# systemctl is-active / is-enabled answers that mean "no" rather than "unknown"
SERVICE_STATES = {
    "active",
    "inactive",
    "failed",
    "activating",
    "deactivating",
    "reloading",
    "maintenance",
    "refreshing",
}
UNIT_FILE_STATES = {
    "enabled",
    "enabled-runtime",
    "linked",
    "linked-runtime",
    "alias",
    "masked",
    "masked-runtime",
    "static",
    "indirect",
    "disabled",
    "generated",
    "transient",
    "bad",
    "not-found",
}

_UFW_RULE_RE = re.compile(
    r"^(?P<to>.+?)\s+(?P<action>ALLOW|DENY|REJECT|LIMIT)(?:\s+(?:IN|OUT|FWD))?"
    r"\s+(?P<source>.+?)(?:\s+#\s*(?P<comment>.*))?$"
)


@dataclass(frozen=True)
class FirewallRule:
    to: str
    action: str
    source: str
    comment: str | None = None

    @property
    def v6(self) -> bool:
        return self.to.endswith("(v6)")

    def matches(self, port: int, proto: str) -> bool:
        return (
            not self.v6
            and self.to == f"{port}/{proto}"
            and self.action in ("ALLOW", "LIMIT")
        )


@dataclass(frozen=True)
class FirewallStatus:
    active: bool
    rules: tuple[FirewallRule, ...] = ()


@dataclass(frozen=True)
class HostFacts:
    """Snapshot of host state; ``None`` means the fact could not be determined."""
    os_name: str | None
    hostname: str | None
    addresses: tuple[str, ...] | None
    users: frozenset[str] | None
    packages: frozenset[str] | None
    services: frozenset[str] | None
    timezone: str | None
    firewall: FirewallStatus | None


class StateProbe:
    def __init__(self, runner: CommandRunner, timeout: float = PROBE_TIMEOUT):
        self.runner = runner
        self._options = RunOptions(dry_run=False, timeout=timeout)

    def _query(self, command: Sequence[str]) -> CommandResult:
        """Run an inspection command; non-zero exits are returned, not raised."""
        try:
            return self.runner.run(command, self._options)
        except NonZeroExit as e:
            return e.result
        except (ExecutionError, CommandTimeoutError) as e:
            raise ProbeError(f"Cannot inspect host: {e}") from e

    @staticmethod
    def _unexpected(what: str, result: CommandResult) -> ProbeError:
        detail = result.output or "no output"
        if _PRIVILEGE_RE.search(detail):
            return PrivilegeError(f"Not permitted to check {what}: {detail}")
        return ProbeError(f"Unexpected answer while checking {what} (exit {result.exit_code}): {detail}")

    # ------------------ users ------------------

    def user_exists(self, name: str) -> bool:
        result = self._query(["getent", "passwd", name])
        if result.exit_code == 0:
            return True
        if result.exit_code == 2:  # key not found
            return False
        raise self._unexpected(f"user '{name}'", result)

    def user_in_group(self, name: str, group: str) -> bool:
        result = self._query(["id", "-nG", name])
        if result.exit_code == 0:
            return group in result.stdout.split()
        if "no such user" in result.stderr:
            return False
        raise self._unexpected(f"groups of '{name}'", result)

    def password_usable(self, name: str) -> bool:
        """True when the account has a usable (not locked, not empty) password."""
        result = self._query(["passwd", "--status", name])
        parts = result.stdout.split()
        if result.ok and len(parts) >= 2:
            return parts[1] == "P"
        if "does not exist" in result.stderr:
            return False
        raise self._unexpected(f"password status of '{name}'", result)

    def users(self) -> frozenset[str]:
        result = self._query(["getent", "passwd"])
        if not result.ok:
            raise self._unexpected("user database", result)
        return frozenset(
            line.split(":", 1)[0] for line in result.stdout.splitlines() if line.strip()
        )

    # ------------------ packages ------------------

    def package_installed(self, name: str) -> bool:
        result = self._query(["dpkg-query", "-W", "-f=${Status}", name])
        if result.exit_code == 1:  # unknown package
            return False
        if result.exit_code != 0:
            raise self._unexpected(f"package '{name}'", result)

        parts = result.stdout.split()
        if len(parts) != 3:
            raise self._unexpected(f"package '{name}'", result)
        want, _, state = parts
        return want in ("install", "hold") and state == "installed"

    def missing_packages(self, names: Iterable[str]) -> list[str]:
        return [n for n in names if not self.package_installed(n)]

    def installed_packages(self) -> frozenset[str]:
        result = self._query(["dpkg-query", "-W", "-f=${Package} ${Status}\\n"])
        if not result.ok:
            raise self._unexpected("installed packages", result)
        installed = set()
        for line in result.stdout.splitlines():
            parts = line.split()
            if len(parts) == 4 and parts[3] == "installed":
                installed.add(parts[0])
        return frozenset(installed)

    def package_index_age(self) -> float | None:
        """Seconds since the last index refresh, ``None`` if never refreshed.

        The newest of the update stamp and the lists directory counts; either
        may be missing.
        """
        result = self._query(["stat", "-c", "%Y", APT_UPDATE_STAMP, APT_LISTS_DIR])
        try:
            mtimes = [int(line) for line in result.stdout.split()]
        except ValueError:
            raise self._unexpected("package index age", result) from None
        if not mtimes:
            if "No such file" in result.stderr:
                return None
            raise self._unexpected("package index age", result)
        return max(0.0, time.time() - max(mtimes))

    def _simulate(self, action: str, marker: str) -> list[str]:
        result = self._query(["apt-get", "--simulate", action])
        if not result.ok:
            raise self._unexpected(f"pending {action}", result)
        return [
            line.split()[1]
            for line in result.stdout.splitlines()
            if line.startswith(marker) and len(line.split()) > 1
        ]

    def upgradable_packages(self) -> list[str]:
        return self._simulate("upgrade", "Inst ")

    def autoremovable_packages(self) -> list[str]:
        return self._simulate("autoremove", "Remv ")

    def cached_archives(self) -> list[str]:
        result = self._query(
            ["find", APT_ARCHIVES, "-maxdepth", "1", "-type", "f", "-name", "*.deb"]
        )
        if not result.ok:
            raise self._unexpected("package cache", result)
        return [line for line in result.stdout.splitlines() if line.strip()]

    # ------------------ services ------------------

    def service_active(self, name: str) -> bool:
        result = self._query(["systemctl", "is-active", name])
        state = result.stdout.strip()
        if state not in SERVICE_STATES:
            raise self._unexpected(f"service '{name}'", result)
        return state == "active"

    def service_enabled(self, name: str) -> bool:
        result = self._query(["systemctl", "is-enabled", name])
        state = result.stdout.strip()
        if not state and "No such file or directory" in result.stderr:
            return False
        if state not in UNIT_FILE_STATES:
            raise self._unexpected(f"unit file of '{name}'", result)
        return state in ("enabled", "enabled-runtime")

    def active_services(self) -> frozenset[str]:
        result = self._query(
            ["systemctl", "list-units", "--type=service", "--state=active", "--no-legend", "--plain"]
        )
        if not result.ok:
            raise self._unexpected("active services", result)
        services = set()
        for line in result.stdout.splitlines():
            parts = line.split()
            if parts:
                services.add(parts[0].removesuffix(".service"))
        return frozenset(services)

    # ------------------ timezone ------------------

    def timezone(self) -> str:
        result = self._query(["timedatectl", "show", "--property=Timezone", "--value"])
        tz = result.stdout.strip()
        if not result.ok or not tz:
            raise self._unexpected("timezone", result)
        return tz

    def timezone_is(self, tz: str) -> bool:
        return self.timezone() == tz

    # ------------------ firewall ------------------

    def firewall_status(self) -> FirewallStatus:
        result = self._query(["ufw", "status"])
        if not result.ok:
            raise self._unexpected("firewall", result)

        lines = [line.rstrip() for line in result.stdout.splitlines()]
        status_line = next((l for l in lines if l.startswith("Status:")), None)
        if status_line is None:
            raise self._unexpected("firewall", result)
        active = status_line.split(":", 1)[1].strip() == "active"

        rules = []
        in_table = False
        for line in lines:
            if not in_table:
                in_table = line.startswith("--")
                continue
            if not line.strip():
                continue
            match = _UFW_RULE_RE.match(line.strip())
            if not match:
                raise ProbeError(f"Cannot parse firewall rule: {line.strip()!r}")
            rules.append(
                FirewallRule(
                    to=match.group("to"),
                    action=match.group("action"),
                    source=match.group("source"),
                    comment=match.group("comment"),
                )
            )
        return FirewallStatus(active=active, rules=tuple(rules))

    def firewall_active(self) -> bool:
        return self.firewall_status().active

    def firewall_rule_exists(self, port: int, proto: str = "tcp") -> bool:
        return any(rule.matches(port, proto) for rule in self.firewall_status().rules)

    # ------------------ files ------------------

    def file_content(self, path: str) -> str | None:
        result = self._query(["cat", path])
        if result.ok:
            return result.stdout
        if "No such file or directory" in result.stderr:
            return None
        raise self._unexpected(f"file {path}", result)

    def file_matches(self, path: str, content: str) -> bool:
        current = self.file_content(path)
        return current is not None and current.strip() == content.strip()

    # ------------------ identity ------------------

    def os_release(self) -> dict[str, str]:
        content = self.file_content(OS_RELEASE)
        if content is None:
            raise ProbeError(f"{OS_RELEASE} is missing")
        info = {}
        for line in content.splitlines():
            if "=" not in line or line.startswith("#"):
                continue
            key, _, value = line.partition("=")
            try:
                words = shlex.split(value)
            except ValueError:
                raise ProbeError(f"Cannot parse {OS_RELEASE} line: {line!r}") from None
            info[key.strip()] = words[0] if words else ""
        return info

    def hostname(self) -> str:
        result = self._query(["hostname"])
        if not result.ok or not result.stdout.strip():
            raise self._unexpected("hostname", result)
        return result.stdout.strip()

    def addresses(self) -> tuple[str, ...]:
        result = self._query(["hostname", "-I"])
        if not result.ok:
            raise self._unexpected("addresses", result)
        return tuple(result.stdout.split())

    def internet_reachable(self, host: str = "1.1.1.1") -> bool:
        result = self._query(["ping", "-c", "2", "-W", "2", host])
        return result.ok

    def gather_facts(self) -> HostFacts:
        """Query every fact once; unknown facts are recorded as ``None``."""

        def attempt(what, query):
            try:
                return query()
            except ProbeError as e:
                _logging.debug(f"Fact '{what}' unknown: {e}")
                return None

        release = attempt("os", self.os_release)
        return HostFacts(
            os_name=(release.get("PRETTY_NAME") or release.get("NAME")) if release else None,
            hostname=attempt("hostname", self.hostname),
            addresses=attempt("addresses", self.addresses),
            users=attempt("users", self.users),
            packages=attempt("packages", self.installed_packages),
            services=attempt("services", self.active_services),
            timezone=attempt("timezone", self.timezone),
            firewall=attempt("firewall", self.firewall_status),
        )


__all__ = [
    "FirewallRule",
    "FirewallStatus",
    "HostFacts",
    "StateProbe",
]
