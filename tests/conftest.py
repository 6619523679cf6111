"""Pytest fixtures and utilities for debsetup tests."""

import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Generator, Sequence

import pytest

from debsetup.config import ProvisionConfig
from debsetup.errors import ExecutionError, NonZeroExit
from debsetup.execution import CommandResult, CommandRunner, RunOptions, format_command
from debsetup.probe import APT_ARCHIVES, APT_LISTS_DIR, APT_UPDATE_STAMP, OS_RELEASE
from debsetup.services import DPKG_KEEP_CONFIG

DEBIAN_OS_RELEASE = """\
PRETTY_NAME="Debian GNU/Linux 12 (bookworm)"
NAME="Debian GNU/Linux"
VERSION_ID="12"
VERSION="12 (bookworm)"
ID=debian
"""

# Binaries that only exist once their package is installed
BINARY_PACKAGES = {"ufw": "ufw"}
# Units registered (disabled, stopped) when their package is installed
PACKAGE_SERVICES = {"fail2ban": "fail2ban", "unattended-upgrades": "unattended-upgrades"}


def _ok(stdout: str = "") -> CommandResult:
    return CommandResult(exit_code=0, stdout=stdout, stderr="")


def _err(code: int, stderr: str = "", stdout: str = "") -> CommandResult:
    return CommandResult(exit_code=code, stdout=stdout, stderr=stderr)


@dataclass
class FakeHost:
    """In-memory Debian host answering the commands debsetup issues."""

    packages: set = field(
        default_factory=lambda: {"openssh-server", "tzdata", "ca-certificates"}
    )
    upgradable: list = field(default_factory=lambda: ["libc6", "openssl"])
    autoremovable: list = field(default_factory=lambda: ["linux-image-6.1.0-17-amd64"])
    archives: list = field(default_factory=list)
    index_mtime: float | None = None
    stamp_mtime: float | None = None
    # apt-get update finds every list unchanged and leaves the directory alone
    index_unchanged: bool = False
    timezone: str = "Etc/UTC"
    users: dict = field(
        default_factory=lambda: {"root": {"groups": {"root"}, "password": "P"}}
    )
    services: dict = field(
        default_factory=lambda: {"ssh": {"active": True, "enabled": True}}
    )
    files: dict = field(default_factory=lambda: {OS_RELEASE: DEBIAN_OS_RELEASE})
    firewall_active: bool = False
    firewall_rules: list = field(default_factory=list)
    hostname: str = "deb-test"
    addresses: tuple = ("192.0.2.10", "2001:db8::10")
    sshd_valid: bool = True
    online: bool = True
    # command prefix -> forced result
    failures: dict = field(default_factory=dict)
    passwords: dict = field(default_factory=dict)
    mutations: list = field(default_factory=list)

    def fail(self, prefix: Sequence[str], code: int = 1, stderr: str = "boom") -> None:
        self.failures[tuple(prefix)] = _err(code, stderr)

    def handle(self, command: Sequence[str], input: str | None = None) -> CommandResult:
        command = list(command)
        for prefix, result in self.failures.items():
            if tuple(command[: len(prefix)]) == prefix:
                return result

        binary = command[0]
        package = BINARY_PACKAGES.get(binary)
        if package and package not in self.packages:
            raise ExecutionError(f"Command not found: {binary}")

        handler = getattr(self, f"_cmd_{binary.replace('-', '_')}", None)
        if handler is None:
            raise ExecutionError(f"Command not found: {binary}")
        return handler(command[1:], input)

    def _mutate(self, command: Sequence[str]) -> None:
        self.mutations.append(format_command(command))

    # ------------------ users ------------------

    def _passwd_line(self, name: str) -> str:
        uid = 0 if name == "root" else 1000 + list(self.users).index(name)
        home = "/root" if name == "root" else f"/home/{name}"
        return f"{name}:x:{uid}:{uid}::{home}:/bin/bash"

    def _cmd_getent(self, args, input):
        if args == ["passwd"]:
            return _ok("\n".join(self._passwd_line(n) for n in self.users) + "\n")
        name = args[1]
        if name in self.users:
            return _ok(self._passwd_line(name) + "\n")
        return _err(2)

    def _cmd_id(self, args, input):
        name = args[1]
        if name not in self.users:
            return _err(1, f"id: '{name}': no such user\n")
        groups = [name, *sorted(self.users[name]["groups"] - {name})]
        return _ok(" ".join(groups) + "\n")

    def _cmd_passwd(self, args, input):
        name = args[1]
        if name not in self.users:
            return _err(1, f"passwd: user '{name}' does not exist\n")
        return _ok(f"{name} {self.users[name]['password']} 2024-01-01 0 99999 7 -1\n")

    def _cmd_useradd(self, args, input):
        self._mutate(["useradd", *args])
        name = args[-1]
        groups = set()
        if "--groups" in args:
            groups = set(args[args.index("--groups") + 1].split(","))
        self.users[name] = {"groups": {name} | groups, "password": "L"}
        return _ok()

    def _cmd_usermod(self, args, input):
        self._mutate(["usermod", *args])
        name = args[-1]
        group = args[args.index("--groups") + 1]
        self.users[name]["groups"].add(group)
        return _ok()

    def _cmd_chpasswd(self, args, input):
        self._mutate(["chpasswd"])
        name, _, password = input.rstrip("\n").partition(":")
        self.users[name]["password"] = "P"
        self.passwords[name] = password
        return _ok()

    # ------------------ packages ------------------

    def _cmd_dpkg_query(self, args, input):
        if args[1].startswith("-f=${Package}"):
            return _ok("".join(f"{p} install ok installed\n" for p in sorted(self.packages)))
        name = args[2]
        if name in self.packages:
            return _ok("install ok installed")
        return _err(1, f"dpkg-query: no packages found matching {name}\n")

    def _cmd_stat(self, args, input):
        mtimes = {APT_LISTS_DIR: self.index_mtime, APT_UPDATE_STAMP: self.stamp_mtime}
        stdout, stderr = "", ""
        for path in args[2:]:
            if mtimes.get(path) is not None:
                stdout += f"{int(mtimes[path])}\n"
            else:
                stderr += f"stat: cannot statx '{path}': No such file or directory\n"
        return CommandResult(exit_code=1 if stderr else 0, stdout=stdout, stderr=stderr)

    def _cmd_apt_get(self, args, input):
        if args[0] == "--simulate":
            if args[1] == "upgrade":
                lines = [f"Inst {p} [1.0] (1.1 Debian:12/stable [amd64])" for p in self.upgradable]
            else:
                lines = [f"Remv {p} [1.0]" for p in self.autoremovable]
            return _ok("Reading package lists...\n" + "".join(l + "\n" for l in lines))

        self._mutate(["apt-get", *args])
        action = args[0]
        if action == "update":
            if not self.index_unchanged:
                self.index_mtime = time.time()
        elif action == "upgrade":
            self.archives += [f"{APT_ARCHIVES}/{p}_1.1_amd64.deb" for p in self.upgradable]
            self.upgradable = []
        elif action == "install":
            for pkg in args[2 + len(DPKG_KEEP_CONFIG):]:
                self.packages.add(pkg)
                self.archives.append(f"{APT_ARCHIVES}/{pkg}_1.0_amd64.deb")
                service = PACKAGE_SERVICES.get(pkg)
                if service:
                    self.services.setdefault(service, {"active": False, "enabled": False})
        elif action == "autoremove":
            removed = self.autoremovable
            self.autoremovable = []
            return _ok("".join(f"Removing {p} ...\n" for p in removed))
        elif action == "clean":
            self.archives = []
        return _ok()

    def _cmd_find(self, args, input):
        return _ok("".join(a + "\n" for a in self.archives))

    # ------------------ services ------------------

    def _cmd_systemctl(self, args, input):
        action = args[0]
        if action == "is-active":
            unit = self.services.get(args[1])
            if unit and unit["active"]:
                return _ok("active\n")
            return _err(3, stdout="inactive\n")
        if action == "is-enabled":
            unit = self.services.get(args[1])
            if unit is None:
                return _err(
                    1,
                    f"Failed to get unit file state for {args[1]}.service: No such file or directory\n",
                )
            if unit["enabled"]:
                return _ok("enabled\n")
            return _err(1, stdout="disabled\n")
        if action == "list-units":
            return _ok(
                "".join(
                    f"{name}.service loaded active running {name}\n"
                    for name, unit in sorted(self.services.items())
                    if unit["active"]
                )
            )

        self._mutate(["systemctl", *args])
        name = args[-1]
        if name not in self.services:
            return _err(5, f"Failed to {action} {name}.service: Unit {name}.service not found.\n")
        if action == "restart":
            self.services[name]["active"] = True
        elif action == "enable":
            self.services[name]["enabled"] = True
            if "--now" in args:
                self.services[name]["active"] = True
        return _ok()

    def _cmd_timedatectl(self, args, input):
        if args[0] == "show":
            return _ok(self.timezone + "\n")
        self._mutate(["timedatectl", *args])
        self.timezone = args[1]
        return _ok()

    # ------------------ firewall ------------------

    def _cmd_ufw(self, args, input):
        if args == ["status"]:
            if not self.firewall_active:
                return _ok("Status: inactive\n")
            lines = [
                "Status: active",
                "",
                "To                         Action      From",
                "--                         ------      ----",
            ]
            for to, comment in self.firewall_rules:
                lines.append(f"{to:<27}ALLOW       Anywhere                   # {comment}")
            for to, comment in self.firewall_rules:
                lines.append(f"{to + ' (v6)':<27}ALLOW       Anywhere (v6)              # {comment}")
            return _ok("\n".join(lines) + "\n")

        self._mutate(["ufw", *args])
        if args == ["--force", "reset"]:
            self.firewall_active = False
            self.firewall_rules = []
        elif args == ["--force", "enable"]:
            self.firewall_active = True
        elif args[0] == "allow":
            comment = args[args.index("comment") + 1] if "comment" in args else ""
            self.firewall_rules.append((args[1], comment))
        return _ok()

    # ------------------ files & daemons ------------------

    def _cmd_cat(self, args, input):
        path = args[0]
        if path in self.files:
            return _ok(self.files[path])
        return _err(1, f"cat: {path}: No such file or directory\n")

    def _cmd_install(self, args, input):
        self._mutate(["install", *args])
        if args[-1] == APT_UPDATE_STAMP:
            self.stamp_mtime = time.time()
        else:
            self.files[args[-1]] = input
        return _ok()

    def _cmd_rm(self, args, input):
        self._mutate(["rm", *args])
        self.files.pop(args[-1], None)
        return _ok()

    def _cmd_sshd(self, args, input):
        if self.sshd_valid:
            return _ok()
        return _err(255, "/etc/ssh/sshd_config.d/10-debsetup.conf: line 2: Bad configuration option\n")

    def _cmd_hostname(self, args, input):
        if args == ["-I"]:
            return _ok(" ".join(self.addresses) + " \n")
        return _ok(self.hostname + "\n")

    def _cmd_ping(self, args, input):
        if self.online:
            return _ok("2 packets transmitted, 2 received, 0% packet loss\n")
        return _err(1, stdout="2 packets transmitted, 0 received, 100% packet loss\n")


class FakeRunner(CommandRunner):
    """CommandRunner that executes against a FakeHost and records every call."""

    def __init__(self, host: FakeHost, options: RunOptions | None = None):
        super().__init__(options)
        self.host = host
        self.calls: list[tuple[list[str], RunOptions, str | None]] = []

    @property
    def executed(self) -> list[list[str]]:
        """Commands that actually reached the host."""
        return [cmd for cmd, opts, _ in self.calls if not opts.dry_run]

    def run(self, command, options=None, input=None):
        options = options or self.options
        self.calls.append((list(command), options, input))
        if options.dry_run:
            return super().run(command, options, input)
        result = self.host.handle(command, input)
        if not result.ok:
            raise NonZeroExit(format_command(command), result)
        return result


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def host() -> FakeHost:
    """A freshly installed Debian host."""
    return FakeHost()


@pytest.fixture
def fake_runner(host: FakeHost) -> FakeRunner:
    return FakeRunner(host)


@pytest.fixture
def dry_runner(host: FakeHost) -> FakeRunner:
    return FakeRunner(host, RunOptions(dry_run=True))


@pytest.fixture
def config() -> ProvisionConfig:
    return ProvisionConfig(timezone="Europe/Berlin", admin_user="deploy")


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch, temp_dir: Path) -> Path:
    """Point DEBSETUP_CONFIG at a file that does not exist yet."""
    path = temp_dir / "config.yaml"
    monkeypatch.setenv("DEBSETUP_CONFIG", str(path))
    return path
