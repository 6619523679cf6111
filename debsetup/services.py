"""Adapters for the external services the provisioning steps command.

Each adapter issues mutating commands through the shared ``CommandRunner``;
inspection goes through ``StateProbe`` instead.
"""

import logging
from typing import Sequence

from .execution import (
    INSTALL_TIMEOUT,
    UPGRADE_TIMEOUT,
    CommandResult,
    CommandRunner,
)
from .probe import APT_UPDATE_STAMP, StateProbe
from .secret_prompt import SecretValue

_logging = logging.getLogger(__name__)

DPKG_KEEP_CONFIG = [
    "-o",
    "Dpkg::Options::=--force-confdef",
    "-o",
    "Dpkg::Options::=--force-confold",
]


def write_file(runner: CommandRunner, path: str, content: str, mode: str = "0644") -> CommandResult:
    """Install ``content`` at ``path`` (parents created, root-owned)."""
    if not content.endswith("\n"):
        content += "\n"
    return runner.run(
        ["install", "-D", "-m", mode, "/dev/stdin", path],
        input=content,
    )


class ServiceManager:
    def __init__(self, runner: CommandRunner):
        self.runner = runner

    def enable_now(self, name: str) -> CommandResult:
        return self.runner.run(["systemctl", "enable", "--now", name])

    def restart(self, name: str) -> CommandResult:
        return self.runner.run(["systemctl", "restart", name])


class PackageManager:
    def __init__(self, runner: CommandRunner, probe: StateProbe, timeout: int = INSTALL_TIMEOUT):
        self.runner = runner
        self.probe = probe
        self.timeout = timeout

    def _options(self, timeout: int):
        return self.runner.with_options(timeout=timeout)

    def query_installed(self, name: str) -> bool:
        return self.probe.package_installed(name)

    def update_index(self) -> CommandResult:
        result = self.runner.run(["apt-get", "update"], self._options(self.timeout))
        # apt leaves the lists untouched when every mirror answers "Hit"
        self.runner.run(["install", "-D", "-m", "0644", "/dev/null", APT_UPDATE_STAMP])
        return result

    def upgrade(self) -> CommandResult:
        return self.runner.run(
            ["apt-get", "upgrade", "-y", *DPKG_KEEP_CONFIG],
            self._options(max(self.timeout, UPGRADE_TIMEOUT)),
        )

    def install(self, packages: Sequence[str]) -> CommandResult:
        return self.runner.run(
            ["apt-get", "install", "-y", *DPKG_KEEP_CONFIG, *packages],
            self._options(self.timeout),
        )

    def clean(self) -> str:
        removed = self.runner.run(["apt-get", "autoremove", "-y"], self._options(self.timeout))
        self.runner.run(["apt-get", "clean"])
        return removed.output


class Firewall:
    """ufw controller."""

    def __init__(self, runner: CommandRunner, probe: StateProbe):
        self.runner = runner
        self.probe = probe

    def list_rules(self):
        return self.probe.firewall_status().rules

    def reset(self) -> CommandResult:
        return self.runner.run(["ufw", "--force", "reset"])

    def add_rule(self, port: int, proto: str = "tcp", comment: str | None = None) -> CommandResult:
        command = ["ufw", "allow", f"{port}/{proto}"]
        if comment:
            command += ["comment", comment]
        return self.runner.run(command)

    def enable(self) -> CommandResult:
        return self.runner.run(["ufw", "--force", "enable"])


class IntrusionBan:
    """fail2ban controller."""

    SERVICE = "fail2ban"
    JAIL_PATH = "/etc/fail2ban/jail.d/sshd.local"

    def __init__(self, runner: CommandRunner, services: ServiceManager):
        self.runner = runner
        self.services = services

    def write_jail_config(self, content: str) -> CommandResult:
        return write_file(self.runner, self.JAIL_PATH, content)

    def restart(self) -> CommandResult:
        return self.services.restart(self.SERVICE)

    def enable(self) -> CommandResult:
        return self.services.enable_now(self.SERVICE)


class SshDaemon:
    SERVICE = "ssh"
    FRAGMENT_PATH = "/etc/ssh/sshd_config.d/10-debsetup.conf"

    def __init__(self, runner: CommandRunner, services: ServiceManager):
        self.runner = runner
        self.services = services

    def write_config_fragment(self, content: str) -> CommandResult:
        return write_file(self.runner, self.FRAGMENT_PATH, content)

    def validate(self) -> CommandResult:
        return self.runner.run(["sshd", "-t"])

    def restart(self) -> CommandResult:
        return self.services.restart(self.SERVICE)


class TimezoneAuthority:
    def __init__(self, runner: CommandRunner, probe: StateProbe):
        self.runner = runner
        self.probe = probe

    def get(self) -> str:
        return self.probe.timezone()

    def set(self, tz: str) -> CommandResult:
        return self.runner.run(["timedatectl", "set-timezone", tz])


class Accounts:
    def __init__(self, runner: CommandRunner):
        self.runner = runner

    def create(self, name: str, groups: Sequence[str] = ()) -> CommandResult:
        command = ["useradd", "--create-home", "--shell", "/bin/bash"]
        if groups:
            command += ["--groups", ",".join(groups)]
        return self.runner.run([*command, name])

    def set_password(self, name: str, secret: SecretValue) -> CommandResult:
        # Plaintext only travels on stdin, which the runner never logs.
        return self.runner.run(["chpasswd"], input=f"{name}:{secret.reveal()}\n")

    def add_to_group(self, name: str, group: str) -> CommandResult:
        return self.runner.run(["usermod", "--append", "--groups", group, name])


__all__ = [
    "write_file",
    "ServiceManager",
    "PackageManager",
    "Firewall",
    "IntrusionBan",
    "SshDaemon",
    "TimezoneAuthority",
    "Accounts",
]
