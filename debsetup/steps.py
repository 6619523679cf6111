"""The canonical Debian server plan.

Every step pairs an apply action with a precondition and a postcondition that
re-query the live host, so re-running the plan on a provisioned server changes
nothing.
"""

import logging
from typing import Callable

from .config import ProvisionConfig
from .errors import NonZeroExit, ProvisionError
from .execution import CommandRunner
from .probe import StateProbe
from .provisioner import Condition, ProvisioningStep, StepRegistry
from .secret_prompt import SecretValue
from .services import (
    Accounts,
    Firewall,
    IntrusionBan,
    PackageManager,
    ServiceManager,
    SshDaemon,
    TimezoneAuthority,
    write_file,
)

_logging = logging.getLogger(__name__)

UPDATE_INDEX = "update-package-index"
UPGRADE = "upgrade-packages"
INSTALL = "install-packages"
TIMEZONE = "set-timezone"
ADMIN_USER = "admin-user"
SSH_POLICY = "ssh-access-policy"
FIREWALL = "firewall-rules"
INTRUSION_BAN = "intrusion-ban-jail"
AUTO_UPGRADES = "unattended-upgrades"
CLEAN = "clean-package-cache"

ADMIN_GROUP = "sudo"
AUTO_UPGRADES_PATH = "/etc/apt/apt.conf.d/20auto-upgrades"
AUTO_UPGRADES_SERVICE = "unattended-upgrades"
AUTO_UPGRADES_CONTENT = """\
APT::Periodic::Update-Package-Lists "1";
APT::Periodic::Unattended-Upgrade "1";
"""

PORT_COMMENTS = {80: "HTTP", 443: "HTTPS"}
# Port sshd listens on until the access policy moves it
STOCK_SSH_PORT = 22

SecretSource = Callable[[], SecretValue]


def _yes_no(value: bool) -> str:
    return "yes" if value else "no"


def render_sshd_fragment(config: ProvisionConfig) -> str:
    return "\n".join(
        [
            "# Managed by debsetup",
            f"Port {config.ssh_port}",
            f"PermitRootLogin {config.root_login}",
            f"PasswordAuthentication {_yes_no(config.password_authentication)}",
            "KbdInteractiveAuthentication no",
            "PubkeyAuthentication yes",
            "MaxAuthTries 3",
            "",
        ]
    )


def render_jail(config: ProvisionConfig) -> str:
    jail = config.fail2ban
    return "\n".join(
        [
            "[sshd]",
            "enabled = true",
            f"port = {config.ssh_port}",
            f"maxretry = {jail.maxretry}",
            f"bantime = {jail.bantime}",
            f"findtime = {jail.findtime}",
            "",
        ]
    )


class DebianPlan:
    """Builds the provisioning steps for one config against one host."""

    def __init__(
        self,
        config: ProvisionConfig,
        runner: CommandRunner,
        probe: StateProbe | None = None,
        secret_source: SecretSource | None = None,
    ):
        self.config = config
        self.runner = runner
        self.probe = probe or StateProbe(runner)
        self.secret_source = secret_source

        self.services = ServiceManager(runner)
        self.packages = PackageManager(runner, self.probe, timeout=config.apt_timeout)
        self.firewall = Firewall(runner, self.probe)
        self.fail2ban = IntrusionBan(runner, self.services)
        self.sshd = SshDaemon(runner, self.services)
        self.clock = TimezoneAuthority(runner, self.probe)
        self.accounts = Accounts(runner)

    def steps(self) -> list[ProvisioningStep]:
        steps = [
            self._update_index(),
            self._upgrade(),
            self._install(),
            self._timezone(),
        ]
        if self.config.admin_user:
            steps.append(self._admin_user())
        steps += [
            self._ssh_policy(),
            self._firewall(),
            self._intrusion_ban(),
            self._auto_upgrades(),
            self._clean(),
        ]
        return steps

    def registry(self) -> StepRegistry:
        return StepRegistry(self.steps())

    # ------------------ package management ------------------

    def _index_fresh(self) -> Condition:
        age = self.probe.package_index_age()
        return Condition.of(age is not None and age < self.config.index_max_age)

    def _update_index(self) -> ProvisioningStep:
        return ProvisioningStep(
            name=UPDATE_INDEX,
            precondition=self._index_fresh,
            apply=lambda: self.packages.update_index().output or None,
            postcondition=self._index_fresh,
            description="refresh the package index (apt-get update)",
        )

    def _nothing_upgradable(self) -> Condition:
        return Condition.of(not self.probe.upgradable_packages())

    def _upgrade(self) -> ProvisioningStep:
        def apply():
            pending = self.probe.upgradable_packages()
            self.packages.upgrade()
            return f"upgraded {len(pending)} package(s)"

        return ProvisioningStep(
            name=UPGRADE,
            depends_on=(UPDATE_INDEX,),
            precondition=self._nothing_upgradable,
            apply=apply,
            postcondition=self._nothing_upgradable,
            description="upgrade installed packages",
        )

    def _all_installed(self) -> Condition:
        return Condition.of(not self.probe.missing_packages(self.config.packages))

    def _install(self) -> ProvisioningStep:
        def apply():
            missing = [p for p in self.config.packages if not self.packages.query_installed(p)]
            self.packages.install(missing)
            return f"installed {', '.join(missing)}"

        return ProvisioningStep(
            name=INSTALL,
            depends_on=(UPDATE_INDEX,),
            precondition=self._all_installed,
            apply=apply,
            postcondition=self._all_installed,
            description=f"install packages: {', '.join(self.config.packages)}",
        )

    def _cache_clean(self) -> Condition:
        return Condition.of(
            not self.probe.cached_archives() and not self.probe.autoremovable_packages()
        )

    def _clean(self) -> ProvisioningStep:
        return ProvisioningStep(
            name=CLEAN,
            depends_on=(UPGRADE, INSTALL),
            precondition=self._cache_clean,
            apply=lambda: self.packages.clean() or None,
            postcondition=self._cache_clean,
            description="autoremove unused packages and clean the package cache",
        )

    # ------------------ system ------------------

    def _timezone_set(self) -> Condition:
        return Condition.of(self.clock.get() == self.config.timezone)

    def _timezone(self) -> ProvisioningStep:
        def apply():
            previous = self.clock.get()
            self.clock.set(self.config.timezone)
            return f"timezone changed from {previous} to {self.config.timezone}"

        return ProvisioningStep(
            name=TIMEZONE,
            depends_on=(INSTALL,),
            precondition=self._timezone_set,
            apply=apply,
            postcondition=self._timezone_set,
            description=f"set timezone to {self.config.timezone}",
        )

    def _admin_ready(self) -> Condition:
        name = self.config.admin_user
        return Condition.of(
            self.probe.user_exists(name)
            and self.probe.user_in_group(name, ADMIN_GROUP)
            and self.probe.password_usable(name)
        )

    def _admin_user(self) -> ProvisioningStep:
        name = self.config.admin_user

        def apply():
            changes = []
            if not self.probe.user_exists(name):
                self.accounts.create(name, groups=[ADMIN_GROUP])
                changes.append(f"created user '{name}'")
            elif not self.probe.user_in_group(name, ADMIN_GROUP):
                self.accounts.add_to_group(name, ADMIN_GROUP)
                changes.append(f"added '{name}' to {ADMIN_GROUP}")

            if not self.probe.password_usable(name):
                if self.secret_source is None:
                    raise ProvisionError(f"No password source available for '{name}'")
                self.accounts.set_password(name, self.secret_source())
                changes.append("password set")
            return ", ".join(changes)

        return ProvisioningStep(
            name=ADMIN_USER,
            depends_on=(INSTALL,),
            precondition=self._admin_ready,
            apply=apply,
            postcondition=self._admin_ready,
            description=f"create or verify administrative user '{name}' ({ADMIN_GROUP})",
        )

    # ------------------ access & security ------------------

    def _ssh_configured(self) -> Condition:
        return Condition.of(
            self.probe.file_matches(self.sshd.FRAGMENT_PATH, render_sshd_fragment(self.config))
            and self.probe.service_active(self.sshd.SERVICE)
        )

    def _ssh_policy(self) -> ProvisioningStep:
        def apply():
            self.sshd.write_config_fragment(render_sshd_fragment(self.config))
            try:
                self.sshd.validate()
            except NonZeroExit:
                # Never leave a fragment sshd rejects; a restart would lock us out.
                self.runner.run(["rm", "-f", self.sshd.FRAGMENT_PATH])
                raise
            self.sshd.restart()

        cfg = self.config
        return ProvisioningStep(
            name=SSH_POLICY,
            depends_on=(ADMIN_USER,) if cfg.admin_user else (INSTALL,),
            precondition=self._ssh_configured,
            apply=apply,
            postcondition=self._ssh_configured,
            description=(
                f"write {self.sshd.FRAGMENT_PATH} (Port {cfg.ssh_port}, "
                f"PermitRootLogin {cfg.root_login}, "
                f"PasswordAuthentication {_yes_no(cfg.password_authentication)}) and restart ssh"
            ),
        )

    def _firewall_configured(self) -> Condition:
        status = self.probe.firewall_status()
        return Condition.of(
            status.active
            and all(
                any(rule.matches(port, "tcp") for rule in status.rules)
                for port in self.config.firewall_ports
            )
        )

    def _firewall(self) -> ProvisioningStep:
        def apply():
            self.firewall.reset()
            self.firewall.add_rule(self.config.ssh_port, "tcp", comment="SSH")
            for port in self.config.web_ports:
                self.firewall.add_rule(port, "tcp", comment=PORT_COMMENTS.get(port, f"port {port}"))
            self.firewall.enable()
            return f"firewall enabled with {len(self.firewall.list_rules())} rule(s)"

        ports = ", ".join(f"{p}/tcp" for p in self.config.firewall_ports)
        # A moved SSH port must be live before the reset drops the old rule
        depends_on = (INSTALL,)
        if self.config.ssh_port != STOCK_SSH_PORT:
            depends_on += (SSH_POLICY,)
        return ProvisioningStep(
            name=FIREWALL,
            depends_on=depends_on,
            precondition=self._firewall_configured,
            apply=apply,
            postcondition=self._firewall_configured,
            description=f"reset ufw, allow {ports} and enable it",
        )

    def _service_running(self, name: str) -> bool:
        return self.probe.service_enabled(name) and self.probe.service_active(name)

    def _jail_configured(self) -> Condition:
        return Condition.of(
            self.probe.file_matches(self.fail2ban.JAIL_PATH, render_jail(self.config))
            and self._service_running(self.fail2ban.SERVICE)
        )

    def _intrusion_ban(self) -> ProvisioningStep:
        def apply():
            self.fail2ban.write_jail_config(render_jail(self.config))
            self.fail2ban.enable()
            self.fail2ban.restart()

        return ProvisioningStep(
            name=INTRUSION_BAN,
            depends_on=(INSTALL, FIREWALL),
            precondition=self._jail_configured,
            apply=apply,
            postcondition=self._jail_configured,
            description=(
                f"write {self.fail2ban.JAIL_PATH} (sshd jail on port "
                f"{self.config.ssh_port}) and enable fail2ban"
            ),
        )

    def _auto_upgrades_enabled(self) -> Condition:
        return Condition.of(
            self.probe.file_matches(AUTO_UPGRADES_PATH, AUTO_UPGRADES_CONTENT)
            and self._service_running(AUTO_UPGRADES_SERVICE)
        )

    def _auto_upgrades(self) -> ProvisioningStep:
        def apply():
            write_file(self.runner, AUTO_UPGRADES_PATH, AUTO_UPGRADES_CONTENT)
            self.services.enable_now(AUTO_UPGRADES_SERVICE)

        return ProvisioningStep(
            name=AUTO_UPGRADES,
            depends_on=(INSTALL,),
            precondition=self._auto_upgrades_enabled,
            apply=apply,
            postcondition=self._auto_upgrades_enabled,
            description=f"write {AUTO_UPGRADES_PATH} and enable {AUTO_UPGRADES_SERVICE}",
        )


def build_debian_plan(
    config: ProvisionConfig,
    runner: CommandRunner,
    probe: StateProbe | None = None,
    secret_source: SecretSource | None = None,
) -> StepRegistry:
    """Validated registry of the canonical Debian provisioning plan."""
    return DebianPlan(config, runner, probe, secret_source).registry()


__all__ = [
    "UPDATE_INDEX",
    "UPGRADE",
    "INSTALL",
    "TIMEZONE",
    "ADMIN_USER",
    "SSH_POLICY",
    "FIREWALL",
    "INTRUSION_BAN",
    "AUTO_UPGRADES",
    "CLEAN",
    "render_sshd_fragment",
    "render_jail",
    "DebianPlan",
    "build_debian_plan",
]
