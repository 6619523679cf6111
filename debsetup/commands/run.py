"""Run command implementation."""

import json
import logging
import sys
import threading
from pathlib import Path

import click

from debsetup import setup_logging
from debsetup.commands.utils import (
    EXIT_FAILED,
    EXIT_SUCCESS,
    config_options,
    fail,
    is_root,
    make_runner,
    resolve_config,
    secret_source,
    stop_on_signals,
)
from debsetup.config import ConfigError, ProvisionConfig
from debsetup.errors import (
    InvalidPlanError,
    ProbeError,
    format_error,
    format_suggestion,
)
from debsetup.probe import HostFacts, StateProbe
from debsetup.provisioner import (
    FailurePolicy,
    Orchestrator,
    Outcome,
    RunReport,
    SkipReason,
    StepResult,
    render_report,
)
from debsetup.provisioner.report import OUTCOME_ICONS
from debsetup.steps import build_debian_plan

_logging = logging.getLogger(__name__)

SECURITY_SERVICES = ("ssh", "fail2ban", "unattended-upgrades")


def _echo_progress(result: StepResult) -> None:
    icon = OUTCOME_ICONS[result.outcome]
    if result.outcome == Outcome.SKIPPED and result.reason == SkipReason.DRY_RUN:
        click.echo(f"{icon} {result.step_name}: {result.detail}")
    elif result.outcome == Outcome.SKIPPED and result.reason:
        click.echo(f"{icon} {result.step_name}: {result.reason.value}")
    else:
        click.echo(f"{icon} {result.step_name}: {result.outcome.value}")


def _confirm(config: ProvisionConfig, yes: bool) -> None:
    if yes:
        return
    if not sys.stdin.isatty():
        fail(
            format_suggestion(
                "confirmation required but stdin is not a terminal",
                "pass --yes to run unattended",
            )
        )
    click.echo(
        f"This will provision this host (timezone {config.timezone}, "
        f"SSH port {config.ssh_port}, policy {config.failure_policy.value})."
    )
    if not click.confirm("Proceed?", default=False):
        fail("Aborted by user.")


def write_report_json(report: RunReport, path: Path) -> None:
    try:
        path.write_text(json.dumps(report.to_dict(), indent=2) + "\n", encoding="utf-8")
    except OSError as e:
        click.echo(format_error(f"cannot write report to {path}: {e}"), err=True)
        return
    click.echo(f"Report written to {path}")


def render_summary(facts: HostFacts, config: ProvisionConfig) -> str:
    def known(value):
        return "unknown" if value is None else value

    security = "unknown"
    if facts.services is not None:
        security = ", ".join(
            f"{name} ({'active' if name in facts.services else 'inactive'})"
            for name in SECURITY_SERVICES
        )

    lines = [
        "System Information",
        f"  OS:        {known(facts.os_name)}",
        f"  Hostname:  {known(facts.hostname)}",
        f"  Address:   {facts.addresses[0] if facts.addresses else 'unknown'}",
        f"  Timezone:  {known(facts.timezone)}",
        f"  SSH port:  {config.ssh_port}",
        f"  Web ports: {', '.join(str(p) for p in config.web_ports) or 'none'}",
        f"  Services:  {security}",
    ]
    if config.admin_user:
        lines.append(f"  Admin:     {config.admin_user}")
    return "\n".join(lines)


@click.command()
@config_options
@click.option("--dry-run", is_flag=True, help="Report what would change without changing anything")
@click.option(
    "--on-failure",
    type=click.Choice([p.value for p in FailurePolicy]),
    default=None,
    help="Stop at the first failure or continue independent steps (default: fail-fast)",
)
@click.option("--yes", "-y", is_flag=True, help="Skip the confirmation prompt")
@click.option(
    "--report-json",
    type=click.Path(dir_okay=False, writable=True, path_type=Path),
    default=None,
    help="Write the run report as JSON to this path",
)
@click.option(
    "--check-connectivity/--no-check-connectivity",
    default=True,
    help="Check internet connectivity after the run",
)
@click.pass_context
def run(
    ctx,
    config_path: Path | None,
    timezone: str | None,
    ssh_port: int | None,
    admin_user: str | None,
    dry_run: bool,
    on_failure: str | None,
    yes: bool,
    report_json: Path | None,
    check_connectivity: bool,
):
    """Provision this host; safe to re-run."""
    setup_logging(ctx.obj.get("debug", False))

    try:
        config = resolve_config(
            config_path,
            timezone=timezone,
            ssh_port=ssh_port,
            admin_user=admin_user,
            failure_policy=FailurePolicy(on_failure) if on_failure else None,
        )
    except ConfigError as e:
        fail(format_error(str(e)))

    if not dry_run and not is_root():
        fail(format_suggestion("must be run as root", "use sudo, or --dry-run to preview"))

    stop_event = threading.Event()
    runner = make_runner(dry_run)
    probe = StateProbe(runner)
    try:
        registry = build_debian_plan(
            config,
            runner,
            probe,
            secret_source=None if dry_run else secret_source(config, stop_event),
        )
    except InvalidPlanError as e:
        fail(format_error(f"invalid plan: {e}"))

    if not dry_run:
        _confirm(config, yes)

    if dry_run:
        click.echo("[DRY-RUN] No changes will be made.")

    with stop_on_signals(stop_event):
        orchestrator = Orchestrator(
            registry,
            policy=config.failure_policy,
            dry_run=dry_run,
            stop_event=stop_event,
            on_result=_echo_progress,
        )
        report = orchestrator.run()

    click.echo("")
    click.echo(render_report(report))

    if report_json:
        write_report_json(report, report_json)

    if not dry_run:
        click.echo("")
        click.echo(render_summary(probe.gather_facts(), config))
        if check_connectivity:
            try:
                reachable = probe.internet_reachable()
            except ProbeError as e:
                _logging.debug(f"Connectivity check failed: {e}")
                reachable = False
            if reachable:
                click.echo("✅ Internet connectivity verified")
            else:
                click.secho("⚠️  No internet connectivity detected", fg="yellow", err=True)

    sys.exit(EXIT_SUCCESS if report.ok else EXIT_FAILED)


__all__ = ["run", "render_summary", "write_report_json"]
