"""Plan command implementation."""

import logging
from pathlib import Path

import click

from debsetup import setup_logging
from debsetup.commands.utils import config_options, fail, make_runner, resolve_config
from debsetup.config import ConfigError
from debsetup.errors import InvalidPlanError, format_error
from debsetup.provisioner import StepRegistry
from debsetup.steps import build_debian_plan

_logging = logging.getLogger(__name__)


def render_plan(registry: StepRegistry) -> str:
    """Render the ordered steps with their dependencies and intended actions."""
    lines = ["Provisioning Plan", ""]
    for i, step in enumerate(registry.ordered(), 1):
        lines.append(f"  {i:>2}. {step.name}")
        if step.description:
            lines.append(f"      {step.description}")
        if step.depends_on:
            lines.append(f"      after: {', '.join(step.depends_on)}")
    lines.append("")
    lines.append(f"{len(registry)} step(s)")
    return "\n".join(lines)


@click.command()
@config_options
@click.pass_context
def plan(
    ctx,
    config_path: Path | None,
    timezone: str | None,
    ssh_port: int | None,
    admin_user: str | None,
):
    """Show the ordered provisioning plan without touching the host."""
    setup_logging(ctx.obj.get("debug", False))

    try:
        config = resolve_config(
            config_path, timezone=timezone, ssh_port=ssh_port, admin_user=admin_user
        )
        # Building the plan queries nothing; the runner is never called.
        registry = build_debian_plan(config, make_runner(dry_run=True))
    except ConfigError as e:
        fail(format_error(str(e)))
    except InvalidPlanError as e:
        fail(format_error(f"invalid plan: {e}"))

    click.echo(render_plan(registry))
