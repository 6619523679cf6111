"""CLI command definitions for debsetup."""

import click

from debsetup import __version__
from debsetup.commands.facts import facts
from debsetup.commands.plan import plan
from debsetup.commands.run import run


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug output for troubleshooting")
@click.version_option(__version__, prog_name="debsetup")
@click.pass_context
def cli(ctx, debug):
    """Provision a fresh Debian server, idempotently."""
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


# Register all commands
cli.add_command(run)
cli.add_command(plan)
cli.add_command(facts)

__all__ = ["cli"]


if __name__ == "__main__":
    cli()
