"""Facts command implementation."""

import json
import logging

import click

from debsetup import setup_logging
from debsetup.commands.utils import make_runner
from debsetup.probe import HostFacts, StateProbe

_logging = logging.getLogger(__name__)


def facts_to_dict(facts: HostFacts) -> dict:
    firewall = None
    if facts.firewall is not None:
        firewall = {
            "active": facts.firewall.active,
            "rules": [
                {"to": r.to, "action": r.action, "from": r.source, "comment": r.comment}
                for r in facts.firewall.rules
            ],
        }

    def listing(values):
        return None if values is None else sorted(values)

    return {
        "os": facts.os_name,
        "hostname": facts.hostname,
        "addresses": listing(facts.addresses),
        "timezone": facts.timezone,
        "users": listing(facts.users),
        "packages": listing(facts.packages),
        "services": listing(facts.services),
        "firewall": firewall,
    }


def render_facts(facts: HostFacts) -> str:
    def show(value) -> str:
        return "unknown" if value is None else str(value)

    def count(values) -> str:
        return "unknown" if values is None else str(len(values))

    lines = [
        "Host Facts",
        f"  OS:        {show(facts.os_name)}",
        f"  Hostname:  {show(facts.hostname)}",
        f"  Addresses: {show(None if facts.addresses is None else ' '.join(facts.addresses) or '-')}",
        f"  Timezone:  {show(facts.timezone)}",
        f"  Users:     {count(facts.users)}",
        f"  Packages:  {count(facts.packages)} installed",
        f"  Services:  {count(facts.services)} active",
    ]
    if facts.firewall is None:
        lines.append("  Firewall:  unknown")
    else:
        state = "active" if facts.firewall.active else "inactive"
        lines.append(f"  Firewall:  {state}, {len(facts.firewall.rules)} rule(s)")
        for rule in facts.firewall.rules:
            comment = f"  # {rule.comment}" if rule.comment else ""
            lines.append(f"    {rule.to} {rule.action} {rule.source}{comment}")
    return "\n".join(lines)


@click.command()
@click.option("--json", "as_json", is_flag=True, help="Print facts as JSON")
@click.pass_context
def facts(ctx, as_json: bool):
    """Show live facts about this host."""
    setup_logging(ctx.obj.get("debug", False))

    host_facts = StateProbe(make_runner()).gather_facts()
    if as_json:
        click.echo(json.dumps(facts_to_dict(host_facts), indent=2))
    else:
        click.echo(render_facts(host_facts))
