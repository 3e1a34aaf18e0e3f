"""Click CLI definitions - main entry point."""

from __future__ import annotations

import logging
import sys

import click

from klaude.commands.agent_cmd import agent_group
from klaude.commands.config_cmd import config_group
from klaude.commands.instance_cmd import instance_group
from klaude.commands.session_cmd import session_group
from klaude.config import env_flag


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx, debug: bool) -> None:
    """klaude - multi-agent coordination for Claude-style coding sessions."""
    debug = debug or env_flag("KLAUDE_DEBUG")
    level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


cli.add_command(instance_group, "instance")
cli.add_command(agent_group, "agent")
cli.add_command(session_group, "session")
cli.add_command(config_group, "config")


if __name__ == "__main__":
    cli()
