"""CLI handlers for wrapper instance commands."""

from __future__ import annotations

import click

from klaude.commands._helpers import (
    _run,
    echo_json,
    find_instance,
    handle_errors,
    load_project,
    registry_for,
    unwrap,
)
from klaude.infra.ipc.client import get_instance_status, ping_instance


@click.group("instance")
def instance_group():
    """Manage wrapper instances for the current project."""
    pass


@instance_group.command("start")
@click.option("--cwd", default=None, help="Project directory (default: current directory)")
@handle_errors
def instance_start(cwd: str | None):
    """Run a wrapper instance in the foreground until interrupted."""

    async def _start() -> int:
        from klaude.context import AppContext
        from klaude.services.wrapper_instance import WrapperInstance

        config, project = load_project(cwd)
        ctx = AppContext(config=config)
        try:
            await ctx.initialize()
            instance = WrapperInstance(ctx, project)
            click.echo(f"Instance {instance.instance_id} starting for {project.project_root}")
            click.echo(f"  Socket: {instance.socket_path}")
            click.echo(f"  export KLAUDE_INSTANCE_ID={instance.instance_id}")
            return await instance.run()
        finally:
            await ctx.close()
            click.echo("Instance stopped")

    raise SystemExit(_run(_start()))


@instance_group.command("list")
@click.option("--cwd", default=None, help="Project directory (default: current directory)")
@handle_errors
def instance_list(cwd: str | None):
    """List registered instances (stale entries are reconciled first)."""

    async def _list():
        config, project = load_project(cwd)
        entries = await registry_for(config, project).list()
        if not entries:
            click.echo("No instances registered.")
            return
        for e in entries:
            state = "running" if e.is_running else f"ended {e.ended_at}"
            exit_info = f" exit={e.exit_code}" if e.exit_code is not None else ""
            click.echo(f"  {e.instance_id} pid={e.pid} [{state}{exit_info}] {e.socket_path}")

    _run(_list())


@instance_group.command("history")
@click.option("--cwd", default=None, help="Project directory (default: current directory)")
@click.option("--limit", default=20, help="Number of instances to show")
@handle_errors
def instance_history(cwd: str | None, limit: int):
    """Show past and present instances recorded in the database."""

    async def _history():
        from klaude.context import AppContext

        config, project = load_project(cwd)
        async with AppContext(config=config) as ctx:
            records = await ctx.instance_repo.list_by_project(project.project_hash, limit=limit)
        if not records:
            click.echo("No instance history.")
            return
        for r in records:
            ended = r.ended_at.isoformat() if r.ended_at else "-"
            exit_info = f" exit={r.exit_code}" if r.exit_code is not None else ""
            click.echo(f"  {r.instance_id} pid={r.pid} started={r.started_at.isoformat()} ended={ended}{exit_info}")

    _run(_history())


@instance_group.command("status")
@click.option("--instance", "instance_id", default=None, help="Instance id")
@handle_errors
def instance_status(instance_id: str | None):
    """Show the live status reported by an instance."""

    async def _status():
        config, project = load_project()
        entry = await find_instance(config, project, instance_id)
        result = unwrap(await get_instance_status(entry.socket_path, config.wrapper.ipc_timeout_ms))
        echo_json(result)

    _run(_status())


@instance_group.command("ping")
@click.option("--instance", "instance_id", default=None, help="Instance id")
@handle_errors
def instance_ping(instance_id: str | None):
    """Check that an instance answers on its socket."""

    async def _ping():
        config, project = load_project()
        entry = await find_instance(config, project, instance_id)
        result = unwrap(await ping_instance(entry.socket_path, config.wrapper.ipc_timeout_ms))
        click.echo(f"pong from {entry.instance_id} at {result.get('timestamp')}")

    _run(_ping())
