"""CLI handlers for session commands: list, show, log."""

from __future__ import annotations

import json

import click

from klaude.commands._helpers import _run, handle_errors, load_project


@click.group("session")
def session_group():
    """Inspect persisted sessions for the current project."""
    pass


@session_group.command("list")
@click.option("--limit", "-n", default=50, type=int, help="Maximum sessions to show")
@handle_errors
def session_list(limit: int):
    """List sessions, newest first."""

    async def _list():
        from klaude.context import AppContext

        config, project = load_project()
        async with AppContext(config=config) as ctx:
            sessions = await ctx.session_repo.list_by_project(project.project_hash, limit=limit)
        if not sessions:
            click.echo("No sessions found.")
            return
        for s in sessions:
            agent = s.agent_type.value if s.agent_type else s.kind.value
            click.echo(f"  {s.id} ({agent}) [{s.status.value}] - {s.title}")

    _run(_list())


@session_group.command("show")
@click.argument("session_id")
@handle_errors
def session_show(session_id: str):
    """Show a session with its children, runtime processes and events."""

    async def _show():
        from klaude.context import AppContext
        from klaude.services.session_waiter import resolve_session_ids

        config, project = load_project()
        async with AppContext(config=config) as ctx:
            [sid] = await resolve_session_ids(ctx.session_repo, project.project_hash, [session_id])
            session = await ctx.session_repo.find_by_id(sid)
            children = await ctx.session_repo.list_children(sid)
            processes = await ctx.process_repo.list_by_session(sid)
            events = await ctx.event_repo.list_by_session(sid, limit=20)

        click.echo(f"Session: {session.id}")
        click.echo(f"  Kind: {session.kind.value}")
        click.echo(f"  Status: {session.status.value}")
        if session.agent_type:
            click.echo(f"  Agent type: {session.agent_type.value}")
        if session.parent_session_id:
            click.echo(f"  Parent: {session.parent_session_id}")
        click.echo(f"  Instance: {session.instance_id}")
        if session.claude_session_id:
            click.echo(f"  Backend session: {session.claude_session_id}")
        if runtime := session.metadata.get("runtimeKind"):
            click.echo(f"  Runtime: {runtime} ({session.metadata.get('runtimeReason', '')})")
        click.echo(f"  Created: {session.created_at}")
        if session.completed_at:
            click.echo(f"  Completed: {session.completed_at}")
        if session.result:
            click.echo(f"  Result: {session.result}")
        click.echo(f"  Log: {project.session_log_path(session.id)}")
        if children:
            click.echo("  Children:")
            for c in children:
                click.echo(f"    {c.id} [{c.status.value}]")
        if processes:
            click.echo("  Processes:")
            for p in processes:
                marker = "*" if p.is_current else " "
                exit_info = f" exit={p.exit_code}" if p.exit_code is not None else ""
                click.echo(f"   {marker} pid={p.pid} {p.kind.value}/{p.runtime}{exit_info}")
        if events:
            click.echo("  Events:")
            for e in events:
                click.echo(f"    {e.created_at} {e.kind}")

    _run(_show())


@session_group.command("log")
@click.argument("session_id")
@click.option("--raw", is_flag=True, help="Print raw NDJSON records")
@handle_errors
def session_log_cmd(session_id: str, raw: bool):
    """Print a session's event log."""
    from klaude.services.session_log import read_session_events

    _, project = load_project()
    path = project.session_log_path(session_id)
    if not path.exists():
        click.echo(f"No log for session {session_id} at {path}", err=True)
        raise SystemExit(1)
    for record in read_session_events(path):
        if raw:
            click.echo(json.dumps(record))
            continue
        payload = record.get("payload") or {}
        text = payload.get("message") or payload.get("text") or payload.get("status") or ""
        if not isinstance(text, str):
            text = json.dumps(text)
        click.echo(f"{record.get('timestamp', '')} {record.get('kind', '')} {text}")
