"""CLI handlers for agent commands: start, message, interrupt, checkout, wait."""

from __future__ import annotations

import sys

import click

from klaude.commands._helpers import (
    _run,
    echo_json,
    find_instance,
    handle_errors,
    load_project,
    unwrap,
)
from klaude.infra.ipc.client import (
    interrupt_agent,
    request_checkout,
    send_agent_message,
    start_agent_session,
)
from klaude.services.session_waiter import WaitMode, WaitOutcome


@click.group("agent")
def agent_group():
    """Start and steer agents through the running instance."""
    pass


@agent_group.command("start")
@click.argument("agent_type")
@click.argument("prompt")
@click.option("--count", "-n", default=1, type=int, help="Number of independent agents")
@click.option("--parent", default=None, help="Parent session id (default: instance root)")
@click.option("--model", "-m", default=None, help="Model override")
@click.option("--instance", "instance_id", default=None, help="Instance id")
@click.option("--timeout", "timeout_ms", default=None, type=int, help="Request timeout in ms")
@handle_errors
def agent_start(agent_type, prompt, count, parent, model, instance_id, timeout_ms):
    """Start AGENT_TYPE working on PROMPT."""

    async def _start():
        config, project = load_project()
        entry = await find_instance(config, project, instance_id)
        payload = {"agentType": agent_type, "prompt": prompt, "agentCount": count}
        if parent:
            payload["parentSessionId"] = parent
        if model:
            payload["model"] = model
        result = unwrap(await start_agent_session(
            entry.socket_path, payload, timeout_ms or config.wrapper.ipc_timeout_ms
        ))
        for session_id in result["sessionIds"]:
            click.echo(f"Started {result['agentType']} agent: {session_id}")
        click.echo(f"  Runtime: {result['runtimeKind']} ({result['runtimeReason']})")
        click.echo(f"  Log: {result['logPath']}")
        click.echo(f"  Wait: klaude agent wait {' '.join(result['sessionIds'])}")

    _run(_start())


@agent_group.command("message")
@click.argument("session_id")
@click.argument("prompt")
@click.option("--instance", "instance_id", default=None, help="Instance id")
@handle_errors
def agent_message(session_id, prompt, instance_id):
    """Send PROMPT to a running agent, or continue a finished one."""

    async def _message():
        config, project = load_project()
        entry = await find_instance(config, project, instance_id)
        result = unwrap(await send_agent_message(
            entry.socket_path,
            {"sessionId": session_id, "prompt": prompt},
            config.wrapper.ipc_timeout_ms,
        ))
        click.echo(f"Message {result['status']} for {result['sessionId']}")

    _run(_message())


@agent_group.command("interrupt")
@click.argument("session_id")
@click.option("--signal", "sig", default="SIGINT", help="Signal to forward to the runtime")
@click.option("--instance", "instance_id", default=None, help="Instance id")
@handle_errors
def agent_interrupt(session_id, sig, instance_id):
    """Interrupt a running agent."""

    async def _interrupt():
        config, project = load_project()
        entry = await find_instance(config, project, instance_id)
        result = unwrap(await interrupt_agent(
            entry.socket_path,
            {"sessionId": session_id, "signal": sig},
            config.wrapper.ipc_timeout_ms,
        ))
        click.echo(f"Interrupted {result['sessionId']} ({result['signal']})")

    _run(_interrupt())


@agent_group.command("checkout")
@click.argument("session_id", required=False)
@click.option("--wait", "wait_seconds", default=5.0, type=float, help="Seconds to wait for a resumable id")
@click.option("--instance", "instance_id", default=None, help="Instance id")
@handle_errors
def agent_checkout(session_id, wait_seconds, instance_id):
    """Hand the terminal over to SESSION_ID (default: parent of the current session)."""

    async def _checkout():
        config, project = load_project()
        entry = await find_instance(config, project, instance_id)
        payload = {"waitSeconds": wait_seconds}
        if session_id:
            payload["sessionId"] = session_id
        timeout_ms = config.wrapper.ipc_timeout_ms + int(wait_seconds * 1000)
        result = unwrap(await request_checkout(entry.socket_path, payload, timeout_ms))
        click.echo(f"Checked out {result['sessionId']}")
        click.echo(f"  Resume: {result['resumeCommand']}")

    _run(_checkout())


def _print_outcome(outcome: WaitOutcome, session_ids: list[str]) -> None:
    for summary in outcome.summaries:
        click.echo(f"{summary.session_id} [{summary.status.value}]")
        info = summary.info
        if info.files_edited:
            click.echo(f"  Edited: {', '.join(info.files_edited)}")
        if info.files_created:
            click.echo(f"  Created: {', '.join(info.files_created)}")
        if info.error:
            click.echo(f"  Error: {info.error}")
        if info.final_text:
            click.echo(f"  Result: {info.final_text}")
    if outcome.timed_out:
        pending = [s.session_id for s in outcome.summaries if not s.is_terminal]
        click.echo(
            f"\nStill running: {', '.join(pending)}. Act on this progress, or else run "
            f"klaude agent wait {' '.join(session_ids)} again."
        )


@agent_group.command("wait")
@click.argument("session_ids", nargs=-1, required=True)
@click.option("--any", "wait_any", is_flag=True, help="Return when the first session finishes")
@click.option("--timeout", default=None, type=float, help="Seconds before giving up (exit 124)")
@click.option("--interval", default=None, type=float, help="Poll interval in seconds")
@click.option("--json", "as_json", is_flag=True, help="Print summaries as JSON")
@handle_errors
def agent_wait(session_ids, wait_any, timeout, interval, as_json):
    """Block until the given sessions finish."""

    async def _wait() -> WaitOutcome:
        from klaude.context import AppContext
        from klaude.services.session_waiter import resolve_session_ids, wait_for_sessions

        config, project = load_project()
        async with AppContext(config=config) as ctx:
            ids = await resolve_session_ids(ctx.session_repo, project.project_hash, list(session_ids))
            return await wait_for_sessions(
                ctx.session_repo,
                project,
                ids,
                mode=WaitMode.ANY if wait_any else WaitMode.ALL,
                timeout=timeout if timeout is not None else config.wait.timeout_seconds,
                poll_interval=interval if interval is not None else config.wait.poll_interval_ms / 1000,
            )

    outcome = _run(_wait())
    if as_json:
        echo_json({
            "mode": outcome.mode.value,
            "timedOut": outcome.timed_out,
            "sessions": [
                {"sessionId": s.session_id, "status": s.status.value, **s.info.to_dict()}
                for s in outcome.summaries
            ],
        })
    else:
        _print_outcome(outcome, list(session_ids))
    sys.exit(outcome.exit_code)
