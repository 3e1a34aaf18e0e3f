"""Shared plumbing for CLI commands: project resolution, instance lookup, errors."""

from __future__ import annotations

import asyncio
import functools
import json
import sys
from typing import Any

import click

from klaude.config import AppConfig, load_config
from klaude.errors import KlaudeError
from klaude.infra.ipc.protocol import InstanceResponse
from klaude.infra.registry import InstanceRegistry
from klaude.models.instance import InstanceRegistryEntry
from klaude.services.instance_selection import resolve_instance_for_project
from klaude.services.project_context import ProjectContext, prepare_project_context


def _run(coro):
    """Run an async function from sync context."""
    return asyncio.run(coro)


def handle_errors(func):
    """Print KlaudeErrors as ``[CODE] message`` and exit 1."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except KlaudeError as e:
            click.echo(f"[{e.code}] {e.message}", err=True)
            sys.exit(1)

    return wrapper


def load_project(cwd: str | None = None) -> tuple[AppConfig, ProjectContext]:
    config = load_config()
    return config, prepare_project_context(cwd, config)


def registry_for(config: AppConfig, project: ProjectContext) -> InstanceRegistry:
    return InstanceRegistry(
        project.run_dir,
        project.project_hash,
        project.project_root,
        lock_timeout=config.wrapper.lock_timeout_ms / 1000,
    )


async def find_instance(
    config: AppConfig, project: ProjectContext, instance_id: str | None
) -> InstanceRegistryEntry:
    return await resolve_instance_for_project(registry_for(config, project), instance_id)


def unwrap(response: InstanceResponse) -> Any:
    """Return the result of a successful response or raise its error."""
    if not response.ok:
        raise KlaudeError(response.error_message, code=response.error_code)
    return response.result


def echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))
