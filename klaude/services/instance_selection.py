"""Pick which wrapper instance a CLI command talks to."""

from __future__ import annotations

import os

from klaude.errors import AmbiguousInstanceError, InstanceNotFoundError
from klaude.infra.registry import InstanceRegistry
from klaude.models.instance import InstanceRegistryEntry

INSTANCE_ENV_VAR = "KLAUDE_INSTANCE_ID"


async def resolve_instance_for_project(
    registry: InstanceRegistry,
    instance_id: str | None = None,
    allow_ended: bool = False,
    env_instance_id: str | None = None,
) -> InstanceRegistryEntry:
    """Explicit id first, then $KLAUDE_INSTANCE_ID, then the only live instance.

    Several candidates and no way to choose is an error, never a guess.
    """
    instances = await registry.list()
    if not instances:
        raise InstanceNotFoundError(
            "No wrapper instances registered for this project. Start one with `klaude instance start`."
        )

    env_id = env_instance_id if env_instance_id is not None else os.environ.get(INSTANCE_ENV_VAR)
    candidates = [e for e in instances if allow_ended or e.is_running]

    if instance_id:
        for entry in candidates:
            if entry.instance_id == instance_id:
                return entry
        raise InstanceNotFoundError(f"Instance {instance_id} not found or not running")

    if env_id:
        for entry in candidates:
            if entry.instance_id == env_id:
                return entry

    if len(candidates) == 1:
        return candidates[0]
    if not candidates:
        raise InstanceNotFoundError("No running wrapper instance for this project")

    raise AmbiguousInstanceError(
        f"Multiple instances available ({len(candidates)}); specify one with --instance"
    )
