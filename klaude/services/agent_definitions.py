"""Agent definition files: ``.claude/agents/<type>.md``.

A definition starts with ``key: value`` header lines, then a blank line, then
free-form instructions. Project definitions shadow user ones.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

from klaude.models.agent import AgentDefinition, RuntimeKind

logger = logging.getLogger(__name__)


def normalize_agent_type(agent_type: str) -> str:
    return agent_type.strip().lower()


def agent_directories(project_root: str | None, home: Path | None = None) -> list[Path]:
    """Search order: project scope first, then user scope."""
    dirs: list[Path] = []
    if project_root and project_root.strip():
        dirs.append(Path(project_root, ".claude", "agents").resolve())
    dirs.append(((home or Path.home()) / ".claude" / "agents").resolve())
    seen: set[Path] = set()
    unique = []
    for d in dirs:
        if d not in seen:
            seen.add(d)
            unique.append(d)
    return unique


def _clean(value: str | None) -> str | None:
    value = (value or "").strip()
    return value or None


def _parse_allowed(value: str) -> tuple[str, ...]:
    return tuple(normalize_agent_type(p) for p in re.split(r"[\s,]+", value) if p.strip())


def parse_agent_definition(agent_type: str, content: str, source_path: str | None = None) -> AgentDefinition:
    """Parse a definition file's contents."""
    lines = content.splitlines()
    metadata: dict[str, str] = {}
    body_start = 0
    for index, line in enumerate(lines):
        if not line.strip():
            body_start = index + 1
            break
        key, sep, value = line.partition(":")
        key = key.strip().lower()
        if not sep or not key:
            body_start = index
            break
        metadata[key] = value.strip()
        body_start = index + 1

    runtime = None
    if raw_runtime := _clean(metadata.get("runtime")):
        try:
            runtime = RuntimeKind(raw_runtime.lower())
        except ValueError:
            logger.warning("Ignoring unknown runtime %r in %s", raw_runtime, source_path)

    allowed = None
    if "allowedagents" in metadata:
        allowed = _parse_allowed(metadata["allowedagents"])

    return AgentDefinition(
        agent_type=normalize_agent_type(agent_type),
        name=_clean(metadata.get("name")) or "",
        description=_clean(metadata.get("description")) or "",
        instructions=_clean("\n".join(lines[body_start:])) or "",
        model=_clean(metadata.get("model")),
        runtime=runtime,
        allowed_agents=allowed,
        color=_clean(metadata.get("color")),
        source_path=source_path,
    )


def load_agent_definition(
    agent_type: str, project_root: str | None = None, home: Path | None = None
) -> AgentDefinition | None:
    """Find and parse the definition for ``agent_type``; None when there is none."""
    normalized = normalize_agent_type(agent_type)
    for directory in agent_directories(project_root, home):
        if not directory.is_dir():
            continue
        for candidate in sorted(directory.glob("*.md")):
            if normalize_agent_type(candidate.stem) != normalized:
                continue
            logger.debug("Loading agent definition %s", candidate)
            return parse_agent_definition(normalized, candidate.read_text(), str(candidate))
    return None
