"""Agent supervision handles and runtime backend models."""

from __future__ import annotations

import asyncio
import shlex
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from klaude.models.session import AgentType, SessionStatus


class AgentStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    INTERRUPTED = "interrupted"

    @property
    def is_terminal(self) -> bool:
        return self in (AgentStatus.DONE, AgentStatus.FAILED, AgentStatus.INTERRUPTED)

    @classmethod
    def from_session_status(cls, status: SessionStatus) -> AgentStatus:
        if status in (SessionStatus.CREATED,):
            return cls.IDLE
        if status in (SessionStatus.ACTIVE, SessionStatus.RUNNING):
            return cls.RUNNING
        return cls(status.normalized.value)


class CancellationToken:
    """Cooperative cancellation signal observed by an execution loop."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.signal: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, signal: str = "SIGINT") -> None:
        if not self._event.is_set():
            self.signal = signal
            self._event.set()

    async def wait(self) -> str | None:
        await self._event.wait()
        return self.signal


@dataclass
class Agent:
    """In-memory supervision handle for one session's execution."""

    session_id: str
    agent_type: AgentType
    status: AgentStatus = AgentStatus.IDLE
    token: CancellationToken = field(default_factory=CancellationToken)
    runtime: str = ""
    result: str | None = None
    error: str | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: datetime | None = None


class RuntimeKind(str, Enum):
    CLAUDE = "claude"
    CODEX = "codex"
    CURSOR = "cursor"
    GEMINI = "gemini"

    @property
    def is_gpt(self) -> bool:
        return self in (RuntimeKind.CODEX, RuntimeKind.CURSOR)

    @property
    def supports_live_messages(self) -> bool:
        return self == RuntimeKind.CLAUDE


@dataclass(frozen=True)
class RuntimeSelection:
    """Outcome of runtime selection; ``reason`` is always populated."""

    runtime: RuntimeKind
    reason: str
    fallback_runtime: RuntimeKind | None = None

    def to_dict(self) -> dict:
        return {
            "runtime": self.runtime.value,
            "fallbackRuntime": self.fallback_runtime.value if self.fallback_runtime else None,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class AgentDefinition:
    """An agent type's definition file (``.claude/agents/<type>.md``)."""

    agent_type: str
    name: str = ""
    description: str = ""
    instructions: str = ""
    model: str | None = None
    runtime: RuntimeKind | None = None
    allowed_agents: tuple[str, ...] | None = None
    color: str | None = None
    source_path: str | None = None


@dataclass(frozen=True)
class StartParams:
    """Parameters for launching a runtime backend for one session."""

    prompt: str = ""
    model: str = ""
    workspace_path: str = ""
    instructions: str = ""
    instructions_path: str = ""
    resume_session_id: str = ""
    env_vars: dict[str, str] | None = None


@dataclass(frozen=True)
class CommandSpec:
    """Specification for launching a runtime backend subprocess."""

    program: str
    args: tuple[str, ...] = ()
    env: dict[str, str] | None = None
    cwd: str | None = None

    @property
    def argv(self) -> list[str]:
        return [self.program, *self.args]

    @property
    def full_command(self) -> str:
        """Return the full command string, quoted for display."""
        return " ".join(shlex.quote(p) for p in self.argv)
