"""Session domain model and its status state machine."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum

from klaude.errors import StateViolationError, ValidationError


def new_session_id() -> str:
    return uuid.uuid4().hex


class SessionKind(str, Enum):
    TUI = "tui"
    SDK = "sdk"
    WORKER = "worker"


class SessionStatus(str, Enum):
    CREATED = "created"
    ACTIVE = "active"
    RUNNING = "running"
    DONE = "done"
    COMPLETED = "completed"
    FAILED = "failed"
    INTERRUPTED = "interrupted"

    @property
    def is_terminal(self) -> bool:
        return self in (
            SessionStatus.DONE,
            SessionStatus.COMPLETED,
            SessionStatus.FAILED,
            SessionStatus.INTERRUPTED,
        )

    @property
    def normalized(self) -> SessionStatus:
        """``completed`` is an alias of ``done`` for state-machine purposes."""
        return SessionStatus.DONE if self == SessionStatus.COMPLETED else self


ALLOWED_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.CREATED: frozenset({
        SessionStatus.RUNNING,
        SessionStatus.FAILED,
        SessionStatus.INTERRUPTED,
    }),
    SessionStatus.ACTIVE: frozenset({
        SessionStatus.RUNNING,
        SessionStatus.DONE,
        SessionStatus.COMPLETED,
        SessionStatus.FAILED,
        SessionStatus.INTERRUPTED,
    }),
    SessionStatus.RUNNING: frozenset({
        SessionStatus.DONE,
        SessionStatus.COMPLETED,
        SessionStatus.FAILED,
        SessionStatus.INTERRUPTED,
    }),
}


def check_transition(current: SessionStatus, target: SessionStatus) -> None:
    """Raise StateViolationError unless ``current -> target`` is allowed."""
    if current.is_terminal:
        raise StateViolationError(
            f"Session is already {current.value}; cannot move to {target.value}"
        )
    if target not in ALLOWED_TRANSITIONS.get(current, frozenset()):
        raise StateViolationError(
            f"Invalid session transition: {current.value} -> {target.value}"
        )


class AgentType(str, Enum):
    GENERAL_PURPOSE = "general-purpose"
    PLANNER = "planner"
    PROGRAMMER = "programmer"
    REVIEWER = "reviewer"
    RESEARCHER = "researcher"
    ORCHESTRATOR = "orchestrator"

    @classmethod
    def parse(cls, value: str) -> AgentType:
        """Validate a raw agent type string against the allow-list."""
        normalized = (value or "").strip().lower()
        for member in cls:
            if member.value == normalized:
                return member
        allowed = ", ".join(m.value for m in cls)
        raise ValidationError(
            f"Unknown agent type: {value!r} (allowed: {allowed})",
            code="E_AGENT_TYPE_INVALID",
        )


@dataclass(frozen=True)
class Session:
    """A unit of agent work. Sessions are never deleted."""

    id: str
    project_hash: str
    kind: SessionKind = SessionKind.SDK
    status: SessionStatus = SessionStatus.CREATED
    agent_type: AgentType | None = None
    parent_session_id: str | None = None
    instance_id: str | None = None
    claude_session_id: str | None = None
    title: str = ""
    prompt: str = ""
    result: str | None = None
    metadata: dict = field(default_factory=dict)
    last_transcript_path: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: datetime | None = None

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("Session must have an id")

    def with_status(self, status: SessionStatus) -> Session:
        """Return a copy moved to ``status``, enforcing the transition table."""
        check_transition(self.status, status)
        now = datetime.now(timezone.utc)
        return replace(
            self,
            status=status,
            updated_at=now,
            completed_at=now if status.is_terminal else self.completed_at,
        )

    def to_doc(self) -> dict:
        return {
            "_id": self.id,
            "project_hash": self.project_hash,
            "kind": self.kind.value,
            "status": self.status.value,
            "agent_type": self.agent_type.value if self.agent_type else None,
            "parent_session_id": self.parent_session_id,
            "instance_id": self.instance_id,
            "claude_session_id": self.claude_session_id,
            "title": self.title,
            "prompt": self.prompt,
            "result": self.result,
            "metadata": dict(self.metadata),
            "last_transcript_path": self.last_transcript_path,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_doc(cls, doc: dict) -> Session:
        agent_type = doc.get("agent_type")
        return cls(
            id=str(doc["_id"]),
            project_hash=doc.get("project_hash", ""),
            kind=SessionKind(doc.get("kind", "sdk")),
            status=SessionStatus(doc.get("status", "created")),
            agent_type=AgentType(agent_type) if agent_type else None,
            parent_session_id=doc.get("parent_session_id"),
            instance_id=doc.get("instance_id"),
            claude_session_id=doc.get("claude_session_id"),
            title=doc.get("title", ""),
            prompt=doc.get("prompt", ""),
            result=doc.get("result"),
            metadata=doc.get("metadata", {}),
            last_transcript_path=doc.get("last_transcript_path"),
            created_at=doc.get("created_at", datetime.now(timezone.utc)),
            updated_at=doc.get("updated_at", datetime.now(timezone.utc)),
            completed_at=doc.get("completed_at"),
        )
