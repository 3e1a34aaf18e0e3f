"""Runtime process domain model."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class ProcessKind(str, Enum):
    WRAPPER = "wrapper"
    BACKEND = "backend"
    SDK = "sdk"


@dataclass(frozen=True)
class RuntimeProcess:
    """An OS process bound to a session for one execution attempt.

    At most one row per session has ``is_current`` set; the repository clears
    the flag on older rows when a new current row is created.
    """

    session_id: str
    pid: int
    kind: ProcessKind
    runtime: str = ""
    is_current: bool = True
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    exited_at: datetime | None = None
    exit_code: int | None = None
    id: str | None = None

    def to_doc(self) -> dict:
        doc: dict = {
            "session_id": self.session_id,
            "pid": self.pid,
            "kind": self.kind.value,
            "runtime": self.runtime,
            "is_current": self.is_current,
            "started_at": self.started_at,
            "exited_at": self.exited_at,
            "exit_code": self.exit_code,
        }
        if self.id:
            doc["_id"] = self.id
        return doc

    @classmethod
    def from_doc(cls, doc: dict) -> RuntimeProcess:
        return cls(
            id=str(doc["_id"]),
            session_id=doc["session_id"],
            pid=doc.get("pid", 0),
            kind=ProcessKind(doc.get("kind", "backend")),
            runtime=doc.get("runtime", ""),
            is_current=doc.get("is_current", False),
            started_at=doc.get("started_at", datetime.now(timezone.utc)),
            exited_at=doc.get("exited_at"),
            exit_code=doc.get("exit_code"),
        )
