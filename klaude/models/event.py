"""Session event domain model (database audit trail)."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone


@dataclass(frozen=True)
class SessionEvent:
    """Event recorded against a project, optionally scoped to one session."""

    kind: str
    project_hash: str
    session_id: str | None = None
    payload: dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: str | None = None

    def to_doc(self) -> dict:
        doc: dict = {
            "kind": self.kind,
            "project_hash": self.project_hash,
            "session_id": self.session_id,
            "payload": dict(self.payload),
            "created_at": self.created_at,
        }
        if self.id:
            doc["_id"] = self.id
        return doc

    @classmethod
    def from_doc(cls, doc: dict) -> SessionEvent:
        return cls(
            id=str(doc["_id"]),
            kind=doc["kind"],
            project_hash=doc.get("project_hash", ""),
            session_id=doc.get("session_id"),
            payload=doc.get("payload", {}),
            created_at=doc.get("created_at", datetime.now(timezone.utc)),
        )
