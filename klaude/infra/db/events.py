"""Session event repository - MongoDB CRUD."""

from __future__ import annotations

import logging
from dataclasses import replace

from klaude.models.event import SessionEvent

logger = logging.getLogger(__name__)


class EventRepo:
    """Append-only audit trail of session events."""

    COLLECTION = "events"

    def __init__(self, db) -> None:
        self._col = db[self.COLLECTION]

    async def insert(self, event: SessionEvent) -> SessionEvent:
        doc = event.to_doc()
        doc.pop("_id", None)
        result = await self._col.insert_one(doc)
        return replace(event, id=str(result.inserted_id))

    async def list_by_session(self, session_id: str, limit: int = 50) -> list[SessionEvent]:
        """List events for a session, most recent first."""
        cursor = (
            self._col.find({"session_id": session_id})
            .sort("created_at", -1)
            .limit(limit)
        )
        return [SessionEvent.from_doc(doc) async for doc in cursor]
