"""Session repository - MongoDB CRUD for sessions."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone

from pymongo import ReturnDocument

from klaude.models.session import Session, SessionStatus

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = [s.value for s in SessionStatus if s.is_terminal]


class SessionRepo:
    """CRUD operations for sessions in MongoDB."""

    COLLECTION = "sessions"

    def __init__(self, db) -> None:
        self._col = db[self.COLLECTION]

    async def insert(self, session: Session) -> Session:
        """Insert a new session (ids are assigned by the caller)."""
        await self._col.insert_one(session.to_doc())
        return session

    async def find_by_id(self, session_id: str) -> Session | None:
        doc = await self._col.find_one({"_id": session_id})
        return Session.from_doc(doc) if doc else None

    async def find_by_prefix(self, prefix: str, limit: int = 5) -> list[Session]:
        """Find sessions whose id starts with ``prefix`` (abbreviated ids)."""
        cursor = self._col.find({"_id": {"$regex": f"^{re.escape(prefix)}"}}).limit(limit)
        return [Session.from_doc(doc) async for doc in cursor]

    async def list_by_project(self, project_hash: str, limit: int = 50) -> list[Session]:
        """List sessions for a project, newest first."""
        cursor = (
            self._col.find({"project_hash": project_hash})
            .sort("created_at", -1)
            .limit(limit)
        )
        return [Session.from_doc(doc) async for doc in cursor]

    async def list_children(self, parent_session_id: str) -> list[Session]:
        cursor = self._col.find({"parent_session_id": parent_session_id}).sort("created_at", 1)
        return [Session.from_doc(doc) async for doc in cursor]

    async def list_active_for_instance(self, instance_id: str) -> list[Session]:
        """Non-terminal sessions owned by an instance."""
        cursor = self._col.find(
            {"instance_id": instance_id, "status": {"$nin": TERMINAL_STATUSES}}
        ).sort("created_at", 1)
        return [Session.from_doc(doc) async for doc in cursor]

    async def list_active_for_project(self, project_hash: str) -> list[Session]:
        cursor = self._col.find(
            {"project_hash": project_hash, "status": {"$nin": TERMINAL_STATUSES}}
        ).sort("created_at", 1)
        return [Session.from_doc(doc) async for doc in cursor]

    async def find_many(self, session_ids: list[str]) -> dict[str, Session]:
        cursor = self._col.find({"_id": {"$in": list(session_ids)}})
        return {str(doc["_id"]): Session.from_doc(doc) async for doc in cursor}

    async def update_status(
        self,
        session_id: str,
        status: SessionStatus,
        result: str | None = None,
    ) -> Session | None:
        """Move a non-terminal session to ``status``.

        Returns None when the session is missing or already terminal; the
        filter makes the terminal check and the write a single atomic step.
        """
        now = datetime.now(timezone.utc)
        updates: dict = {"status": status.value, "updated_at": now}
        if status.is_terminal:
            updates["completed_at"] = now
        if result is not None:
            updates["result"] = result
        doc = await self._col.find_one_and_update(
            {"_id": session_id, "status": {"$nin": TERMINAL_STATUSES}},
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
        )
        return Session.from_doc(doc) if doc else None

    async def update_fields(self, session_id: str, fields: dict) -> Session | None:
        """Set arbitrary non-status fields (metadata, claude_session_id, ...)."""
        updates = dict(fields)
        updates["updated_at"] = datetime.now(timezone.utc)
        doc = await self._col.find_one_and_update(
            {"_id": session_id},
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
        )
        return Session.from_doc(doc) if doc else None

    async def merge_metadata(self, session_id: str, metadata: dict) -> Session | None:
        return await self.update_fields(
            session_id, {f"metadata.{key}": value for key, value in metadata.items()}
        )

    async def set_claude_session_id(
        self, session_id: str, claude_session_id: str, transcript_path: str | None = None
    ) -> Session | None:
        fields: dict = {"claude_session_id": claude_session_id}
        if transcript_path:
            fields["last_transcript_path"] = transcript_path
        return await self.update_fields(session_id, fields)

    async def calculate_depth(self, session_id: str) -> int:
        """Number of ancestors above ``session_id`` (a root session has depth 0)."""
        depth = 0
        seen = {session_id}
        current = await self.find_by_id(session_id)
        while current and current.parent_session_id:
            if current.parent_session_id in seen:
                logger.warning("Parent cycle at session %s", current.id)
                break
            seen.add(current.parent_session_id)
            depth += 1
            current = await self.find_by_id(current.parent_session_id)
        return depth
