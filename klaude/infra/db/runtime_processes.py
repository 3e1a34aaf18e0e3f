"""Runtime process repository - MongoDB CRUD."""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timezone

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument

from klaude.models.runtime_process import RuntimeProcess

logger = logging.getLogger(__name__)


class RuntimeProcessRepo:
    """CRUD operations for runtime processes in MongoDB."""

    COLLECTION = "runtime_processes"

    def __init__(self, db) -> None:
        self._col = db[self.COLLECTION]

    async def create(self, process: RuntimeProcess) -> RuntimeProcess:
        """Insert a process row. A current row first clears older current rows."""
        if process.is_current:
            await self.mark_all_not_current(process.session_id)
        doc = process.to_doc()
        doc.pop("_id", None)
        result = await self._col.insert_one(doc)
        return replace(process, id=str(result.inserted_id))

    async def mark_all_not_current(self, session_id: str) -> int:
        result = await self._col.update_many(
            {"session_id": session_id, "is_current": True},
            {"$set": {"is_current": False}},
        )
        return result.modified_count

    async def list_by_session(self, session_id: str) -> list[RuntimeProcess]:
        cursor = self._col.find({"session_id": session_id}).sort("started_at", 1)
        return [RuntimeProcess.from_doc(doc) async for doc in cursor]

    async def mark_exited(self, process_id: str, exit_code: int | None) -> RuntimeProcess | None:
        try:
            doc = await self._col.find_one_and_update(
                {"_id": ObjectId(process_id)},
                {"$set": {"exited_at": datetime.now(timezone.utc), "exit_code": exit_code}},
                return_document=ReturnDocument.AFTER,
            )
            return RuntimeProcess.from_doc(doc) if doc else None
        except InvalidId:
            logger.debug("Invalid ObjectId: %s", process_id)
            return None
