"""Instance history repository - MongoDB CRUD."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from klaude.models.instance import InstanceRecord

logger = logging.getLogger(__name__)


class InstanceRepo:
    """Durable history of wrapper instances, independent of the registry file."""

    COLLECTION = "instances"

    def __init__(self, db) -> None:
        self._col = db[self.COLLECTION]

    async def upsert(self, record: InstanceRecord) -> InstanceRecord:
        await self._col.replace_one(
            {"instance_id": record.instance_id}, record.to_doc(), upsert=True
        )
        return record

    async def mark_ended(self, instance_id: str, exit_code: int | None) -> None:
        await self._col.update_one(
            {"instance_id": instance_id, "ended_at": None},
            {"$set": {"ended_at": datetime.now(timezone.utc), "exit_code": exit_code}},
        )

    async def list_by_project(self, project_hash: str, limit: int = 20) -> list[InstanceRecord]:
        """List instance history for a project, newest first."""
        cursor = (
            self._col.find({"project_hash": project_hash})
            .sort("started_at", -1)
            .limit(limit)
        )
        return [InstanceRecord.from_doc(doc) async for doc in cursor]
