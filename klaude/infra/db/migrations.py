"""MongoDB index creation."""

from __future__ import annotations

import logging

import pymongo

logger = logging.getLogger(__name__)


async def run_migrations(db) -> None:
    """Create indexes on startup."""
    logger.info("Running MongoDB migrations...")

    sessions = db["sessions"]
    await sessions.create_index(
        [("project_hash", pymongo.ASCENDING), ("created_at", pymongo.DESCENDING)]
    )
    await sessions.create_index([("parent_session_id", pymongo.ASCENDING)])
    await sessions.create_index(
        [("instance_id", pymongo.ASCENDING), ("status", pymongo.ASCENDING)]
    )
    await sessions.create_index([("claude_session_id", pymongo.ASCENDING)], sparse=True)

    runtime_processes = db["runtime_processes"]
    await runtime_processes.create_index(
        [("session_id", pymongo.ASCENDING), ("is_current", pymongo.ASCENDING)]
    )

    instances = db["instances"]
    await instances.create_index([("instance_id", pymongo.ASCENDING)], unique=True)
    await instances.create_index(
        [("project_hash", pymongo.ASCENDING), ("started_at", pymongo.DESCENDING)]
    )

    events = db["events"]
    await events.create_index(
        [("session_id", pymongo.ASCENDING), ("created_at", pymongo.DESCENDING)]
    )
    await events.create_index(
        [("project_hash", pymongo.ASCENDING), ("kind", pymongo.ASCENDING)]
    )

    logger.info("MongoDB migrations complete")
