"""AppContext: wires DB, config, and repositories together."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from klaude.config import AppConfig, load_config
from klaude.infra.db.client import MongoClient

if TYPE_CHECKING:
    from pathlib import Path

    from klaude.infra.db.events import EventRepo
    from klaude.infra.db.instances import InstanceRepo
    from klaude.infra.db.runtime_processes import RuntimeProcessRepo
    from klaude.infra.db.sessions import SessionRepo

logger = logging.getLogger(__name__)


class AppContext:
    """Central wiring for the database-backed repositories.

    Lazily creates repositories on first access. Call `initialize()` to
    set up the database connection and run migrations.
    """

    def __init__(self, config: AppConfig | None = None, config_path: Path | None = None) -> None:
        self.config = config or load_config(config_path)
        self._mongo: MongoClient | None = None
        self._session_repo: SessionRepo | None = None
        self._process_repo: RuntimeProcessRepo | None = None
        self._instance_repo: InstanceRepo | None = None
        self._event_repo: EventRepo | None = None

    async def initialize(self) -> None:
        """Initialize the database connection and run migrations."""
        from klaude.infra.db.migrations import run_migrations

        self._mongo = MongoClient(
            uri=self.config.mongodb.uri,
            database=self.config.mongodb.database,
        )
        await run_migrations(self._mongo.db)
        logger.info("AppContext initialized")

    async def close(self) -> None:
        """Close all connections."""
        if self._mongo:
            self._mongo.close()
        logger.info("AppContext closed")

    async def __aenter__(self) -> AppContext:
        await self.initialize()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    @property
    def mongo(self) -> MongoClient:
        if self._mongo is None:
            raise RuntimeError("AppContext not initialized. Call initialize() first.")
        return self._mongo

    @property
    def session_repo(self) -> SessionRepo:
        if self._session_repo is None:
            from klaude.infra.db.sessions import SessionRepo

            self._session_repo = SessionRepo(self.mongo.db)
        return self._session_repo

    @property
    def process_repo(self) -> RuntimeProcessRepo:
        if self._process_repo is None:
            from klaude.infra.db.runtime_processes import RuntimeProcessRepo

            self._process_repo = RuntimeProcessRepo(self.mongo.db)
        return self._process_repo

    @property
    def instance_repo(self) -> InstanceRepo:
        if self._instance_repo is None:
            from klaude.infra.db.instances import InstanceRepo

            self._instance_repo = InstanceRepo(self.mongo.db)
        return self._instance_repo

    @property
    def event_repo(self) -> EventRepo:
        if self._event_repo is None:
            from klaude.infra.db.events import EventRepo

            self._event_repo = EventRepo(self.mongo.db)
        return self._event_repo
