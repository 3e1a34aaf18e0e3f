"""A running wrapper instance: registry entry, root session and socket server.

``WrapperInstance.run`` is the body of ``klaude instance start``. It owns one
root TUI session, serves the instance socket until SIGINT/SIGTERM, then
stops every agent and marks its registry entry ended.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
import uuid
from typing import TYPE_CHECKING

from klaude.infra.clock import Clock, SystemClock
from klaude.infra.ipc.handlers import InstanceState, RequestRouter
from klaude.infra.ipc.server import InstanceServer
from klaude.infra.registry import InstanceRegistry
from klaude.models.instance import InstanceRecord
from klaude.models.session import Session, SessionKind, SessionStatus, new_session_id
from klaude.services import session_log
from klaude.services.agent_manager import AgentManager
from klaude.services.runtime_runner import RuntimeRunner

if TYPE_CHECKING:
    from klaude.context import AppContext
    from klaude.services.project_context import ProjectContext

logger = logging.getLogger(__name__)


def new_instance_id() -> str:
    return uuid.uuid4().hex


def current_tty() -> str | None:
    try:
        return os.ttyname(sys.stdin.fileno())
    except (OSError, ValueError):
        return None


class WrapperInstance:
    """Serves lifecycle requests for one project until told to stop."""

    def __init__(
        self,
        ctx: AppContext,
        project: ProjectContext,
        instance_id: str | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._ctx = ctx
        self._project = project
        self._clock = clock or SystemClock()
        self.instance_id = instance_id or new_instance_id()
        self.socket_path = project.socket_path(self.instance_id)
        self._stop_event = asyncio.Event()
        wrapper = ctx.config.wrapper
        self.registry = InstanceRegistry(
            project.run_dir,
            project.project_hash,
            project.project_root,
            clock=self._clock,
            lock_timeout=wrapper.lock_timeout_ms / 1000,
        )
        self.manager = AgentManager(
            ctx.session_repo,
            project,
            self.instance_id,
            clock=self._clock,
            poll_interval=ctx.config.wait.poll_interval_ms / 1000,
            default_wait_timeout=ctx.config.wait.agent_timeout_ms / 1000,
            retention=wrapper.agent_retention_seconds,
        )
        self.runner = RuntimeRunner(
            self.manager, ctx.session_repo, ctx.process_repo, project, ctx.config
        )
        self.state: InstanceState | None = None
        self.server: InstanceServer | None = None

    def request_stop(self) -> None:
        self._stop_event.set()

    async def _create_root_session(self) -> Session:
        session = Session(
            id=new_session_id(),
            project_hash=self._project.project_hash,
            kind=SessionKind.TUI,
            status=SessionStatus.ACTIVE,
            instance_id=self.instance_id,
            title="wrapper root",
        )
        await self._ctx.session_repo.insert(session)
        session_log.append_session_event(
            self._project.session_log_path(session.id),
            session_log.SESSION_CREATED,
            {"sessionId": session.id, "instanceId": self.instance_id, "kind": session.kind.value},
            self._clock.utcnow(),
        )
        return session

    async def start(self) -> None:
        """Register, create the root session and begin serving requests."""
        pid = os.getpid()
        tty = current_tty()
        await self.registry.register(self.instance_id, pid, tty, self.socket_path)
        await self._ctx.instance_repo.upsert(
            InstanceRecord(
                instance_id=self.instance_id,
                project_hash=self._project.project_hash,
                pid=pid,
                tty=tty,
                metadata={"socketPath": self.socket_path, "projectRoot": self._project.project_root},
            )
        )

        root = await self._create_root_session()
        self.state = InstanceState(
            instance_id=self.instance_id,
            root_session_id=root.id,
            current_session_id=root.id,
        )
        live = {e.instance_id for e in await self.registry.list() if e.is_running}
        await self.manager.reconcile_orphaned_sessions(live)
        await self.manager.load_active_agents()

        router = RequestRouter(
            self.state,
            self._project,
            self._ctx.config,
            self.manager,
            self.runner,
            self._ctx.session_repo,
            self._ctx.event_repo,
            clock=self._clock,
        )
        self.server = InstanceServer(self.socket_path, router)
        await self.server.start()
        logger.info(
            "Instance %s serving project %s on %s",
            self.instance_id, self._project.project_root, self.socket_path,
        )

    async def stop(self, exit_code: int = 0) -> None:
        """Stop agents and the server, then record the instance as ended."""
        await self.runner.shutdown(self._ctx.config.wrapper.interrupt_grace_seconds)
        if self.server is not None:
            await self.server.stop()
        if self.state is not None:
            root = await self._ctx.session_repo.find_by_id(self.state.root_session_id)
            if root is not None and not root.status.is_terminal:
                status = SessionStatus.DONE if exit_code == 0 else SessionStatus.FAILED
                await self._ctx.session_repo.update_status(root.id, status)
        await self.registry.mark_ended(self.instance_id, exit_code)
        await self._ctx.instance_repo.mark_ended(self.instance_id, exit_code)
        logger.info("Instance %s stopped (exit_code=%d)", self.instance_id, exit_code)

    async def run(self) -> int:
        """Serve until SIGINT/SIGTERM. Returns the exit code."""
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, self.request_stop)

        exit_code = 0
        try:
            await self.start()
            await self._stop_event.wait()
        except Exception:
            logger.exception("Instance %s failed", self.instance_id)
            exit_code = 1
            raise
        finally:
            for signum in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(signum)
            await self.stop(exit_code)
        return exit_code
