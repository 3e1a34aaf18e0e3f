"""In-memory supervisor for the agent sessions owned by one wrapper instance.

The persisted session rows are the source of truth; the agent map is an index
over the non-terminal ones. At startup ``reconcile_orphaned_sessions``
interrupts sessions left behind by instances that died, and
``load_active_agents`` rebuilds the index for the instance's own id.
Finished agents are pruned after ``retention`` seconds.
Every mutation takes ``self._lock`` and writes the row before touching the
in-memory handle, so the two cannot drift apart.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from klaude.errors import AgentNotFoundError, StateViolationError, ValidationError, WaitTimeoutError
from klaude.infra.clock import Clock, SystemClock
from klaude.models.agent import Agent, AgentStatus
from klaude.models.session import (
    AgentType,
    Session,
    SessionKind,
    SessionStatus,
    new_session_id,
)
from klaude.services import session_log

if TYPE_CHECKING:
    from klaude.infra.db.sessions import SessionRepo
    from klaude.services.project_context import ProjectContext

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 0.5
DEFAULT_WAIT_TIMEOUT = 600.0
DEFAULT_RETENTION = 300.0


class AgentManager:
    """Tracks agent handles, their cancellation tokens and pending waits."""

    def __init__(
        self,
        session_repo: SessionRepo,
        project: ProjectContext,
        instance_id: str,
        clock: Clock | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        default_wait_timeout: float = DEFAULT_WAIT_TIMEOUT,
        retention: float = DEFAULT_RETENTION,
    ) -> None:
        self._repo = session_repo
        self._project = project
        self._instance_id = instance_id
        self._clock = clock or SystemClock()
        self._poll_interval = poll_interval
        self._default_wait_timeout = default_wait_timeout
        self._retention = retention
        self._agents: dict[str, Agent] = {}
        self._waiters: dict[str, asyncio.Future] = {}
        self._finished_at: dict[str, float] = {}
        self._lock = asyncio.Lock()

    def _log(self, session_id: str, kind: str, payload: dict) -> None:
        session_log.append_session_event(
            self._project.session_log_path(session_id), kind, payload, self._clock.utcnow()
        )

    def _require(self, session_id: str) -> Agent:
        agent = self._agents.get(session_id)
        if agent is None:
            raise AgentNotFoundError(session_id)
        return agent

    def _mark_finished(self, session_id: str) -> None:
        self._finished_at[session_id] = self._clock.monotonic()

    def _prune_finished(self) -> int:
        """Drop finished agents older than the retention window. Caller holds the lock."""
        cutoff = self._clock.monotonic() - self._retention
        expired = [
            sid for sid, finished in self._finished_at.items()
            if finished <= cutoff and sid not in self._waiters
        ]
        for sid in expired:
            self._agents.pop(sid, None)
            del self._finished_at[sid]
        if expired:
            logger.debug("Pruned %d finished agent(s)", len(expired))
        return len(expired)

    # --- Startup ---

    async def reconcile_orphaned_sessions(self, live_instance_ids: set[str]) -> int:
        """Mark unfinished sessions of instances that are no longer running as interrupted.

        Their backends died with the owning instance, so nothing will ever
        complete them. Sessions of this instance and of live peers are left alone.
        """
        sessions = await self._repo.list_active_for_project(self._project.project_hash)
        reconciled = 0
        async with self._lock:
            for session in sessions:
                owner = session.instance_id
                if owner == self._instance_id or owner in live_instance_ids:
                    continue
                if await self._repo.update_status(session.id, SessionStatus.INTERRUPTED) is None:
                    continue
                self._log(session.id, session_log.SYSTEM, {
                    "message": f"Owning instance {owner} is no longer running",
                    "instanceId": owner,
                })
                reconciled += 1
        if reconciled:
            logger.warning("Marked %d orphaned session(s) interrupted", reconciled)
        return reconciled

    async def load_active_agents(self) -> int:
        """Rebuild the agent index from this instance's non-terminal sessions."""
        sessions = await self._repo.list_active_for_instance(self._instance_id)
        loaded = 0
        async with self._lock:
            for session in sessions:
                if session.agent_type is None or session.id in self._agents:
                    continue
                self._agents[session.id] = Agent(
                    session_id=session.id,
                    agent_type=session.agent_type,
                    status=AgentStatus.from_session_status(session.status),
                    runtime=session.metadata.get("runtimeKind", ""),
                    started_at=session.created_at,
                )
                loaded += 1
        if loaded:
            logger.info("Restored %d active agent(s) for instance %s", loaded, self._instance_id)
        return loaded

    # --- Lifecycle operations ---

    async def spawn(
        self,
        agent_type: str,
        prompt: str,
        count: int = 1,
        parent_session_id: str | None = None,
        metadata: dict | None = None,
        title: str = "",
    ) -> list[Session]:
        """Create ``count`` independent sessions and start supervising them."""
        parsed_type = AgentType.parse(agent_type)
        if not prompt or not prompt.strip():
            raise ValidationError("Prompt is required", code="E_PROMPT_REQUIRED")
        if count < 1:
            raise ValidationError(f"Agent count must be at least 1, got {count}")

        sessions = []
        for _ in range(count):
            sessions.append(
                await self._spawn_one(parsed_type, prompt, parent_session_id, metadata or {}, title)
            )
        return sessions

    async def _spawn_one(
        self,
        agent_type: AgentType,
        prompt: str,
        parent_session_id: str | None,
        metadata: dict,
        title: str,
    ) -> Session:
        async with self._lock:
            self._prune_finished()
            session = Session(
                id=new_session_id(),
                project_hash=self._project.project_hash,
                kind=SessionKind.SDK,
                status=SessionStatus.CREATED,
                agent_type=agent_type,
                parent_session_id=parent_session_id,
                instance_id=self._instance_id,
                title=title or f"{agent_type.value}: {prompt[:60]}",
                prompt=prompt,
                metadata=dict(metadata),
            )
            await self._repo.insert(session)
            agent = Agent(
                session_id=session.id,
                agent_type=agent_type,
                runtime=metadata.get("runtimeKind", ""),
                started_at=self._clock.utcnow(),
            )
            self._agents[session.id] = agent

            self._log(session.id, session_log.SESSION_CREATED, {
                "sessionId": session.id,
                "agentType": agent_type.value,
                "parentSessionId": parent_session_id,
                "instanceId": self._instance_id,
            })
            self._log(session.id, session_log.SYSTEM, {"message": f"Agent spawned: {agent_type.value}"})
            self._log(session.id, session_log.USER, {"message": prompt})

            running = await self._repo.update_status(session.id, SessionStatus.RUNNING)
            agent.status = AgentStatus.RUNNING
            logger.info("Spawned %s agent %s", agent_type.value, session.id)
            return running or session.with_status(SessionStatus.RUNNING)

    async def interrupt(self, session_id: str, signal: str = "SIGINT") -> Agent:
        """Signal the agent's cancellation token and mark it interrupted.

        Cooperative: the execution loop must observe the token and stop.
        """
        async with self._lock:
            agent = self._require(session_id)
            if agent.status.is_terminal:
                raise StateViolationError(
                    f"Agent {session_id} is already {agent.status.value}",
                    code="E_AGENT_NOT_RUNNING",
                )
            await self._repo.update_status(session_id, SessionStatus.INTERRUPTED)
            agent.token.cancel(signal)
            agent.status = AgentStatus.INTERRUPTED
            agent.completed_at = self._clock.utcnow()
            self._mark_finished(session_id)
            self._log(session_id, session_log.SYSTEM, {"message": "Agent interrupted", "signal": signal})
            logger.info("Interrupted agent %s (%s)", session_id, signal)
            return agent

    async def complete_agent(self, session_id: str, result: str | None = None) -> Agent:
        return await self._finish(session_id, AgentStatus.DONE, result=result)

    async def fail_agent(self, session_id: str, error: str) -> Agent:
        return await self._finish(session_id, AgentStatus.FAILED, error=error)

    async def _finish(
        self,
        session_id: str,
        status: AgentStatus,
        result: str | None = None,
        error: str | None = None,
    ) -> Agent:
        async with self._lock:
            agent = self._require(session_id)
            if agent.status.is_terminal:
                raise StateViolationError(
                    f"Agent {session_id} is already {agent.status.value}; cannot mark {status.value}"
                )
            persisted = await self._repo.update_status(
                session_id, SessionStatus(status.value), result=result if result is not None else error
            )
            if persisted is None:
                raise StateViolationError(f"Session {session_id} is missing or already terminal")
            agent.status = status
            agent.result = result
            agent.error = error
            agent.completed_at = persisted.completed_at or self._clock.utcnow()
            self._mark_finished(session_id)
            if status == AgentStatus.FAILED:
                self._log(session_id, session_log.SYSTEM, {"message": f"Agent failed: {error}"})
            else:
                self._log(session_id, session_log.SYSTEM, {"message": "Agent completed"})
            self._log(session_id, session_log.RUNTIME_DONE, {"status": status.value, "reason": error})
            return agent

    # --- Waiting ---

    async def wait(self, session_id: str, max_wait: float | None = None) -> Agent:
        """Wait until the agent reaches a terminal state.

        Concurrent waits for the same session share one poll loop.
        Raises WaitTimeoutError or AgentNotFoundError.
        """
        pending = self._waiters.get(session_id)
        if pending is None:
            self._require(session_id)
            timeout = self._default_wait_timeout if max_wait is None else max_wait
            pending = asyncio.ensure_future(self._poll(session_id, timeout))
            self._waiters[session_id] = pending
            pending.add_done_callback(lambda _: self._waiters.pop(session_id, None))
        return await asyncio.shield(pending)

    async def _poll(self, session_id: str, timeout: float) -> Agent:
        started = self._clock.monotonic()
        while True:
            agent = self._agents.get(session_id)
            if agent is None:
                raise AgentNotFoundError(session_id)
            if agent.status.is_terminal:
                return agent
            if self._clock.monotonic() - started >= timeout:
                raise WaitTimeoutError(
                    f"Timed out after {timeout:g}s waiting for agent {session_id}"
                )
            await self._clock.sleep(self._poll_interval)

    def pending_wait_count(self) -> int:
        return len(self._waiters)

    # --- Queries ---

    def get_agent(self, session_id: str) -> Agent | None:
        return self._agents.get(session_id)

    def list_active(self) -> list[Agent]:
        return [a for a in self._agents.values() if not a.status.is_terminal]

    async def remove_agent(self, session_id: str) -> Agent | None:
        async with self._lock:
            self._finished_at.pop(session_id, None)
            return self._agents.pop(session_id, None)

    def get_stats(self) -> dict[str, int]:
        stats = {"total": len(self._agents)}
        for status in (AgentStatus.RUNNING, AgentStatus.DONE, AgentStatus.FAILED, AgentStatus.INTERRUPTED):
            stats[status.value] = sum(1 for a in self._agents.values() if a.status == status)
        return stats

    def cancel_all(self, signal: str = "SIGTERM") -> int:
        """Signal every live agent's token (shutdown path); statuses are untouched."""
        count = 0
        for agent in self.list_active():
            agent.token.cancel(signal)
            count += 1
        return count
