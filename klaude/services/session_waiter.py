"""Caller-facing wait for one or more sessions (``klaude agent wait``).

Polls the persisted session rows, so it works from any process. Reaching the
overall timeout is an outcome, not an error: the caller gets progress
summaries for every session and a ``timed_out`` flag.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from klaude.errors import SessionNotFoundError, ValidationError
from klaude.infra.clock import Clock, SystemClock
from klaude.models.session import Session, SessionStatus
from klaude.services.session_log import CompletionInfo, collect_completion_info

if TYPE_CHECKING:
    from klaude.infra.db.sessions import SessionRepo
    from klaude.services.project_context import ProjectContext

logger = logging.getLogger(__name__)

WAIT_TIMEOUT_EXIT_CODE = 124


class WaitMode(str, Enum):
    ALL = "all"
    ANY = "any"


@dataclass(frozen=True)
class SessionSummary:
    session_id: str
    status: SessionStatus
    info: CompletionInfo

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


@dataclass
class WaitOutcome:
    mode: WaitMode
    timed_out: bool
    summaries: list[SessionSummary] = field(default_factory=list)

    @property
    def exit_code(self) -> int:
        return WAIT_TIMEOUT_EXIT_CODE if self.timed_out else 0


async def resolve_session_ids(
    repo: SessionRepo, project_hash: str, session_ids: list[str]
) -> list[str]:
    """Expand abbreviated ids and check they belong to the project."""
    resolved = []
    for raw in session_ids:
        session = await repo.find_by_id(raw)
        if session is None:
            matches = await repo.find_by_prefix(raw)
            if len(matches) > 1:
                raise ValidationError(f"Session id prefix {raw} is ambiguous", code="E_SESSION_AMBIGUOUS")
            session = matches[0] if matches else None
        if session is None:
            raise SessionNotFoundError(raw)
        if session.project_hash != project_hash:
            raise ValidationError(
                f"Session {raw} does not belong to this project", code="E_SESSION_PROJECT_MISMATCH"
            )
        resolved.append(session.id)
    return resolved


def summarize(session: Session, project: ProjectContext) -> SessionSummary:
    try:
        info = collect_completion_info(project.session_log_path(session.id))
    except OSError:
        logger.warning("Could not read session log for %s", session.id, exc_info=True)
        info = CompletionInfo()
    return SessionSummary(session_id=session.id, status=session.status, info=info)


async def wait_for_sessions(
    repo: SessionRepo,
    project: ProjectContext,
    session_ids: list[str],
    mode: WaitMode = WaitMode.ALL,
    timeout: float = 570.0,
    poll_interval: float = 0.5,
    clock: Clock | None = None,
) -> WaitOutcome:
    """Block until ALL (or ANY) of ``session_ids`` reach a terminal status."""
    if not session_ids:
        raise ValidationError("At least one session id is required")
    clock = clock or SystemClock()
    started = clock.monotonic()

    while True:
        sessions = await repo.find_many(session_ids)
        missing = [sid for sid in session_ids if sid not in sessions]
        if missing:
            raise SessionNotFoundError(missing[0])

        ordered = [sessions[sid] for sid in session_ids]
        terminal = [s for s in ordered if s.status.is_terminal]

        if mode == WaitMode.ANY and terminal:
            return WaitOutcome(mode, False, [summarize(s, project) for s in terminal])
        if mode == WaitMode.ALL and len(terminal) == len(ordered):
            return WaitOutcome(mode, False, [summarize(s, project) for s in ordered])

        if clock.monotonic() - started >= timeout:
            logger.info("Wait timed out after %.0fs on %d session(s)", timeout, len(ordered))
            return WaitOutcome(mode, True, [summarize(s, project) for s in ordered])

        await clock.sleep(poll_interval)
