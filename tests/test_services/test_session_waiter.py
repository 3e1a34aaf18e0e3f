"""Tests for the caller-facing session wait."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from klaude.errors import SessionNotFoundError, ValidationError
from klaude.models.session import Session, SessionStatus
from klaude.services.session_log import append_session_event
from klaude.services.session_waiter import (
    WAIT_TIMEOUT_EXIT_CODE,
    WaitMode,
    resolve_session_ids,
    wait_for_sessions,
)


def _session(sid, status, project_hash):
    return Session(id=sid, project_hash=project_hash, status=status)


@pytest.fixture
def mock_repo():
    return AsyncMock()


class TestWaitForSessions:
    @pytest.mark.asyncio
    async def test_all_already_done(self, mock_repo, project, clock):
        h = project.project_hash
        mock_repo.find_many.return_value = {
            "a": _session("a", SessionStatus.DONE, h),
            "b": _session("b", SessionStatus.FAILED, h),
        }
        append_session_event(project.session_log_path("a"), "agent.runtime.result", {"result": "ok"})

        outcome = await wait_for_sessions(mock_repo, project, ["a", "b"], clock=clock)
        assert not outcome.timed_out
        assert outcome.exit_code == 0
        assert [s.session_id for s in outcome.summaries] == ["a", "b"]
        assert outcome.summaries[0].info.final_text == "ok"
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_all_polls_until_finished(self, mock_repo, project, clock):
        h = project.project_hash
        mock_repo.find_many.side_effect = [
            {"a": _session("a", SessionStatus.RUNNING, h), "b": _session("b", SessionStatus.DONE, h)},
            {"a": _session("a", SessionStatus.DONE, h), "b": _session("b", SessionStatus.DONE, h)},
        ]
        outcome = await wait_for_sessions(mock_repo, project, ["a", "b"], poll_interval=0.5, clock=clock)
        assert not outcome.timed_out
        assert clock.sleeps == [0.5]

    @pytest.mark.asyncio
    async def test_any_returns_first_terminal(self, mock_repo, project, clock):
        h = project.project_hash
        mock_repo.find_many.return_value = {
            "a": _session("a", SessionStatus.RUNNING, h),
            "b": _session("b", SessionStatus.INTERRUPTED, h),
        }
        outcome = await wait_for_sessions(mock_repo, project, ["a", "b"], mode=WaitMode.ANY, clock=clock)
        assert [s.session_id for s in outcome.summaries] == ["b"]

    @pytest.mark.asyncio
    async def test_timeout_is_an_outcome(self, mock_repo, project, clock):
        h = project.project_hash
        mock_repo.find_many.return_value = {"a": _session("a", SessionStatus.RUNNING, h)}
        outcome = await wait_for_sessions(
            mock_repo, project, ["a"], timeout=2, poll_interval=0.5, clock=clock
        )
        assert outcome.timed_out
        assert outcome.exit_code == WAIT_TIMEOUT_EXIT_CODE
        assert not outcome.summaries[0].is_terminal

    @pytest.mark.asyncio
    async def test_missing_session(self, mock_repo, project, clock):
        mock_repo.find_many.return_value = {}
        with pytest.raises(SessionNotFoundError):
            await wait_for_sessions(mock_repo, project, ["ghost"], clock=clock)

    @pytest.mark.asyncio
    async def test_requires_ids(self, mock_repo, project):
        with pytest.raises(ValidationError):
            await wait_for_sessions(mock_repo, project, [])


class TestResolveSessionIds:
    @pytest.mark.asyncio
    async def test_prefix_expansion(self, mock_repo):
        mock_repo.find_by_id.return_value = None
        mock_repo.find_by_prefix.return_value = [_session("abcdef", SessionStatus.RUNNING, "h")]
        assert await resolve_session_ids(mock_repo, "h", ["abc"]) == ["abcdef"]

    @pytest.mark.asyncio
    async def test_ambiguous_prefix(self, mock_repo):
        mock_repo.find_by_id.return_value = None
        mock_repo.find_by_prefix.return_value = [
            _session("abc1", SessionStatus.RUNNING, "h"),
            _session("abc2", SessionStatus.RUNNING, "h"),
        ]
        with pytest.raises(ValidationError) as exc:
            await resolve_session_ids(mock_repo, "h", ["abc"])
        assert exc.value.code == "E_SESSION_AMBIGUOUS"

    @pytest.mark.asyncio
    async def test_other_project(self, mock_repo):
        mock_repo.find_by_id.return_value = _session("a", SessionStatus.RUNNING, "other")
        with pytest.raises(ValidationError) as exc:
            await resolve_session_ids(mock_repo, "h", ["a"])
        assert exc.value.code == "E_SESSION_PROJECT_MISMATCH"

    @pytest.mark.asyncio
    async def test_not_found(self, mock_repo):
        mock_repo.find_by_id.return_value = None
        mock_repo.find_by_prefix.return_value = []
        with pytest.raises(SessionNotFoundError):
            await resolve_session_ids(mock_repo, "h", ["zzz"])
