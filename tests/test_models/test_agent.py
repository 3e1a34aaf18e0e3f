"""Tests for agent handles, cancellation tokens and runtime models."""

import asyncio

import pytest

from klaude.models.agent import (
    Agent,
    AgentStatus,
    CancellationToken,
    CommandSpec,
    RuntimeKind,
    RuntimeSelection,
)
from klaude.models.session import AgentType, SessionStatus


class TestAgentStatus:
    def test_terminal(self):
        assert AgentStatus.DONE.is_terminal
        assert AgentStatus.INTERRUPTED.is_terminal
        assert not AgentStatus.IDLE.is_terminal
        assert not AgentStatus.RUNNING.is_terminal

    @pytest.mark.parametrize("session_status,expected", [
        (SessionStatus.CREATED, AgentStatus.IDLE),
        (SessionStatus.ACTIVE, AgentStatus.RUNNING),
        (SessionStatus.RUNNING, AgentStatus.RUNNING),
        (SessionStatus.COMPLETED, AgentStatus.DONE),
        (SessionStatus.FAILED, AgentStatus.FAILED),
    ])
    def test_from_session_status(self, session_status, expected):
        assert AgentStatus.from_session_status(session_status) == expected


class TestCancellationToken:
    def test_first_signal_wins(self):
        token = CancellationToken()
        token.cancel("SIGTERM")
        token.cancel("SIGKILL")
        assert token.cancelled
        assert token.signal == "SIGTERM"

    @pytest.mark.asyncio
    async def test_wait_returns_signal(self):
        token = CancellationToken()
        waiter = asyncio.create_task(token.wait())
        await asyncio.sleep(0)
        assert not waiter.done()
        token.cancel()
        assert await waiter == "SIGINT"


class TestAgent:
    def test_defaults(self):
        agent = Agent(session_id="s1", agent_type=AgentType.PLANNER)
        assert agent.status == AgentStatus.IDLE
        assert not agent.token.cancelled
        assert agent.completed_at is None


class TestRuntimeKind:
    def test_gpt_runtimes(self):
        assert RuntimeKind.CODEX.is_gpt
        assert RuntimeKind.CURSOR.is_gpt
        assert not RuntimeKind.CLAUDE.is_gpt

    def test_only_claude_takes_live_messages(self):
        assert RuntimeKind.CLAUDE.supports_live_messages
        assert not RuntimeKind.GEMINI.supports_live_messages

    def test_selection_to_dict(self):
        selection = RuntimeSelection(RuntimeKind.CODEX, "why", RuntimeKind.CURSOR)
        assert selection.to_dict() == {"runtime": "codex", "fallbackRuntime": "cursor", "reason": "why"}


class TestCommandSpec:
    def test_full_command_quotes(self):
        spec = CommandSpec(program="claude", args=("-p", "hello world"))
        assert spec.argv == ["claude", "-p", "hello world"]
        assert spec.full_command == "claude -p 'hello world'"
