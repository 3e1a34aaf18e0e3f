"""Tests for runtime command builders and output parsers."""

import json

import pytest

from klaude.config import AppConfig
from klaude.infra import runtimes
from klaude.models.agent import RuntimeKind, StartParams


@pytest.fixture
def config():
    return AppConfig()


class TestBuilders:
    def test_claude_streams_prompt_over_stdin(self, config):
        spec = runtimes.build_command(
            RuntimeKind.CLAUDE,
            StartParams(prompt="fix the bug", workspace_path="/work", instructions="Be terse"),
            config,
        )
        assert spec.program == "claude"
        assert "fix the bug" not in spec.args
        assert spec.args[:5] == ("-p", "--input-format", "stream-json", "--output-format", "stream-json")
        assert "--model" in spec.args
        assert spec.args[spec.args.index("--model") + 1] == config.sdk.model
        assert spec.args[spec.args.index("--append-system-prompt") + 1] == "Be terse"
        assert spec.cwd == "/work"

    def test_claude_resume(self, config):
        spec = runtimes.build_command("claude", StartParams(prompt="x", resume_session_id="abc"), config)
        assert spec.args[spec.args.index("--resume") + 1] == "abc"

    def test_codex_prompt_includes_instructions(self, config):
        spec = runtimes.build_command(
            RuntimeKind.CODEX, StartParams(prompt="do it", model="gpt-5", instructions="Rules"), config
        )
        assert spec.program == "codex"
        assert spec.args[:2] == ("exec", "--json")
        assert "--dangerously-bypass-approvals-and-sandbox" in spec.args
        assert spec.args[-1] == "Rules\n\ndo it"

    def test_cursor_separates_prompt(self, config):
        config.sdk.permission_mode = "default"
        spec = runtimes.build_command(RuntimeKind.CURSOR, StartParams(prompt="-weird"), config)
        assert spec.program == "cursor-agent"
        assert "--force" not in spec.args
        assert spec.args[-2:] == ("--", "-weird")

    def test_gemini_instructions_via_env(self, config):
        spec = runtimes.build_command(
            RuntimeKind.GEMINI,
            StartParams(prompt="go", model="gemini-2.5-pro", instructions_path="/tmp/sys.md"),
            config,
        )
        assert spec.args[:2] == ("-m", "gemini-2.5-pro")
        assert spec.args[-2:] == ("-p", "go")
        assert spec.env == {"GEMINI_SYSTEM_MD": "/tmp/sys.md"}

    def test_unknown_runtime(self, config):
        with pytest.raises(ValueError):
            runtimes.build_command("copilot", StartParams(), config)

    def test_user_message_line(self):
        line = runtimes.user_message_line("hello")
        assert line.endswith(b"\n")
        assert json.loads(line) == {"type": "user", "message": {"role": "user", "content": "hello"}}


class TestParsers:
    def test_claude_init_reports_session_id(self):
        [event] = runtimes.parse_runtime_line(
            RuntimeKind.CLAUDE, json.dumps({"type": "system", "subtype": "init", "session_id": "cs-1"})
        )
        assert event.kind == runtimes.CLAUDE_SESSION
        assert event.payload == {"sessionId": "cs-1"}

    def test_claude_assistant_text(self):
        line = json.dumps({
            "type": "assistant",
            "message": {"content": [{"type": "text", "text": "Hel"}, {"type": "text", "text": "lo"}]},
        })
        [event] = runtimes.parse_runtime_line(RuntimeKind.CLAUDE, line)
        assert event.kind == runtimes.MESSAGE
        assert event.payload["text"] == "Hello"

    def test_claude_error_result(self):
        line = json.dumps({"type": "result", "subtype": "error_max_turns", "result": None})
        [event] = runtimes.parse_runtime_line(RuntimeKind.CLAUDE, line)
        assert event.kind == runtimes.RESULT
        assert event.payload["isError"] is True

    def test_codex_agent_message(self):
        line = json.dumps({"type": "item.completed", "item": {"type": "agent_message", "text": "done"}})
        [event] = runtimes.parse_runtime_line(RuntimeKind.CODEX, line)
        assert event.payload["messageType"] == "assistant"
        assert event.payload["text"] == "done"

    def test_codex_failure(self):
        line = json.dumps({"type": "turn.failed", "error": {"message": "quota"}})
        [event] = runtimes.parse_runtime_line(RuntimeKind.CODEX, line)
        assert event.kind == runtimes.ERROR
        assert event.payload["message"] == "quota"

    def test_gemini_result(self):
        line = json.dumps({"type": "result", "status": "success", "response": "ok"})
        [event] = runtimes.parse_runtime_line(RuntimeKind.GEMINI, line)
        assert event.payload == {"result": "ok", "isError": False}

    def test_plain_text_becomes_log(self):
        [event] = runtimes.parse_runtime_line(RuntimeKind.CURSOR, "warming up...")
        assert event.kind == runtimes.LOG
        assert event.payload["message"] == "warming up..."

    def test_blank_line_ignored(self):
        assert runtimes.parse_runtime_line(RuntimeKind.CLAUDE, "   \n") == []
