"""Runtime backends: command builders and output parsers.

The set of backends is closed. Each ``RuntimeKind`` maps to one plain builder
function producing a ``CommandSpec``; all backends emit newline-delimited JSON
on stdout, which ``parse_runtime_line`` turns into session log events.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from klaude.config import AppConfig
from klaude.models.agent import CommandSpec, RuntimeKind, StartParams

logger = logging.getLogger(__name__)

# Session log event kinds produced from runtime output
MESSAGE = "agent.runtime.message"
RESULT = "agent.runtime.result"
ERROR = "agent.runtime.error"
LOG = "agent.runtime.log"
CLAUDE_SESSION = "agent.runtime.claude-session"


@dataclass(frozen=True)
class RuntimeEvent:
    kind: str
    payload: dict[str, Any] = field(default_factory=dict)


def _env(params: StartParams, extra: dict[str, str] | None = None) -> dict[str, str] | None:
    env = dict(params.env_vars) if params.env_vars else {}
    if extra:
        env.update(extra)
    return env or None


def _claude_command(params: StartParams, config: AppConfig) -> CommandSpec:
    """claude -p --input-format stream-json --output-format stream-json ...

    The prompt is not on the command line: it is written to stdin as a
    stream-json user message, which also lets later messages reach a live agent.
    """
    args: list[str] = [
        "-p",
        "--input-format", "stream-json",
        "--output-format", "stream-json",
        "--verbose",
        "--permission-mode", config.sdk.permission_mode,
        "--model", params.model or config.sdk.model,
    ]
    if config.sdk.fallback_model:
        args.extend(["--fallback-model", config.sdk.fallback_model])
    if params.resume_session_id:
        args.extend(["--resume", params.resume_session_id])
    if params.instructions:
        args.extend(["--append-system-prompt", params.instructions])
    return CommandSpec(
        program=config.sdk.claude_binary,
        args=tuple(args),
        env=_env(params),
        cwd=params.workspace_path or None,
    )


def _full_prompt(params: StartParams) -> str:
    if params.instructions:
        return f"{params.instructions}\n\n{params.prompt}"
    return params.prompt


def _codex_command(params: StartParams, config: AppConfig) -> CommandSpec:
    """codex exec --json [--dangerously-bypass-approvals-and-sandbox] [--model M] PROMPT"""
    args: list[str] = ["exec", "--json"]
    if config.sdk.permission_mode == "bypassPermissions":
        args.append("--dangerously-bypass-approvals-and-sandbox")
    if params.model:
        args.extend(["--model", params.model])
    args.append(_full_prompt(params))
    return CommandSpec(
        program=config.gpt.codex_binary,
        args=tuple(args),
        env=_env(params),
        cwd=params.workspace_path or None,
    )


def _cursor_command(params: StartParams, config: AppConfig) -> CommandSpec:
    """cursor-agent -p --output-format stream-json [--force] [--model M] -- PROMPT"""
    args: list[str] = ["-p", "--output-format", "stream-json"]
    if config.sdk.permission_mode == "bypassPermissions":
        args.append("--force")
    if params.model:
        args.extend(["--model", params.model])
    args.extend(["--", _full_prompt(params)])
    return CommandSpec(
        program=config.gpt.cursor_binary,
        args=tuple(args),
        env=_env(params),
        cwd=params.workspace_path or None,
    )


def _gemini_command(params: StartParams, config: AppConfig) -> CommandSpec:
    """gemini [-m M] --output-format stream-json --yolo -p PROMPT

    Instructions travel through the GEMINI_SYSTEM_MD file, not the prompt.
    """
    args: list[str] = []
    if params.model:
        args.extend(["-m", params.model])
    args.extend(["--output-format", "stream-json", "--yolo", "-p", params.prompt])
    extra = {"GEMINI_SYSTEM_MD": params.instructions_path} if params.instructions_path else None
    return CommandSpec(
        program=config.gemini.binary,
        args=tuple(args),
        env=_env(params, extra),
        cwd=params.workspace_path or None,
    )


_BUILDERS: dict[RuntimeKind, Callable[[StartParams, AppConfig], CommandSpec]] = {
    RuntimeKind.CLAUDE: _claude_command,
    RuntimeKind.CODEX: _codex_command,
    RuntimeKind.CURSOR: _cursor_command,
    RuntimeKind.GEMINI: _gemini_command,
}


def build_command(kind: RuntimeKind | str, params: StartParams, config: AppConfig) -> CommandSpec:
    """Build the launch command for a runtime backend."""
    if isinstance(kind, str):
        kind = RuntimeKind(kind)
    builder = _BUILDERS.get(kind)
    if builder is None:
        raise ValueError(f"Unknown runtime: {kind}")
    return builder(params, config)


def user_message_line(text: str) -> bytes:
    """A stream-json user message for a Claude runtime's stdin."""
    msg = {"type": "user", "message": {"role": "user", "content": text}}
    return json.dumps(msg).encode() + b"\n"


# --- Output parsing ---


def _content_text(content: Any) -> str | None:
    if isinstance(content, str):
        return content or None
    if isinstance(content, list):
        parts = [
            item["text"]
            for item in content
            if isinstance(item, dict) and isinstance(item.get("text"), str) and item["text"]
        ]
        return "".join(parts) or None
    return None


def _parse_claude_like(event: dict) -> list[RuntimeEvent]:
    """Claude and cursor-agent share the stream-json event shape."""
    etype = event.get("type")
    events: list[RuntimeEvent] = []
    if etype == "system" and event.get("subtype") == "init" and event.get("session_id"):
        events.append(RuntimeEvent(CLAUDE_SESSION, {"sessionId": event["session_id"]}))
    elif etype == "assistant":
        message = event.get("message") or {}
        events.append(RuntimeEvent(MESSAGE, {
            "messageType": "assistant",
            "text": _content_text(message.get("content")),
            "payload": event,
        }))
    elif etype == "result":
        is_error = bool(event.get("is_error")) or event.get("subtype", "success") != "success"
        events.append(RuntimeEvent(RESULT, {
            "result": event.get("result"),
            "isError": is_error,
            "stopReason": event.get("subtype"),
        }))
    else:
        events.append(RuntimeEvent(MESSAGE, {"messageType": str(etype), "payload": event}))
    return events


def _parse_codex(event: dict) -> list[RuntimeEvent]:
    etype = event.get("type", "")
    item = event.get("item") if isinstance(event.get("item"), dict) else {}
    item_type = item.get("type", "unknown")
    if etype == "thread.started":
        thread_id = event.get("thread_id", "unknown")
        return [RuntimeEvent(LOG, {"level": "info", "message": f"Codex thread started: {thread_id}"})]
    if etype == "item.completed" and item_type in ("agent_message", "reasoning"):
        return [RuntimeEvent(MESSAGE, {
            "messageType": "assistant" if item_type == "agent_message" else "codex.reasoning",
            "text": item.get("text"),
            "payload": event,
        })]
    if etype == "item.completed" and item_type == "file_change":
        return [RuntimeEvent(MESSAGE, {
            "messageType": "codex.file_change",
            "changes": item.get("changes", []),
            "payload": event,
        })]
    if etype in ("turn.failed", "error"):
        error = event.get("error") if isinstance(event.get("error"), dict) else {}
        return [RuntimeEvent(ERROR, {"message": error.get("message") or event.get("message") or "Codex error"})]
    return [RuntimeEvent(MESSAGE, {"messageType": f"codex.{etype}", "payload": event})]


def _parse_gemini(event: dict) -> list[RuntimeEvent]:
    etype = event.get("type")
    if etype == "init" and event.get("session_id"):
        return [RuntimeEvent(CLAUDE_SESSION, {"sessionId": event["session_id"]})]
    if etype == "message" and event.get("role") == "assistant":
        return [RuntimeEvent(MESSAGE, {
            "messageType": "assistant",
            "text": _content_text(event.get("content")),
            "payload": event,
        })]
    if etype == "result":
        return [RuntimeEvent(RESULT, {
            "result": event.get("response"),
            "isError": event.get("status") not in (None, "success"),
        })]
    if etype == "error":
        return [RuntimeEvent(ERROR, {"message": event.get("message", "Gemini error")})]
    return [RuntimeEvent(MESSAGE, {"messageType": f"gemini.{etype}", "payload": event})]


_PARSERS: dict[RuntimeKind, Callable[[dict], list[RuntimeEvent]]] = {
    RuntimeKind.CLAUDE: _parse_claude_like,
    RuntimeKind.CURSOR: _parse_claude_like,
    RuntimeKind.CODEX: _parse_codex,
    RuntimeKind.GEMINI: _parse_gemini,
}


def parse_runtime_line(kind: RuntimeKind, line: str) -> list[RuntimeEvent]:
    """Parse one stdout line from a runtime into session log events.

    Non-JSON output is kept as a log event rather than dropped.
    """
    line = line.strip()
    if not line:
        return []
    try:
        event = json.loads(line)
    except json.JSONDecodeError:
        return [RuntimeEvent(LOG, {"level": "info", "message": line})]
    if not isinstance(event, dict):
        return [RuntimeEvent(LOG, {"level": "info", "message": line})]
    return _PARSERS[kind](event)
