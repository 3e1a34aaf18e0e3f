"""Append-only per-session execution log (JSON lines).

Each record is ``{"timestamp", "kind", "payload"}``. The lifecycle and runtime
layers append; ``collect_completion_info`` reads it back for wait summaries.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

logger = logging.getLogger(__name__)

# Lifecycle event kinds
SESSION_CREATED = "agent.session.created"
SYSTEM = "system"
USER = "user"
RUNTIME_DONE = "agent.runtime.done"

EDIT_TOOLS = ("Edit", "MultiEdit", "NotebookEdit")
CREATE_TOOLS = ("Write",)


def append_session_event(
    log_path: str | Path,
    kind: str,
    payload: dict[str, Any] | None = None,
    timestamp: datetime | None = None,
) -> None:
    """Append one record to a session log, creating the file if needed."""
    path = Path(log_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    record = {
        "timestamp": (timestamp or datetime.now(timezone.utc)).isoformat(),
        "kind": kind,
        "payload": payload or {},
    }
    with open(path, "a", encoding="utf-8") as f:
        f.write(json.dumps(record, default=str) + "\n")


def read_session_events(log_path: str | Path) -> Iterator[dict]:
    """Yield parsed records, skipping unparseable lines."""
    path = Path(log_path)
    if not path.exists():
        return
    with open(path, encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                logger.debug("Skipping malformed log line in %s", path)
                continue
            if isinstance(record, dict):
                yield record


@dataclass
class CompletionInfo:
    """Progress summary for one session."""

    files_edited: list[str] = field(default_factory=list)
    files_created: list[str] = field(default_factory=list)
    error: str | None = None
    final_text: str | None = None

    def to_dict(self) -> dict:
        return {
            "filesEdited": list(self.files_edited),
            "filesCreated": list(self.files_created),
            "error": self.error,
            "finalText": self.final_text,
        }


def _tool_uses(payload: dict) -> Iterator[dict]:
    message = (payload.get("payload") or {}).get("message") or {}
    content = message.get("content")
    if isinstance(content, list):
        for item in content:
            if isinstance(item, dict) and item.get("type") == "tool_use":
                yield item


def _add_unique(target: list[str], value: Any) -> None:
    if isinstance(value, str) and value and value not in target:
        target.append(value)


def collect_completion_info(log_path: str | Path) -> CompletionInfo:
    """Summarize file changes, the error and the final response from a session log."""
    info = CompletionInfo()
    for record in read_session_events(log_path):
        kind = record.get("kind")
        payload = record.get("payload") or {}

        if kind == "agent.runtime.message":
            message_type = payload.get("messageType")
            if message_type == "assistant":
                if payload.get("text"):
                    info.final_text = payload["text"]
                for tool in _tool_uses(payload):
                    tool_input = tool.get("input") or {}
                    path = tool_input.get("file_path") or tool_input.get("notebook_path")
                    if tool.get("name") in CREATE_TOOLS:
                        _add_unique(info.files_created, path)
                    elif tool.get("name") in EDIT_TOOLS:
                        _add_unique(info.files_edited, path)
            elif message_type == "codex.file_change":
                for change in payload.get("changes") or []:
                    if not isinstance(change, dict):
                        continue
                    target = info.files_created if change.get("kind") == "add" else info.files_edited
                    _add_unique(target, change.get("path"))
        elif kind == "agent.runtime.result":
            if payload.get("isError"):
                info.error = str(payload.get("result") or payload.get("stopReason") or "Runtime failed")
            elif isinstance(payload.get("result"), str) and payload["result"]:
                info.final_text = payload["result"]
        elif kind == "agent.runtime.error":
            info.error = str(payload.get("message") or "Runtime error")
        elif kind == RUNTIME_DONE and payload.get("status") == "failed" and not info.error:
            info.error = str(payload.get("reason") or "Agent failed")

    # A file created and later edited is reported once, as created.
    info.files_edited = [f for f in info.files_edited if f not in info.files_created]
    return info
