"""Instance request/response framing over newline-delimited JSON.

A request is one JSON object ``{"action": ..., "payload": {...}}`` followed by
a newline. The reply is one JSON object, either ``{"ok": true, "result": ...}``
or ``{"ok": false, "error": {"code": ..., "message": ...}}``, also
newline-terminated.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

# Actions
PING = "ping"
STATUS = "status"
START_AGENT = "start-agent"
CHECKOUT = "checkout"
MESSAGE = "message"
INTERRUPT = "interrupt"

ACTIONS = (PING, STATUS, START_AGENT, CHECKOUT, MESSAGE, INTERRUPT)

# Client-side codes (resolved, never raised)
E_TIMEOUT = "E_TIMEOUT"
E_NO_RESPONSE = "E_NO_RESPONSE"
E_INVALID_RESPONSE = "E_INVALID_RESPONSE"

# Server-side codes
E_INVALID_JSON = "E_INVALID_JSON"
E_UNSUPPORTED_ACTION = "E_UNSUPPORTED_ACTION"
E_INVALID_PAYLOAD = "E_INVALID_PAYLOAD"
E_INTERNAL = "E_INTERNAL"


@dataclass(frozen=True)
class InstanceRequest:
    """A single request to a wrapper instance."""

    action: str
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        d: dict = {"action": self.action}
        if self.payload:
            d["payload"] = self.payload
        return d


@dataclass(frozen=True)
class InstanceResponse:
    """Reply from a wrapper instance (success or structured error)."""

    ok: bool
    result: Any = None
    error: dict | None = None

    @property
    def error_code(self) -> str | None:
        return (self.error or {}).get("code")

    @property
    def error_message(self) -> str:
        return (self.error or {}).get("message", "")

    def to_dict(self) -> dict:
        if self.ok:
            return {"ok": True, "result": self.result}
        return {"ok": False, "error": self.error}


def encode(msg: InstanceRequest | InstanceResponse) -> bytes:
    """Encode a message as a newline-terminated JSON line."""
    return json.dumps(msg.to_dict(), default=str).encode() + b"\n"


def decode_request(line: bytes | str) -> InstanceRequest:
    """Parse a request line. Raises ValueError on malformed input."""
    data = json.loads(line)
    if not isinstance(data, dict):
        raise ValueError("Request must be a JSON object")
    action = data.get("action")
    if not isinstance(action, str):
        raise ValueError("Request is missing 'action'")
    payload = data.get("payload") or {}
    if not isinstance(payload, dict):
        raise ValueError("Request payload must be an object")
    return InstanceRequest(action=action, payload=payload)


def decode_response(line: bytes | str) -> InstanceResponse:
    """Parse a response line. Raises ValueError on malformed input."""
    data = json.loads(line)
    if not isinstance(data, dict) or not isinstance(data.get("ok"), bool):
        raise ValueError("Response must be an object with a boolean 'ok'")
    if data["ok"]:
        return InstanceResponse(ok=True, result=data.get("result"))
    error = data.get("error") or {}
    return InstanceResponse(
        ok=False,
        error={"code": error.get("code", E_INTERNAL), "message": error.get("message", "")},
    )


def success(result: Any) -> InstanceResponse:
    return InstanceResponse(ok=True, result=result)


def make_error(code: str, message: str) -> InstanceResponse:
    """Create a structured error response."""
    return InstanceResponse(ok=False, error={"code": code, "message": message})
