"""Error types shared by the registry, IPC layer and lifecycle services.

Every error carries a stable ``code`` string. The socket server copies the
code into ``{"ok": false, "error": {"code", "message"}}`` responses, and the
CLI prints it alongside the message.
"""

from __future__ import annotations


class KlaudeError(Exception):
    """Base class for all klaude errors."""

    default_code = "E_KLAUDE"

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class RegistryLockTimeoutError(KlaudeError):
    default_code = "E_LOCK_TIMEOUT"


class InstanceNotFoundError(KlaudeError):
    default_code = "E_INSTANCE_NOT_FOUND"


class AmbiguousInstanceError(KlaudeError):
    default_code = "E_AMBIGUOUS_INSTANCE"


class SessionNotFoundError(KlaudeError):
    default_code = "E_SESSION_NOT_FOUND"

    def __init__(self, session_id: str, code: str | None = None) -> None:
        super().__init__(f"Session not found: {session_id}", code)
        self.session_id = session_id


class AgentNotFoundError(KlaudeError):
    default_code = "E_AGENT_NOT_FOUND"

    def __init__(self, session_id: str, code: str | None = None) -> None:
        super().__init__(f"Agent not found: {session_id}", code)
        self.session_id = session_id


class ValidationError(KlaudeError):
    default_code = "E_VALIDATION"


class InvalidActionError(KlaudeError):
    default_code = "E_UNSUPPORTED_ACTION"


class InvalidPayloadError(KlaudeError):
    default_code = "E_INVALID_PAYLOAD"


class StateViolationError(KlaudeError):
    default_code = "E_STATE_VIOLATION"


class WaitTimeoutError(KlaudeError):
    default_code = "E_WAIT_TIMEOUT"


class IpcTransportError(KlaudeError):
    """The request never reached the instance (connect/write failure)."""

    default_code = "E_TRANSPORT"
