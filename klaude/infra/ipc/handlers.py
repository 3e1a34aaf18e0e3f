"""Request router: maps instance socket actions to lifecycle operations."""

from __future__ import annotations

import logging
import signal as signal_mod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from klaude.errors import (
    InvalidActionError,
    InvalidPayloadError,
    SessionNotFoundError,
    StateViolationError,
    ValidationError,
)
from klaude.infra.clock import Clock, SystemClock, iso_now
from klaude.infra.ipc import protocol
from klaude.models.agent import AgentDefinition, RuntimeKind, RuntimeSelection, StartParams
from klaude.models.event import SessionEvent
from klaude.models.session import AgentType, Session
from klaude.services.agent_definitions import load_agent_definition, normalize_agent_type
from klaude.services.runtime_selector import select_runtime

if TYPE_CHECKING:
    from klaude.config import AppConfig
    from klaude.infra.db.events import EventRepo
    from klaude.infra.db.sessions import SessionRepo
    from klaude.services.agent_manager import AgentManager
    from klaude.services.project_context import ProjectContext
    from klaude.services.runtime_runner import RuntimeRunner

logger = logging.getLogger(__name__)

Handler = Callable[[dict], Awaitable[Any]]


@dataclass
class InstanceState:
    """Mutable identity of the owning wrapper instance."""

    instance_id: str
    root_session_id: str
    current_session_id: str


class RequestRouter:
    """Dispatch table mapping request actions to handlers."""

    def __init__(
        self,
        state: InstanceState,
        project: ProjectContext,
        config: AppConfig,
        manager: AgentManager,
        runner: RuntimeRunner,
        session_repo: SessionRepo,
        event_repo: EventRepo,
        clock: Clock | None = None,
        definition_loader: Callable[[str, str | None], AgentDefinition | None] = load_agent_definition,
    ) -> None:
        self._state = state
        self._project = project
        self._config = config
        self._manager = manager
        self._runner = runner
        self._sessions = session_repo
        self._events = event_repo
        self._clock = clock or SystemClock()
        self._load_definition = definition_loader
        self._checkout_in_progress = False
        self._handlers: dict[str, Handler] = {}
        self._register_all()

    def _register_all(self) -> None:
        self._handlers[protocol.PING] = self._ping
        self._handlers[protocol.STATUS] = self._status
        self._handlers[protocol.START_AGENT] = self._start_agent
        self._handlers[protocol.CHECKOUT] = self._checkout
        self._handlers[protocol.MESSAGE] = self._message
        self._handlers[protocol.INTERRUPT] = self._interrupt

    def has_action(self, action: str) -> bool:
        return action in self._handlers

    async def dispatch(self, action: str, payload: dict) -> Any:
        handler = self._handlers.get(action)
        if handler is None:
            raise InvalidActionError(f"Unsupported action: {action}")
        return await handler(payload)

    # --- Validation helpers ---

    @staticmethod
    def _require_str(payload: dict, key: str, code: str = "E_INVALID_PAYLOAD") -> str:
        value = payload.get(key)
        if not isinstance(value, str) or not value.strip():
            raise InvalidPayloadError(f"Missing or empty required field: {key}", code=code)
        return value.strip()

    @staticmethod
    def _optional_str(payload: dict, key: str) -> str | None:
        value = payload.get(key)
        if value is None:
            return None
        if not isinstance(value, str):
            raise InvalidPayloadError(f"Field {key} must be a string")
        return value.strip() or None

    @staticmethod
    def _optional_number(payload: dict, key: str, default: float, code: str = "E_INVALID_PAYLOAD") -> float:
        value = payload.get(key, default)
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
            raise InvalidPayloadError(f"Field {key} must be a non-negative number", code=code)
        return float(value)

    async def _session_in_project(self, session_id: str) -> Session:
        session = await self._sessions.find_by_id(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        if session.project_hash != self._project.project_hash:
            raise ValidationError(
                f"Session {session_id} does not belong to this project",
                code="E_SESSION_PROJECT_MISMATCH",
            )
        return session

    async def _record(self, kind: str, session_id: str | None, payload: dict) -> None:
        await self._events.insert(
            SessionEvent(kind=kind, project_hash=self._project.project_hash, session_id=session_id, payload=payload)
        )

    # --- Actions ---

    async def _ping(self, payload: dict) -> dict:
        return {"pong": True, "timestamp": iso_now(self._clock)}

    async def _status(self, payload: dict) -> dict:
        root = await self._sessions.find_by_id(self._state.root_session_id)
        return {
            "instanceId": self._state.instance_id,
            "projectHash": self._project.project_hash,
            "projectRoot": self._project.project_root,
            "rootSessionId": self._state.root_session_id,
            "currentSessionId": self._state.current_session_id,
            "sessionStatus": root.status.value if root else None,
            "agents": self._manager.get_stats(),
            "updatedAt": iso_now(self._clock),
        }

    async def _check_spawn_policy(self, parent: Session, agent_type: str) -> None:
        """Parent's allowedAgents and the maximum nesting depth."""
        if parent.id != self._state.root_session_id:
            definition = parent.metadata.get("definition") or {}
            allowed = definition.get("allowedAgents")
            if allowed is not None:
                label = definition.get("name") or parent.metadata.get("agentType") or "parent"
                allowed = [normalize_agent_type(a) for a in allowed if isinstance(a, str) and a.strip()]
                if not allowed:
                    raise ValidationError(
                        f"Agent {label} is not permitted to spawn additional agents",
                        code="E_AGENT_TYPE_NOT_ALLOWED",
                    )
                if agent_type not in allowed:
                    raise ValidationError(
                        f"Agent {label} cannot start agent type {agent_type}",
                        code="E_AGENT_TYPE_NOT_ALLOWED",
                    )

        max_depth = self._config.wrapper.max_agent_depth
        parent_depth = await self._sessions.calculate_depth(parent.id)
        if parent_depth + 1 > max_depth:
            raise ValidationError(
                f"Maximum agent depth ({max_depth}) exceeded. Parent at depth {parent_depth}, "
                f"cannot spawn child at depth {parent_depth + 1}.",
                code="E_MAX_DEPTH_EXCEEDED",
            )

    async def _start_agent(self, payload: dict) -> dict:
        raw_type = self._require_str(payload, "agentType", code="E_AGENT_TYPE_REQUIRED")
        prompt = self._require_str(payload, "prompt", code="E_PROMPT_REQUIRED")
        agent_type = AgentType.parse(raw_type).value
        count = payload.get("agentCount", 1)
        if isinstance(count, bool) or not isinstance(count, int) or count < 1:
            raise InvalidPayloadError("agentCount must be a positive integer")
        model = self._optional_str(payload, "model")
        options = payload.get("options") or {}
        if not isinstance(options, dict):
            raise InvalidPayloadError("options must be an object")

        parent_id = self._optional_str(payload, "parentSessionId") or self._state.root_session_id
        parent = await self._session_in_project(parent_id)
        await self._check_spawn_policy(parent, agent_type)

        definition = self._load_definition(agent_type, self._project.project_root)
        selection = select_runtime(definition, self._config, model)
        logger.info(
            "[runtime-selection] type=%s runtime=%s fallback=%s reason=%s",
            agent_type,
            selection.runtime.value,
            selection.fallback_runtime.value if selection.fallback_runtime else None,
            selection.reason,
        )

        metadata: dict = {
            "agentType": agent_type,
            "runtimeKind": selection.runtime.value,
            "runtimeFallback": selection.fallback_runtime.value if selection.fallback_runtime else None,
            "runtimeReason": selection.reason,
            "options": options,
            "model": model,
        }
        if definition is not None:
            metadata["definition"] = {
                "name": definition.name,
                "description": definition.description,
                "model": definition.model,
                "runtime": definition.runtime.value if definition.runtime else None,
                "allowedAgents": list(definition.allowed_agents) if definition.allowed_agents is not None else None,
                "sourcePath": definition.source_path,
            }

        sessions = await self._manager.spawn(
            agent_type, prompt, count=count, parent_session_id=parent.id, metadata=metadata
        )

        params = StartParams(
            prompt=prompt,
            model=model or (definition.model if definition and definition.model else ""),
            workspace_path=self._project.project_root,
            instructions=definition.instructions if definition else "",
        )
        for session in sessions:
            await self._record("agent.session.created", session.id, {
                "agentType": agent_type,
                "parentSessionId": parent.id,
                "instanceId": self._state.instance_id,
                "runtimeKind": selection.runtime.value,
                "runtimeReason": selection.reason,
            })
            self._runner.start(session.id, selection, params)

        first = sessions[0]
        return {
            "sessionId": first.id,
            "sessionIds": [s.id for s in sessions],
            "status": first.status.value,
            "logPath": str(self._project.session_log_path(first.id)),
            "agentType": agent_type,
            "prompt": prompt,
            "createdAt": first.created_at.isoformat(),
            "instanceId": self._state.instance_id,
            "runtimeKind": selection.runtime.value,
            "fallbackRuntime": selection.fallback_runtime.value if selection.fallback_runtime else None,
            "runtimeReason": selection.reason,
        }

    async def _wait_for_claude_session_id(self, session_id: str, wait_seconds: float) -> Session:
        deadline = self._clock.monotonic() + wait_seconds
        while True:
            session = await self._session_in_project(session_id)
            if session.claude_session_id or self._clock.monotonic() >= deadline:
                return session
            await self._clock.sleep(0.2)

    async def _checkout(self, payload: dict) -> dict:
        if self._checkout_in_progress:
            raise StateViolationError("A checkout is already in progress", code="E_CHECKOUT_IN_PROGRESS")
        self._checkout_in_progress = True
        try:
            return await self._do_checkout(payload)
        finally:
            self._checkout_in_progress = False

    async def _do_checkout(self, payload: dict) -> dict:
        wait_seconds = self._optional_number(payload, "waitSeconds", 5, code="E_INVALID_WAIT_VALUE")
        target_id = self._optional_str(payload, "sessionId")
        current_id = self._optional_str(payload, "fromSessionId") or self._state.current_session_id

        if target_id is None:
            current = await self._session_in_project(current_id)
            target_id = current.parent_session_id
            if not target_id:
                raise ValidationError(
                    f"Session {current_id} has no parent to check out", code="E_SWITCH_TARGET_MISSING"
                )

        target = await self._wait_for_claude_session_id(target_id, wait_seconds)
        if not target.claude_session_id:
            raise StateViolationError(
                f"Session {target_id} has no backend session id yet", code="E_SWITCH_TARGET_MISSING"
            )

        agent = self._manager.get_agent(target.id)
        if agent is not None and not agent.status.is_terminal:
            await self._manager.interrupt(target.id, "SIGINT")
            await self._record("wrapper.checkout.runtime_stopped", target.id, {"signal": "SIGINT"})

        await self._record("wrapper.checkout.resume_selected", target.id, {
            "fromSessionId": current_id,
            "claudeSessionId": target.claude_session_id,
        })
        self._state.current_session_id = target.id
        return {
            "sessionId": target.id,
            "claudeSessionId": target.claude_session_id,
            "resumeCommand": f"{self._config.sdk.claude_binary} --resume {target.claude_session_id}",
        }

    async def _message(self, payload: dict) -> dict:
        session_id = self._require_str(payload, "sessionId")
        prompt = self._require_str(payload, "prompt", code="E_PROMPT_REQUIRED")
        session = await self._session_in_project(session_id)
        runtime = self._runner.runtime_of(session_id) or RuntimeKind(
            session.metadata.get("runtimeKind") or RuntimeKind.CLAUDE.value
        )

        if not runtime.supports_live_messages:
            raise ValidationError(
                f"Session {session_id} runs on {runtime.value}, which does not accept messages",
                code="E_AGENT_MESSAGE_UNSUPPORTED",
            )

        if self._runner.is_running(session_id):
            if not await self._runner.send_message(session_id, prompt):
                raise StateViolationError(
                    f"Agent {session_id} is not accepting messages", code="E_AGENT_NOT_RUNNING"
                )
            return {"status": "queued", "messagesQueued": 1, "sessionId": session_id}

        if not session.status.is_terminal:
            raise StateViolationError(f"Agent {session_id} is not running", code="E_AGENT_NOT_RUNNING")

        # Finished session: continue it in a child session resuming the same backend conversation.
        if not session.claude_session_id or session.agent_type is None:
            raise StateViolationError(
                f"Session {session_id} cannot be resumed (no backend session id)",
                code="E_AGENT_NOT_RUNNING",
            )
        metadata = {**session.metadata, "continuationOf": session.id}
        [child] = await self._manager.spawn(
            session.agent_type.value, prompt, parent_session_id=session.id, metadata=metadata
        )
        await self._record("agent.session.continued", child.id, {"fromSessionId": session.id})
        selection = RuntimeSelection(RuntimeKind.CLAUDE, f"Continuing backend session {session.claude_session_id}")
        self._runner.start(
            child.id,
            selection,
            StartParams(
                prompt=prompt,
                model=session.metadata.get("model") or "",
                workspace_path=self._project.project_root,
                resume_session_id=session.claude_session_id,
            ),
        )
        return {"status": "queued", "messagesQueued": 1, "sessionId": child.id}

    async def _interrupt(self, payload: dict) -> dict:
        session_id = self._require_str(payload, "sessionId")
        sig_name = (self._optional_str(payload, "signal") or "SIGINT").upper()
        if not sig_name.startswith("SIG"):
            sig_name = f"SIG{sig_name}"
        if sig_name not in signal_mod.Signals.__members__:
            raise InvalidPayloadError(f"Unknown signal: {sig_name}")
        if self._manager.get_agent(session_id) is None:
            await self._session_in_project(session_id)
            raise StateViolationError(
                f"Session {session_id} is not an agent run by this instance", code="E_AGENT_NOT_RUNNING"
            )
        await self._manager.interrupt(session_id, sig_name)
        return {"sessionId": session_id, "interrupted": True, "signal": sig_name}
