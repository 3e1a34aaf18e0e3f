"""Runtime selection: map a model / agent definition to an execution backend.

Pure function over its inputs; every branch explains itself in ``reason``.
"""

from __future__ import annotations

from klaude.config import AppConfig, GptConfig
from klaude.models.agent import AgentDefinition, RuntimeKind, RuntimeSelection

CLAUDE_KEYWORDS = ("sonnet", "opus", "haiku", "claude")
GPT_PREFIXES = ("gpt-", "o1-", "o3-")
GPT_SUBSTRINGS = ("composer-",)
GEMINI_SUBSTRINGS = ("gemini",)

_GPT_COMPLEMENT = {
    RuntimeKind.CODEX: RuntimeKind.CURSOR,
    RuntimeKind.CURSOR: RuntimeKind.CODEX,
}


def is_claude_model(normalized: str) -> bool:
    return any(keyword in normalized for keyword in CLAUDE_KEYWORDS)


def is_gpt_model(normalized: str) -> bool:
    return normalized.startswith(GPT_PREFIXES) or any(s in normalized for s in GPT_SUBSTRINGS)


def is_gemini_model(normalized: str) -> bool:
    return any(s in normalized for s in GEMINI_SUBSTRINGS)


def _fallback_for(runtime: RuntimeKind, gpt: GptConfig) -> RuntimeKind | None:
    if not gpt.fallback_on_error:
        return None
    return _GPT_COMPLEMENT.get(runtime)


def _select_gpt_runtime(definition: AgentDefinition | None, gpt: GptConfig) -> RuntimeSelection:
    if definition is not None and definition.runtime is not None:
        runtime = RuntimeKind.CODEX if definition.runtime == RuntimeKind.CODEX else RuntimeKind.CURSOR
        return RuntimeSelection(
            runtime=runtime,
            fallback_runtime=_fallback_for(runtime, gpt),
            reason=f"Agent definition specifies {runtime.value} runtime",
        )

    preference = (gpt.preferred_runtime or "auto").lower()
    if preference == "auto":
        return RuntimeSelection(
            runtime=RuntimeKind.CODEX,
            fallback_runtime=RuntimeKind.CURSOR,
            reason="Auto mode: preferring Codex with Cursor fallback",
        )

    runtime = RuntimeKind.CODEX if preference == "codex" else RuntimeKind.CURSOR
    return RuntimeSelection(
        runtime=runtime,
        fallback_runtime=_fallback_for(runtime, gpt),
        reason=f"Using configured preference: {runtime.value}",
    )


def select_runtime(
    definition: AgentDefinition | None,
    config: AppConfig,
    model_override: str | None = None,
) -> RuntimeSelection:
    """Choose the runtime (and optional fallback) for an agent."""
    model = model_override or (definition.model if definition else None)
    if not model:
        return RuntimeSelection(
            runtime=RuntimeKind.CLAUDE,
            reason="No model specified, using Claude runtime",
        )

    normalized = model.strip().lower()

    if is_claude_model(normalized):
        return RuntimeSelection(
            runtime=RuntimeKind.CLAUDE,
            reason=f"Model {model} identified as Claude model",
        )

    if is_gpt_model(normalized):
        return _select_gpt_runtime(definition, config.gpt)

    if is_gemini_model(normalized):
        return RuntimeSelection(
            runtime=RuntimeKind.GEMINI,
            fallback_runtime=RuntimeKind.CURSOR,
            reason=f"Model {model} identified as Gemini model (Cursor fallback)",
        )

    return RuntimeSelection(
        runtime=RuntimeKind.CLAUDE,
        reason=f"Unknown model {model}, defaulting to Claude",
    )
