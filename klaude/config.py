"""Configuration loading: TOML file + environment variable overlay."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

try:
    import tomllib
except ImportError:
    import tomli as tomllib  # type: ignore[no-redef]


DEFAULT_CONFIG_DIR = Path.home() / ".klaude"
DEFAULT_CONFIG_PATH = DEFAULT_CONFIG_DIR / "config.toml"

DEFAULT_SDK_MODEL = "claude-haiku-4-5-20251001"

DEFAULT_CONFIG_TOML = """\
[mongodb]
uri = "mongodb://localhost:27017"
database = "klaude"

[wrapper]
socket_dir = "~/.klaude/run"
projects_dir = "~/.klaude/projects"
max_agent_depth = 3
ipc_timeout_ms = 15000
lock_timeout_ms = 5000
interrupt_grace_seconds = 5
agent_retention_seconds = 300

[sdk]
model = "claude-haiku-4-5-20251001"
permission_mode = "bypassPermissions"
fallback_model = ""
claude_binary = "claude"

[gpt]
# auto, codex or cursor
preferred_runtime = "auto"
fallback_on_error = true
codex_binary = "codex"
cursor_binary = "cursor-agent"

[gemini]
binary = "gemini"

[wait]
timeout_seconds = 570
poll_interval_ms = 500
agent_timeout_ms = 600000
"""


@dataclass
class MongoConfig:
    uri: str = "mongodb://localhost:27017"
    database: str = "klaude"


@dataclass
class WrapperConfig:
    socket_dir: str = "~/.klaude/run"
    projects_dir: str = "~/.klaude/projects"
    max_agent_depth: int = 3
    ipc_timeout_ms: int = 15000
    lock_timeout_ms: int = 5000
    interrupt_grace_seconds: float = 5
    agent_retention_seconds: float = 300


@dataclass
class SdkConfig:
    model: str = DEFAULT_SDK_MODEL
    permission_mode: str = "bypassPermissions"
    fallback_model: str = ""
    claude_binary: str = "claude"


@dataclass
class GptConfig:
    preferred_runtime: str = "auto"  # auto, codex, cursor
    fallback_on_error: bool = True
    codex_binary: str = "codex"
    cursor_binary: str = "cursor-agent"


@dataclass
class GeminiConfig:
    binary: str = "gemini"


@dataclass
class WaitConfig:
    timeout_seconds: float = 570
    poll_interval_ms: int = 500
    agent_timeout_ms: int = 600000


@dataclass
class AppConfig:
    mongodb: MongoConfig = field(default_factory=MongoConfig)
    wrapper: WrapperConfig = field(default_factory=WrapperConfig)
    sdk: SdkConfig = field(default_factory=SdkConfig)
    gpt: GptConfig = field(default_factory=GptConfig)
    gemini: GeminiConfig = field(default_factory=GeminiConfig)
    wait: WaitConfig = field(default_factory=WaitConfig)
    config_path: Path = DEFAULT_CONFIG_PATH

    @property
    def resolved_socket_dir(self) -> Path:
        return Path(self.wrapper.socket_dir).expanduser()

    @property
    def resolved_projects_dir(self) -> Path:
        return Path(self.wrapper.projects_dir).expanduser()


def default_config_path() -> Path:
    """Config file location: ``KLAUDE_CONFIG`` if set, else the default path."""
    override = os.environ.get("KLAUDE_CONFIG")
    return Path(override).expanduser() if override else DEFAULT_CONFIG_PATH


def env_flag(name: str) -> bool:
    """True when environment variable ``name`` holds a truthy string (1, true, yes, on)."""
    return os.environ.get(name, "").strip().lower() in ("1", "true", "yes", "on")


def _env_overlay(config: AppConfig) -> None:
    """Override config values with environment variables where applicable."""
    if uri := os.environ.get("MONGODB_URI"):
        config.mongodb.uri = uri
    if db := os.environ.get("KLAUDE_DB"):
        config.mongodb.database = db
    if socket_dir := os.environ.get("KLAUDE_SOCKET_DIR"):
        config.wrapper.socket_dir = socket_dir


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load configuration from TOML file with env var overlay."""
    path = config_path or default_config_path()

    if path.exists():
        with open(path, "rb") as f:
            raw = tomllib.load(f)
    else:
        raw = tomllib.loads(DEFAULT_CONFIG_TOML)

    mongo_raw = raw.get("mongodb", {})
    wrapper_raw = raw.get("wrapper", {})
    sdk_raw = raw.get("sdk", {})
    gpt_raw = raw.get("gpt", {})
    gemini_raw = raw.get("gemini", {})
    wait_raw = raw.get("wait", {})

    config = AppConfig(
        mongodb=MongoConfig(
            uri=mongo_raw.get("uri", "mongodb://localhost:27017"),
            database=mongo_raw.get("database", "klaude"),
        ),
        wrapper=WrapperConfig(
            socket_dir=wrapper_raw.get("socket_dir", "~/.klaude/run"),
            projects_dir=wrapper_raw.get("projects_dir", "~/.klaude/projects"),
            max_agent_depth=wrapper_raw.get("max_agent_depth", 3),
            ipc_timeout_ms=wrapper_raw.get("ipc_timeout_ms", 15000),
            lock_timeout_ms=wrapper_raw.get("lock_timeout_ms", 5000),
            interrupt_grace_seconds=wrapper_raw.get("interrupt_grace_seconds", 5),
            agent_retention_seconds=wrapper_raw.get("agent_retention_seconds", 300),
        ),
        sdk=SdkConfig(
            model=sdk_raw.get("model", DEFAULT_SDK_MODEL),
            permission_mode=sdk_raw.get("permission_mode", "bypassPermissions"),
            fallback_model=sdk_raw.get("fallback_model", ""),
            claude_binary=sdk_raw.get("claude_binary", "claude"),
        ),
        gpt=GptConfig(
            preferred_runtime=gpt_raw.get("preferred_runtime", "auto"),
            fallback_on_error=gpt_raw.get("fallback_on_error", True),
            codex_binary=gpt_raw.get("codex_binary", "codex"),
            cursor_binary=gpt_raw.get("cursor_binary", "cursor-agent"),
        ),
        gemini=GeminiConfig(
            binary=gemini_raw.get("binary", "gemini"),
        ),
        wait=WaitConfig(
            timeout_seconds=wait_raw.get("timeout_seconds", 570),
            poll_interval_ms=wait_raw.get("poll_interval_ms", 500),
            agent_timeout_ms=wait_raw.get("agent_timeout_ms", 600000),
        ),
        config_path=path,
    )

    if config.gpt.preferred_runtime not in ("auto", "codex", "cursor"):
        raise ValueError(
            f"Invalid gpt.preferred_runtime: {config.gpt.preferred_runtime!r} "
            "(expected auto, codex or cursor)"
        )

    _env_overlay(config)
    return config


def init_config(config_path: Path | None = None) -> Path:
    """Create default config file."""
    path = config_path or default_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(DEFAULT_CONFIG_TOML)
    return path
