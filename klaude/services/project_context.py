"""Project context: canonical root, project hash and per-project paths."""

from __future__ import annotations

import hashlib
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path

from klaude.config import AppConfig
from klaude.errors import ValidationError

logger = logging.getLogger(__name__)

# sun_path is 108 bytes on Linux and 104 on macOS; stay under both.
MAX_SOCKET_PATH = 100


@dataclass(frozen=True)
class ProjectContext:
    project_root: str
    project_hash: str
    projects_root: Path
    run_root: Path
    project_dir: Path
    logs_dir: Path
    run_dir: Path

    def session_log_path(self, session_id: str) -> Path:
        return self.logs_dir / f"session-{session_id}.log"

    def socket_path(self, instance_id: str) -> str:
        """Deterministic socket path for an instance of this project."""
        name = f"{self.project_hash[:12]}-{instance_id[-8:]}.sock"
        path = str(self.run_root / name)
        if len(path.encode()) <= MAX_SOCKET_PATH:
            return path
        fallback = str(Path(tempfile.gettempdir()) / f"klaude-{name}")
        if len(fallback.encode()) <= MAX_SOCKET_PATH:
            logger.debug("Socket path %s too long; using %s", path, fallback)
            return fallback
        raise ValidationError(f"Socket path exceeds {MAX_SOCKET_PATH} bytes: {path}")


def derive_project_hash(project_root: str) -> str:
    return hashlib.sha256(project_root.encode()).hexdigest()


def resolve_project_root(cwd: str | os.PathLike | None = None) -> str:
    path = Path(cwd or os.getcwd())
    if not path.is_dir():
        raise ValidationError(f"Project root must be a directory: {path}")
    return os.path.realpath(path)


def prepare_project_context(cwd: str | os.PathLike | None, config: AppConfig) -> ProjectContext:
    """Resolve the project for ``cwd`` and make sure its directories exist."""
    project_root = resolve_project_root(cwd)
    project_hash = derive_project_hash(project_root)

    projects_root = config.resolved_projects_dir
    run_root = config.resolved_socket_dir
    project_dir = projects_root / project_hash
    ctx = ProjectContext(
        project_root=project_root,
        project_hash=project_hash,
        projects_root=projects_root,
        run_root=run_root,
        project_dir=project_dir,
        logs_dir=project_dir / "logs",
        run_dir=run_root / project_hash,
    )
    for directory in (ctx.projects_root, ctx.run_root, ctx.project_dir, ctx.logs_dir, ctx.run_dir):
        directory.mkdir(parents=True, exist_ok=True)
    return ctx
