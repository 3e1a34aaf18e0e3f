"""File-backed per-project registry of wrapper instances.

The registry lives at ``<run_dir>/instances.json``. Every mutation (and
``list``, which may reconcile stale entries) runs under a cross-process lock:
the zero-byte marker ``<run_dir>/instances.lock`` created with exclusive-create
semantics. The marker carries no holder identity; a crashed holder blocks
other processes until their lock timeout elapses.
"""

from __future__ import annotations

import json
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Callable

from klaude.errors import RegistryLockTimeoutError
from klaude.infra.clock import Clock, SystemClock, iso_now
from klaude.models.instance import REGISTRY_VERSION, InstanceRegistryEntry, RegistryDocument

logger = logging.getLogger(__name__)

REGISTRY_FILENAME = "instances.json"
LOCK_FILENAME = "instances.lock"
LOCK_RETRY_DELAY = 0.025
LOCK_TIMEOUT = 5.0


def is_pid_alive(pid: int) -> bool:
    """Probe a pid with signal 0.

    ESRCH means dead, EPERM means alive but not ours; any other failure
    propagates.
    """
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class InstanceRegistry:
    """Registry of wrapper instances for one project."""

    def __init__(
        self,
        run_dir: Path,
        project_hash: str,
        project_root: str,
        clock: Clock | None = None,
        lock_timeout: float = LOCK_TIMEOUT,
        retry_delay: float = LOCK_RETRY_DELAY,
        pid_alive: Callable[[int], bool] = is_pid_alive,
    ) -> None:
        self._run_dir = Path(run_dir)
        self._project_hash = project_hash
        self._project_root = project_root
        self._clock = clock or SystemClock()
        self._lock_timeout = lock_timeout
        self._retry_delay = retry_delay
        self._pid_alive = pid_alive

    @property
    def path(self) -> Path:
        return self._run_dir / REGISTRY_FILENAME

    @property
    def lock_path(self) -> Path:
        return self._run_dir / LOCK_FILENAME

    # --- Public operations ---

    async def register(
        self,
        instance_id: str,
        pid: int,
        tty: str | None,
        socket_path: str,
    ) -> InstanceRegistryEntry:
        """Upsert the entry for ``instance_id`` as freshly started."""
        async with self._locked():
            doc = self._read()
            now = iso_now(self._clock)
            instances = self._cleanup_stale(list(doc.instances), now)
            entry = InstanceRegistryEntry(
                instance_id=instance_id,
                pid=pid,
                tty=tty,
                project_hash=self._project_hash,
                project_root=self._project_root,
                socket_path=socket_path,
                started_at=now,
                updated_at=now,
            )
            instances = [e for e in instances if e.instance_id != instance_id]
            instances.append(entry)
            self._write(instances)
            logger.info("Registered instance %s (pid=%d) at %s", instance_id, pid, socket_path)
            return entry

    async def mark_ended(
        self, instance_id: str, exit_code: int | None = None
    ) -> InstanceRegistryEntry | None:
        """Set ``ended_at`` if unset and record the exit code. Unknown ids are a no-op."""
        async with self._locked():
            doc = self._read()
            now = iso_now(self._clock)
            updated: InstanceRegistryEntry | None = None
            instances = []
            for entry in doc.instances:
                if entry.instance_id == instance_id:
                    entry = entry.with_ended(now, exit_code)
                    updated = entry
                instances.append(entry)
            if updated is None:
                logger.debug("mark_ended: unknown instance %s", instance_id)
                return None
            self._write(instances)
            return updated

    async def remove(self, instance_id: str) -> bool:
        """Delete the entry outright. Returns whether anything was removed."""
        async with self._locked():
            doc = self._read()
            instances = [e for e in doc.instances if e.instance_id != instance_id]
            if len(instances) == len(doc.instances):
                return False
            self._write(instances)
            return True

    async def list(self) -> list[InstanceRegistryEntry]:
        """Return all entries after stale-process reconciliation."""
        async with self._locked():
            doc = self._read()
            now = iso_now(self._clock)
            instances = self._cleanup_stale(list(doc.instances), now)
            if instances != list(doc.instances):
                self._write(instances)
            return instances

    # --- Lock ---

    @asynccontextmanager
    async def _locked(self) -> AsyncIterator[None]:
        self._run_dir.mkdir(parents=True, exist_ok=True)
        deadline = self._clock.monotonic() + self._lock_timeout
        while True:
            try:
                fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
            except FileExistsError:
                if self._clock.monotonic() >= deadline:
                    raise RegistryLockTimeoutError(
                        f"Timed out waiting for registry lock at {self.lock_path}"
                    ) from None
                await self._clock.sleep(self._retry_delay)
                continue
            os.close(fd)
            break
        try:
            yield
        finally:
            try:
                os.unlink(self.lock_path)
            except FileNotFoundError:
                logger.warning("Registry lock %s vanished before release", self.lock_path)

    # --- File I/O ---

    def _empty(self) -> RegistryDocument:
        return RegistryDocument(project_hash=self._project_hash)

    def _read(self) -> RegistryDocument:
        """Load the registry, self-healing to empty on any mismatch or corruption."""
        try:
            raw = json.loads(self.path.read_text())
        except FileNotFoundError:
            return self._empty()
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.warning("Registry %s is not valid JSON; starting fresh", self.path)
            return self._empty()

        if not isinstance(raw, dict):
            return self._empty()
        if raw.get("version") != REGISTRY_VERSION or raw.get("projectHash") != self._project_hash:
            logger.warning("Registry %s has mismatched version/project; starting fresh", self.path)
            return self._empty()
        try:
            return RegistryDocument.from_doc(raw)
        except (KeyError, TypeError, ValueError):
            logger.warning("Registry %s has malformed entries; starting fresh", self.path)
            return self._empty()

    def _write(self, instances: list[InstanceRegistryEntry]) -> None:
        doc = RegistryDocument(project_hash=self._project_hash, instances=tuple(instances))
        tmp = self.path.with_name(f"{REGISTRY_FILENAME}.{os.getpid()}.tmp")
        tmp.write_text(json.dumps(doc.to_doc(), indent=2) + "\n")
        os.replace(tmp, self.path)

    def _cleanup_stale(
        self, instances: list[InstanceRegistryEntry], now: str
    ) -> list[InstanceRegistryEntry]:
        result = []
        for entry in instances:
            if entry.is_running and not self._pid_alive(entry.pid):
                logger.info("Instance %s (pid=%d) is gone; marking ended", entry.instance_id, entry.pid)
                entry = entry.with_stale(now)
            result.append(entry)
        return result

