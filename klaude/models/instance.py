"""Wrapper instance domain models."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone

REGISTRY_VERSION = 1


@dataclass(frozen=True)
class InstanceRegistryEntry:
    """One running (or recently ended) wrapper instance in a project's registry.

    Timestamps are ISO-8601 strings, exactly as stored in the registry file.
    ``ended_at`` of ``None`` means the instance is presumed running.
    """

    instance_id: str
    pid: int
    project_hash: str
    project_root: str
    socket_path: str
    started_at: str
    updated_at: str
    tty: str | None = None
    ended_at: str | None = None
    exit_code: int | None = None

    @property
    def is_running(self) -> bool:
        return self.ended_at is None

    def with_ended(self, now: str, exit_code: int | None) -> InstanceRegistryEntry:
        """Return a copy marked ended. An already-set ``ended_at`` is kept."""
        return replace(self, ended_at=self.ended_at or now, updated_at=now, exit_code=exit_code)

    def with_stale(self, now: str) -> InstanceRegistryEntry:
        """Return a copy ended by reconciliation; ``exit_code`` is left alone."""
        return replace(self, ended_at=now, updated_at=now)

    def to_doc(self) -> dict:
        return {
            "instanceId": self.instance_id,
            "pid": self.pid,
            "tty": self.tty,
            "projectHash": self.project_hash,
            "projectRoot": self.project_root,
            "socketPath": self.socket_path,
            "startedAt": self.started_at,
            "updatedAt": self.updated_at,
            "endedAt": self.ended_at,
            "exitCode": self.exit_code,
        }

    @classmethod
    def from_doc(cls, doc: dict) -> InstanceRegistryEntry:
        return cls(
            instance_id=doc["instanceId"],
            pid=int(doc["pid"]),
            tty=doc.get("tty"),
            project_hash=doc.get("projectHash", ""),
            project_root=doc.get("projectRoot", ""),
            socket_path=doc.get("socketPath", ""),
            started_at=doc.get("startedAt", ""),
            updated_at=doc.get("updatedAt", ""),
            ended_at=doc.get("endedAt"),
            exit_code=doc.get("exitCode"),
        )


@dataclass(frozen=True)
class RegistryDocument:
    """Versioned per-project registry file contents."""

    project_hash: str
    instances: tuple[InstanceRegistryEntry, ...] = ()
    version: int = REGISTRY_VERSION

    def to_doc(self) -> dict:
        return {
            "version": self.version,
            "projectHash": self.project_hash,
            "instances": [e.to_doc() for e in self.instances],
        }

    @classmethod
    def from_doc(cls, doc: dict) -> RegistryDocument:
        return cls(
            version=doc.get("version", 0),
            project_hash=doc.get("projectHash", ""),
            instances=tuple(
                InstanceRegistryEntry.from_doc(e) for e in doc.get("instances", [])
            ),
        )


@dataclass(frozen=True)
class InstanceRecord:
    """Durable history row for a wrapper instance (database side)."""

    instance_id: str
    project_hash: str
    pid: int
    tty: str | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    ended_at: datetime | None = None
    exit_code: int | None = None
    metadata: dict = field(default_factory=dict)

    def to_doc(self) -> dict:
        return {
            "instance_id": self.instance_id,
            "project_hash": self.project_hash,
            "pid": self.pid,
            "tty": self.tty,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "exit_code": self.exit_code,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_doc(cls, doc: dict) -> InstanceRecord:
        return cls(
            instance_id=doc["instance_id"],
            project_hash=doc.get("project_hash", ""),
            pid=doc.get("pid", 0),
            tty=doc.get("tty"),
            started_at=doc.get("started_at", datetime.now(timezone.utc)),
            ended_at=doc.get("ended_at"),
            exit_code=doc.get("exit_code"),
            metadata=doc.get("metadata", {}),
        )
