"""Tests for the file-backed instance registry."""

from __future__ import annotations

import asyncio
import json
import subprocess

import pytest

from klaude.errors import RegistryLockTimeoutError
from klaude.infra.registry import InstanceRegistry, is_pid_alive
from klaude.models.instance import REGISTRY_VERSION


@pytest.fixture
def alive_pids():
    return {100, 200}


@pytest.fixture
def registry(tmp_path, clock, alive_pids):
    return InstanceRegistry(
        tmp_path / "run",
        "hash-1",
        "/work/repo",
        clock=clock,
        lock_timeout=0.1,
        pid_alive=lambda pid: pid in alive_pids,
    )


class TestRegister:
    @pytest.mark.asyncio
    async def test_register_creates_file(self, registry):
        entry = await registry.register("inst-a", 100, "/dev/pts/3", "/tmp/a.sock")
        assert entry.is_running
        assert entry.project_hash == "hash-1"
        raw = json.loads(registry.path.read_text())
        assert raw["version"] == REGISTRY_VERSION
        assert raw["projectHash"] == "hash-1"
        assert [e["instanceId"] for e in raw["instances"]] == ["inst-a"]

    @pytest.mark.asyncio
    async def test_register_is_upsert(self, registry):
        await registry.register("inst-a", 100, None, "/tmp/a.sock")
        await registry.register("inst-a", 200, None, "/tmp/a2.sock")
        entries = await registry.list()
        assert len(entries) == 1
        assert entries[0].pid == 200
        assert entries[0].socket_path == "/tmp/a2.sock"

    @pytest.mark.asyncio
    async def test_lock_released_after_operation(self, registry):
        await registry.register("inst-a", 100, None, "/tmp/a.sock")
        assert not registry.lock_path.exists()


class TestMarkEnded:
    @pytest.mark.asyncio
    async def test_mark_ended_records_exit_code(self, registry):
        await registry.register("inst-a", 100, None, "/tmp/a.sock")
        ended = await registry.mark_ended("inst-a", 2)
        assert ended is not None
        assert ended.ended_at is not None
        assert ended.exit_code == 2

    @pytest.mark.asyncio
    async def test_mark_ended_keeps_first_ended_at(self, registry, clock):
        await registry.register("inst-a", 100, None, "/tmp/a.sock")
        first = await registry.mark_ended("inst-a", 0)
        clock.advance(60)
        second = await registry.mark_ended("inst-a", 1)
        assert second.ended_at == first.ended_at
        assert second.updated_at != first.updated_at
        assert second.exit_code == 1

    @pytest.mark.asyncio
    async def test_mark_ended_unknown_is_noop(self, registry):
        assert await registry.mark_ended("missing", 0) is None
        assert not registry.path.exists()


class TestList:
    @pytest.mark.asyncio
    async def test_empty(self, registry):
        assert await registry.list() == []

    @pytest.mark.asyncio
    async def test_stale_entries_marked_ended(self, registry, alive_pids):
        await registry.register("inst-a", 100, None, "/tmp/a.sock")
        await registry.register("inst-b", 200, None, "/tmp/b.sock")
        alive_pids.discard(200)

        entries = {e.instance_id: e for e in await registry.list()}
        assert entries["inst-a"].is_running
        assert not entries["inst-b"].is_running
        assert entries["inst-b"].exit_code is None

        raw = json.loads(registry.path.read_text())
        persisted = {e["instanceId"]: e for e in raw["instances"]}
        assert persisted["inst-b"]["endedAt"] is not None

    @pytest.mark.asyncio
    async def test_list_is_idempotent(self, registry, alive_pids, clock):
        await registry.register("inst-a", 100, None, "/tmp/a.sock")
        alive_pids.clear()
        first = await registry.list()
        clock.advance(30)
        second = await registry.list()
        assert first == second

    @pytest.mark.asyncio
    async def test_corrupt_file_self_heals(self, registry):
        registry.path.parent.mkdir(parents=True, exist_ok=True)
        registry.path.write_text("{not json")
        assert await registry.list() == []
        await registry.register("inst-a", 100, None, "/tmp/a.sock")
        assert len(await registry.list()) == 1

    @pytest.mark.asyncio
    async def test_other_project_file_ignored(self, registry):
        registry.path.parent.mkdir(parents=True, exist_ok=True)
        registry.path.write_text(json.dumps({
            "version": REGISTRY_VERSION,
            "projectHash": "someone-else",
            "instances": [{"instanceId": "x", "pid": 100}],
        }))
        assert await registry.list() == []

    @pytest.mark.asyncio
    async def test_wrong_version_ignored(self, registry):
        registry.path.parent.mkdir(parents=True, exist_ok=True)
        registry.path.write_text(json.dumps({"version": 99, "projectHash": "hash-1", "instances": []}))
        assert await registry.list() == []


class TestRemove:
    @pytest.mark.asyncio
    async def test_remove(self, registry):
        await registry.register("inst-a", 100, None, "/tmp/a.sock")
        assert await registry.remove("inst-a") is True
        assert await registry.remove("inst-a") is False
        assert await registry.list() == []


class TestLock:
    @pytest.mark.asyncio
    async def test_times_out_when_held(self, registry, clock):
        registry.lock_path.parent.mkdir(parents=True, exist_ok=True)
        registry.lock_path.touch()
        with pytest.raises(RegistryLockTimeoutError, match="Timed out waiting for registry lock") as exc:
            await registry.list()
        assert exc.value.code == "E_LOCK_TIMEOUT"
        assert clock.sleeps
        # The foreign lock is left in place
        assert registry.lock_path.exists()


class TestPidProbe:
    def test_own_pid_is_alive(self):
        import os

        assert is_pid_alive(os.getpid())

    def test_dead_pid(self, monkeypatch):
        def fake_kill(pid, sig):
            raise ProcessLookupError

        monkeypatch.setattr("klaude.infra.registry.os.kill", fake_kill)
        assert is_pid_alive(12345) is False

    def test_permission_error_means_alive(self, monkeypatch):
        def fake_kill(pid, sig):
            raise PermissionError

        monkeypatch.setattr("klaude.infra.registry.os.kill", fake_kill)
        assert is_pid_alive(1) is True


def _run_in_thread(run_dir, operation, *args):
    """Run one registry call on its own event loop, like a separate CLI process."""
    registry = InstanceRegistry(run_dir, "hash-1", "/work/repo", lock_timeout=10, pid_alive=lambda pid: True)
    return asyncio.run(getattr(registry, operation)(*args))


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrent_register_and_mark_ended_lose_nothing(self, tmp_path):
        run_dir = tmp_path / "run"
        ids = [f"inst-{i}" for i in range(8)]

        await asyncio.gather(*(
            asyncio.to_thread(_run_in_thread, run_dir, "register", iid, 1000 + i, None, f"/tmp/{iid}.sock")
            for i, iid in enumerate(ids)
        ))
        await asyncio.gather(*(
            asyncio.to_thread(_run_in_thread, run_dir, "mark_ended", iid, i)
            for i, iid in enumerate(ids)
        ))

        reader = InstanceRegistry(run_dir, "hash-1", "/work/repo", pid_alive=lambda pid: True)
        entries = {e.instance_id: e for e in await reader.list()}
        assert sorted(entries) == sorted(ids)
        for i, iid in enumerate(ids):
            assert entries[iid].exit_code == i
            assert entries[iid].ended_at is not None
        assert not reader.lock_path.exists()


class TestRealProcess:
    @pytest.mark.asyncio
    async def test_killed_process_is_marked_ended(self, tmp_path, clock):
        registry = InstanceRegistry(tmp_path / "run", "hash-1", "/work/repo", clock=clock)
        proc = subprocess.Popen(["sleep", "30"])
        try:
            await registry.register("inst-real", proc.pid, None, "/tmp/real.sock")
            [entry] = await registry.list()
            assert entry.is_running
        finally:
            proc.kill()
            proc.wait()

        [entry] = await registry.list()
        assert entry.ended_at is not None
        assert entry.exit_code is None

        clock.advance(5)
        [again] = await registry.list()
        assert again.ended_at == entry.ended_at
