"""Tests for wrapper instance models."""

from klaude.models.instance import REGISTRY_VERSION, InstanceRegistryEntry, RegistryDocument


def _entry(**overrides):
    fields = dict(
        instance_id="inst-1",
        pid=4242,
        project_hash="hash",
        project_root="/work/repo",
        socket_path="/tmp/x.sock",
        started_at="2025-01-01T00:00:00.000Z",
        updated_at="2025-01-01T00:00:00.000Z",
    )
    fields.update(overrides)
    return InstanceRegistryEntry(**fields)


class TestInstanceRegistryEntry:
    def test_running_until_ended(self):
        entry = _entry()
        assert entry.is_running
        assert not entry.with_stale("2025-01-02T00:00:00.000Z").is_running

    def test_with_ended_keeps_first_ended_at(self):
        first = _entry().with_ended("t1", 0)
        second = first.with_ended("t2", 3)
        assert second.ended_at == "t1"
        assert second.updated_at == "t2"
        assert second.exit_code == 3

    def test_with_stale_leaves_exit_code(self):
        entry = _entry(exit_code=None).with_stale("t1")
        assert entry.ended_at == "t1"
        assert entry.exit_code is None

    def test_doc_uses_camel_case(self):
        doc = _entry(tty="/dev/pts/1").to_doc()
        assert doc["instanceId"] == "inst-1"
        assert doc["socketPath"] == "/tmp/x.sock"
        assert doc["endedAt"] is None
        assert InstanceRegistryEntry.from_doc(doc) == _entry(tty="/dev/pts/1")


class TestRegistryDocument:
    def test_round_trip(self):
        doc = RegistryDocument(project_hash="hash", instances=(_entry(),))
        raw = doc.to_doc()
        assert raw["version"] == REGISTRY_VERSION
        assert raw["projectHash"] == "hash"
        assert RegistryDocument.from_doc(raw) == doc

    def test_missing_version_reads_as_zero(self):
        assert RegistryDocument.from_doc({"projectHash": "h"}).version == 0
