"""Tests for objstore/sync.py -- fake bucket + real in-memory store.

Covers:
- new snapshots are ingested with components and per-scenario results
- a second pass over an unchanged bucket writes nothing
- one bad manifest or failing application never blocks the rest
- JUnit counts win over the manifest's own summary, which wins over zeros
- the stop event ends a pass between items
"""

import json
from unittest.mock import MagicMock

from objstore.client import ObjectStoreError
from objstore.sync import SnapshotSyncer

_JUNIT = b'<testsuite time="4"><testcase name="a"/><testcase name="b"/><testcase name="c"><failure/></testcase></testsuite>'


def _manifest(snapshot: str, application: str = "quay-v3-16", **extra) -> bytes:
    doc = {
        "application": application,
        "snapshot": snapshot,
        "trigger": {"component": "quay", "git_sha": "abc", "pipeline_run": "run-1"},
        "components": [
            {"name": "quay", "container_image": "quay.io/quay:abc", "git_revision": "abc"},
            {"name": "clair", "container_image": "quay.io/clair:def", "git_revision": "def"},
        ],
        "test_results": [{"scenario": "e2e", "status": "failed", "pipeline_run": "run-2"}],
        "readiness": {"tests_passed": False},
    }
    doc.update(extra)
    return json.dumps(doc).encode()


def _snapshot_count(store) -> int:
    return len(store.list_snapshots(limit=500))


class TestSyncOnce:
    def test_ingests_snapshot_with_children(self, bucket, store):
        objects, client = bucket
        objects["quay-v3-16/snapshots/s1/snapshot.json"] = _manifest("s1")
        objects["quay-v3-16/snapshots/s1/junit/e2e/results.xml"] = _JUNIT

        stats = SnapshotSyncer(client, store).sync_once()

        assert (stats.applications, stats.seen, stats.ingested, stats.errors) == (1, 1, 1, 0)
        snap = store.get_snapshot_by_name("s1")
        assert snap.application == "quay-v3-16"
        assert snap.trigger_git_sha == "abc"
        assert [c.component for c in snap.components] == ["clair", "quay"]
        assert [c.name for c in store.list_components()] == ["clair", "quay"]
        result = snap.test_results[0]
        assert (result.scenario, result.status, result.pipeline_run) == ("e2e", "failed", "run-2")
        assert (result.total, result.passed, result.failed) == (3, 2, 1)
        assert result.duration_sec == 4.0

    def test_second_pass_is_a_no_op(self, bucket, store):
        objects, client = bucket
        objects["quay-v3-16/snapshots/s1/snapshot.json"] = _manifest("s1")
        objects["omr-v2-0/snapshots/o1/snapshot.json"] = _manifest("o1", application="omr-v2-0")
        syncer = SnapshotSyncer(client, store)

        syncer.sync_once()
        before = _snapshot_count(store)
        stats = syncer.sync_once()

        assert before == 2
        assert _snapshot_count(store) == 2
        assert stats.seen == 2
        assert stats.ingested == 0

    def test_only_new_snapshots_are_written(self, bucket, store):
        objects, client = bucket
        objects["quay-v3-16/snapshots/s1/snapshot.json"] = _manifest("s1")
        syncer = SnapshotSyncer(client, store)
        syncer.sync_once()

        objects["quay-v3-16/snapshots/s2/snapshot.json"] = _manifest("s2")
        stats = syncer.sync_once()

        assert stats.ingested == 1
        assert [s.name for s in store.list_snapshots("quay-v3-16")] == ["s2", "s1"]

    def test_bad_manifest_does_not_block_others(self, bucket, store):
        objects, client = bucket
        objects["quay-v3-16/snapshots/bad/snapshot.json"] = b"{broken"
        objects["quay-v3-16/snapshots/good/snapshot.json"] = _manifest("good")

        stats = SnapshotSyncer(client, store).sync_once()

        assert stats.errors == 1
        assert stats.ingested == 1
        assert store.snapshot_exists_by_name("good")

    def test_manifest_summary_used_without_junit(self, bucket, store):
        objects, client = bucket
        objects["a/snapshots/s/snapshot.json"] = _manifest(
            "s",
            application="a",
            test_results=[{"scenario": "upgrade", "status": "passed", "summary": {"total": 7, "passed": 7}}],
        )
        SnapshotSyncer(client, store).sync_once()
        result = store.get_snapshot_by_name("s").test_results[0]
        assert (result.scenario, result.total, result.passed) == ("upgrade", 7, 7)

    def test_no_results_anywhere_gives_zero_counts(self, bucket, store):
        objects, client = bucket
        objects["a/snapshots/s/snapshot.json"] = _manifest("s", application="a")
        SnapshotSyncer(client, store).sync_once()
        result = store.get_snapshot_by_name("s").test_results[0]
        assert (result.status, result.total) == ("failed", 0)

    def test_application_falls_back_to_key_prefix(self, bucket, store):
        objects, client = bucket
        objects["quay-v3-17/snapshots/s/snapshot.json"] = _manifest("s", application="")
        SnapshotSyncer(client, store).sync_once()
        assert store.get_snapshot_by_name("s").application == "quay-v3-17"

    def test_list_applications_failure_ends_pass(self, store):
        client = MagicMock()
        client.list_applications.side_effect = ObjectStoreError("down")
        stats = SnapshotSyncer(client, store).sync_once()
        assert stats.errors == 1
        client.list_snapshots.assert_not_called()

    def test_one_application_failing_does_not_block_another(self, store):
        client = MagicMock()
        client.list_applications.return_value = ["broken", "ok"]
        client.list_snapshots.side_effect = [ObjectStoreError("denied"), []]
        stats = SnapshotSyncer(client, store).sync_once()
        assert stats.applications == 2
        assert stats.errors == 1
        assert client.list_snapshots.call_count == 2

    def test_store_failure_is_isolated(self, bucket, store):
        objects, client = bucket
        objects["a/snapshots/s1/snapshot.json"] = _manifest("s1", application="a")
        objects["a/snapshots/s2/snapshot.json"] = _manifest("s2", application="a")
        syncer = SnapshotSyncer(client, store)

        real_create = store.create_snapshot
        calls = {"n": 0}

        def flaky_create(snap):
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("disk full")
            return real_create(snap)

        store.create_snapshot = flaky_create
        stats = syncer.sync_once()

        assert stats.errors == 1
        assert stats.ingested == 1
        assert store.snapshot_exists_by_name("s2")


def test_stop_event_ends_pass_between_applications(bucket, store):
    objects, client = bucket
    objects["a/snapshots/s/snapshot.json"] = _manifest("s", application="a")
    syncer = SnapshotSyncer(client, store)
    syncer.stop.set()

    stats = syncer.sync_once()

    assert stats.applications == 0
    assert not store.snapshot_exists_by_name("s")
