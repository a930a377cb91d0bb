"""Unit tests for releasedb/store.py -- against in-memory SQLite.

Covers:
- snapshot write-once semantics and lookups
- component registration is idempotent
- release upsert overwrites, active listing excludes released/archived
- issue upsert by (key, fix_version) and delete-not-in set semantics
- issue filters and summary counts, single and batched
- a snapshot writer and an issue writer in two threads on one file store
"""

import threading
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from core.models import ComponentRecord, IssueRecord, ReleaseVersion, SnapshotRecord, SnapshotTestResult
from releasedb.store import ReleaseStore


def _issue(key: str, fix_version: str = "quay-v3.16.2", **kwargs) -> IssueRecord:
    return IssueRecord(key=key, fix_version=fix_version, **kwargs)


def test_ping(store):
    assert store.ping() is True


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------


class TestSnapshots:
    def test_create_assigns_id_and_exists(self, store):
        snap = store.create_snapshot(SnapshotRecord(application="quay-v3-16", name="snap-1", tests_passed=True))
        assert snap.id is not None
        assert snap.created_at is not None
        assert store.snapshot_exists_by_name("snap-1") is True
        assert store.snapshot_exists_by_name("snap-2") is False

    def test_duplicate_name_raises(self, store):
        store.create_snapshot(SnapshotRecord(application="a", name="dup"))
        with pytest.raises(IntegrityError):
            store.create_snapshot(SnapshotRecord(application="a", name="dup"))

    def test_created_at_round_trips_as_utc(self, store):
        ts = datetime(2025, 3, 4, 5, 6, 7, tzinfo=timezone.utc)
        store.create_snapshot(SnapshotRecord(application="a", name="s", created_at=ts))
        assert store.get_snapshot_by_name("s").created_at == ts

    def test_get_by_name_includes_children(self, store):
        snap = store.create_snapshot(SnapshotRecord(application="a", name="s", trigger_component="quay"))
        store.create_snapshot_component(ComponentRecord(snapshot_id=snap.id, component="quay", git_sha="abc"))
        store.create_snapshot_component(ComponentRecord(snapshot_id=snap.id, component="clair", git_sha="def"))
        store.create_snapshot_test_result(
            SnapshotTestResult(snapshot_id=snap.id, scenario="e2e", status="passed", total=3, passed=3)
        )

        got = store.get_snapshot_by_name("s")
        assert got.trigger_component == "quay"
        assert [c.component for c in got.components] == ["clair", "quay"]
        assert got.test_results[0].scenario == "e2e"
        assert got.test_results[0].total == 3

    def test_get_missing_returns_none(self, store):
        assert store.get_snapshot_by_name("missing") is None

    def test_list_newest_first_with_paging(self, store):
        for i in range(5):
            store.create_snapshot(SnapshotRecord(application="a", name=f"s{i}"))
        store.create_snapshot(SnapshotRecord(application="b", name="other"))

        assert [s.name for s in store.list_snapshots("a", limit=2)] == ["s4", "s3"]
        assert [s.name for s in store.list_snapshots("a", limit=2, offset=2)] == ["s2", "s1"]
        assert len(store.list_snapshots()) == 6

    def test_latest_snapshot(self, store):
        assert store.latest_snapshot("a") is None
        store.create_snapshot(SnapshotRecord(application="a", name="old", tests_passed=True))
        store.create_snapshot(SnapshotRecord(application="a", name="new", tests_passed=False))
        latest = store.latest_snapshot("a")
        assert latest.name == "new"
        assert latest.tests_passed is False

    def test_latest_per_application(self, store):
        store.create_snapshot(SnapshotRecord(application="quay-v3-16", name="q1"))
        store.create_snapshot(SnapshotRecord(application="omr-v2-0", name="o1"))
        store.create_snapshot(SnapshotRecord(application="quay-v3-16", name="q2"))

        rows = store.latest_snapshot_per_application()
        assert [(r.application, r.latest_snapshot.name, r.snapshot_count) for r in rows] == [
            ("omr-v2-0", "o1", 1),
            ("quay-v3-16", "q2", 2),
        ]


def test_ensure_component_is_idempotent(store):
    first = store.ensure_component("quay")
    second = store.ensure_component("quay")
    assert first.id == second.id
    assert [c.name for c in store.list_components()] == ["quay"]


# ---------------------------------------------------------------------------
# Release versions
# ---------------------------------------------------------------------------


class TestReleaseVersions:
    def test_upsert_then_update(self, store):
        due = datetime(2025, 7, 1, tzinfo=timezone.utc)
        store.upsert_release_version(ReleaseVersion(name="quay-v3.16.2", s3_application="quay-v3-16", due_date=due))
        store.upsert_release_version(ReleaseVersion(name="quay-v3.16.2", s3_application="quay-v3-16", released=True))

        rv = store.get_release_version("quay-v3.16.2")
        assert rv.released is True
        assert rv.due_date is None  # upsert overwrites every column
        assert len(store.list_all_release_versions()) == 1

    def test_get_missing_returns_none(self, store):
        assert store.get_release_version("nope") is None

    def test_active_excludes_released_and_archived(self, store):
        store.upsert_release_version(ReleaseVersion(name="a"))
        store.upsert_release_version(ReleaseVersion(name="b", released=True))
        store.upsert_release_version(ReleaseVersion(name="c", archived=True))
        assert [rv.name for rv in store.list_active_release_versions()] == ["a"]

    def test_by_application_prefers_unreleased(self, store):
        store.upsert_release_version(ReleaseVersion(name="quay-v3.16.1", s3_application="quay-v3-16", released=True))
        store.upsert_release_version(ReleaseVersion(name="quay-v3.16.2", s3_application="quay-v3-16"))
        assert store.get_release_version_by_application("quay-v3-16").name == "quay-v3.16.2"
        assert store.get_release_version_by_application("omr-v2-0") is None

    def test_by_application_compares_versions_numerically(self, store):
        for name in ("quay-v3.16.9", "quay-v3.16.10", "quay-v3.16.2"):
            store.upsert_release_version(ReleaseVersion(name=name, s3_application="quay-v3-16"))
        assert store.get_release_version_by_application("quay-v3-16").name == "quay-v3.16.10"

    def test_dates_round_trip(self, store):
        due = datetime(2025, 7, 1, tzinfo=timezone.utc)
        released = datetime(2025, 7, 2, tzinfo=timezone.utc)
        store.upsert_release_version(ReleaseVersion(name="x", due_date=due, release_date=released))
        rv = store.get_release_version("x")
        assert rv.due_date == due
        assert rv.release_date == released


# ---------------------------------------------------------------------------
# Issues
# ---------------------------------------------------------------------------


class TestIssues:
    def test_upsert_updates_in_place(self, store):
        store.upsert_jira_issue(_issue("PROJQUAY-1", status="New"))
        store.upsert_jira_issue(_issue("PROJQUAY-1", status="Closed"))
        issues = store.list_jira_issues("quay-v3.16.2")
        assert len(issues) == 1
        assert issues[0].status == "Closed"

    def test_same_key_in_two_releases_is_two_rows(self, store):
        store.upsert_jira_issue(_issue("PROJQUAY-1", fix_version="quay-v3.16.2"))
        store.upsert_jira_issue(_issue("PROJQUAY-1", fix_version="quay-v3.17.0"))
        assert len(store.list_jira_issues("quay-v3.16.2")) == 1
        assert len(store.list_jira_issues("quay-v3.17.0")) == 1

    def test_delete_not_in_keeps_only_given_keys(self, store):
        for key in ("PROJQUAY-1", "PROJQUAY-2", "PROJQUAY-3"):
            store.upsert_jira_issue(_issue(key))
        store.upsert_jira_issue(_issue("PROJQUAY-9", fix_version="other"))

        removed = store.delete_jira_issues_not_in("quay-v3.16.2", ["PROJQUAY-1", "PROJQUAY-3"])
        assert removed == 1
        assert [i.key for i in store.list_jira_issues("quay-v3.16.2")] == ["PROJQUAY-1", "PROJQUAY-3"]
        assert len(store.list_jira_issues("other")) == 1

    def test_delete_not_in_with_no_keys_clears_release(self, store):
        store.upsert_jira_issue(_issue("PROJQUAY-1"))
        store.delete_jira_issues_not_in("quay-v3.16.2", [])
        assert store.list_jira_issues("quay-v3.16.2") == []

    def test_filters_are_and_combined(self, store):
        store.upsert_jira_issue(_issue("PROJQUAY-1", issue_type="Bug", status="New", labels="cve,security"))
        store.upsert_jira_issue(_issue("PROJQUAY-2", issue_type="Bug", status="Closed", labels="cve"))
        store.upsert_jira_issue(_issue("PROJQUAY-3", issue_type="Story", status="New", labels=""))

        assert [i.key for i in store.list_jira_issues("quay-v3.16.2", issue_type="Bug")] == ["PROJQUAY-1", "PROJQUAY-2"]
        assert [i.key for i in store.list_jira_issues("quay-v3.16.2", issue_type="Bug", status="New")] == ["PROJQUAY-1"]
        assert [i.key for i in store.list_jira_issues("quay-v3.16.2", label="secur")] == ["PROJQUAY-1"]

    def test_label_filter_escapes_wildcards(self, store):
        store.upsert_jira_issue(_issue("PROJQUAY-1", labels="abc"))
        assert store.list_jira_issues("quay-v3.16.2", label="%") == []

    def test_updated_at_defaults_to_now(self, store):
        store.upsert_jira_issue(_issue("PROJQUAY-1"))
        updated = store.list_jira_issues("quay-v3.16.2")[0].updated_at
        assert datetime.now(timezone.utc) - updated < timedelta(minutes=1)


class TestIssueSummary:
    @pytest.fixture(autouse=True)
    def _issues(self, store):
        rows = [
            ("PROJQUAY-1", "Closed", "Bug", ""),
            ("PROJQUAY-2", "VERIFIED", "Bug", ""),
            ("PROJQUAY-3", "New", "Bug", "CVE-2025-1"),
            ("PROJQUAY-4", "In Progress", "CVE", ""),
            ("PROJQUAY-5", "Done", "Story", ""),
        ]
        for key, status, issue_type, labels in rows:
            store.upsert_jira_issue(_issue(key, status=status, issue_type=issue_type, labels=labels))
        store.upsert_jira_issue(_issue("PROJQUAY-9", fix_version="omr-v2.0.10", status="New", issue_type="Bug"))

    def test_single_summary(self, store):
        s = store.get_issue_summary("quay-v3.16.2")
        assert (s.total, s.verified, s.open, s.cves, s.bugs) == (5, 3, 2, 2, 3)

    def test_empty_release_summary_is_zero(self, store):
        s = store.get_issue_summary("nothing")
        assert (s.total, s.verified, s.open, s.cves, s.bugs) == (0, 0, 0, 0, 0)

    def test_batch_matches_single(self, store):
        batch = store.get_issue_summaries_batch(["quay-v3.16.2", "omr-v2.0.10", "nothing"])
        assert batch["quay-v3.16.2"] == store.get_issue_summary("quay-v3.16.2")
        assert batch["omr-v2.0.10"].open == 1
        assert "nothing" not in batch

    def test_batch_empty_input(self, store):
        assert store.get_issue_summaries_batch([]) == {}


def test_default_db_url_comes_from_settings(tmp_path, monkeypatch):
    from core.config import get_settings

    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'rr.db'}")
    get_settings.cache_clear()
    try:
        s = ReleaseStore()
        s.upsert_release_version(ReleaseVersion(name="x"))
        s.close()
        assert (tmp_path / "rr.db").exists()
    finally:
        get_settings.cache_clear()


# ---------------------------------------------------------------------------
# Concurrent writers
# ---------------------------------------------------------------------------


def test_snapshot_and_issue_writers_share_a_file_store(tmp_path):
    s = ReleaseStore(f"sqlite:///{tmp_path / 'shared.db'}")
    errors: list[Exception] = []
    rounds = 50
    fix_version = "quay-v3.16.2"

    def ingest_snapshots():
        try:
            for i in range(rounds):
                snap = s.create_snapshot(SnapshotRecord(application="quay-v3-16", name=f"snap-{i}"))
                s.create_snapshot_test_result(
                    SnapshotTestResult(snapshot_id=snap.id, scenario="e2e", total=1, passed=1)
                )
        except Exception as e:
            errors.append(e)

    def sync_issues():
        try:
            for i in range(rounds):
                s.upsert_jira_issue(_issue(f"PROJQUAY-{i}", fix_version=fix_version))
                keep = [f"PROJQUAY-{j}" for j in range(0, i + 1, 2)] + [f"PROJQUAY-{i}"]
                s.delete_jira_issues_not_in(fix_version, keep)
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=ingest_snapshots), threading.Thread(target=sync_issues)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    try:
        assert errors == []
        snaps = s.list_snapshots(application="quay-v3-16", limit=rounds * 2)
        assert len(snaps) == rounds
        assert all(len(s.list_snapshot_test_results(snap.id)) == 1 for snap in snaps)
        keys = {i.key for i in s.list_jira_issues(fix_version)}
        assert keys == {f"PROJQUAY-{j}" for j in range(0, rounds, 2)} | {f"PROJQUAY-{rounds - 1}"}
    finally:
        s.close()
