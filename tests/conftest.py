"""
tests/conftest.py -- Shared test fixtures for the release readiness tests.

This module provides:
  - store: a fresh in-memory ReleaseStore per test
  - seed_store(): loads a small, known data set used by the API tests
  - _patch_lifespan(): wires a test SyncContext into app.state, bypassing
    real startup (no S3 client, no tracker client, no background loops)
  - api_client: TestClient over the real FastAPI app with a seeded store
  - bucket: an ArtifactStoreClient over a dict-backed fake S3 client

Design: the API store uses a named shared-memory SQLite URI (not plain
:memory:) because TestClient runs sync route handlers in a thread pool.
Plain :memory: DBs are per-connection and would present a blank schema to
each worker thread. The named URI shares one in-memory instance across all
connections in the process.
"""

from __future__ import annotations

import io
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError
from fastapi.testclient import TestClient

from api.main import app
from core.config import Settings
from core.models import ComponentRecord, IssueRecord, ReleaseVersion, SnapshotRecord, SnapshotTestResult
from core.scheduler import SyncContext
from objstore.client import ArtifactStoreClient
from releasedb.store import ReleaseStore

TRACKER_URL = "https://issues.example.com"


@pytest.fixture
def store() -> Generator[ReleaseStore, None, None]:
    s = ReleaseStore("sqlite:///:memory:")
    yield s
    s.close()


def seed_store(store: ReleaseStore) -> None:
    """Two releases, three snapshots, three issues.

    quay-v3.16.2  unreleased, due in 30 days, app quay-v3-16
                  latest snapshot has failing tests, 2 open issues -> red
    omr-v2.0.10   released, app omr-v2-0                          -> green
    """
    now = datetime.now(timezone.utc)
    store.upsert_release_version(
        ReleaseVersion(
            name="quay-v3.16.2",
            description="Quay 3.16.2",
            release_ticket_key="PROJQUAY-100",
            release_ticket_assignee="Release Captain",
            s3_application="quay-v3-16",
            due_date=now + timedelta(days=30),
        )
    )
    store.upsert_release_version(
        ReleaseVersion(name="omr-v2.0.10", released=True, s3_application="omr-v2-0")
    )

    first = store.create_snapshot(
        SnapshotRecord(
            application="quay-v3-16",
            name="quay-v3-16-aaa111",
            trigger_component="quay",
            trigger_git_sha="aaa111",
            tests_passed=True,
        )
    )
    store.ensure_component("quay")
    store.create_snapshot_component(
        ComponentRecord(snapshot_id=first.id, component="quay", git_sha="aaa111", image_url="quay.io/quay:aaa111")
    )
    latest = store.create_snapshot(
        SnapshotRecord(
            application="quay-v3-16",
            name="quay-v3-16-bbb222",
            trigger_component="clair",
            trigger_git_sha="bbb222",
            tests_passed=False,
        )
    )
    store.ensure_component("clair")
    store.create_snapshot_component(ComponentRecord(snapshot_id=latest.id, component="clair", git_sha="bbb222"))
    store.create_snapshot_test_result(
        SnapshotTestResult(snapshot_id=latest.id, scenario="e2e", status="failed", total=10, passed=8, failed=2)
    )
    store.create_snapshot(SnapshotRecord(application="omr-v2-0", name="omr-v2-0-ccc333", tests_passed=True))

    for key, status, issue_type, labels in (
        ("PROJQUAY-1", "Closed", "Bug", "qe-approved"),
        ("PROJQUAY-2", "New", "Bug", "cve,security"),
        ("PROJQUAY-3", "In Progress", "Story", ""),
    ):
        store.upsert_jira_issue(
            IssueRecord(
                key=key,
                fix_version="quay-v3.16.2",
                summary=f"Issue {key}",
                status=status,
                issue_type=issue_type,
                labels=labels,
                link=f"{TRACKER_URL}/browse/{key}",
            )
        )


def _patch_lifespan(ctx: SyncContext):
    """Return an async context manager that replaces the real lifespan.

    No syncers are built, so no background task is started and no network
    client is constructed.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.sync = ctx
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, ReleaseStore], None, None]:
    """Yield (client, store) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers against an isolated, seeded store.
    """
    store = ReleaseStore("sqlite:///file:test_api?mode=memory&cache=shared&uri=true")
    seed_store(store)
    ctx = SyncContext(settings=Settings(), store=store, tracker_base_url=TRACKER_URL)

    app.router.lifespan_context = _patch_lifespan(ctx)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, store

    store.close()


# ---------------------------------------------------------------------------
# Object store fake
# ---------------------------------------------------------------------------


def _fake_s3(objects: dict[str, bytes]) -> MagicMock:
    """A MagicMock S3 client serving list_objects_v2 pages and get_object from a dict.

    Reads the dict on every call, so tests may add objects after building
    the client.
    """
    s3 = MagicMock()

    def paginate(Bucket, Prefix="", Delimiter=None):
        keys = sorted(k for k in objects if k.startswith(Prefix))
        if Delimiter:
            prefixes = sorted(
                {Prefix + k[len(Prefix) :].split(Delimiter, 1)[0] + Delimiter for k in keys if Delimiter in k[len(Prefix) :]}
            )
            return [{"CommonPrefixes": [{"Prefix": p} for p in prefixes]}]
        return [{"Contents": [{"Key": k} for k in keys]}]

    def get_object(Bucket, Key):
        if Key not in objects:
            raise ClientError({"Error": {"Code": "NoSuchKey", "Message": "not found"}}, "GetObject")
        return {"Body": io.BytesIO(objects[Key])}

    s3.get_paginator.return_value.paginate.side_effect = paginate
    s3.get_object.side_effect = get_object
    return s3


@pytest.fixture
def bucket() -> tuple[dict[str, bytes], ArtifactStoreClient]:
    """Return (objects, client): mutate objects to shape what the client sees."""
    objects: dict[str, bytes] = {}
    return objects, ArtifactStoreClient("artifacts", s3=_fake_s3(objects))
