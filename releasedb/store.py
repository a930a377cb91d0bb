"""
releasedb/store.py -- SQLAlchemy-backed persistence layer for release readiness.

Uses SQLAlchemy Core (not ORM) so the domain dataclasses in core/models.py
remain the authoritative domain representation. Swapping SQLite for
PostgreSQL is a connection string change, not a rewrite.

Pattern: Repository + Data Mapper. ReleaseStore is the repository (one clean
interface per entity). The _row_to_* functions are the mappers. Syncers and
route handlers never touch SQL directly.

Idempotency lives in natural keys, not in transactions spanning both
pipelines:
  snapshots.name                      unique, write-once
  jira_issues (key, fix_version)      unique, upserted
  release_versions.name               unique, upserted

Security: all queries use bound parameters. No f-strings in SQL.

Usage:
    store = ReleaseStore()                               # SQLite default
    store = ReleaseStore("postgresql://user:pw@host/db") # PostgreSQL
    if not store.snapshot_exists_by_name(name):
        snap = store.create_snapshot(SnapshotRecord(...))
    store.upsert_release_version(rv)
    store.upsert_jira_issue(issue)
    store.delete_jira_issues_not_in("quay-v3.16.2", ["PROJQUAY-1"])
    store.close()
"""

import logging
import re
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Column,
    Float,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    and_,
    case,
    create_engine,
    delete,
    event,
    func,
    or_,
    select,
    text,
)
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Engine

from core.config import get_settings, now_iso
from core.models import (
    VERIFIED_STATUSES,
    ApplicationSummary,
    Component,
    ComponentRecord,
    IssueRecord,
    IssueSummary,
    ReleaseVersion,
    SnapshotRecord,
    SnapshotTestResult,
)
from releasedb.filters import issue_predicates, to_clauses

logger = logging.getLogger("releaseready.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_components = Table(
    "components",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False, unique=True),
    Column("description", Text, nullable=False, server_default=""),
    Column("created_at", String(40), nullable=False),
)

_snapshots = Table(
    "snapshots",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("application", String(255), nullable=False, index=True),
    Column("name", String(255), nullable=False, unique=True),
    Column("trigger_component", String(255), nullable=False, server_default=""),
    Column("trigger_git_sha", String(64), nullable=False, server_default=""),
    Column("trigger_pipeline_run", String(255), nullable=False, server_default=""),
    Column("tests_passed", Integer, nullable=False, server_default="0"),  # boolean stored as 0/1
    Column("released", Integer, nullable=False, server_default="0"),
    Column("release_blocked_reason", Text, nullable=False, server_default=""),
    Column("created_at", String(40), nullable=False),
)

_snapshot_test_results = Table(
    "snapshot_test_results",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("snapshot_id", Integer, ForeignKey("snapshots.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("scenario", String(255), nullable=False),
    Column("status", String(30), nullable=False, server_default="unknown"),
    Column("pipeline_run", String(255), nullable=False, server_default=""),
    Column("total", Integer, nullable=False, server_default="0"),
    Column("passed", Integer, nullable=False, server_default="0"),
    Column("failed", Integer, nullable=False, server_default="0"),
    Column("skipped", Integer, nullable=False, server_default="0"),
    Column("duration_sec", Float, nullable=False, server_default="0"),
    Column("created_at", String(40), nullable=False),
)

_snapshot_components = Table(
    "snapshot_components",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("snapshot_id", Integer, ForeignKey("snapshots.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("component", String(255), nullable=False),
    Column("git_sha", String(64), nullable=False, server_default=""),
    Column("image_url", Text, nullable=False, server_default=""),
    Column("git_url", Text, nullable=False, server_default=""),
)

_jira_issues = Table(
    "jira_issues",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("key", String(50), nullable=False),
    Column("summary", Text, nullable=False, server_default=""),
    Column("status", String(50), nullable=False, server_default=""),
    Column("priority", String(50), nullable=False, server_default=""),
    Column("labels", Text, nullable=False, server_default=""),  # comma-joined
    Column("fix_version", String(100), nullable=False, index=True),
    Column("assignee", String(255), nullable=False, server_default=""),
    Column("issue_type", String(50), nullable=False, server_default=""),
    Column("resolution", String(50), nullable=False, server_default=""),
    Column("link", Text, nullable=False, server_default=""),
    Column("updated_at", String(40), nullable=False),
    UniqueConstraint("key", "fix_version", name="uq_issue_key_version"),
)

_release_versions = Table(
    "release_versions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False, unique=True),
    Column("description", Text, nullable=False, server_default=""),
    Column("release_date", String(40), nullable=False, server_default=""),
    Column("released", Integer, nullable=False, server_default="0"),
    Column("archived", Integer, nullable=False, server_default="0"),
    Column("release_ticket_key", String(50), nullable=False, server_default=""),
    Column("release_ticket_assignee", String(255), nullable=False, server_default=""),
    Column("s3_application", String(100), nullable=False, server_default=""),
    Column("due_date", String(40), nullable=False, server_default=""),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _to_iso(dt: Optional[datetime]) -> str:
    """Serialize a datetime as UTC ISO 8601. None becomes the empty string."""
    if dt is None:
        return ""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    """Inverse of _to_iso. Empty or malformed values read back as None."""
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _version_key(name: str) -> tuple[tuple[int, ...], str]:
    """Order fix versions numerically: quay-v3.16.10 sorts above quay-v3.16.9."""
    return tuple(int(n) for n in re.findall(r"\d+", name)), name


def _insert_for(conn: Connection, table: Table):
    """Return a dialect insert() that supports ON CONFLICT DO UPDATE."""
    if conn.dialect.name == "postgresql":
        return pg_insert(table)
    return sqlite_insert(table)


def _summary_columns():
    """Aggregate columns shared by the single and batched issue summaries."""
    status = func.lower(_jira_issues.c.status)
    issue_type = func.lower(_jira_issues.c.issue_type)
    verified = case((status.in_(VERIFIED_STATUSES), 1), else_=0)
    still_open = case((status.not_in(VERIFIED_STATUSES), 1), else_=0)
    cves = case((or_(issue_type == "cve", func.lower(_jira_issues.c.labels).like("%cve%")), 1), else_=0)
    bugs = case((issue_type == "bug", 1), else_=0)
    return (
        func.count().label("total"),
        func.coalesce(func.sum(verified), 0).label("verified"),
        func.coalesce(func.sum(still_open), 0).label("open"),
        func.coalesce(func.sum(cves), 0).label("cves"),
        func.coalesce(func.sum(bugs), 0).label("bugs"),
    )


def _row_to_summary(row) -> IssueSummary:
    return IssueSummary(
        total=int(row.total or 0),
        verified=int(row.verified or 0),
        open=int(row.open or 0),
        cves=int(row.cves or 0),
        bugs=int(row.bugs or 0),
    )


def _row_to_snapshot(row) -> SnapshotRecord:
    return SnapshotRecord(
        id=row.id,
        application=row.application,
        name=row.name,
        trigger_component=row.trigger_component,
        trigger_git_sha=row.trigger_git_sha,
        trigger_pipeline_run=row.trigger_pipeline_run,
        tests_passed=bool(row.tests_passed),
        released=bool(row.released),
        release_blocked_reason=row.release_blocked_reason,
        created_at=_parse_iso(row.created_at),
    )


def _row_to_component(row) -> Component:
    return Component(id=row.id, name=row.name, description=row.description, created_at=row.created_at)


def _row_to_snapshot_component(row) -> ComponentRecord:
    return ComponentRecord(
        id=row.id,
        snapshot_id=row.snapshot_id,
        component=row.component,
        git_sha=row.git_sha,
        image_url=row.image_url,
        git_url=row.git_url,
    )


def _row_to_test_result(row) -> SnapshotTestResult:
    return SnapshotTestResult(
        id=row.id,
        snapshot_id=row.snapshot_id,
        scenario=row.scenario,
        status=row.status,
        pipeline_run=row.pipeline_run,
        total=row.total,
        passed=row.passed,
        failed=row.failed,
        skipped=row.skipped,
        duration_sec=row.duration_sec,
        created_at=row.created_at,
    )


def _row_to_release(row) -> ReleaseVersion:
    return ReleaseVersion(
        name=row.name,
        description=row.description,
        release_date=_parse_iso(row.release_date),
        released=bool(row.released),
        archived=bool(row.archived),
        release_ticket_key=row.release_ticket_key,
        release_ticket_assignee=row.release_ticket_assignee,
        s3_application=row.s3_application,
        due_date=_parse_iso(row.due_date),
    )


def _row_to_issue(row) -> IssueRecord:
    return IssueRecord(
        id=row.id,
        key=row.key,
        summary=row.summary,
        status=row.status,
        priority=row.priority,
        labels=row.labels,
        fix_version=row.fix_version,
        assignee=row.assignee,
        issue_type=row.issue_type,
        resolution=row.resolution,
        link=row.link,
        updated_at=_parse_iso(row.updated_at),
    )


# ---------------------------------------------------------------------------
# SQLite pragmas
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL, foreign keys, and a busy timeout on every new connection.

    Both sync loops and the API share one engine. WAL lets readers proceed
    during writes; busy_timeout makes a second writer wait for the lock
    instead of failing immediately; it is set first so the WAL switch waits
too. PRAGMAs are per-connection in SQLite.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class ReleaseStore:
    def __init__(self, db_url: Optional[str] = None) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            # The API thread pool and both sync loops share this engine.
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except Exception:
            logger.exception("Database ping failed")
            return False

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    def list_components(self) -> list[Component]:
        with self.engine.connect() as conn:
            rows = conn.execute(select(_components).order_by(_components.c.name)).fetchall()
        return [_row_to_component(r) for r in rows]

    def get_component_by_name(self, name: str) -> Optional[Component]:
        with self.engine.connect() as conn:
            row = conn.execute(select(_components).where(_components.c.name == name)).fetchone()
        return _row_to_component(row) if row is not None else None

    def ensure_component(self, name: str) -> Component:
        """Return the named component, registering it on first sight.

        The insert is ON CONFLICT DO NOTHING so two callers racing on a new
        name both end up reading the same row.
        """
        existing = self.get_component_by_name(name)
        if existing is not None:
            return existing
        with self.engine.connect() as conn:
            stmt = _insert_for(conn, _components).values(name=name, description="", created_at=now_iso())
            conn.execute(stmt.on_conflict_do_nothing(index_elements=["name"]))
            conn.commit()
        return self.get_component_by_name(name)

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def snapshot_exists_by_name(self, name: str) -> bool:
        with self.engine.connect() as conn:
            count = conn.execute(
                select(func.count()).select_from(_snapshots).where(_snapshots.c.name == name)
            ).scalar_one()
        return count > 0

    def create_snapshot(self, snap: SnapshotRecord) -> SnapshotRecord:
        """Insert a snapshot row and return it with its assigned ID.

        Raises sqlalchemy.exc.IntegrityError if the name already exists --
        snapshots are write-once.
        """
        created_at = snap.created_at or datetime.now(timezone.utc)
        with self.engine.connect() as conn:
            result = conn.execute(
                _snapshots.insert().values(
                    application=snap.application,
                    name=snap.name,
                    trigger_component=snap.trigger_component,
                    trigger_git_sha=snap.trigger_git_sha,
                    trigger_pipeline_run=snap.trigger_pipeline_run,
                    tests_passed=int(snap.tests_passed),
                    released=int(snap.released),
                    release_blocked_reason=snap.release_blocked_reason,
                    created_at=_to_iso(created_at),
                )
            )
            conn.commit()
            snapshot_id = result.inserted_primary_key[0]
        return SnapshotRecord(
            id=snapshot_id,
            application=snap.application,
            name=snap.name,
            trigger_component=snap.trigger_component,
            trigger_git_sha=snap.trigger_git_sha,
            trigger_pipeline_run=snap.trigger_pipeline_run,
            tests_passed=snap.tests_passed,
            released=snap.released,
            release_blocked_reason=snap.release_blocked_reason,
            created_at=_parse_iso(_to_iso(created_at)),
        )

    def create_snapshot_component(self, record: ComponentRecord) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _snapshot_components.insert().values(
                    snapshot_id=record.snapshot_id,
                    component=record.component,
                    git_sha=record.git_sha,
                    image_url=record.image_url,
                    git_url=record.git_url,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def create_snapshot_test_result(self, result: SnapshotTestResult) -> int:
        with self.engine.connect() as conn:
            res = conn.execute(
                _snapshot_test_results.insert().values(
                    snapshot_id=result.snapshot_id,
                    scenario=result.scenario,
                    status=result.status,
                    pipeline_run=result.pipeline_run,
                    total=result.total,
                    passed=result.passed,
                    failed=result.failed,
                    skipped=result.skipped,
                    duration_sec=result.duration_sec,
                    created_at=result.created_at or now_iso(),
                )
            )
            conn.commit()
            return res.inserted_primary_key[0]

    def get_snapshot_by_name(self, name: str) -> Optional[SnapshotRecord]:
        """Fetch a snapshot with its components and test results. None if absent."""
        with self.engine.connect() as conn:
            row = conn.execute(select(_snapshots).where(_snapshots.c.name == name)).fetchone()
            if row is None:
                return None
            snap = _row_to_snapshot(row)
            comp_rows = conn.execute(
                select(_snapshot_components)
                .where(_snapshot_components.c.snapshot_id == snap.id)
                .order_by(_snapshot_components.c.component)
            ).fetchall()
        snap.components = [_row_to_snapshot_component(r) for r in comp_rows]
        snap.test_results = self.list_snapshot_test_results(snap.id)
        return snap

    def list_snapshot_test_results(self, snapshot_id: int) -> list[SnapshotTestResult]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_snapshot_test_results)
                .where(_snapshot_test_results.c.snapshot_id == snapshot_id)
                .order_by(_snapshot_test_results.c.scenario)
            ).fetchall()
        return [_row_to_test_result(r) for r in rows]

    def list_snapshots(self, application: str = "", limit: int = 50, offset: int = 0) -> list[SnapshotRecord]:
        """Newest first. An empty application lists across all applications."""
        stmt = select(_snapshots)
        if application:
            stmt = stmt.where(_snapshots.c.application == application)
        stmt = stmt.order_by(_snapshots.c.id.desc()).limit(limit).offset(offset)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_snapshot(r) for r in rows]

    def latest_snapshot(self, application: str) -> Optional[SnapshotRecord]:
        """Most recently ingested snapshot for an application, or None."""
        snaps = self.list_snapshots(application, limit=1)
        return snaps[0] if snaps else None

    def latest_snapshot_per_application(self) -> list[ApplicationSummary]:
        counts = (
            select(
                _snapshots.c.application,
                func.max(_snapshots.c.id).label("max_id"),
                func.count().label("cnt"),
            )
            .group_by(_snapshots.c.application)
            .subquery()
        )
        stmt = (
            select(_snapshots, counts.c.cnt)
            .join(counts, _snapshots.c.id == counts.c.max_id)
            .order_by(_snapshots.c.application)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [
            ApplicationSummary(
                application=r.application,
                latest_snapshot=_row_to_snapshot(r),
                snapshot_count=int(r.cnt),
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Release versions
    # ------------------------------------------------------------------

    def upsert_release_version(self, rv: ReleaseVersion) -> None:
        values = {
            "name": rv.name,
            "description": rv.description,
            "release_date": _to_iso(rv.release_date),
            "released": int(rv.released),
            "archived": int(rv.archived),
            "release_ticket_key": rv.release_ticket_key,
            "release_ticket_assignee": rv.release_ticket_assignee,
            "s3_application": rv.s3_application,
            "due_date": _to_iso(rv.due_date),
        }
        with self.engine.connect() as conn:
            stmt = _insert_for(conn, _release_versions).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=["name"],
                set_={k: stmt.excluded[k] for k in values if k != "name"},
            )
            conn.execute(stmt)
            conn.commit()

    def get_release_version(self, name: str) -> Optional[ReleaseVersion]:
        """Fetch a release by fix-version name. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(select(_release_versions).where(_release_versions.c.name == name)).fetchone()
        return _row_to_release(row) if row is not None else None

    def get_release_version_by_application(self, application: str) -> Optional[ReleaseVersion]:
        """Fetch the release whose snapshots come from the given application.

        When several releases share an application (patch trains), an
        unreleased one wins over a released one, then the highest version
        number.
        """
        stmt = select(_release_versions).where(_release_versions.c.s3_application == application)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        if not rows:
            return None
        best = max(rows, key=lambda r: (not r.released, _version_key(r.name)))
        return _row_to_release(best)

    def list_active_release_versions(self) -> list[ReleaseVersion]:
        """Releases that are neither released nor archived, ordered by name."""
        stmt = (
            select(_release_versions)
            .where(and_(_release_versions.c.released == 0, _release_versions.c.archived == 0))
            .order_by(_release_versions.c.name)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_release(r) for r in rows]

    def list_all_release_versions(self) -> list[ReleaseVersion]:
        with self.engine.connect() as conn:
            rows = conn.execute(select(_release_versions).order_by(_release_versions.c.name)).fetchall()
        return [_row_to_release(r) for r in rows]

    # ------------------------------------------------------------------
    # Issues
    # ------------------------------------------------------------------

    def upsert_jira_issue(self, issue: IssueRecord) -> None:
        """Insert or update one issue keyed by (key, fix_version)."""
        values = {
            "key": issue.key,
            "summary": issue.summary,
            "status": issue.status,
            "priority": issue.priority,
            "labels": issue.labels,
            "fix_version": issue.fix_version,
            "assignee": issue.assignee,
            "issue_type": issue.issue_type,
            "resolution": issue.resolution,
            "link": issue.link,
            "updated_at": _to_iso(issue.updated_at) or now_iso(),
        }
        with self.engine.connect() as conn:
            stmt = _insert_for(conn, _jira_issues).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=["key", "fix_version"],
                set_={k: stmt.excluded[k] for k in values if k not in ("key", "fix_version")},
            )
            conn.execute(stmt)
            conn.commit()

    def delete_jira_issues_not_in(self, fix_version: str, keys: Iterable[str]) -> int:
        """Delete issues for fix_version whose key is not in keys.

        An empty keys collection deletes every issue for the release.
        Returns the number of rows removed.
        """
        keys = list(keys)
        stmt = delete(_jira_issues).where(_jira_issues.c.fix_version == fix_version)
        if keys:
            stmt = stmt.where(_jira_issues.c.key.not_in(keys))
        with self.engine.connect() as conn:
            result = conn.execute(stmt)
            conn.commit()
        return result.rowcount

    def list_jira_issues(
        self,
        fix_version: str,
        issue_type: str = "",
        status: str = "",
        label: str = "",
    ) -> list[IssueRecord]:
        """List a release's issues, AND-filtered by the optional arguments.

        issue_type and status are exact matches; label is a substring match
        against the comma-joined labels column.
        """
        clauses = to_clauses(_jira_issues, issue_predicates(fix_version, issue_type, status, label))
        stmt = select(_jira_issues).where(and_(*clauses)).order_by(_jira_issues.c.key)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_issue(r) for r in rows]

    def get_issue_summary(self, fix_version: str) -> IssueSummary:
        stmt = select(*_summary_columns()).where(_jira_issues.c.fix_version == fix_version)
        with self.engine.connect() as conn:
            row = conn.execute(stmt).fetchone()
        return _row_to_summary(row)

    def get_issue_summaries_batch(self, fix_versions: Iterable[str]) -> dict[str, IssueSummary]:
        """Summaries for several releases in one query.

        Releases with no stored issues are absent from the returned dict.
        """
        fix_versions = list(fix_versions)
        if not fix_versions:
            return {}
        stmt = (
            select(_jira_issues.c.fix_version, *_summary_columns())
            .where(_jira_issues.c.fix_version.in_(fix_versions))
            .group_by(_jira_issues.c.fix_version)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return {r.fix_version: _row_to_summary(r) for r in rows}

    def close(self) -> None:
        """Dispose of the engine connection pool."""
        self.engine.dispose()
