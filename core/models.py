"""
core/models.py -- Domain dataclasses for release readiness.

These are pure data containers with zero logic. Persistence lives in
releasedb/store.py; upstream wire formats live beside their clients
(objstore/manifest.py, tracker/client.py).
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

# ---------------------------------------------------------------------------
# Domain constants
# ---------------------------------------------------------------------------

SIGNAL_GREEN = "green"
SIGNAL_YELLOW = "yellow"
SIGNAL_RED = "red"

# Issue statuses that count as done when summarizing a release.
VERIFIED_STATUSES = ("closed", "verified", "done")


# ---------------------------------------------------------------------------
# Object store
# ---------------------------------------------------------------------------


@dataclass
class TestSummary:
    """Aggregate counts from one or more JUnit result documents."""

    __test__ = False  # not a pytest test class

    total: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    duration_sec: float = 0.0
    test_cases: list["TestCase"] = field(default_factory=list)


@dataclass
class TestCase:
    __test__ = False

    name: str
    class_name: str = ""
    duration_sec: float = 0.0
    status: str = "passed"  # passed | failed | error | skipped
    failure_msg: str = ""
    failure_text: str = ""


@dataclass
class Component:
    name: str
    description: str = ""
    id: Optional[int] = None
    created_at: str = ""


@dataclass
class ComponentRecord:
    """One component image captured in a snapshot."""

    snapshot_id: int
    component: str
    git_sha: str = ""
    image_url: str = ""
    git_url: str = ""
    id: Optional[int] = None


@dataclass
class SnapshotTestResult:
    """Per-scenario test outcome attached to a snapshot."""

    __test__ = False

    snapshot_id: int
    scenario: str
    status: str = "unknown"
    pipeline_run: str = ""
    total: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    duration_sec: float = 0.0
    created_at: str = ""
    id: Optional[int] = None


@dataclass
class SnapshotRecord:
    """One immutable artifact build observation.

    name is the natural key: written once, never updated by the syncer.
    components and test_results are only populated by get_snapshot_by_name.
    """

    application: str
    name: str
    trigger_component: str = ""
    trigger_git_sha: str = ""
    trigger_pipeline_run: str = ""
    tests_passed: bool = False
    released: bool = False
    release_blocked_reason: str = ""
    created_at: Optional[datetime] = None
    id: Optional[int] = None
    components: list[ComponentRecord] = field(default_factory=list)
    test_results: list[SnapshotTestResult] = field(default_factory=list)


@dataclass
class ApplicationSummary:
    application: str
    latest_snapshot: Optional[SnapshotRecord] = None
    snapshot_count: int = 0


# ---------------------------------------------------------------------------
# Issue tracker
# ---------------------------------------------------------------------------


@dataclass
class ReleaseVersion:
    """A release train keyed by its fix-version string.

    Upserted on every tracker sync; never deleted, only marked
    released/archived.
    """

    name: str
    description: str = ""
    release_date: Optional[datetime] = None
    released: bool = False
    archived: bool = False
    release_ticket_key: str = ""
    release_ticket_assignee: str = ""
    s3_application: str = ""
    due_date: Optional[datetime] = None


@dataclass
class IssueRecord:
    """One tracker issue pinned to one release. Natural key: (key, fix_version)."""

    key: str
    fix_version: str
    summary: str = ""
    status: str = ""
    priority: str = ""
    labels: str = ""  # comma-joined
    assignee: str = ""
    issue_type: str = ""
    resolution: str = ""
    link: str = ""
    updated_at: Optional[datetime] = None
    id: Optional[int] = None


@dataclass
class IssueSummary:
    total: int = 0
    verified: int = 0
    open: int = 0
    cves: int = 0
    bugs: int = 0


# ---------------------------------------------------------------------------
# Readiness
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ReadinessSignal:
    signal: str  # green | yellow | red
    message: str
