"""
API response models for the release readiness REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in core/models.py, which
own the internal domain representation. Every model reads straight from the
matching dataclass via from_attributes, so route handlers stay one-liners.

Separation of concerns: core/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class _Out(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)


# ---------------------------------------------------------------------------
# Errors and service
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


class ConfigResponse(BaseModel):
    """Response for GET /api/v1/config. Lets the UI build issue links."""

    model_config = ConfigDict(frozen=True)

    jira_base_url: str


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------


class ComponentOut(_Out):
    id: Optional[int] = None
    name: str
    description: str = ""
    created_at: str = ""


class SnapshotComponentOut(_Out):
    id: Optional[int] = None
    snapshot_id: Optional[int] = None
    component: str
    git_sha: str = ""
    image_url: str = ""
    git_url: str = ""


class TestResultOut(_Out):
    id: Optional[int] = None
    snapshot_id: Optional[int] = None
    scenario: str
    status: str
    pipeline_run: str = ""
    total: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    duration_sec: float = 0.0
    created_at: str = ""


class SnapshotOut(_Out):
    id: Optional[int] = None
    application: str
    name: str
    trigger_component: str = ""
    trigger_git_sha: str = ""
    trigger_pipeline_run: str = ""
    tests_passed: bool = False
    released: bool = False
    release_blocked_reason: str = ""
    created_at: Optional[datetime] = None
    components: list[SnapshotComponentOut] = Field(default_factory=list)
    test_results: list[TestResultOut] = Field(default_factory=list)


class ApplicationOut(_Out):
    application: str
    latest_snapshot: Optional[SnapshotOut] = None
    snapshot_count: int = 0


# ---------------------------------------------------------------------------
# Releases and issues
# ---------------------------------------------------------------------------


class ReleaseVersionOut(_Out):
    name: str
    description: str = ""
    release_date: Optional[datetime] = None
    released: bool = False
    archived: bool = False
    release_ticket_key: str = ""
    release_ticket_assignee: str = ""
    s3_application: str = ""
    due_date: Optional[datetime] = None


class IssueOut(_Out):
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


class IssueSummaryOut(_Out):
    total: int = 0
    verified: int = 0
    open: int = 0
    cves: int = 0
    bugs: int = 0


class ReadinessOut(_Out):
    signal: Literal["green", "yellow", "red"]
    message: str


class ReleaseOverviewOut(BaseModel):
    """One row of GET /api/v1/releases.

    issue_summary is null when no issues have been synced for the release.
    snapshot is the latest snapshot of the release's application, if any.
    """

    model_config = ConfigDict(frozen=True)

    release: ReleaseVersionOut
    snapshot: Optional[SnapshotOut] = None
    issue_summary: Optional[IssueSummaryOut] = None
    readiness: ReadinessOut
