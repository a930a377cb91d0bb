"""
api/routes/v1/releases.py -- Release, issue, and readiness routes.

Routes:
  GET /releases                          -- every release with summary + readiness
  GET /releases/{app}/version            -- stored release metadata
  GET /releases/{app}/issues             -- issues, filtered by ?type&status&label
  GET /releases/{app}/issues/summary     -- verified/open/CVE/bug counts
  GET /releases/{app}/readiness          -- green/yellow/red signal
  GET /config                            -- tracker base URL for issue links

{app} is an artifact-store application such as "quay-v3-16". It resolves to
a fix version through the stored release whose s3_application matches. When
no stored release claims it, the version is derived from the name itself:
"quay-v3-16" -> "3.16", "quay-v3-16-2" -> "3.16.2".

Readiness is computed on request and never stored. The tests input is the
latest snapshot of the release's application; a release with no snapshot
counts as tests not passed.
"""

from typing import Optional

from fastapi import APIRouter, HTTPException, Request

from api.models import (
    ConfigResponse,
    ErrorDetail,
    IssueOut,
    IssueSummaryOut,
    ReadinessOut,
    ReleaseOverviewOut,
    ReleaseVersionOut,
    SnapshotOut,
)
from core.models import IssueSummary, ReadinessSignal, ReleaseVersion, SnapshotRecord
from core.readiness import evaluate
from releasedb.store import ReleaseStore

router = APIRouter()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def derive_fix_version(app: str) -> str:
    """Version digits of an application prefix, or "" if there are none.

    Parts after the first "v"-prefixed part are taken while they are numeric.
    """
    version: list[str] = []
    for part in app.split("-"):
        if not version:
            if part.startswith("v"):
                version.append(part[1:])
            continue
        if not part.isdigit():
            break
        version.append(part)
    if not version or not version[0]:
        return ""
    return ".".join(version)


def _resolve_fix_version(store: ReleaseStore, app: str) -> str:
    rv = store.get_release_version_by_application(app)
    fix_version = rv.name if rv is not None else derive_fix_version(app)
    if not fix_version:
        raise HTTPException(
            status_code=404,
            detail=ErrorDetail(code="not_found", message=f"No fix version mapping for {app!r}.").model_dump(),
        )
    return fix_version


def _latest_snapshot(store: ReleaseStore, rv: ReleaseVersion) -> Optional[SnapshotRecord]:
    return store.latest_snapshot(rv.s3_application) if rv.s3_application else None


def _readiness(rv: ReleaseVersion, summary: Optional[IssueSummary], snap: Optional[SnapshotRecord]) -> ReadinessSignal:
    return evaluate(rv, summary, snap.tests_passed if snap is not None else False)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@router.get("/releases", response_model=list[ReleaseOverviewOut])
def list_releases(request: Request) -> list[ReleaseOverviewOut]:
    """Every stored release ordered by name, with one batched summary query."""
    store: ReleaseStore = request.app.state.sync.store
    releases = store.list_all_release_versions()
    summaries = store.get_issue_summaries_batch(rv.name for rv in releases)

    rows: list[ReleaseOverviewOut] = []
    for rv in releases:
        snap = _latest_snapshot(store, rv)
        summary = summaries.get(rv.name)
        rows.append(
            ReleaseOverviewOut(
                release=ReleaseVersionOut.model_validate(rv),
                snapshot=SnapshotOut.model_validate(snap) if snap is not None else None,
                issue_summary=IssueSummaryOut.model_validate(summary) if summary is not None else None,
                readiness=ReadinessOut.model_validate(_readiness(rv, summary, snap)),
            )
        )
    return rows


@router.get("/releases/{app}/version", response_model=ReleaseVersionOut)
def get_release_version(request: Request, app: str) -> ReleaseVersionOut:
    store: ReleaseStore = request.app.state.sync.store
    fix_version = _resolve_fix_version(store, app)
    rv = store.get_release_version(fix_version)
    if rv is None:
        raise HTTPException(
            status_code=404,
            detail=ErrorDetail(code="not_found", message=f"Version {fix_version!r} not found.").model_dump(),
        )
    return ReleaseVersionOut.model_validate(rv)


@router.get("/releases/{app}/issues", response_model=list[IssueOut])
def list_issues(
    request: Request,
    app: str,
    type: str = "",
    status: str = "",
    label: str = "",
) -> list[IssueOut]:
    """Issues for the release. type and status match exactly; label matches a substring."""
    store: ReleaseStore = request.app.state.sync.store
    fix_version = _resolve_fix_version(store, app)
    issues = store.list_jira_issues(fix_version, issue_type=type, status=status, label=label)
    return [IssueOut.model_validate(i) for i in issues]


@router.get("/releases/{app}/issues/summary", response_model=IssueSummaryOut)
def get_issue_summary(request: Request, app: str) -> IssueSummaryOut:
    store: ReleaseStore = request.app.state.sync.store
    fix_version = _resolve_fix_version(store, app)
    return IssueSummaryOut.model_validate(store.get_issue_summary(fix_version))


@router.get("/releases/{app}/readiness", response_model=ReadinessOut)
def get_readiness(request: Request, app: str) -> ReadinessOut:
    store: ReleaseStore = request.app.state.sync.store
    fix_version = _resolve_fix_version(store, app)
    rv = store.get_release_version(fix_version)
    if rv is None:
        raise HTTPException(
            status_code=404,
            detail=ErrorDetail(code="not_found", message=f"Version {fix_version!r} not found.").model_dump(),
        )
    summary = store.get_issue_summary(fix_version)
    return ReadinessOut.model_validate(_readiness(rv, summary, _latest_snapshot(store, rv)))


@router.get("/config", response_model=ConfigResponse)
def get_config(request: Request) -> ConfigResponse:
    return ConfigResponse(jira_base_url=request.app.state.sync.tracker_base_url)
