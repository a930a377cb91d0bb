"""
api/routes/v1/snapshots.py -- Build snapshot routes.

Routes:
  GET /components          -- every component ever seen in a snapshot
  GET /applications        -- latest snapshot + snapshot count per application
  GET /snapshots           -- paginated snapshot list, newest first
  GET /snapshots/{name}    -- one snapshot with components and test results

All data is whatever the object-store syncer last wrote. Nothing here calls
the bucket.
"""

from fastapi import APIRouter, HTTPException, Query, Request

from api.models import ApplicationOut, ComponentOut, ErrorDetail, SnapshotOut
from releasedb.store import ReleaseStore

router = APIRouter()


@router.get("/components", response_model=list[ComponentOut])
def list_components(request: Request) -> list[ComponentOut]:
    store: ReleaseStore = request.app.state.sync.store
    return [ComponentOut.model_validate(c) for c in store.list_components()]


@router.get("/applications", response_model=list[ApplicationOut])
def list_applications(request: Request) -> list[ApplicationOut]:
    store: ReleaseStore = request.app.state.sync.store
    return [ApplicationOut.model_validate(a) for a in store.latest_snapshot_per_application()]


@router.get("/snapshots", response_model=list[SnapshotOut])
def list_snapshots(
    request: Request,
    application: str = "",
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> list[SnapshotOut]:
    """List snapshots, optionally for one application. Components are not included."""
    store: ReleaseStore = request.app.state.sync.store
    return [SnapshotOut.model_validate(s) for s in store.list_snapshots(application, limit=limit, offset=offset)]


@router.get("/snapshots/{name}", response_model=SnapshotOut)
def get_snapshot(request: Request, name: str) -> SnapshotOut:
    store: ReleaseStore = request.app.state.sync.store
    snap = store.get_snapshot_by_name(name)
    if snap is None:
        raise HTTPException(
            status_code=404,
            detail=ErrorDetail(code="not_found", message=f"Snapshot {name!r} not found.").model_dump(),
        )
    return SnapshotOut.model_validate(snap)
