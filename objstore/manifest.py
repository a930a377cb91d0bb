"""
objstore/manifest.py -- Wire model for snapshot manifests stored in S3.

A manifest is the JSON document written by the build pipeline for every
snapshot at {application}/snapshots/{snapshot}/snapshot.json. Only the
fields the syncer persists are validated; unknown fields are ignored so
pipeline-side additions never break ingestion.

These Pydantic v2 models are the transport contract. The syncer maps them
onto the domain dataclasses in core/models.py before writing.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class _Wire(BaseModel):
    model_config = ConfigDict(extra="ignore")


class Trigger(_Wire):
    component: str = ""
    git_sha: str = ""
    pipeline_run: str = ""


class ManifestComponent(_Wire):
    name: str
    container_image: str = ""
    git_revision: str = ""
    git_url: str = ""


class ManifestTestSummary(_Wire):
    total: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    duration_sec: float = 0.0


class ManifestTestResult(_Wire):
    scenario: str
    status: str = "unknown"  # passed | failed | invalid
    pipeline_run: str = ""
    start_time: Optional[datetime] = None
    completion_time: Optional[datetime] = None
    details: str = ""
    junit_path: Optional[str] = None
    summary: Optional[ManifestTestSummary] = None


class Readiness(_Wire):
    tests_passed: bool = False
    released: bool = False
    release_blocked_reason: str = ""


class SnapshotManifest(_Wire):
    application: str = ""
    snapshot: str = Field(min_length=1)
    created_at: Optional[datetime] = None
    trigger: Trigger = Field(default_factory=Trigger)
    components: list[ManifestComponent] = Field(default_factory=list)
    test_results: list[ManifestTestResult] = Field(default_factory=list)
    readiness: Readiness = Field(default_factory=Readiness)


def decode_manifest(data: bytes) -> SnapshotManifest:
    """Decode and validate manifest JSON.

    Raises ValueError for malformed JSON or a manifest with no snapshot name.
    """
    try:
        return SnapshotManifest.model_validate_json(data)
    except ValidationError as e:
        raise ValueError(f"invalid snapshot manifest: {e.error_count()} error(s): {e.errors()[0]['msg']}") from e
