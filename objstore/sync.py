"""
objstore/sync.py -- Ingest new snapshots from the artifact bucket.

One pass walks every application, every snapshot manifest under it, and
writes the snapshots the store has not seen yet. Writes are additive only:
existing snapshots are never updated or deleted here.

Failure isolation: an unreadable application listing, manifest, or result
file is logged and skipped. One bad object never blocks the rest of the
bucket; it is retried on the next pass.

The existence check is read-then-write, not atomic. Run at most one
SnapshotSyncer per store.
"""

import logging
import posixpath
import threading
from dataclasses import dataclass
from typing import Optional

from core.models import ComponentRecord, SnapshotRecord, SnapshotTestResult, TestSummary
from objstore.client import ArtifactStoreClient, NoTestResults
from objstore.manifest import SnapshotManifest
from releasedb.store import ReleaseStore

logger = logging.getLogger("releaseready.objstore.sync")


@dataclass
class SnapshotSyncStats:
    applications: int = 0
    seen: int = 0
    ingested: int = 0
    errors: int = 0


class SnapshotSyncer:
    def __init__(
        self,
        client: ArtifactStoreClient,
        store: ReleaseStore,
        stop: Optional[threading.Event] = None,
    ) -> None:
        self.client = client
        self.store = store
        self.stop = stop or threading.Event()

    def sync_once(self) -> SnapshotSyncStats:
        """Ingest every snapshot not yet in the store. Never raises."""
        stats = SnapshotSyncStats()
        try:
            apps = self.client.list_applications()
        except Exception as e:
            logger.error("List applications failed: %s", e)
            stats.errors += 1
            return stats

        for app in apps:
            if self.stop.is_set():
                logger.info("Stop requested, ending snapshot pass early")
                break
            stats.applications += 1
            self._sync_application(app, stats)

        logger.info(
            "Snapshot pass complete: %d applications, %d manifests, %d new, %d errors",
            stats.applications,
            stats.seen,
            stats.ingested,
            stats.errors,
        )
        return stats

    def _sync_application(self, app: str, stats: SnapshotSyncStats) -> None:
        try:
            keys = self.client.list_snapshots(app)
        except Exception as e:
            logger.error("List snapshots for %s failed: %s", app, e)
            stats.errors += 1
            return

        for key in keys:
            if self.stop.is_set():
                return
            try:
                manifest = self.client.get_snapshot(key)
            except Exception as e:
                logger.error("Get snapshot %s failed: %s", key, e)
                stats.errors += 1
                continue
            stats.seen += 1

            try:
                if self.store.snapshot_exists_by_name(manifest.snapshot):
                    continue
            except Exception as e:
                logger.error("Check snapshot %s failed: %s", manifest.snapshot, e)
                stats.errors += 1
                continue

            logger.info("New snapshot %s for %s", manifest.snapshot, app)
            try:
                self.ingest(key, manifest)
                stats.ingested += 1
            except Exception:
                logger.exception("Ingest snapshot %s failed", manifest.snapshot)
                stats.errors += 1

    def _fetch_summaries(self, key: str, manifest: SnapshotManifest) -> dict[str, TestSummary]:
        """Merged JUnit counts per scenario, read from {snapshot dir}/junit/{scenario}/."""
        snapshot_dir = posixpath.dirname(key) + "/"
        summaries: dict[str, TestSummary] = {}
        for tr in manifest.test_results:
            prefix = f"{snapshot_dir}junit/{tr.scenario}/"
            try:
                summaries[tr.scenario] = self.client.get_test_results(prefix)
            except NoTestResults:
                logger.debug("No junit data for scenario %s at %s", tr.scenario, prefix)
            except Exception as e:
                logger.warning("Junit fetch for scenario %s at %s failed: %s", tr.scenario, prefix, e)
        return summaries

    def ingest(self, key: str, manifest: SnapshotManifest) -> SnapshotRecord:
        """Persist one snapshot with its components and per-scenario results.

        Result files are fetched before the first write so a slow bucket
        never leaves a half-written snapshot behind. When no JUnit files
        exist, the manifest's own pre-computed summary is used if present.
        """
        summaries = self._fetch_summaries(key, manifest)

        record = self.store.create_snapshot(
            SnapshotRecord(
                application=manifest.application or key.split("/", 1)[0],
                name=manifest.snapshot,
                trigger_component=manifest.trigger.component,
                trigger_git_sha=manifest.trigger.git_sha,
                trigger_pipeline_run=manifest.trigger.pipeline_run,
                tests_passed=manifest.readiness.tests_passed,
                released=manifest.readiness.released,
                release_blocked_reason=manifest.readiness.release_blocked_reason,
                created_at=manifest.created_at,
            )
        )

        for comp in manifest.components:
            self.store.ensure_component(comp.name)
            self.store.create_snapshot_component(
                ComponentRecord(
                    snapshot_id=record.id,
                    component=comp.name,
                    git_sha=comp.git_revision,
                    image_url=comp.container_image,
                    git_url=comp.git_url,
                )
            )

        for tr in manifest.test_results:
            counts = summaries.get(tr.scenario) or tr.summary or TestSummary()
            self.store.create_snapshot_test_result(
                SnapshotTestResult(
                    snapshot_id=record.id,
                    scenario=tr.scenario,
                    status=tr.status,
                    pipeline_run=tr.pipeline_run,
                    total=counts.total,
                    passed=counts.passed,
                    failed=counts.failed,
                    skipped=counts.skipped,
                    duration_sec=counts.duration_sec,
                )
            )

        return record
