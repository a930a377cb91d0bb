"""
tracker/sync.py -- Mirror active releases and their issues into the store.

One pass:

  1. Discover releases from open release-tracking tickets. A discovery
     failure ends the pass; nothing is written.
  2. For each discovered release, upsert its ReleaseVersion (version
     metadata overlaid when the lookup succeeds) and sync its issues.
  3. Reconcile: an unreleased, unarchived release in the store that was not
     rediscovered is looked up directly. If it has since been released or
     archived upstream, its record is updated and its issues synced once more.

After sync_version(v) the stored issues for v are exactly the issues the
tracker returned for v in that pass.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from core.models import IssueRecord, ReleaseVersion
from releasedb.store import ReleaseStore
from tracker.client import ActiveRelease, Issue, Stopped, TrackerClient, TrackerError, VersionInfo, parse_updated

logger = logging.getLogger("releaseready.tracker.sync")


@dataclass
class TrackerSyncStats:
    discovered: int = 0
    synced: int = 0
    reconciled: int = 0
    errors: int = 0


def _issue_record(issue: Issue, fix_version: str, link: str) -> IssueRecord:
    return IssueRecord(
        key=issue.key,
        fix_version=fix_version,
        summary=issue.summary,
        status=issue.status,
        priority=issue.priority,
        labels=",".join(issue.labels),
        assignee=issue.assignee,
        issue_type=issue.issue_type,
        resolution=issue.resolution,
        link=link,
        updated_at=parse_updated(issue.updated) or datetime.now(timezone.utc),
    )


def _overlay(rv: ReleaseVersion, info: VersionInfo) -> None:
    rv.description = info.description
    rv.released = info.released
    rv.archived = info.archived
    if info.release_date is not None:
        rv.release_date = info.release_date


class TrackerSyncer:
    def __init__(
        self,
        client: TrackerClient,
        store: ReleaseStore,
        stop: Optional[threading.Event] = None,
    ) -> None:
        self.client = client
        self.store = store
        self.stop = stop or threading.Event()

    def _lookup_version(self, name: str) -> Optional[VersionInfo]:
        """Version metadata, or None when the lookup fails for any reason."""
        try:
            return self.client.get_version(name)
        except TrackerError as e:
            logger.warning("Version metadata for %s unavailable: %s", name, e)
            return None

    def sync_once(self) -> TrackerSyncStats:
        """Run one discovery + issue sync pass. Never raises."""
        stats = TrackerSyncStats()
        try:
            releases = self.client.discover_active_releases()
        except Stopped:
            logger.info("Stop requested during discovery, ending tracker pass")
            return stats
        except Exception as e:
            logger.error("Discover releases failed: %s", e)
            stats.errors += 1
            return stats

        stats.discovered = len(releases)
        logger.info("Discovered %d active releases", len(releases))

        active: set[str] = set()
        for rel in releases:
            if self.stop.is_set():
                logger.info("Stop requested, ending tracker pass early")
                return stats
            active.add(rel.fix_version)
            self._sync_discovered(rel, stats)

        self._reconcile(active, stats)
        return stats

    def _sync_discovered(self, rel: ActiveRelease, stats: TrackerSyncStats) -> None:
        rv = ReleaseVersion(
            name=rel.fix_version,
            release_ticket_key=rel.release_ticket_key,
            release_ticket_assignee=rel.assignee,
            s3_application=rel.s3_application,
            due_date=rel.due_date,
        )
        info = self._lookup_version(rel.fix_version)
        if info is not None:
            _overlay(rv, info)

        try:
            self.store.upsert_release_version(rv)
        except Exception as e:
            logger.error("Upsert release %s failed: %s", rel.fix_version, e)
            stats.errors += 1

        if self.sync_version(rel.fix_version):
            stats.synced += 1
        else:
            stats.errors += 1

    def _reconcile(self, active: set[str], stats: TrackerSyncStats) -> None:
        try:
            stored = self.store.list_active_release_versions()
        except Exception as e:
            logger.error("List active releases failed: %s", e)
            stats.errors += 1
            return

        for rv in stored:
            if self.stop.is_set():
                return
            if rv.name in active:
                continue
            info = self._lookup_version(rv.name)
            if info is None or not (info.released or info.archived):
                continue

            rv.released = info.released
            rv.archived = info.archived
            if info.release_date is not None:
                rv.release_date = info.release_date
            try:
                self.store.upsert_release_version(rv)
            except Exception as e:
                logger.error("Upsert release %s failed: %s", rv.name, e)
                stats.errors += 1
            if not self.sync_version(rv.name):
                stats.errors += 1
                continue
            stats.reconciled += 1
            logger.info("Reconciled release %s (released=%s archived=%s)", rv.name, info.released, info.archived)

    def sync_version(self, fix_version: str) -> bool:
        """Replace the stored issue set for fix_version with the tracker's.

        Returns False when the search failed; the stored issues are then left
        untouched until the next pass.
        """
        try:
            issues = self.client.search_issues(fix_version)
        except Stopped:
            logger.info("Stop requested, issues for %s not synced", fix_version)
            return False
        except Exception as e:
            logger.error("Search issues for %s failed: %s", fix_version, e)
            return False

        keys: list[str] = []
        for issue in issues:
            keys.append(issue.key)
            try:
                self.store.upsert_jira_issue(_issue_record(issue, fix_version, self.client.issue_link(issue.key)))
            except Exception as e:
                logger.error("Upsert issue %s failed: %s", issue.key, e)

        try:
            removed = self.store.delete_jira_issues_not_in(fix_version, keys)
        except Exception as e:
            logger.error("Clean up issues for %s failed: %s", fix_version, e)
            return False

        logger.info("Synced %d issues for %s (%d removed)", len(issues), fix_version, removed)
        return True
