"""
core/scheduler.py -- Startup wiring and the periodic sync loops.

SyncContext is built once by the process entry point (API lifespan or the
CLI) and passed by reference. It owns the store handle, the two syncers,
and the shared stop event. Nothing here is module-level state.

Each loop is an asyncio task that runs one sync pass in a worker thread,
then sleeps for its interval. A pass always finishes before the next one
starts, so a loop never overlaps with itself; the two loops run
independently of each other and share only the store.

Shutdown sets the stop event first, then cancels the tasks. A pass still
running in its worker thread stops between items, and a tracker request
waiting out its delay or a rate limit gives up at once.
"""

import asyncio
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Optional

from core.config import Settings
from objstore.client import ArtifactStoreClient
from objstore.sync import SnapshotSyncer
from releasedb.store import ReleaseStore
from tracker.client import TrackerClient
from tracker.sync import TrackerSyncer

logger = logging.getLogger("releaseready.scheduler")


@dataclass
class SyncContext:
    settings: Settings
    store: ReleaseStore
    snapshot_syncer: Optional[SnapshotSyncer] = None
    tracker_syncer: Optional[TrackerSyncer] = None
    tracker_base_url: str = ""
    stop: threading.Event = field(default_factory=threading.Event)
    tasks: list[asyncio.Task] = field(default_factory=list)

    def close(self) -> None:
        self.store.close()


def build_context(settings: Settings, store: Optional[ReleaseStore] = None) -> SyncContext:
    """Open the store and construct whichever syncers are configured.

    Store-open and client-construction failures propagate: they are the
    only errors fatal to the process.
    """
    store = store or ReleaseStore(settings.database_url)
    ctx = SyncContext(settings=settings, store=store, tracker_base_url=settings.jira_url.rstrip("/"))

    if settings.s3_enabled:
        ctx.snapshot_syncer = SnapshotSyncer(ArtifactStoreClient.from_settings(settings), store, ctx.stop)
        logger.info("Object-store sync enabled (bucket=%s)", settings.s3_bucket)
    else:
        logger.warning("S3_BUCKET not set -- object-store sync disabled")

    if settings.jira_enabled:
        ctx.tracker_syncer = TrackerSyncer(TrackerClient.from_settings(settings, stop=ctx.stop), store, ctx.stop)
        logger.info("Tracker sync enabled (project=%s)", settings.jira_project)
    else:
        logger.warning("JIRA_TOKEN not set -- tracker sync disabled")

    return ctx


async def run_periodic(name: str, sync_once: Callable[[], Any], interval: float, stop: threading.Event) -> None:
    """Run sync_once immediately, then every interval seconds until stopped."""
    logger.info("%s loop started (interval %.0fs)", name, interval)
    while not stop.is_set():
        try:
            await asyncio.to_thread(sync_once)
        except Exception:
            logger.exception("%s pass failed", name)
        if stop.is_set():
            break
        await asyncio.sleep(interval)
    logger.info("%s loop stopped", name)


def start_sync_tasks(ctx: SyncContext) -> list[asyncio.Task]:
    """Start one background task per configured syncer. Needs a running loop."""
    if ctx.snapshot_syncer is not None:
        ctx.tasks.append(
            asyncio.create_task(
                run_periodic("snapshot-sync", ctx.snapshot_syncer.sync_once, ctx.settings.s3_poll_interval, ctx.stop)
            )
        )
    if ctx.tracker_syncer is not None:
        ctx.tasks.append(
            asyncio.create_task(
                run_periodic("tracker-sync", ctx.tracker_syncer.sync_once, ctx.settings.jira_poll_interval, ctx.stop)
            )
        )
    return ctx.tasks


async def stop_sync_tasks(ctx: SyncContext) -> None:
    ctx.stop.set()
    for task in ctx.tasks:
        task.cancel()
    await asyncio.gather(*ctx.tasks, return_exceptions=True)
    ctx.tasks.clear()


def run_once(ctx: SyncContext) -> None:
    """One pass of each configured syncer, sequentially, in the calling thread."""
    if ctx.snapshot_syncer is not None:
        ctx.snapshot_syncer.sync_once()
    if ctx.tracker_syncer is not None:
        ctx.tracker_syncer.sync_once()
