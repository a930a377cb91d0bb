#!/usr/bin/env python3
"""
Release readiness -- mirror build snapshots and release issues, then judge
whether each upcoming release is ready to ship.

Usage:
  python main.py serve
  python main.py serve --port 9000 --reload
  python main.py sync
  python main.py sync --once
  python main.py evaluate quay-v3.16.2
  python main.py evaluate quay-v3.16.2 --json

Configuration comes from the environment (or .env). The main variables:
  DATABASE_URL   SQLAlchemy URL. Defaults to a SQLite file beside the code.
  S3_BUCKET      Artifact bucket. Empty disables snapshot sync.
  S3_ENDPOINT    Custom endpoint for S3-compatible stores.
  JIRA_TOKEN     Tracker bearer token. Empty disables tracker sync.
  JIRA_PROJECT   Tracker project key (default PROJQUAY).
"""

import argparse
import asyncio
import json
import logging
import os
import sys

from core.config import configure_logging, get_settings
from core.readiness import evaluate
from core.scheduler import SyncContext, build_context, run_once, start_sync_tasks, stop_sync_tasks
from releasedb.store import ReleaseStore

logger = logging.getLogger("releaseready.cli")


def _apply_overrides(args: argparse.Namespace) -> None:
    """Push CLI flags into the environment so every get_settings() caller sees them."""
    overrides = {
        "DATABASE_URL": getattr(args, "db", None),
        "S3_POLL_INTERVAL": getattr(args, "s3_interval", None),
        "JIRA_POLL_INTERVAL": getattr(args, "jira_interval", None),
        "LOG_LEVEL": getattr(args, "log_level", None),
    }
    changed = False
    for key, value in overrides.items():
        if value is not None:
            os.environ[key] = str(value)
            changed = True
    if changed:
        get_settings.cache_clear()


async def _run_loops(ctx: SyncContext) -> None:
    tasks = start_sync_tasks(ctx)
    if not tasks:
        logger.warning("No syncer configured -- set S3_BUCKET and/or JIRA_TOKEN")
        return
    try:
        await asyncio.gather(*tasks)
    finally:
        await stop_sync_tasks(ctx)


def _cmd_serve(args: argparse.Namespace) -> None:
    import uvicorn

    uvicorn.run("asgi:app", host=args.host, port=args.port, reload=args.reload)


def _cmd_sync(args: argparse.Namespace) -> None:
    ctx = build_context(get_settings())
    try:
        if args.once:
            run_once(ctx)
        else:
            asyncio.run(_run_loops(ctx))
    except KeyboardInterrupt:
        ctx.stop.set()
        logger.info("Interrupted, shutting down")
    finally:
        ctx.close()


def _cmd_evaluate(args: argparse.Namespace) -> None:
    store = ReleaseStore(get_settings().database_url)
    try:
        rv = store.get_release_version(args.fix_version)
        if rv is None:
            print(f"  [!] Release '{args.fix_version}' is not in the store. Run 'sync' first.")
            sys.exit(1)
        summary = store.get_issue_summaries_batch([rv.name]).get(rv.name)
        snap = store.latest_snapshot(rv.s3_application) if rv.s3_application else None
        tests_passed = snap.tests_passed if snap is not None else False
        signal = evaluate(rv, summary, tests_passed)
    finally:
        store.close()

    if args.json:
        print(
            json.dumps(
                {
                    "release": rv.name,
                    "signal": signal.signal,
                    "message": signal.message,
                    "open_issues": summary.open if summary else 0,
                    "tests_passed": tests_passed,
                    "snapshot": snap.name if snap else None,
                },
                indent=2,
            )
        )
        return

    print(f"\n{rv.name}")
    print("─" * 40)
    print(f"  Signal:    {signal.signal.upper()}")
    print(f"  Reason:    {signal.message}")
    if summary is not None:
        print(f"  Issues:    {summary.total} total, {summary.open} open, {summary.verified} verified")
    else:
        print("  Issues:    none synced")
    print(f"  Snapshot:  {snap.name if snap else 'none'} (tests {'passed' if tests_passed else 'not passed'})")
    print()


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="release-readiness",
        description="Release readiness: snapshot and issue sync with go/no-go signals.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--db", metavar="URL", help="Database URL (overrides DATABASE_URL)")
    parser.add_argument("--log-level", metavar="LEVEL", help="Log level (overrides LOG_LEVEL)")
    sub = parser.add_subparsers(dest="command", required=True)

    p_serve = sub.add_parser("serve", help="Run the API with both sync loops")
    p_serve.add_argument("--host", default="127.0.0.1")
    p_serve.add_argument("--port", type=int, default=8080)
    p_serve.add_argument("--reload", action="store_true", help="Reload on code changes (development)")
    p_serve.add_argument("--s3-interval", type=float, metavar="SECONDS", help="Snapshot poll interval")
    p_serve.add_argument("--jira-interval", type=float, metavar="SECONDS", help="Tracker poll interval")
    p_serve.set_defaults(func=_cmd_serve)

    p_sync = sub.add_parser("sync", help="Run the sync loops without the API")
    p_sync.add_argument("--once", action="store_true", help="Run a single pass of each syncer and exit")
    p_sync.add_argument("--s3-interval", type=float, metavar="SECONDS", help="Snapshot poll interval")
    p_sync.add_argument("--jira-interval", type=float, metavar="SECONDS", help="Tracker poll interval")
    p_sync.set_defaults(func=_cmd_sync)

    p_eval = sub.add_parser("evaluate", help="Print the readiness signal for a stored release")
    p_eval.add_argument("fix_version", metavar="FIX-VERSION", help='e.g. "quay-v3.16.2"')
    p_eval.add_argument("--json", action="store_true", help="Output structured JSON")
    p_eval.set_defaults(func=_cmd_evaluate)

    args = parser.parse_args()
    _apply_overrides(args)
    configure_logging(get_settings().log_level)
    args.func(args)


if __name__ == "__main__":
    main()
