"""
core/readiness.py -- Release readiness signal.

evaluate() is pure and total: given the stored release, its issue summary,
and whether the latest snapshot's tests passed, it returns a green / yellow /
red signal with a short human-readable reason. Rules are checked in order and
the first match wins:

  1. released                       -> green  "Released"
  2. due date passed                -> red    "Past due date"
  3. tests failing AND open issues  -> red    "Tests failing and open issues remain"
  4. tests failing                  -> yellow "Integration tests failing"
  5. open issues                    -> yellow "Open issues remain"
  6. due date within 3 days         -> yellow "Due date in N days"
  7. otherwise                      -> green  "All checks passing"

The signal is never persisted; the API computes it on demand from whatever
the syncers last wrote.
"""

import math
from datetime import datetime, timezone
from typing import Optional

from core.models import SIGNAL_GREEN, SIGNAL_RED, SIGNAL_YELLOW, IssueSummary, ReadinessSignal, ReleaseVersion

DUE_SOON_DAYS = 3


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def days_until(due: datetime, now: datetime) -> int:
    """Whole days from now until due, rounded up (a partial day counts as one)."""
    seconds = (_as_utc(due) - _as_utc(now)).total_seconds()
    return math.ceil(seconds / 86400)


def evaluate(
    release: ReleaseVersion,
    summary: Optional[IssueSummary],
    tests_passed: bool,
    now: Optional[datetime] = None,
) -> ReadinessSignal:
    """Compute the readiness signal for one release.

    summary may be None when no issues were ever synced for the release; it
    is treated as zero open issues. now defaults to the current UTC time and
    exists so callers (and tests) can pin the clock.

    Tracker due dates carry no time of day and are stored as 00:00 UTC, so a
    release is past due from the start of its due day, not the end of it.
    """
    if release.released:
        return ReadinessSignal(SIGNAL_GREEN, "Released")

    now = now or datetime.now(timezone.utc)
    open_issues = summary.open if summary is not None else 0

    if release.due_date is not None and _as_utc(now) > _as_utc(release.due_date):
        return ReadinessSignal(SIGNAL_RED, "Past due date")

    if not tests_passed and open_issues > 0:
        return ReadinessSignal(SIGNAL_RED, "Tests failing and open issues remain")
    if not tests_passed:
        return ReadinessSignal(SIGNAL_YELLOW, "Integration tests failing")
    if open_issues > 0:
        return ReadinessSignal(SIGNAL_YELLOW, "Open issues remain")

    if release.due_date is not None:
        days = days_until(release.due_date, now)
        if days <= DUE_SOON_DAYS:
            return ReadinessSignal(SIGNAL_YELLOW, f"Due date in {days} days")

    return ReadinessSignal(SIGNAL_GREEN, "All checks passing")
