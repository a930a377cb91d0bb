"""
tracker/client.py -- JIRA REST v2 client for release discovery and issue search.

Three upstream calls are used:

  GET /rest/api/2/search                       paginated JQL search
  GET /rest/api/2/project/{project}/versions   version metadata

Every request goes through _get_json(), which sleeps a fixed minimum delay
first and retries 429 responses. The wait honours the server's Retry-After
header when it carries a number of seconds, else it backs off 2^n seconds
for retry n. After max_retries retries the call fails with RetriesExhausted.
Any other non-200 status fails at once with HTTPStatusError; network errors
fail at once with TrackerError. Both waits are taken on the stop event, so
setting it ends a wait early with Stopped. Callers never need to inspect
messages: the exception type says what happened.

Usage:
    client = TrackerClient.from_settings(get_settings())
    releases = client.discover_active_releases()
    issues = client.search_issues("quay-v3.16.2")
    version = client.get_version("quay-v3.16.2")
"""

import logging
import re
import threading
from urllib.parse import quote
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import requests

from core.config import Settings

logger = logging.getLogger("releaseready.tracker")

_PAGE_SIZE = 100
_DATE_FMT = "%Y-%m-%d"
_UPDATED_FMT = "%Y-%m-%dT%H:%M:%S.%f%z"

_DISCOVERY_FIELDS = "summary,status,fixVersions,duedate,components,assignee"
_ISSUE_FIELDS = "summary,status,priority,labels,fixVersions,assignee,issuetype,resolution,updated"

# Matches "Quay v3.16.2", "OMR v2.0.10", "v3.15", "3.16.2". The product word
# is optional and not validated against a known list: discovery already
# restricts the search to release-tracking tickets.
_VERSION_RE = re.compile(r"(?:(\w+)\s+)?v?(\d+\.\d+(?:\.\d+)?)", re.IGNORECASE)

_DEFAULT_PRODUCT = "quay"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class TrackerError(Exception):
    """Base class for every tracker failure."""


class HTTPStatusError(TrackerError):
    """A non-200, non-429 response. Not retried."""

    def __init__(self, status: int, body: str = "") -> None:
        super().__init__(f"JIRA API returned {status}: {body[:200]}")
        self.status = status
        self.body = body


class RateLimited(TrackerError):
    """A 429 response. retry_after is the server's hint in seconds, if any."""

    def __init__(self, retry_after: Optional[float] = None, body: str = "") -> None:
        super().__init__(f"JIRA API returned 429: {body[:200]}")
        self.status = 429
        self.retry_after = retry_after


class RetriesExhausted(TrackerError):
    """Still rate limited after the configured number of retries."""


class VersionNotFound(TrackerError):
    """The project has no version with the requested name."""


class Stopped(TrackerError):
    """The stop event was set while waiting to send a request."""


# ---------------------------------------------------------------------------
# Wire records
# ---------------------------------------------------------------------------


def _name_of(value: Any) -> str:
    """Return value["name"] for JIRA's {"name": ...} sub-objects, "" when null."""
    if isinstance(value, dict):
        return str(value.get("name") or "")
    return ""


def _parse_date(value: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.strptime(value, _DATE_FMT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def parse_updated(value: str) -> Optional[datetime]:
    """Parse JIRA's "2024-01-15T10:30:00.000+0000" timestamps. None if malformed."""
    if not value:
        return None
    try:
        return datetime.strptime(value, _UPDATED_FMT)
    except ValueError:
        return None


@dataclass
class Issue:
    key: str
    summary: str = ""
    status: str = ""
    priority: str = ""
    labels: list[str] = field(default_factory=list)
    fix_versions: list[str] = field(default_factory=list)
    assignee: str = ""
    issue_type: str = ""
    resolution: str = ""
    updated: str = ""
    due_date: str = ""
    components: list[str] = field(default_factory=list)

    @classmethod
    def from_api(cls, raw: dict) -> "Issue":
        f = raw.get("fields") or {}
        assignee = f.get("assignee") or {}
        return cls(
            key=str(raw.get("key", "")),
            summary=f.get("summary") or "",
            status=_name_of(f.get("status")),
            priority=_name_of(f.get("priority")),
            labels=list(f.get("labels") or []),
            fix_versions=[_name_of(v) for v in f.get("fixVersions") or []],
            assignee=assignee.get("displayName") or "" if isinstance(assignee, dict) else "",
            issue_type=_name_of(f.get("issuetype")),
            resolution=_name_of(f.get("resolution")),
            updated=f.get("updated") or "",
            due_date=f.get("duedate") or "",
            components=[_name_of(c) for c in f.get("components") or []],
        )


@dataclass
class VersionInfo:
    name: str
    description: str = ""
    release_date: Optional[datetime] = None
    released: bool = False
    archived: bool = False

    @classmethod
    def from_api(cls, raw: dict) -> "VersionInfo":
        return cls(
            name=str(raw.get("name", "")),
            description=raw.get("description") or "",
            release_date=_parse_date(raw.get("releaseDate") or ""),
            released=bool(raw.get("released", False)),
            archived=bool(raw.get("archived", False)),
        )


@dataclass
class ActiveRelease:
    """A release discovered from an open release-tracking ticket."""

    fix_version: str  # e.g. "quay-v3.16.3"
    release_ticket_key: str  # e.g. "PROJQUAY-10276"
    assignee: str = ""
    due_date: Optional[datetime] = None
    s3_application: str = ""  # e.g. "quay-v3-16"


# ---------------------------------------------------------------------------
# Version derivation
# ---------------------------------------------------------------------------


def parse_version_from_summary(summary: str) -> Optional[tuple[str, str]]:
    """Extract (product, version) from a release ticket summary.

    "Release Quay v3.16.2" -> ("quay", "3.16.2")
    "Release OMR v2.0.10"  -> ("omr", "2.0.10")
    "Release v3.15"        -> ("release", "3.15")
    Returns None when no version is present. product is lower-cased and may
    be "" when the version opens the summary.
    """
    m = _VERSION_RE.search(summary)
    if m is None:
        return None
    return (m.group(1) or "").lower(), m.group(2)


def fix_version_for(product: str, version: str) -> str:
    """Build the tracker fix-version label for a parsed summary.

    JIRA fix versions read "{product}-v{version}". Without a usable product
    word the bare version is returned.
    """
    if product and product != "release":
        return f"{product}-v{version}"
    return version


def fix_version_to_s3_app(fix_version: str) -> str:
    """Map a fix version to the artifact-store application prefix.

    "omr-v2.0.10" -> "omr-v2-0"
    "3.16.3"      -> "quay-v3-16"
    Returns "" when the version has fewer than two numeric parts.
    """
    product = _DEFAULT_PRODUCT
    version = fix_version
    idx = fix_version.find("-v")
    if idx > 0:
        product = fix_version[:idx]
        version = fix_version[idx + 2 :]
    parts = version.split(".")
    if len(parts) < 2:
        return ""
    return f"{product}-v{parts[0]}-{parts[1]}"


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class TrackerClient:
    def __init__(
        self,
        base_url: str,
        token: str = "",
        project: str = "",
        target_version_field: str = "",
        min_delay: float = 1.0,
        max_retries: int = 3,
        timeout: float = 30.0,
        page_size: int = _PAGE_SIZE,
        session: Optional[requests.Session] = None,
        stop: Optional[threading.Event] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.project = project
        self.target_version_field = target_version_field
        self.min_delay = min_delay
        self.max_retries = max_retries
        self.timeout = timeout
        self.page_size = page_size
        if session is None:
            session = requests.Session()
            # 3 hops is generous for a single known host.
            session.max_redirects = 3
        self._session = session
        self.stop = stop or threading.Event()

    @classmethod
    def from_settings(cls, settings: Settings, stop: Optional[threading.Event] = None) -> "TrackerClient":
        return cls(
            base_url=settings.jira_url,
            token=settings.jira_token,
            project=settings.jira_project,
            target_version_field=settings.jira_target_version_field,
            min_delay=settings.jira_min_delay,
            max_retries=settings.jira_max_retries,
            timeout=settings.jira_timeout,
            stop=stop,
        )

    def issue_link(self, key: str) -> str:
        return f"{self.base_url}/browse/{key}"

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _get_once(self, path: str, params: Optional[dict] = None) -> Any:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        try:
            resp = self._session.get(f"{self.base_url}{path}", params=params, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise TrackerError(f"GET {path}: {e}") from e

        if resp.status_code == 429:
            raise RateLimited(_parse_retry_after(resp.headers.get("Retry-After")), resp.text)
        if resp.status_code != 200:
            raise HTTPStatusError(resp.status_code, resp.text)
        try:
            return resp.json()
        except ValueError as e:
            raise TrackerError(f"GET {path}: invalid JSON: {e}") from e

    def _wait(self, seconds: float, path: str) -> None:
        if self.stop.wait(seconds):
            raise Stopped(f"stopped while waiting to GET {path}")

    def _get_json(self, path: str, params: Optional[dict] = None) -> Any:
        """GET with the fixed pre-request delay and bounded 429 retries."""
        attempt = 0
        while True:
            if self.min_delay > 0:
                self._wait(self.min_delay, path)
            try:
                return self._get_once(path, params)
            except RateLimited as e:
                if attempt >= self.max_retries:
                    raise RetriesExhausted(f"still rate limited after {self.max_retries} retries: {path}") from e
                attempt += 1
                wait = e.retry_after if e.retry_after is not None else float(2**attempt)
                logger.warning("Rate limited on %s, retry %d/%d in %.1fs", path, attempt, self.max_retries, wait)
                self._wait(wait, path)

    def _search(self, jql: str, fields: str) -> list[Issue]:
        """Page through /search until startAt + page length reaches total."""
        issues: list[Issue] = []
        start_at = 0
        while True:
            data = self._get_json(
                "/rest/api/2/search",
                params={
                    "jql": jql,
                    "fields": fields,
                    "startAt": start_at,
                    "maxResults": self.page_size,
                },
            )
            page = data.get("issues") or []
            issues.extend(Issue.from_api(raw) for raw in page)
            total = int(data.get("total") or 0)
            # An empty page with total still ahead would otherwise loop forever.
            if not page or start_at + len(page) >= total:
                break
            start_at += len(page)
        return issues

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def build_search_jql(self, fix_version: str) -> str:
        """JQL for one release's issues.

        With a target-version custom field configured, issues match on
        either fixVersion or that field.
        """
        if not self.target_version_field:
            return f'project={self.project} AND fixVersion="{fix_version}"'
        cf_id = self.target_version_field.removeprefix("customfield_")
        return f'project={self.project} AND (fixVersion="{fix_version}" OR cf[{cf_id}]="{fix_version}")'

    def search_issues(self, fix_version: str) -> list[Issue]:
        return self._search(self.build_search_jql(fix_version), _ISSUE_FIELDS)

    def discover_active_releases(self) -> list[ActiveRelease]:
        """Find open release-tracking tickets and derive their releases.

        Tickets whose summary carries no parseable version are dropped.
        """
        jql = f'project={self.project} AND component="-area/release" AND status NOT IN (Closed, Done)'
        releases: list[ActiveRelease] = []
        for issue in self._search(jql, _DISCOVERY_FIELDS):
            parsed = parse_version_from_summary(issue.summary)
            if parsed is None:
                logger.debug("No version in release ticket %s: %r", issue.key, issue.summary)
                continue
            fix_version = fix_version_for(*parsed)
            s3_app = fix_version_to_s3_app(fix_version)
            if not s3_app:
                continue
            releases.append(
                ActiveRelease(
                    fix_version=fix_version,
                    release_ticket_key=issue.key,
                    assignee=issue.assignee,
                    due_date=_parse_date(issue.due_date),
                    s3_application=s3_app,
                )
            )
        return releases

    def get_versions(self) -> list[VersionInfo]:
        data = self._get_json(f"/rest/api/2/project/{quote(self.project, safe='')}/versions")
        return [VersionInfo.from_api(v) for v in data or []]

    def get_version(self, name: str) -> VersionInfo:
        """Return metadata for one project version. Raises VersionNotFound."""
        for v in self.get_versions():
            if v.name == name:
                return v
        raise VersionNotFound(f"version {name!r} not found in project {self.project}")
