"""
objstore/client.py -- Read-only client for the artifact bucket.

Bucket layout written by the build pipeline:

    {application}/latest.json
    {application}/snapshots/{snapshot}/snapshot.json
    {application}/snapshots/{snapshot}/junit/{scenario}/*.xml

All listing goes through boto3 paginators so buckets with more than 1000
keys under a prefix are walked completely. Every boto/botocore failure is
re-raised as ObjectStoreError so callers handle one exception family.

Usage:
    client = ArtifactStoreClient.from_settings(get_settings())
    for app in client.list_applications():
        for key in client.list_snapshots(app):
            manifest = client.get_snapshot(key)
"""

import logging
from typing import Any, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from core import junit
from core.config import Settings
from core.models import TestSummary
from objstore.manifest import SnapshotManifest, decode_manifest

logger = logging.getLogger("releaseready.objstore")


class ObjectStoreError(Exception):
    """Raised when the bucket cannot be listed or an object cannot be read."""


class NoTestResults(ObjectStoreError):
    """Raised when a result prefix holds no parseable JUnit files."""


class ArtifactStoreClient:
    """Wraps a boto3 S3 client scoped to a single bucket.

    s3 may be any object exposing the boto3 S3 client interface used here
    (get_paginator, get_object); tests pass a MagicMock.
    """

    def __init__(
        self,
        bucket: str,
        endpoint: str = "",
        region: str = "us-east-1",
        access_key: str = "",
        secret_key: str = "",
        s3: Optional[Any] = None,
    ) -> None:
        self.bucket = bucket
        if s3 is None:
            kwargs: dict[str, Any] = {"region_name": region}
            if access_key or secret_key:
                kwargs["aws_access_key_id"] = access_key
                kwargs["aws_secret_access_key"] = secret_key
            if endpoint:
                # S3-compatible stores (Garage, MinIO) need path-style addressing.
                kwargs["endpoint_url"] = endpoint
                kwargs["config"] = BotoConfig(s3={"addressing_style": "path"})
            s3 = boto3.client("s3", **kwargs)
        self._s3 = s3

    @classmethod
    def from_settings(cls, settings: Settings) -> "ArtifactStoreClient":
        return cls(
            bucket=settings.s3_bucket,
            endpoint=settings.s3_endpoint,
            region=settings.s3_region,
            access_key=settings.s3_access_key,
            secret_key=settings.s3_secret_key,
        )

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def _pages(self, **params):
        paginator = self._s3.get_paginator("list_objects_v2")
        try:
            yield from paginator.paginate(Bucket=self.bucket, **params)
        except (BotoCoreError, ClientError) as e:
            raise ObjectStoreError(f"list {params.get('Prefix') or '/'}: {e}") from e

    def _list_keys(self, prefix: str, suffix: str) -> list[str]:
        keys: list[str] = []
        for page in self._pages(Prefix=prefix):
            for obj in page.get("Contents") or []:
                key = obj.get("Key", "")
                if key.endswith(suffix):
                    keys.append(key)
        return keys

    def list_applications(self) -> list[str]:
        """Return the top-level application prefixes, e.g. ["quay-v3-16", "omr-v2-0"]."""
        apps: list[str] = []
        for page in self._pages(Delimiter="/"):
            for p in page.get("CommonPrefixes") or []:
                apps.append(p["Prefix"].rstrip("/"))
        return apps

    def list_snapshots(self, application: str) -> list[str]:
        """Return every .json key under {application}/snapshots/."""
        return self._list_keys(f"{application}/snapshots/", ".json")

    # ------------------------------------------------------------------
    # Objects
    # ------------------------------------------------------------------

    def _get_object(self, key: str) -> bytes:
        try:
            out = self._s3.get_object(Bucket=self.bucket, Key=key)
            body = out["Body"]
            try:
                return body.read()
            finally:
                body.close()
        except (BotoCoreError, ClientError) as e:
            raise ObjectStoreError(f"get {key}: {e}") from e

    def get_snapshot(self, key: str) -> SnapshotManifest:
        """Fetch and decode one manifest by its full key."""
        data = self._get_object(key)
        try:
            return decode_manifest(data)
        except ValueError as e:
            raise ObjectStoreError(f"decode snapshot {key}: {e}") from e

    def get_latest_snapshot(self, application: str) -> SnapshotManifest:
        """Fetch {application}/latest.json."""
        return self.get_snapshot(f"{application}/latest.json")

    def get_test_results(self, prefix: str) -> TestSummary:
        """Parse and merge every JUnit XML file under prefix.

        A file that cannot be fetched or parsed is skipped with a warning;
        the rest still count. Raises NoTestResults if nothing usable was found.
        """
        if not prefix.endswith("/"):
            prefix += "/"

        results: list[TestSummary] = []
        for key in self._list_keys(prefix, ".xml"):
            try:
                results.append(junit.parse(self._get_object(key)))
            except (ObjectStoreError, junit.JUnitParseError) as e:
                logger.warning("Skipping junit file %s: %s", key, e)

        if not results:
            raise NoTestResults(f"no junit xml files found under {prefix}")
        return junit.merge_results(*results)
