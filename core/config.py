"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for the readiness service happen here. No
module should call os.getenv() or os.environ.get() directly -- import
get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. jira_token -> JIRA_TOKEN). Type coercion and validation are built in.

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. Poll intervals must be positive; delays and retry ceilings
      must not be negative.

Either syncer is optional: an empty S3_BUCKET disables object-store sync and
an empty JIRA_TOKEN disables tracker sync. The API still serves whatever the
store already holds.

Layer rule: core/ is the kernel. This module may not import from api/,
objstore/, tracker/, or releasedb/. Only core/scheduler.py wires those
together.
"""

import logging
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("releaseready.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'release_readiness.db'}"

LOG_FORMAT = "%(asctime)s %(levelname)-5s %(name)s %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


def now_iso() -> str:
    """Return the current UTC time as an ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging once for the process entry point."""
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT, datefmt=LOG_DATEFMT)


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    database_url: str = _DEFAULT_DB_URL
    log_level: str = "INFO"

    # ------------------------------------------------------------------
    # Object store (S3-compatible)
    # ------------------------------------------------------------------

    # Custom endpoint for S3-compatible stores (Garage, MinIO). Empty means AWS.
    s3_endpoint: str = ""
    s3_region: str = "us-east-1"
    s3_bucket: str = ""
    s3_access_key: str = ""
    s3_secret_key: str = ""
    s3_poll_interval: float = 30.0

    # ------------------------------------------------------------------
    # Issue tracker (JIRA REST v2)
    # ------------------------------------------------------------------

    jira_url: str = "https://issues.redhat.com"
    jira_token: str = ""
    jira_project: str = "PROJQUAY"
    jira_target_version_field: str = "customfield_12319940"
    jira_poll_interval: float = 300.0
    # Fixed pause before every tracker request, independent of failures.
    jira_min_delay: float = 1.0
    jira_max_retries: int = 3
    jira_timeout: float = 30.0

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_intervals(self) -> "Settings":
        """Reject poll intervals that would spin the sync loops."""
        if self.s3_poll_interval <= 0:
            raise ValueError("S3_POLL_INTERVAL must be greater than zero.")
        if self.jira_poll_interval <= 0:
            raise ValueError("JIRA_POLL_INTERVAL must be greater than zero.")
        if self.jira_min_delay < 0:
            raise ValueError("JIRA_MIN_DELAY must not be negative.")
        if self.jira_max_retries < 0:
            raise ValueError("JIRA_MAX_RETRIES must not be negative.")
        return self

    @property
    def s3_enabled(self) -> bool:
        return bool(self.s3_bucket)

    @property
    def jira_enabled(self) -> bool:
        return bool(self.jira_token)


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
