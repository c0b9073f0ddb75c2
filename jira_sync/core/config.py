"""Central configuration, constants, tuning knobs, and runtime settings."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from .errors import ConfigError

# =============================================================================
# Jira Connection Settings
# =============================================================================
JIRA_DEFAULT_SERVER = "https://jobteaser.atlassian.net"
# JQL datetimes carry no offset; Jira reads them in the API user's timezone.
JIRA_DEFAULT_TIMEZONE = "UTC"
JIRA_REST_API_VERSION = "3"

# Fixed layout of every timestamp delivered by the API, e.g.
# 2024-09-01T10:00:00.000+0000
JIRA_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%f%z"
JQL_DATETIME_FORMAT = "%Y/%m/%d %H:%M"

SEARCH_PAGE_SIZE = 100
REQUEST_TIMEOUT = 30
MAX_API_RETRIES = 4
RETRY_BACKOFF_SECONDS = 3

# =============================================================================
# Sync Engine Tuning
# =============================================================================
DEFAULT_POOL_SIZE = 10
KEY_QUEUE_CAPACITY = 100
# Incremental runs restart from the (pool_size * WATERMARK_FACTOR)-th most
# recent updated_at so issues still in flight at crash time are re-fetched.
WATERMARK_FACTOR = 3
STORE_RETRIES = 1
QUEUE_PUT_TIMEOUT = 0.5

# =============================================================================
# Event Derivation
# =============================================================================
UNKNOWN_AUTHOR = "N/A"
STATUS_FIELD = "status"
ASSIGNEE_FIELD = "assignee"

# =============================================================================
# Jira Custom Field IDs
# =============================================================================
# Attribute name -> (custom field id, expected shape)
#   user   : object carrying a user name
#   option : object carrying a string "value"
#   string : plain string
CUSTOM_FIELDS: dict[str, tuple[str, str]] = {
    "developer_backend": ("customfield_10600", "user"),
    "developer_frontend": ("customfield_12403", "user"),
    "reviewer": ("customfield_10601", "user"),
    "product_owner": ("customfield_11200", "user"),
    "bug_cause": ("customfield_11101", "option"),
    "epic": ("customfield_10009", "string"),
    "tribe": ("customfield_12100", "option"),
}

JIRA_FETCH_EXPAND = "changelog"

# =============================================================================
# Logging
# =============================================================================
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
DEFAULT_LOG_LEVEL = "INFO"


@dataclass(slots=True)
class SyncSettings:
    jira_server: str
    jira_email: str
    jira_api_token: str
    db_url: str
    jira_timezone: str = JIRA_DEFAULT_TIMEZONE
    pool_size: int = DEFAULT_POOL_SIZE
    log_level: str = DEFAULT_LOG_LEVEL
    custom_fields_file: Path | None = None

    @property
    def db_pool_size(self) -> int:
        """Connection pool size: one per worker plus one for the watermark query."""
        return max(self.pool_size, 1) + 1


REQUIRED_ENV = {
    "JIRA_EMAIL": "jira_email",
    "JIRA_API_TOKEN": "jira_api_token",
    "DB_URL": "db_url",
}


def load_settings(
    env_file: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> SyncSettings:
    """Build ``SyncSettings`` from the environment (and an optional ``.env`` file).

    Parameters
    ----------
    env_file : str | Path | None
        Explicit ``.env`` path. When omitted, python-dotenv searches upwards
        from the working directory. Existing variables are never overridden.
    environ : Mapping[str, str] | None
        Source mapping, defaults to ``os.environ``. Tests pass a plain dict.

    Raises
    ------
    ConfigError
        If required variables are missing or numeric values are malformed.
    """
    if environ is None:
        load_dotenv(env_file, override=False)
        environ = os.environ

    missing = [name for name in REQUIRED_ENV if not environ.get(name)]
    if missing:
        raise ConfigError(f"Missing required environment variables: {', '.join(missing)}")

    raw_pool = environ.get("SYNC_POOL_SIZE") or str(DEFAULT_POOL_SIZE)
    try:
        pool_size = int(raw_pool)
    except ValueError as exc:
        raise ConfigError(f"SYNC_POOL_SIZE must be an integer, got {raw_pool!r}") from exc
    if pool_size < 1:
        raise ConfigError(f"SYNC_POOL_SIZE must be >= 1, got {pool_size}")

    fields_file = environ.get("SYNC_CUSTOM_FIELDS_FILE")
    return SyncSettings(
        jira_server=environ.get("JIRA_SERVER") or JIRA_DEFAULT_SERVER,
        jira_email=environ["JIRA_EMAIL"],
        jira_api_token=environ["JIRA_API_TOKEN"],
        db_url=environ["DB_URL"],
        jira_timezone=environ.get("JIRA_TIMEZONE") or JIRA_DEFAULT_TIMEZONE,
        pool_size=pool_size,
        log_level=(environ.get("SYNC_LOG_LEVEL") or DEFAULT_LOG_LEVEL).upper(),
        custom_fields_file=Path(fields_file) if fields_file else None,
    )
