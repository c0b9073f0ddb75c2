"""Jira API client wrapper (REST v3 + enhanced search pagination + retry/backoff)."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator
from datetime import datetime
from typing import Any, Protocol

import pytz
import requests
from jira import JIRA, JIRAError

from .config import (
    JIRA_DEFAULT_TIMEZONE,
    JIRA_FETCH_EXPAND,
    JIRA_REST_API_VERSION,
    JQL_DATETIME_FORMAT,
    MAX_API_RETRIES,
    REQUEST_TIMEOUT,
    RETRY_BACKOFF_SECONDS,
    SEARCH_PAGE_SIZE,
)
from .errors import PermanentSourceError, SourceError, TransientSourceError

logger = logging.getLogger(__name__)


class IssueSource(Protocol):
    def search(self, jql: str) -> Iterator[str]:
        """Lazily yield the keys of every issue matching ``jql``."""
        ...

    def get(self, key: str) -> dict[str, Any]:
        """Return the full raw issue, changelog included (most recent first)."""
        ...


def full_sync_query() -> str:
    return "ORDER BY created ASC"


def updated_since_query(watermark: datetime, tz_name: str = JIRA_DEFAULT_TIMEZONE) -> str:
    """JQL selecting issues updated at or after ``watermark``, oldest update first.

    JQL datetimes have minute granularity and are read in the API user's
    timezone, so the watermark is converted and floored to the minute.
    """
    if watermark.tzinfo is None:
        watermark = pytz.UTC.localize(watermark)
    local = watermark.astimezone(pytz.timezone(tz_name)).replace(second=0, microsecond=0)
    return f'updated >= "{local.strftime(JQL_DATETIME_FORMAT)}" ORDER BY updated ASC'


def classify_http_error(status: int | None, message: str, *, issue_key: str | None = None) -> SourceError:
    if status is None or status >= 500 or status == 429:
        return TransientSourceError(message, issue_key=issue_key)
    return PermanentSourceError(message, issue_key=issue_key, status_code=status)


class JiraAPI:
    """Implements ``IssueSource`` on top of the ``jira`` library's HTTP session."""

    def __init__(
        self,
        server: str,
        email: str,
        token: str,
        *,
        client: JIRA | None = None,
        max_retries: int = MAX_API_RETRIES,
        backoff_seconds: float = RETRY_BACKOFF_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.server = server.rstrip("/")
        self.client = client or JIRA(
            basic_auth=(email, token),
            options={"server": self.server, "rest_api_version": JIRA_REST_API_VERSION},
            get_server_info=False,
            timeout=REQUEST_TIMEOUT,
        )
        self.max_retries = max(1, max_retries)
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    def close(self) -> None:
        close = getattr(self.client, "close", None)
        if callable(close):
            close()

    # ------------------ IssueSource ------------------
    def search(self, jql: str) -> Iterator[str]:
        params: dict[str, Any] = {"jql": jql, "maxResults": SEARCH_PAGE_SIZE, "fields": "updated"}
        token = None
        page = 0
        while True:
            qp = dict(params)
            if token:
                qp["nextPageToken"] = token
            data = self._request("GET", "search/jql", params=qp)
            issues = data.get("issues", []) or []
            page += 1
            logger.info("Search page %d: %d issues (jql=%s)", page, len(issues), jql)
            for issue in issues:
                yield issue["key"]
            token = data.get("nextPageToken")
            if not issues or not token or data.get("isLast") is True:
                logger.info("Search done after %d pages", page)
                return

    def get(self, key: str) -> dict[str, Any]:
        logger.debug("Fetching issue %s", key)
        raw = self._request("GET", f"issue/{key}", params={"expand": JIRA_FETCH_EXPAND}, issue_key=key)
        self._hydrate_comments(key, raw)
        self._hydrate_changelog(key, raw)
        return raw

    # ------------------ Exploration ------------------
    def explore_custom_fields(self, key: str) -> dict[str, Any]:
        fields = self.get(key).get("fields") or {}
        return {name: value for name, value in sorted(fields.items()) if name.startswith("customfield_")}

    # ------------------ Internal helpers ------------------
    def _hydrate_comments(self, key: str, raw: dict[str, Any]) -> None:
        """Replace a truncated embedded comment list with the full one (in-place)."""
        fields = raw.setdefault("fields", {})
        block = fields.get("comment") or {}
        embedded = block.get("comments") or []
        total = block.get("total")
        if not isinstance(total, int) or total <= len(embedded):
            return
        comments: list[dict[str, Any]] = []
        while True:
            data = self._request(
                "GET",
                f"issue/{key}/comment",
                params={"startAt": len(comments), "maxResults": SEARCH_PAGE_SIZE},
                issue_key=key,
            )
            batch = data.get("comments", []) or []
            comments.extend(batch)
            if not batch or len(comments) >= data.get("total", 0):
                break
        block["comments"] = comments
        block["total"] = len(comments)
        fields["comment"] = block
        logger.debug("Hydrated %s comments: %s -> %s", key, len(embedded), len(comments))

    def _hydrate_changelog(self, key: str, raw: dict[str, Any]) -> None:
        """Page through the full changelog when the expanded one is truncated.

        The paginated endpoint returns oldest first; the result is reversed so
        the document keeps the most-recent-first order of the expanded form.
        """
        changelog = raw.get("changelog") or {}
        embedded = changelog.get("histories") or []
        total = changelog.get("total")
        if not isinstance(total, int) or total <= len(embedded):
            return
        histories: list[dict[str, Any]] = []
        while True:
            data = self._request(
                "GET",
                f"issue/{key}/changelog",
                params={"startAt": len(histories), "maxResults": SEARCH_PAGE_SIZE},
                issue_key=key,
            )
            batch = data.get("values", []) or []
            histories.extend(batch)
            if not batch or data.get("isLast") is True or len(histories) >= data.get("total", 0):
                break
        histories.reverse()
        raw["changelog"] = {"startAt": 0, "maxResults": len(histories), "total": len(histories), "histories": histories}
        logger.debug("Hydrated %s changelog: %s -> %s", key, len(embedded), len(histories))

    def _session(self):
        session = getattr(self.client, "_session", None)
        if session is None:
            raise PermanentSourceError("JIRA session unavailable")
        return session

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        issue_key: str | None = None,
    ) -> dict[str, Any]:
        url = f"{self.server}/rest/api/{JIRA_REST_API_VERSION}/{path}"
        session = self._session()
        attempt = 0
        while True:
            attempt += 1
            try:
                response = session.request(method, url, params=params, timeout=REQUEST_TIMEOUT)
            except JIRAError as exc:
                error = classify_http_error(exc.status_code, f"Jira request {path} failed: {exc.text}", issue_key=issue_key)
            except requests.RequestException as exc:
                error = TransientSourceError(f"Jira request {path} failed: {exc}", issue_key=issue_key)
            else:
                if response.status_code < 400:
                    try:
                        return response.json()
                    except ValueError as exc:
                        raise PermanentSourceError(
                            f"Failed to parse Jira response for {path} as JSON", issue_key=issue_key
                        ) from exc
                error = classify_http_error(
                    response.status_code,
                    f"Jira API returned {response.status_code} for {path}: {response.text[:200]}",
                    issue_key=issue_key,
                )

            logger.warning("%s (attempt %s/%s)", error, attempt, self.max_retries)
            if not error.transient or attempt >= self.max_retries:
                raise error
            self._sleep(self.backoff_seconds * attempt)
