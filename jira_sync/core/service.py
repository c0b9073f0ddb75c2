"""SyncEngine: orchestrates search, fetch, mapping and store replace with a bounded worker pool."""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from jira_sync.storage.base import IssueStore

from .config import (
    DEFAULT_POOL_SIZE,
    JIRA_DEFAULT_TIMEZONE,
    KEY_QUEUE_CAPACITY,
    QUEUE_PUT_TIMEOUT,
    STORE_RETRIES,
    WATERMARK_FACTOR,
)
from .errors import StoreError, SyncCancelled, SyncError
from .jira_client import IssueSource, full_sync_query, updated_since_query
from .mappers import map_issue
from .models import IssueEvent, IssueState

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, int | None, int | None], None]
Mapper = Callable[[dict[str, Any]], tuple[IssueState, Sequence[IssueEvent]]]

_STOP = object()


@dataclass(slots=True)
class SyncReport:
    """Outcome of one sync run."""

    mode: str
    query: str | None = None
    watermark: datetime | None = None
    produced: int = 0
    succeeded: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)
    cancelled: bool = False
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None

    @property
    def ok(self) -> bool:
        return not self.failed and not self.cancelled

    @property
    def duration_seconds(self) -> float:
        end = self.finished_at or datetime.now(UTC)
        return (end - self.started_at).total_seconds()


class SyncEngine:
    """Keeps a store consistent with an issue source.

    Parameters
    ----------
    source : IssueSource
        Produces issue keys for a JQL query and full issue documents.
    store : IssueStore
        Receives one atomic ``replace`` per processed issue.
    pool_size : int
        Default number of concurrent workers (N).
    queue_capacity : int
        Bound of the key queue between the search producer and the workers.
    store_retries : int
        Extra attempts for a failed ``replace`` before the key is reported failed.
    jira_timezone : str
        Timezone the source reads JQL datetimes in.
    mapper : callable
        Raw issue -> (IssueState, events). Defaults to ``map_issue``.
    progress : callable, optional
        Reporter called as ``progress(message, done, total)``.
    """

    def __init__(
        self,
        source: IssueSource,
        store: IssueStore,
        *,
        pool_size: int = DEFAULT_POOL_SIZE,
        queue_capacity: int = KEY_QUEUE_CAPACITY,
        store_retries: int = STORE_RETRIES,
        jira_timezone: str = JIRA_DEFAULT_TIMEZONE,
        mapper: Mapper = map_issue,
        progress: ProgressCallback | None = None,
    ):
        if pool_size < 1:
            raise ValueError(f"pool_size must be >= 1, got {pool_size}")
        self.source = source
        self.store = store
        self.pool_size = pool_size
        self.queue_capacity = max(1, queue_capacity)
        self.store_retries = max(0, store_retries)
        self.jira_timezone = jira_timezone
        self.mapper = mapper
        self.progress = progress
        self._cancel = threading.Event()
        self._lock = threading.Lock()

    # ------------------ Entry points ------------------
    def full_sync(self, pool_size: int | None = None) -> SyncReport:
        return self._run("full", full_sync_query(), pool_size or self.pool_size)

    def incremental_sync(self, pool_size: int | None = None) -> SyncReport:
        """Re-fetch issues updated since the restart watermark.

        The watermark is the (N * WATERMARK_FACTOR)-th most recent stored
        ``updated_at``, not the maximum: workers commit out of order, so
        after a crash newer issues may be stored while older ones were still
        in flight.
        """
        workers = pool_size or self.pool_size
        rank = workers * WATERMARK_FACTOR
        watermark = self.store.restart_watermark(rank)
        if watermark is None:
            logger.warning("Store is empty; incremental sync falls back to the full-sync query")
            return self._run("incremental", full_sync_query(), workers)
        logger.info("Restart watermark (rank %d): %s", rank, watermark.isoformat())
        return self._run(
            "incremental",
            updated_since_query(watermark, self.jira_timezone),
            workers,
            watermark=watermark,
        )

    def sync_one(self, key: str) -> SyncReport:
        report = SyncReport(mode="single", produced=1)
        logger.info("Sync starting (mode=single, key=%s)", key)
        try:
            self._process(key, report)
        finally:
            self._finish(report)
        return report

    def cancel(self) -> None:
        """Stop producing keys and skip every key not yet started. Sticky."""
        if not self._cancel.is_set():
            logger.warning("Cancellation requested; letting in-flight issues finish")
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    # ------------------ Run loop ------------------
    def _run(self, mode: str, jql: str, pool_size: int, *, watermark: datetime | None = None) -> SyncReport:
        report = SyncReport(mode=mode, query=jql, watermark=watermark)
        logger.info("Sync starting (mode=%s, workers=%d, jql=%s)", mode, pool_size, jql)
        keys: queue.Queue = queue.Queue(maxsize=self.queue_capacity)

        with ThreadPoolExecutor(max_workers=pool_size, thread_name_prefix="jira-sync") as pool:
            workers = [pool.submit(self._worker, keys, report) for _ in range(pool_size)]
            try:
                for key in self.source.search(jql):
                    if not self._put(keys, key, workers):
                        break
                    with self._lock:
                        report.produced += 1
            except SyncError as exc:
                logger.error("Search failed, aborting after in-flight issues: %s", exc)
                raise
            except BaseException:
                self.cancel()
                raise
            finally:
                # Join barrier: every produced key is consumed before the
                # sentinels, and every worker returns only after its last key.
                for _ in workers:
                    if not self._put(keys, _STOP, workers, stop=True):
                        break
                for future in workers:
                    future.result()
                self._finish(report)
        return report

    def _put(self, keys: queue.Queue, item: Any, workers: Sequence[Future], *, stop: bool = False) -> bool:
        """Blocking put that gives up on cancellation (keys only) or once no worker is left to drain."""
        while stop or not self._cancel.is_set():
            if all(f.done() for f in workers):
                logger.error("No sync worker left to drain the key queue")
                return False
            try:
                keys.put(item, timeout=QUEUE_PUT_TIMEOUT)
                return True
            except queue.Full:
                continue
        return False

    def _worker(self, keys: queue.Queue, report: SyncReport) -> None:
        while True:
            key = keys.get()
            if key is _STOP:
                return
            if self._cancel.is_set():
                with self._lock:
                    report.skipped.append(key)
                continue
            try:
                self._process(key, report)
            except Exception as exc:
                logger.exception("Worker error on %s", key)
                self._record_failure(report, key, f"{type(exc).__name__}: {exc}")

    def _process(self, key: str, report: SyncReport) -> None:
        try:
            self._check_cancel(key)
            raw = self.source.get(key)
            state, events = self.mapper(raw)
            if state.key != key:
                logger.info("Issue %s is now %s", key, state.key)
            self._replace(state.key, state, events)
        except SyncCancelled:
            with self._lock:
                report.skipped.append(key)
            return
        except SyncError as exc:
            logger.error("Sync failed for %s: %s", key, exc)
            self._record_failure(report, key, f"{type(exc).__name__}: {exc}")
            return
        except Exception as exc:
            logger.exception("Unexpected error while syncing %s", key)
            self._record_failure(report, key, f"{type(exc).__name__}: {exc}")
            return

        with self._lock:
            report.succeeded.append(key)
            done = len(report.succeeded)
        logger.debug("Synced %s (%d events)", key, len(events))
        self._notify(f"Synced {key}", done)

    def _notify(self, message: str, done: int) -> None:
        if not self.progress:
            return
        try:
            self.progress(message, done, None)
        except Exception:
            logger.exception("Progress callback failed")

    def _replace(self, key: str, state: IssueState, events: Sequence[IssueEvent]) -> None:
        attempts = self.store_retries + 1
        for attempt in range(1, attempts + 1):
            self._check_cancel(key)
            try:
                self.store.replace(key, state, events)
                return
            except StoreError as exc:
                if attempt == attempts:
                    raise
                logger.warning("Store replace failed for %s (attempt %d/%d): %s", key, attempt, attempts, exc)

    def _check_cancel(self, key: str) -> None:
        if self._cancel.is_set():
            raise SyncCancelled(f"Run cancelled before {key}", issue_key=key)

    def _record_failure(self, report: SyncReport, key: str, reason: str) -> None:
        with self._lock:
            report.failed[key] = reason

    def _finish(self, report: SyncReport) -> None:
        report.finished_at = datetime.now(UTC)
        report.cancelled = self._cancel.is_set()
        logger.info(
            "Sync %s done in %.2f minutes: %d produced, %d succeeded, %d failed, %d skipped%s",
            report.mode,
            report.duration_seconds / 60.0,
            report.produced,
            len(report.succeeded),
            len(report.failed),
            len(report.skipped),
            " (cancelled)" if report.cancelled else "",
        )
        if report.failed:
            logger.error("Failed keys: %s", ", ".join(sorted(report.failed)))
