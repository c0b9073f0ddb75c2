"""Command line entry point: schema management, sync runs, and issue exploration."""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
from collections.abc import Callable, Sequence
from contextlib import contextmanager
from functools import partial

from jira_sync.analytics.status_flow import build_time_in_state_frame
from jira_sync.core.config import LOG_FORMAT, SyncSettings, load_settings
from jira_sync.core.errors import ConfigError, SyncError
from jira_sync.core.field_config import load_custom_fields
from jira_sync.core.jira_client import JiraAPI
from jira_sync.core.mappers import map_issue
from jira_sync.core.models import EventKind
from jira_sync.core.service import SyncEngine, SyncReport
from jira_sync.storage.postgres import PostgresStore

logger = logging.getLogger("jira_sync")

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
PROGRESS_EVERY = 100

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="jira-sync", description="Synchronize Jira issues into Postgres")
    parser.add_argument("--env-file", help="Path to a .env file (default: search from the working directory)")
    parser.add_argument("--pool-size", type=int, help="Number of concurrent workers (default: SYNC_POOL_SIZE or 10)")
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=LOG_LEVELS,
        help="Logging verbosity (default: SYNC_LOG_LEVEL or INFO)",
    )
    sub = parser.add_subparsers(dest="action", required=True, metavar="action")
    sub.add_parser("init", help="Create the tables if they do not exist")
    sub.add_parser("sync", help="Incremental sync from the restart watermark")
    sub.add_parser("sync-full", help="Drop and recreate the tables, then run a full sync")
    one = sub.add_parser("sync-issue", help="Sync a single issue")
    one.add_argument("key")
    sub.add_parser("reset", help="Drop the tables")
    sub.add_parser("cleanup", help="Drop the tables (alias of reset)")
    raw = sub.add_parser("explore-raw-issue", help="Print the raw issue document as JSON")
    raw.add_argument("key")
    custom = sub.add_parser("explore-custom-fields", help="Print every customfield_* value of an issue")
    custom.add_argument("key")
    tis = sub.add_parser("time-in-status", help="Days spent in each status (or assignee) of an issue")
    tis.add_argument("key")
    tis.add_argument("--assignee", action="store_true", help="Report time per assignee instead of status")
    args = parser.parse_args(argv)
    if args.pool_size is not None and args.pool_size < 1:
        parser.error("--pool-size must be >= 1")
    return args


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )


# ------------------ Factories (patched in tests) ------------------
def make_source(settings: SyncSettings) -> JiraAPI:
    return JiraAPI(settings.jira_server, settings.jira_email, settings.jira_api_token)


def make_store(settings: SyncSettings) -> PostgresStore:
    return PostgresStore(settings.db_url, pool_size=settings.db_pool_size)


def make_mapper(settings: SyncSettings) -> Callable:
    return partial(map_issue, custom_fields=load_custom_fields(settings.custom_fields_file))


def log_progress(message: str, current: int | None, total: int | None) -> None:
    if current and current % PROGRESS_EVERY == 0:
        logger.info("%s (%d done%s)", message, current, f" of {total}" if total else "")


@contextmanager
def cancel_on_signals(engine: SyncEngine):
    """Route SIGINT/SIGTERM to ``engine.cancel`` for the duration of a run."""

    def handler(signum, _frame):
        logger.warning("Received %s", signal.Signals(signum).name)
        engine.cancel()

    previous = {sig: signal.signal(sig, handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield engine
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


def _report_exit(report: SyncReport) -> int:
    return EXIT_OK if report.ok else EXIT_FAILED


# ------------------ Actions ------------------
def _run_engine(settings: SyncSettings, run: Callable[[SyncEngine], SyncReport], *, recreate: bool = False) -> int:
    source = make_source(settings)
    try:
        store = make_store(settings)
    except BaseException:
        source.close()
        raise
    try:
        if recreate:
            store.drop_schema()
        store.create_schema()
        engine = SyncEngine(
            source,
            store,
            pool_size=settings.pool_size,
            jira_timezone=settings.jira_timezone,
            mapper=make_mapper(settings),
            progress=log_progress,
        )
        with cancel_on_signals(engine):
            report = run(engine)
    finally:
        store.close()
        source.close()
    return _report_exit(report)


def action_init(args: argparse.Namespace, settings: SyncSettings) -> int:
    store = make_store(settings)
    try:
        store.create_schema()
    finally:
        store.close()
    return EXIT_OK


def action_drop(args: argparse.Namespace, settings: SyncSettings) -> int:
    store = make_store(settings)
    try:
        store.drop_schema()
    finally:
        store.close()
    return EXIT_OK


def action_sync(args: argparse.Namespace, settings: SyncSettings) -> int:
    return _run_engine(settings, lambda engine: engine.incremental_sync())


def action_sync_full(args: argparse.Namespace, settings: SyncSettings) -> int:
    return _run_engine(settings, lambda engine: engine.full_sync(), recreate=True)


def action_sync_issue(args: argparse.Namespace, settings: SyncSettings) -> int:
    return _run_engine(settings, lambda engine: engine.sync_one(args.key))


def action_explore_raw_issue(args: argparse.Namespace, settings: SyncSettings) -> int:
    source = make_source(settings)
    try:
        raw = source.get(args.key)
    finally:
        source.close()
    print(json.dumps(raw, indent=2, ensure_ascii=False, sort_keys=True))
    return EXIT_OK


def action_explore_custom_fields(args: argparse.Namespace, settings: SyncSettings) -> int:
    source = make_source(settings)
    try:
        fields = source.explore_custom_fields(args.key)
    finally:
        source.close()
    for name, value in fields.items():
        if value is None:
            continue
        print(f"{name}: {json.dumps(value, ensure_ascii=False)}")
    return EXIT_OK


def action_time_in_status(args: argparse.Namespace, settings: SyncSettings) -> int:
    source = make_source(settings)
    try:
        raw = source.get(args.key)
    finally:
        source.close()
    state, events = make_mapper(settings)(raw)
    kind = EventKind.ASSIGNEE_CHANGED if args.assignee else EventKind.STATUS_CHANGED
    frame = build_time_in_state_frame(events, kind, end=state.resolved_at)
    print(f"{state.key} ({state.status}): time per {'assignee' if args.assignee else 'status'}")
    for row in frame.itertuples(index=False):
        print(f"  {row.value:<30} {row.duration_days:8.2f} days")
    return EXIT_OK


ACTIONS: dict[str, Callable[[argparse.Namespace, SyncSettings], int]] = {
    "init": action_init,
    "sync": action_sync,
    "sync-full": action_sync_full,
    "sync-issue": action_sync_issue,
    "reset": action_drop,
    "cleanup": action_drop,
    "explore-raw-issue": action_explore_raw_issue,
    "explore-custom-fields": action_explore_custom_fields,
    "time-in-status": action_time_in_status,
}


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        settings = load_settings(args.env_file)
    except ConfigError as exc:
        setup_logging(args.log_level or "INFO")
        logger.error("%s", exc)
        return EXIT_CONFIG
    setup_logging(args.log_level or settings.log_level)
    if args.pool_size:
        settings.pool_size = args.pool_size

    try:
        return ACTIONS[args.action](args, settings)
    except ConfigError as exc:
        logger.error("%s", exc)
        return EXIT_CONFIG
    except SyncError as exc:
        logger.error("%s failed: %s", args.action, exc)
        return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
