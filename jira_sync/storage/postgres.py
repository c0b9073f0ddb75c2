"""Postgres store: one transaction per issue replace, pooled connections shared by workers."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime

import psycopg
from psycopg_pool import ConnectionPool

from jira_sync.core.config import DEFAULT_POOL_SIZE
from jira_sync.core.errors import StoreError
from jira_sync.core.models import IssueEvent, IssueState

from .schema import (
    CREATE_STATEMENTS,
    DROP_STATEMENTS,
    EVENT_COLUMNS,
    EVENTS_TABLE,
    ISSUE_COLUMNS,
    STATES_TABLE,
    event_row,
    insert_sql,
    state_row,
)

logger = logging.getLogger(__name__)

DELETE_EVENTS_SQL = f'DELETE FROM "{EVENTS_TABLE}" WHERE "issue_key" = %s'
DELETE_STATE_SQL = f'DELETE FROM "{STATES_TABLE}" WHERE "issue_key" = %s'
INSERT_STATE_SQL = insert_sql(STATES_TABLE, ISSUE_COLUMNS)
INSERT_EVENT_SQL = insert_sql(EVENTS_TABLE, EVENT_COLUMNS)
RESTART_WATERMARK_SQL = f"""
SELECT MIN("issue_updated_at")
FROM (
    SELECT "issue_updated_at"
    FROM "{STATES_TABLE}"
    ORDER BY "issue_updated_at" DESC
    LIMIT %s
) AS recent
"""


class PostgresStore:
    """``IssueStore`` backed by Postgres through a psycopg connection pool.

    Size the pool at least as large as the engine's worker count: every
    worker holds one connection for the duration of its replace.
    """

    def __init__(self, db_url: str | None = None, *, pool_size: int = DEFAULT_POOL_SIZE + 1, pool=None):
        if pool is None:
            if not db_url:
                raise StoreError("A database URL is required to open the Postgres store")
            try:
                pool = ConnectionPool(db_url, min_size=1, max_size=max(pool_size, 1), open=True)
            except psycopg.Error as exc:
                raise StoreError(f"Cannot connect to the database: {exc}") from exc
        self.pool = pool

    def close(self) -> None:
        self.pool.close()

    def __enter__(self) -> PostgresStore:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def replace(self, key: str, state: IssueState, events: Sequence[IssueEvent]) -> None:
        rows = [event_row(e, state) for e in events]
        try:
            with self.pool.connection() as conn:
                with conn.transaction():
                    with conn.cursor() as cur:
                        cur.execute(DELETE_EVENTS_SQL, (key,))
                        cur.execute(DELETE_STATE_SQL, (key,))
                        cur.execute(INSERT_STATE_SQL, state_row(state))
                        if rows:
                            cur.executemany(INSERT_EVENT_SQL, rows)
        except psycopg.Error as exc:
            raise StoreError(f"Replace failed for {key}: {exc}", issue_key=key) from exc
        logger.debug("Replaced %s with %d events", key, len(rows))

    def restart_watermark(self, n: int) -> datetime | None:
        if n < 1:
            raise ValueError(f"n must be >= 1, got {n}")
        try:
            with self.pool.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(RESTART_WATERMARK_SQL, (n,))
                    row = cur.fetchone()
        except psycopg.Error as exc:
            raise StoreError(f"Restart watermark query failed: {exc}") from exc
        return row[0] if row else None

    def create_schema(self) -> None:
        self._execute_all(CREATE_STATEMENTS, "create schema")
        logger.info("Ensured tables %s and %s exist", STATES_TABLE, EVENTS_TABLE)

    def drop_schema(self) -> None:
        self._execute_all(DROP_STATEMENTS, "drop schema")
        logger.info("Dropped tables %s and %s", STATES_TABLE, EVENTS_TABLE)

    def _execute_all(self, statements: Sequence[str], action: str) -> None:
        try:
            with self.pool.connection() as conn:
                with conn.transaction():
                    with conn.cursor() as cur:
                        for statement in statements:
                            cur.execute(statement)
        except psycopg.Error as exc:
            raise StoreError(f"Failed to {action}: {exc}") from exc
