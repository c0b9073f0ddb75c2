"""Relation layout: DDL, column lists, and row builders for states and events."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from jira_sync.core.models import EventKind, IssueEvent, IssueState

STATES_TABLE = "jira_issues_states"
EVENTS_TABLE = "jira_issues_events"

# Denormalised issue attributes carried by both relations.
ISSUE_COLUMNS: Sequence[str] = (
    "issue_key",
    "issue_project",
    "issue_created_at",
    "issue_updated_at",
    "issue_status",
    "issue_priority",
    "issue_type",
    "issue_summary",
    "issue_description",
    "issue_reporter",
    "issue_assignee",
    "issue_developer_backend",
    "issue_developer_frontend",
    "issue_reviewer",
    "issue_product_owner",
    "issue_bug_cause",
    "issue_epic",
    "issue_tribe",
    "issue_components",
    "issue_labels",
    "issue_fix_versions",
    "issue_resolved_at",
)

EVENT_COLUMNS: Sequence[str] = (
    "event_time",
    "event_kind",
    "event_author",
    "comment_body",
    "status_change_from",
    "status_change_to",
    "assignee_change_from",
    "assignee_change_to",
    *ISSUE_COLUMNS,
)

_ISSUE_COLUMNS_DDL = """
    "issue_key" TEXT NOT NULL,
    "issue_project" TEXT NOT NULL,
    "issue_created_at" TIMESTAMPTZ NOT NULL,
    "issue_updated_at" TIMESTAMPTZ NOT NULL,
    "issue_status" TEXT NOT NULL,
    "issue_priority" TEXT NOT NULL,
    "issue_type" TEXT NOT NULL,
    "issue_summary" TEXT NOT NULL,
    "issue_description" TEXT,
    "issue_reporter" TEXT,
    "issue_assignee" TEXT,
    "issue_developer_backend" TEXT,
    "issue_developer_frontend" TEXT,
    "issue_reviewer" TEXT,
    "issue_product_owner" TEXT,
    "issue_bug_cause" TEXT,
    "issue_epic" TEXT,
    "issue_tribe" TEXT,
    "issue_components" TEXT,
    "issue_labels" TEXT,
    "issue_fix_versions" TEXT,
    "issue_resolved_at" TIMESTAMPTZ"""

CREATE_STATEMENTS: Sequence[str] = (
    f"""CREATE TABLE IF NOT EXISTS "{STATES_TABLE}" (
    "id" SERIAL PRIMARY KEY NOT NULL,
    "inserted_at" TIMESTAMPTZ NOT NULL DEFAULT statement_timestamp(),{_ISSUE_COLUMNS_DDL}
);""",
    f'CREATE UNIQUE INDEX IF NOT EXISTS "{STATES_TABLE}_issue_key_idx" ON "{STATES_TABLE}" ("issue_key");',
    f'CREATE INDEX IF NOT EXISTS "{STATES_TABLE}_updated_at_idx" ON "{STATES_TABLE}" ("issue_updated_at" DESC);',
    f"""CREATE TABLE IF NOT EXISTS "{EVENTS_TABLE}" (
    "id" SERIAL PRIMARY KEY NOT NULL,
    "inserted_at" TIMESTAMPTZ NOT NULL DEFAULT statement_timestamp(),
    "event_time" TIMESTAMPTZ NOT NULL,
    "event_kind" TEXT NOT NULL,
    "event_author" TEXT NOT NULL,
    "comment_body" TEXT,
    "status_change_from" TEXT,
    "status_change_to" TEXT,
    "assignee_change_from" TEXT,
    "assignee_change_to" TEXT,{_ISSUE_COLUMNS_DDL}
);""",
    f'CREATE INDEX IF NOT EXISTS "{EVENTS_TABLE}_issue_key_idx" ON "{EVENTS_TABLE}" ("issue_key");',
)

DROP_STATEMENTS: Sequence[str] = (
    f'DROP TABLE IF EXISTS "{EVENTS_TABLE}";',
    f'DROP TABLE IF EXISTS "{STATES_TABLE}";',
)


def state_row(state: IssueState) -> tuple[Any, ...]:
    """Values of ``ISSUE_COLUMNS`` for one state, in column order."""
    return (
        state.key,
        state.project,
        state.created_at,
        state.updated_at,
        state.status,
        state.priority,
        state.issue_type,
        state.summary,
        state.description,
        state.reporter,
        state.assignee,
        state.developer_backend,
        state.developer_frontend,
        state.reviewer,
        state.product_owner,
        state.bug_cause,
        state.epic,
        state.tribe,
        state.components,
        state.labels,
        state.fix_versions,
        state.resolved_at,
    )


def event_row(event: IssueEvent, state: IssueState) -> tuple[Any, ...]:
    """Values of ``EVENT_COLUMNS``; the (from, to) pair lands in the column pair of its kind."""
    status_pair = (None, None)
    assignee_pair = (None, None)
    if event.kind is EventKind.STATUS_CHANGED:
        status_pair = (event.change_from, event.change_to)
    elif event.kind is EventKind.ASSIGNEE_CHANGED:
        assignee_pair = (event.change_from, event.change_to)
    return (
        event.event_time,
        event.kind.value,
        event.author,
        event.comment_body,
        *status_pair,
        *assignee_pair,
        *state_row(state),
    )


def insert_sql(table: str, columns: Sequence[str]) -> str:
    names = ", ".join(f'"{c}"' for c in columns)
    placeholders = ", ".join(["%s"] * len(columns))
    return f'INSERT INTO "{table}" ({names}) VALUES ({placeholders})'
