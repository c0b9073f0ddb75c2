"""Domain data models: fetched issue documents, issue states, and issue events."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class EventKind(str, Enum):
    CREATED = "created"
    STATUS_CHANGED = "status_changed"
    ASSIGNEE_CHANGED = "assignee_changed"
    COMMENT_ADDED = "comment_added"


@dataclass(slots=True)
class CommentModel:
    author: str | None
    created: datetime
    body: str | None


@dataclass(slots=True)
class ChangelogItemModel:
    field: str
    from_string: str | None
    to_string: str | None


@dataclass(slots=True)
class HistoryModel:
    author: str | None
    created: datetime
    items: list[ChangelogItemModel] = field(default_factory=list)


@dataclass(slots=True)
class IssueDocument:
    """One fetched issue, resolved once at the mapping boundary.

    ``histories`` keep the API delivery order (most recent first).
    """

    key: str
    project: str
    created: datetime
    updated: datetime
    status: str
    priority: str
    issue_type: str
    summary: str
    description: str | None
    reporter: str | None
    assignee: str | None
    resolved_at: datetime | None
    components: list[str] = field(default_factory=list)
    labels: list[str] = field(default_factory=list)
    fix_versions: list[str] = field(default_factory=list)
    custom: dict[str, str | None] = field(default_factory=dict)
    comments: list[CommentModel] = field(default_factory=list)
    histories: list[HistoryModel] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class IssueState:
    key: str
    project: str
    created_at: datetime
    updated_at: datetime
    status: str
    priority: str
    issue_type: str
    summary: str
    description: str | None = None
    reporter: str | None = None
    assignee: str | None = None
    developer_backend: str | None = None
    developer_frontend: str | None = None
    reviewer: str | None = None
    product_owner: str | None = None
    bug_cause: str | None = None
    epic: str | None = None
    tribe: str | None = None
    components: str = ""
    labels: str = ""
    fix_versions: str = ""
    resolved_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class IssueEvent:
    event_time: datetime
    kind: EventKind
    author: str
    issue_key: str
    comment_body: str | None = None
    change_from: str | None = None
    change_to: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "event_time": self.event_time,
            "kind": self.kind.value,
            "author": self.author,
            "issue_key": self.issue_key,
            "comment_body": self.comment_body,
            "change_from": self.change_from,
            "change_to": self.change_to,
        }
