"""Mapping raw Jira issue JSON into IssueState snapshots and ordered IssueEvent logs."""

from __future__ import annotations

from datetime import datetime
from typing import Any

import pandas as pd

from .config import (
    ASSIGNEE_FIELD,
    CUSTOM_FIELDS,
    JIRA_TIMESTAMP_FORMAT,
    STATUS_FIELD,
    UNKNOWN_AUTHOR,
)
from .errors import MappingError
from .models import (
    ChangelogItemModel,
    CommentModel,
    EventKind,
    HistoryModel,
    IssueDocument,
    IssueEvent,
    IssueState,
)

MONITORED_FIELDS: dict[str, EventKind] = {
    STATUS_FIELD: EventKind.STATUS_CHANGED,
    ASSIGNEE_FIELD: EventKind.ASSIGNEE_CHANGED,
}

TAG_SEPARATOR = ", "


# ------------------ Value helpers ------------------
def parse_timestamp(value: Any, *, issue_key: str | None = None, field: str | None = None) -> datetime:
    """Parse a Jira timestamp into an aware UTC datetime.

    The API always uses one fixed layout; anything else means the integration
    is broken, so this raises ``MappingError`` instead of guessing.
    """
    if not isinstance(value, str) or not value:
        raise MappingError(
            f"Missing or non-string timestamp for '{field}' on {issue_key}: {value!r}",
            issue_key=issue_key,
            field=field,
        )
    try:
        ts = pd.to_datetime(value, format=JIRA_TIMESTAMP_FORMAT, utc=True)
    except (ValueError, TypeError) as exc:
        raise MappingError(
            f"Malformed timestamp for '{field}' on {issue_key}: {value!r}",
            issue_key=issue_key,
            field=field,
        ) from exc
    return ts.to_pydatetime()


def _optional_timestamp(value: Any, *, issue_key: str, field: str) -> datetime | None:
    if value is None or value == "":
        return None
    return parse_timestamp(value, issue_key=issue_key, field=field)


def user_name(user: Any, *, issue_key: str | None = None, field: str | None = None) -> str | None:
    if user is None:
        return None
    if not isinstance(user, dict):
        raise MappingError(
            f"Expected a user object for '{field}' on {issue_key}, got {type(user).__name__}",
            issue_key=issue_key,
            field=field,
        )
    for attr in ("displayName", "name", "accountId"):
        value = user.get(attr)
        if isinstance(value, str) and value:
            return value
    raise MappingError(
        f"User object for '{field}' on {issue_key} has no name", issue_key=issue_key, field=field
    )


def render_adf(node: Any) -> str:
    """Flatten an Atlassian Document Format tree to plain text."""
    if node is None:
        return ""
    if isinstance(node, str):
        return node
    if isinstance(node, list):
        return "".join(render_adf(child) for child in node)
    if isinstance(node, dict):
        node_type = node.get("type")
        if node_type == "text":
            return node.get("text", "")
        if node_type == "hardBreak":
            return "\n"
        rendered = "".join(render_adf(child) for child in node.get("content", []))
        if node_type in {"paragraph", "heading", "blockquote", "panel", "codeBlock"}:
            return rendered + "\n"
        return rendered
    return ""


def _text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return render_adf(value).strip()


def _required_name(fields: dict[str, Any], name: str, issue_key: str) -> str:
    value = fields.get(name)
    if isinstance(value, dict) and isinstance(value.get("name"), str):
        return value["name"]
    raise MappingError(f"Required field '{name}' missing on {issue_key}", issue_key=issue_key, field=name)


def _names(values: Any) -> list[str]:
    if not values:
        return []
    out: list[str] = []
    for v in values:
        if isinstance(v, str):
            out.append(v)
        elif isinstance(v, dict) and v.get("name"):
            out.append(str(v["name"]))
    return out


def _custom_value(raw: Any, shape: str, *, issue_key: str, field_id: str) -> str | None:
    if raw is None:
        return None
    if shape == "user":
        return user_name(raw, issue_key=issue_key, field=field_id)
    if shape == "option":
        if isinstance(raw, dict) and isinstance(raw.get("value"), str):
            return raw["value"]
    elif shape == "string":
        if isinstance(raw, str):
            return raw
    raise MappingError(
        f"Custom field '{field_id}' on {issue_key} has unexpected shape "
        f"(expected {shape}, got {type(raw).__name__}: {raw!r})",
        issue_key=issue_key,
        field=field_id,
    )


# ------------------ Document parsing ------------------
def parse_issue(
    raw: dict[str, Any],
    custom_fields: dict[str, tuple[str, str]] | None = None,
) -> IssueDocument:
    key = raw.get("key")
    if not isinstance(key, str) or not key:
        raise MappingError("Issue payload without a key", field="key")
    fields = raw.get("fields")
    if not isinstance(fields, dict):
        raise MappingError(f"Issue {key} has no fields", issue_key=key, field="fields")

    summary = fields.get("summary")
    if not isinstance(summary, str):
        raise MappingError(f"Required field 'summary' missing on {key}", issue_key=key, field="summary")

    custom: dict[str, str | None] = {}
    for attribute, (field_id, shape) in (custom_fields or CUSTOM_FIELDS).items():
        custom[attribute] = _custom_value(fields.get(field_id), shape, issue_key=key, field_id=field_id)

    comments_raw = (fields.get("comment") or {}).get("comments", []) or []
    comments = [
        CommentModel(
            author=user_name(c.get("author"), issue_key=key, field="comment.author"),
            created=parse_timestamp(c.get("created"), issue_key=key, field="comment.created"),
            body=_text(c.get("body")),
        )
        for c in comments_raw
    ]

    histories_raw = (raw.get("changelog") or {}).get("histories", []) or []
    histories = []
    for h in histories_raw:
        items = [
            ChangelogItemModel(
                field=str(it.get("field") or ""),
                from_string=it.get("fromString"),
                to_string=it.get("toString"),
            )
            for it in h.get("items") or []
        ]
        histories.append(
            HistoryModel(
                author=user_name(h.get("author"), issue_key=key, field="changelog.author"),
                created=parse_timestamp(h.get("created"), issue_key=key, field="changelog.created"),
                items=items,
            )
        )

    return IssueDocument(
        key=key,
        project=_required_name(fields, "project", key),
        created=parse_timestamp(fields.get("created"), issue_key=key, field="created"),
        updated=parse_timestamp(fields.get("updated"), issue_key=key, field="updated"),
        status=_required_name(fields, "status", key),
        priority=_required_name(fields, "priority", key),
        issue_type=_required_name(fields, "issuetype", key),
        summary=summary,
        description=_text(fields.get("description")),
        reporter=user_name(fields.get("reporter"), issue_key=key, field="reporter"),
        assignee=user_name(fields.get("assignee"), issue_key=key, field="assignee"),
        resolved_at=_optional_timestamp(fields.get("resolutiondate"), issue_key=key, field="resolutiondate"),
        components=_names(fields.get("components")),
        labels=_names(fields.get("labels")),
        fix_versions=_names(fields.get("fixVersions")),
        custom=custom,
        comments=comments,
        histories=histories,
    )


# ------------------ State & events ------------------
def map_issue_state(doc: IssueDocument) -> IssueState:
    return IssueState(
        key=doc.key,
        project=doc.project,
        created_at=doc.created,
        updated_at=doc.updated,
        status=doc.status,
        priority=doc.priority,
        issue_type=doc.issue_type,
        summary=doc.summary,
        description=doc.description,
        reporter=doc.reporter,
        assignee=doc.assignee,
        developer_backend=doc.custom.get("developer_backend"),
        developer_frontend=doc.custom.get("developer_frontend"),
        reviewer=doc.custom.get("reviewer"),
        product_owner=doc.custom.get("product_owner"),
        bug_cause=doc.custom.get("bug_cause"),
        epic=doc.custom.get("epic"),
        tribe=doc.custom.get("tribe"),
        components=TAG_SEPARATOR.join(doc.components),
        labels=TAG_SEPARATOR.join(doc.labels),
        fix_versions=TAG_SEPARATOR.join(doc.fix_versions),
        resolved_at=doc.resolved_at,
    )


def map_issue_events(doc: IssueDocument) -> list[IssueEvent]:
    """Derive the ordered event log of an issue.

    Emits ``created``, one ``comment_added`` per comment, and for ``status``
    and ``assignee`` a gapless chain of transitions starting at creation
    time. When the changelog touches a monitored field, its first entry is
    preceded by a bootstrap event ``(None -> value before that change)`` at
    creation time. When it never does, a single bootstrap event carries the
    current value (for the assignee only if one is set).

    The result is stable-sorted by ``event_time``; same-timestamp events keep
    emission order.
    """
    key = doc.key
    fallback_author = doc.reporter or UNKNOWN_AUTHOR
    events = [IssueEvent(doc.created, EventKind.CREATED, fallback_author, key)]

    for comment in doc.comments:
        events.append(
            IssueEvent(
                comment.created,
                EventKind.COMMENT_ADDED,
                comment.author or UNKNOWN_AUTHOR,
                key,
                comment_body=comment.body,
            )
        )

    seen: set[str] = set()
    # Histories arrive most recent first; walk them oldest first.
    for history in reversed(doc.histories):
        author = history.author or UNKNOWN_AUTHOR
        for item in history.items:
            kind = MONITORED_FIELDS.get(item.field)
            if kind is None:
                continue
            if item.field not in seen:
                seen.add(item.field)
                events.append(IssueEvent(doc.created, kind, author, key, change_to=item.from_string))
            events.append(
                IssueEvent(
                    history.created,
                    kind,
                    author,
                    key,
                    change_from=item.from_string,
                    change_to=item.to_string,
                )
            )

    if STATUS_FIELD not in seen:
        events.append(IssueEvent(doc.created, EventKind.STATUS_CHANGED, fallback_author, key, change_to=doc.status))
    if ASSIGNEE_FIELD not in seen and doc.assignee is not None:
        events.append(
            IssueEvent(doc.created, EventKind.ASSIGNEE_CHANGED, fallback_author, key, change_to=doc.assignee)
        )

    events.sort(key=lambda e: e.event_time)
    return events


def map_issue(
    raw: dict[str, Any],
    custom_fields: dict[str, tuple[str, str]] | None = None,
) -> tuple[IssueState, list[IssueEvent]]:
    doc = parse_issue(raw, custom_fields)
    return map_issue_state(doc), map_issue_events(doc)
