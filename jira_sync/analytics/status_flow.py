"""Status flow and duration analysis over derived issue events.

Works on the event log produced by the mappers, so the same numbers can be
computed from a freshly fetched issue or from rows read back from the store.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable
from datetime import UTC, datetime

import pandas as pd

from jira_sync.core.models import EventKind, IssueEvent

EVENT_FRAME_COLUMNS = ["event_time", "kind", "author", "issue_key", "comment_body", "change_from", "change_to"]
UNSET_LABEL = "Unassigned"


def events_to_dataframe(events: Iterable[IssueEvent]) -> pd.DataFrame:
    """Flatten events into a DataFrame with a tz-aware ``event_time`` column."""
    df = pd.DataFrame([e.as_dict() for e in events], columns=EVENT_FRAME_COLUMNS)
    if not df.empty:
        df["event_time"] = pd.to_datetime(df["event_time"], utc=True)
    return df


def time_in_state(
    events: Iterable[IssueEvent],
    kind: EventKind = EventKind.STATUS_CHANGED,
    now: datetime | None = None,
    end: datetime | None = None,
) -> dict[str, float]:
    """Days spent in each value of a monitored field.

    Parameters
    ----------
    events : Iterable[IssueEvent]
        Event log of a single issue (any order).
    kind : EventKind
        ``STATUS_CHANGED`` or ``ASSIGNEE_CHANGED``.
    now : datetime, optional
        Closing time for the current value; defaults to the current UTC time.
    end : datetime, optional
        Explicit closing time (e.g. resolution date). Takes precedence over ``now``.

    Returns
    -------
    dict[str, float]
        Mapping of value to days spent in it. An empty ``change_to`` counts as
        ``"Unassigned"``.
    """
    if kind not in (EventKind.STATUS_CHANGED, EventKind.ASSIGNEE_CHANGED):
        raise ValueError(f"time_in_state only applies to change events, got {kind.value}")

    chain = sorted((e for e in events if e.kind is kind), key=lambda e: e.event_time)
    if not chain:
        return {}

    closing = end or now or datetime.now(UTC)
    durations: defaultdict[str, float] = defaultdict(float)
    for current, following in zip(chain, chain[1:] + [None]):
        stop = following.event_time if following is not None else closing
        delta = (stop - current.event_time).total_seconds() / 86400.0
        if delta >= 0:
            durations[current.change_to or UNSET_LABEL] += delta
    return dict(durations)


def build_time_in_state_frame(
    events: Iterable[IssueEvent],
    kind: EventKind = EventKind.STATUS_CHANGED,
    now: datetime | None = None,
    end: datetime | None = None,
) -> pd.DataFrame:
    """Long-form ``value, duration_days`` frame, longest first."""
    durations = time_in_state(events, kind, now=now, end=end)
    if not durations:
        return pd.DataFrame(columns=["value", "duration_days"])
    df = pd.DataFrame({"value": list(durations), "duration_days": list(durations.values())})
    return df.sort_values("duration_days", ascending=False, ignore_index=True)
