from datetime import UTC, datetime

import pytest
from factories import history, raw_issue

from jira_sync.analytics.status_flow import build_time_in_state_frame, events_to_dataframe, time_in_state
from jira_sync.core.mappers import map_issue
from jira_sync.core.models import EventKind

NOW = datetime(2024, 9, 11, 10, 0, tzinfo=UTC)


def _events():
    # Created 2024-09-01 10:00; Open 1 day, In Dev 2 days, then In Review until NOW.
    raw = raw_issue(
        status="In Review",
        assignee="Bob",
        histories=[
            history("2024-09-04T10:00:00.000+0000", "Dave", ("status", "In Dev", "In Review")),
            history("2024-09-02T10:00:00.000+0000", "Dave", ("status", "Open", "In Dev"), ("assignee", None, "Bob")),
        ],
    )
    return map_issue(raw)[1]


def test_time_in_status():
    durations = time_in_state(_events(), now=NOW)
    assert durations == pytest.approx({"Open": 1.0, "In Dev": 2.0, "In Review": 7.0})


def test_time_per_assignee_counts_unassigned():
    durations = time_in_state(_events(), EventKind.ASSIGNEE_CHANGED, now=NOW)
    assert durations == pytest.approx({"Unassigned": 1.0, "Bob": 9.0})


def test_end_overrides_now():
    end = datetime(2024, 9, 5, 10, 0, tzinfo=UTC)
    durations = time_in_state(_events(), end=end, now=NOW)
    assert durations["In Review"] == pytest.approx(1.0)


def test_time_in_state_rejects_other_kinds():
    with pytest.raises(ValueError):
        time_in_state(_events(), EventKind.COMMENT_ADDED)


def test_time_in_state_without_chain():
    assert time_in_state([], now=NOW) == {}


def test_events_to_dataframe():
    df = events_to_dataframe(_events())
    assert list(df.columns) == ["event_time", "kind", "author", "issue_key", "comment_body", "change_from", "change_to"]
    assert (df["kind"] == "created").sum() == 1
    assert str(df["event_time"].dt.tz) == "UTC"
    assert df["event_time"].is_monotonic_increasing


def test_events_to_dataframe_empty():
    df = events_to_dataframe([])
    assert df.empty
    assert "event_time" in df.columns


def test_time_in_state_frame_is_sorted():
    frame = build_time_in_state_frame(_events(), now=NOW)
    assert list(frame["value"]) == ["In Review", "In Dev", "Open"]
