from datetime import UTC, datetime

import pytest
import requests
from jira import JIRAError

from jira_sync.core.errors import PermanentSourceError, TransientSourceError
from jira_sync.core.jira_client import (
    JiraAPI,
    classify_http_error,
    full_sync_query,
    updated_since_query,
)


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload if payload is not None else {}
        self.text = str(self._payload)

    def json(self):
        return self._payload


class FakeSession:
    """Replays queued responses (or exceptions) and records every call."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, params=None, timeout=None):
        self.calls.append((method, url, dict(params or {})))
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class FakeClient:
    def __init__(self, session):
        self._session = session


def _api(*responses):
    session = FakeSession(*responses)
    sleeps = []
    api = JiraAPI(
        "https://example.atlassian.net/",
        "me@example.com",
        "token",
        client=FakeClient(session),
        sleep=sleeps.append,
    )
    return api, session, sleeps


def test_search_follows_next_page_token():
    api, session, _ = _api(
        FakeResponse(payload={"issues": [{"key": "A-1"}, {"key": "A-2"}], "nextPageToken": "t1"}),
        FakeResponse(payload={"issues": [{"key": "A-3"}], "nextPageToken": "t2", "isLast": True}),
    )

    assert list(api.search("ORDER BY created ASC")) == ["A-1", "A-2", "A-3"]
    assert len(session.calls) == 2
    method, url, params = session.calls[0]
    assert method == "GET"
    assert url == "https://example.atlassian.net/rest/api/3/search/jql"
    assert params["jql"] == "ORDER BY created ASC"
    assert params["maxResults"] == 100
    assert "nextPageToken" not in params
    assert session.calls[1][2]["nextPageToken"] == "t1"


def test_search_stops_on_empty_page():
    api, session, _ = _api(FakeResponse(payload={"issues": [], "nextPageToken": "t1"}))
    assert list(api.search("x")) == []
    assert len(session.calls) == 1


def test_search_is_lazy():
    api, session, _ = _api(
        FakeResponse(payload={"issues": [{"key": "A-1"}], "nextPageToken": "t1"}),
        FakeResponse(payload={"issues": [{"key": "A-2"}]}),
    )
    keys = api.search("x")
    assert next(keys) == "A-1"
    assert len(session.calls) == 1


def test_get_expands_changelog():
    raw = {"key": "A-1", "fields": {"comment": {"comments": [], "total": 0}}, "changelog": {"histories": [], "total": 0}}
    api, session, _ = _api(FakeResponse(payload=raw))

    assert api.get("A-1") == raw
    _, url, params = session.calls[0]
    assert url.endswith("/rest/api/3/issue/A-1")
    assert params == {"expand": "changelog"}


def test_get_hydrates_truncated_comments_and_changelog():
    raw = {
        "key": "A-1",
        "fields": {"comment": {"comments": [{"id": "1"}], "total": 3}},
        "changelog": {"histories": [{"id": "h3"}], "total": 3},
    }
    api, session, _ = _api(
        FakeResponse(payload=raw),
        FakeResponse(payload={"comments": [{"id": "1"}, {"id": "2"}], "total": 3}),
        FakeResponse(payload={"comments": [{"id": "3"}], "total": 3}),
        FakeResponse(payload={"values": [{"id": "h1"}, {"id": "h2"}, {"id": "h3"}], "total": 3, "isLast": True}),
    )

    doc = api.get("A-1")
    assert [c["id"] for c in doc["fields"]["comment"]["comments"]] == ["1", "2", "3"]
    # Paged changelog arrives oldest first and is stored most recent first.
    assert [h["id"] for h in doc["changelog"]["histories"]] == ["h3", "h2", "h1"]
    assert session.calls[2][2]["startAt"] == 2
    assert session.calls[3][1].endswith("/issue/A-1/changelog")


def test_transient_errors_are_retried_with_backoff():
    api, session, sleeps = _api(
        FakeResponse(503),
        requests.ConnectionError("reset"),
        FakeResponse(payload={"issues": []}),
    )
    assert list(api.search("x")) == []
    assert len(session.calls) == 3
    assert sleeps == [3, 6]


def test_transient_errors_exhaust_retries():
    api, session, sleeps = _api(*[FakeResponse(429) for _ in range(4)])
    with pytest.raises(TransientSourceError):
        api.get("A-1")
    assert len(session.calls) == 4
    assert sleeps == [3, 6, 9]


def test_permanent_errors_raise_immediately():
    api, session, sleeps = _api(FakeResponse(404))
    with pytest.raises(PermanentSourceError) as err:
        api.get("A-404")
    assert err.value.status_code == 404
    assert err.value.issue_key == "A-404"
    assert sleeps == []


def test_jira_error_is_classified_by_status():
    api, _, _ = _api(JIRAError(status_code=401, text="Unauthorized"))
    with pytest.raises(PermanentSourceError):
        api.get("A-1")

    api, session, _ = _api(JIRAError(status_code=502, text="Bad gateway"), FakeResponse(payload={"key": "A-1"}))
    assert api.get("A-1")["key"] == "A-1"
    assert len(session.calls) == 2


def test_classify_http_error():
    assert classify_http_error(500, "x").transient
    assert classify_http_error(429, "x").transient
    assert classify_http_error(None, "x").transient
    assert not classify_http_error(403, "x").transient
    assert not classify_http_error(400, "x").transient


def test_explore_custom_fields_filters_and_sorts():
    raw = {"key": "A-1", "fields": {"summary": "s", "customfield_2": 2, "customfield_1": {"value": "x"}}}
    api, _, _ = _api(FakeResponse(payload=raw))
    assert list(api.explore_custom_fields("A-1").items()) == [("customfield_1", {"value": "x"}), ("customfield_2", 2)]


def test_full_sync_query():
    assert full_sync_query() == "ORDER BY created ASC"


def test_updated_since_query_floors_to_minute():
    ts = datetime(2024, 9, 1, 10, 15, 59, 999000, tzinfo=UTC)
    assert updated_since_query(ts) == 'updated >= "2024/09/01 10:15" ORDER BY updated ASC'


def test_updated_since_query_renders_in_jira_timezone():
    ts = datetime(2024, 1, 15, 23, 30, tzinfo=UTC)
    assert updated_since_query(ts, "Europe/Paris") == 'updated >= "2024/01/16 00:30" ORDER BY updated ASC'
    naive = datetime(2024, 1, 15, 23, 30)
    assert updated_since_query(naive, "UTC") == 'updated >= "2024/01/15 23:30" ORDER BY updated ASC'


def test_single_attempt_client_raises_without_sleeping():
    session = FakeSession(FakeResponse(503))
    sleeps = []
    api = JiraAPI("https://example.atlassian.net", "e", "t", client=FakeClient(session), max_retries=1, sleep=sleeps.append)
    with pytest.raises(TransientSourceError):
        api.get("A-1")
    assert len(session.calls) == 1
    assert sleeps == []
