import json
import signal

import pytest
from factories import history, raw_issue

from jira_sync import cli
from jira_sync.core.config import SyncSettings
from jira_sync.core.errors import ConfigError, StoreError
from jira_sync.storage.memory import InMemoryStore


class FakeSource:
    def __init__(self, issues):
        self.issues = {i["key"]: i for i in issues}
        self.closed = False

    def search(self, jql):
        yield from self.issues

    def get(self, key):
        return self.issues[key]

    def explore_custom_fields(self, key):
        fields = self.issues[key]["fields"]
        return {k: v for k, v in sorted(fields.items()) if k.startswith("customfield_")}

    def close(self):
        self.closed = True


class RecordingStore(InMemoryStore):
    def __init__(self):
        super().__init__()
        self.calls = []

    def create_schema(self):
        self.calls.append("create")

    def drop_schema(self):
        self.calls.append("drop")
        super().drop_schema()

    def close(self):
        self.calls.append("close")


@pytest.fixture
def env(monkeypatch):
    settings = SyncSettings(jira_server="https://x", jira_email="e", jira_api_token="t", db_url="postgresql://db")
    source = FakeSource(
        [
            raw_issue("PROJ-1", status="Done", customfield_10009="EPIC-1"),
            raw_issue("PROJ-2", histories=[history("2024-09-03T10:00:00.000+0000", "Dave", ("status", "Open", "Done"))]),
        ]
    )
    store = RecordingStore()
    monkeypatch.setattr(cli, "load_settings", lambda env_file=None: settings)
    monkeypatch.setattr(cli, "make_source", lambda s: source)
    monkeypatch.setattr(cli, "make_store", lambda s: store)
    monkeypatch.setattr(cli, "setup_logging", lambda level: None)
    return settings, source, store


def test_init_creates_schema(env):
    _, _, store = env
    assert cli.main(["init"]) == 0
    assert store.calls == ["create", "close"]


@pytest.mark.parametrize("action", ["reset", "cleanup"])
def test_reset_and_cleanup_drop_schema(env, action):
    _, _, store = env
    assert cli.main([action]) == 0
    assert store.calls == ["drop", "close"]


def test_sync_full_recreates_and_syncs(env):
    _, source, store = env
    assert cli.main(["sync-full"]) == 0
    assert store.calls[:2] == ["drop", "create"]
    assert store.calls[-1] == "close"
    assert set(store.states) == {"PROJ-1", "PROJ-2"}
    assert store.states["PROJ-1"].epic == "EPIC-1"
    assert source.closed


def test_sync_incremental(env):
    _, _, store = env
    assert cli.main(["--pool-size", "2", "sync"]) == 0
    assert set(store.states) == {"PROJ-1", "PROJ-2"}


def test_sync_issue(env):
    _, _, store = env
    assert cli.main(["sync-issue", "PROJ-2"]) == 0
    assert set(store.states) == {"PROJ-2"}


def test_sync_with_failed_keys_exits_non_zero(env):
    _, source, _ = env
    source.issues["PROJ-3"] = raw_issue("PROJ-3", customfield_12100="not-an-option")
    assert cli.main(["sync-full"]) == 1


def test_store_error_exits_non_zero(env, monkeypatch):
    class BrokenStore(RecordingStore):
        def create_schema(self):
            raise StoreError("db down")

    monkeypatch.setattr(cli, "make_store", lambda s: BrokenStore())
    assert cli.main(["init"]) == 1


def test_missing_configuration_exits_with_config_code(monkeypatch):
    def broken(env_file=None):
        raise ConfigError("Missing required environment variables: DB_URL")

    monkeypatch.setattr(cli, "load_settings", broken)
    monkeypatch.setattr(cli, "setup_logging", lambda level: None)
    assert cli.main(["sync"]) == 2


def test_explore_raw_issue_prints_json(env, capsys):
    assert cli.main(["explore-raw-issue", "PROJ-1"]) == 0
    assert json.loads(capsys.readouterr().out)["key"] == "PROJ-1"


def test_explore_custom_fields(env, capsys):
    assert cli.main(["explore-custom-fields", "PROJ-1"]) == 0
    assert 'customfield_10009: "EPIC-1"' in capsys.readouterr().out


def test_time_in_status(env, capsys):
    assert cli.main(["time-in-status", "PROJ-2"]) == 0
    out = capsys.readouterr().out
    assert "PROJ-2" in out
    assert "Open" in out and "Done" in out


def test_signal_handlers_are_restored(env):
    before = signal.getsignal(signal.SIGINT)
    cli.main(["sync"])
    assert signal.getsignal(signal.SIGINT) is before


def test_invalid_pool_size_is_rejected():
    with pytest.raises(SystemExit):
        cli.parse_args(["--pool-size", "0", "sync"])


def test_pool_size_flag_overrides_settings(env):
    settings, _, _ = env
    cli.main(["--pool-size", "3", "sync"])
    assert settings.pool_size == 3


def test_source_closed_when_store_cannot_open(env, monkeypatch):
    _, source, _ = env

    def no_database(settings):
        raise StoreError("Cannot connect to the database")

    monkeypatch.setattr(cli, "make_store", no_database)
    assert cli.main(["sync"]) == 1
    assert source.closed
