"""Tests for the Lifelog facade: scheduled runs and on-demand refresh."""

import json
from datetime import datetime, timedelta, timezone

import pytest

from lifelog.api import (
    BOOTSTRAP_ANALYSIS_LIMIT,
    FRESH_ANALYSIS_LIMIT,
    STALE_ANALYSIS_LIMIT,
    Lifelog,
)
from lifelog.background import BackgroundRunner
from lifelog.config import Flags
from lifelog.errors import AuthConfigurationError, TransientNetworkError
from lifelog.normalize import lifelog_to_entry
from lifelog.sync import LAST_SYNC_KEY, LAST_UPDATED_KEY
from lifelog.types import FetchPage, format_timestamp
from tests.conftest import RecordingAlerter, ScriptedProvider, StubLimitlessClient, make_lifelog

NOW = datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)
GOOD = json.dumps({"summary": "Talked through the week."})


class Harness:
    """A Lifelog wired to stubs, with handles to inspect them."""

    def __init__(self, store, config, items=(), responses=None, client_error=None):
        self.clients: list[StubLimitlessClient] = []
        self.items = list(items)
        self.client_error = client_error
        self.primary = ScriptedProvider("primary", responses if responses is not None else [GOOD] * 10)
        self.alerter = RecordingAlerter()
        self.runner = BackgroundRunner()
        self.ll = Lifelog(
            config=config,
            store=store,
            client_factory=self._client,
            primary=self.primary,
            alerter=self.alerter,
            runner=self.runner,
            sleep=lambda _: None,
            clock=lambda: NOW,
        )

    def _client(self):
        if self.client_error is not None:
            raise self.client_error
        client = StubLimitlessClient({None: FetchPage(items=self.items)})
        self.clients.append(client)
        return client

    def finish(self):
        self.runner.shutdown(wait=True)
        self.ll.close()


@pytest.fixture
def harness(store, store_config):
    created = []

    def make(**kwargs):
        h = Harness(store, store_config, **kwargs)
        created.append(h)
        return h

    yield make
    for h in created:
        h.finish()


def _seed(store, *ids):
    for i, entry_id in enumerate(ids):
        store.upsert_entry(lifelog_to_entry(
            make_lifelog(entry_id, start_time=f"2024-05-09T{10 + i:02d}:00:00Z")
        ))


class TestRefreshOnRequest:
    def test_bootstrap_syncs_before_returning(self, harness, store):
        items = [make_lifelog(f"e{i}", start_time=f"2024-05-09T{10 + i:02d}:00:00Z") for i in range(7)]
        h = harness(items=items)

        decision = h.ll.refresh_on_request()

        assert decision.action == "bootstrap"
        assert decision.sync.processed == 7
        assert store.count_entries() == 7
        analyzed = decision.futures[0].result(timeout=10)
        assert len(analyzed) == BOOTSTRAP_ANALYSIS_LIMIT
        assert h.clients[0].calls[0]["start"] == "2024-05-03T12:00:00.000Z"

    def test_stale_sync_runs_in_background(self, harness, store):
        _seed(store, "a", "b", "c", "d")
        store.set_state(LAST_SYNC_KEY, format_timestamp(NOW - timedelta(minutes=90)))
        store.set_state(LAST_UPDATED_KEY, "2024-05-09T11:00:00Z")
        h = harness(items=[make_lifelog("e", start_time="2024-05-09T20:00:00Z")])

        decision = h.ll.refresh_on_request()

        assert decision.action == "sync"
        assert decision.sync is None
        analyzed = decision.futures[0].result(timeout=10)
        assert len(analyzed) == STALE_ANALYSIS_LIMIT
        assert analyzed[0] == "e"
        assert h.clients[0].calls[0]["start"] == "2024-05-09T05:00:00.000Z"

    def test_fresh_data_only_analyzes(self, harness, store):
        _seed(store, "a", "b", "c")
        store.set_state(LAST_SYNC_KEY, format_timestamp(NOW - timedelta(minutes=10)))
        h = harness()

        decision = h.ll.refresh_on_request()

        assert decision.action == "analyze"
        assert len(decision.futures[0].result(timeout=10)) == FRESH_ANALYSIS_LIMIT
        assert h.clients == []

    def test_disabled_sync_does_nothing(self, harness, store, store_config):
        store_config.flags = Flags(limitless_api_key="skip")
        _seed(store, "a")
        h = harness()

        decision = h.ll.refresh_on_request()

        assert decision.action == "skipped"
        assert decision.futures == []
        assert h.primary.calls == []

    def test_background_failure_goes_to_error_log(self, harness, store, tmp_path, monkeypatch):
        monkeypatch.setenv("LIFELOG_STORE_PATH", str(tmp_path / "errors"))
        _seed(store, "a")
        store.set_state(LAST_SYNC_KEY, format_timestamp(NOW - timedelta(hours=5)))
        h = harness(client_error=TransientNetworkError("HTTP 503", status_code=503))

        decision = h.ll.refresh_on_request()
        h.finish()

        with pytest.raises(TransientNetworkError):
            decision.futures[0].result()
        assert "HTTP 503" in (tmp_path / "errors" / "lifelog-errors.log").read_text()


class TestRunScheduled:
    def test_happy_path(self, harness, store):
        h = harness(items=[make_lifelog("e1"), make_lifelog("e2")])

        summary = h.ll.run_scheduled()

        assert summary["sync"]["processed"] == 2
        assert summary["stale_alert"] is True
        assert sorted(summary["analysis"]["analyzed"]) == ["e1", "e2"]
        assert "analysis_error" not in summary

    def test_sync_failure_alerts_and_analysis_still_runs(self, harness, store):
        _seed(store, "a")
        h = harness(client_error=TransientNetworkError("HTTP 502", status_code=502))

        summary = h.ll.run_scheduled()

        assert summary["sync_error"] == "HTTP 502"
        assert summary["analysis"]["analyzed"] == ["a"]
        error_alerts = [m for m in h.alerter.messages if "scheduled run error" in m]
        assert len(error_alerts) == 1
        assert "Step: sync" in error_alerts[0]

    def test_missing_credential_is_not_an_error(self, harness, store):
        h = harness(client_error=AuthConfigurationError("Missing LIMITLESS_API_KEY"))

        summary = h.ll.run_scheduled()

        assert summary["sync"]["skippedReason"] == "missing-credential"
        assert h.alerter.messages == []

    def test_rate_limit_reported_in_summary(self, harness, store):
        from lifelog.errors import RateLimitError

        _seed(store, "a", "b")
        store.set_state(LAST_SYNC_KEY, format_timestamp(NOW))
        store.set_state(LAST_UPDATED_KEY, format_timestamp(NOW))
        h = harness(responses=[RateLimitError("1031")])

        summary = h.ll.run_scheduled()

        assert summary["analysis"]["rateLimited"] is True
        assert summary["analysis"]["skipped"] == ["b", "a"]


class TestReads:
    def test_status(self, harness, store):
        h = harness(items=[make_lifelog("e1")])
        h.ll.sync()
        h.ll.analyze()

        info = h.ll.status()

        assert info["entries"] == 1
        assert info["segments"] == 2
        assert info["analyses"] == 1
        assert info["last_synced_at"] == "2024-05-10T12:00:00.000Z"
        assert info["next_sync_mode"] == "incremental"

    def test_get_and_analysis(self, harness, store):
        h = harness(items=[make_lifelog("e1")])
        h.ll.sync()
        h.ll.analyze()

        assert h.ll.get("e1").title == "Morning standup"
        assert h.ll.get_analysis("e1").payload["summary"] == "Talked through the week."
        assert h.ll.get("missing") is None


def test_default_wiring(tmp_path):
    """Opening a store path writes config, creates the schema, and needs no credentials."""
    with Lifelog(tmp_path / "store") as ll:
        assert ll.store.schema_ready()
        assert (tmp_path / "store" / "lifelog.toml").exists()
        stats = ll.sync()
        assert stats.skipped_reason == "missing-credential"
        assert ll.analyze() == []
