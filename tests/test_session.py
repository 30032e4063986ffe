"""
End-to-end crawl session tests against a scripted browser surface.

Covers:
  1. Normal pagination (initial load + load-more cycles, dedup, target cap)
  2. Resume idempotence (known ids never re-emitted, relaxed no-new cap)
  3. DOM fallback on initial load and under persistent rate limiting
  4. Initial-load exhaustion and recovery
  5. Cancellation (prompt, partial outcome, browser closed)
  6. Interceptor behaviour and export helpers
"""

import asyncio
import csv
import json
import time

import pytest

from adcrawler.errors import CrawlCancelled, CrawlExhausted
from adcrawler.pagination import ControllerState
from adcrawler.query import SearchQuery
from adcrawler.session import CrawlSession, RecordAccumulator
from adcrawler.normalizer import normalize

from conftest import (
    API_URL,
    FakeSurface,
    make_node,
    ok,
    rate_limited_body,
    results_page_html,
    search_body,
    unrelated_body,
)


def _session(surface, config, query=None, **kwargs):
    query = query or SearchQuery("climate", max_records=5)
    return CrawlSession(query, config, surface_factory=lambda cfg: surface, **kwargs)


def _ids(records):
    return [r.id for r in records]


# ====================================================================
# 1. Normal pagination
# ====================================================================

class TestPagination:
    """Load-more cycles until a cap or the record target."""

    def test_climate_scenario(self, fast_config):
        surface = FakeSurface(
            initial=[ok(search_body(["1", "2", "3"]))],
            pages=[[ok(search_body(["4", "5", "3"]))]],
        )
        session = _session(surface, fast_config)
        outcome = asyncio.run(session.run())

        assert _ids(outcome.data) == ["1", "2", "3", "4", "5"]
        assert outcome.meta.total_results == 5
        assert outcome.meta.reported_total == 3
        assert outcome.meta.stop_reason == "target_reached"
        assert outcome.meta.mode == "api"
        assert outcome.meta.query == "climate"
        assert "q=climate" in outcome.meta.url
        assert surface.navigated_to == outcome.meta.url
        assert surface.load_more_count == 1
        assert surface.opened and surface.closed
        assert session.controller.state is ControllerState.DONE

    def test_output_truncated_to_max_records(self, fast_config):
        surface = FakeSurface(initial=[ok(search_body([str(i) for i in range(1, 9)]))])
        outcome = asyncio.run(_session(surface, fast_config).run())
        assert _ids(outcome.data) == ["1", "2", "3", "4", "5"]
        assert surface.load_more_count == 0

    def test_empty_cap(self, fast_config):
        surface = FakeSurface(
            initial=[ok(search_body(["1"]))],
            pages=[[ok(unrelated_body())]],
            cycle_pages=True,
        )
        session = _session(surface, fast_config)
        outcome = asyncio.run(session.run())
        assert _ids(outcome.data) == ["1"]
        assert outcome.meta.stop_reason == "empty_cap"
        assert surface.load_more_count == fast_config.max_empty_cycles
        assert session.monitor.metrics.empty_cycles == 5

    def test_new_records_reset_counters(self, fast_config):
        pages = [[], [], [], [], [ok(search_body(["2"]))], [], [], [], [], []]
        surface = FakeSurface(initial=[ok(search_body(["1"]))], pages=pages)
        outcome = asyncio.run(_session(surface, fast_config).run())
        assert _ids(outcome.data) == ["1", "2"]
        assert outcome.meta.stop_reason == "empty_cap"
        assert surface.load_more_count == 10

    def test_genuinely_empty_search(self, fast_config):
        surface = FakeSurface()
        outcome = asyncio.run(_session(surface, fast_config).run())
        assert outcome.data == []
        assert outcome.meta.stop_reason == "empty_cap"

    def test_progress_events(self, fast_config, events, collect):
        surface = FakeSurface(
            initial=[ok(search_body(["1", "2", "3"]))],
            pages=[[ok(search_body(["4", "5"]))]],
        )
        asyncio.run(_session(surface, fast_config, on_progress=collect).run())
        progress = [e for e in events if e["type"] == "progress"]
        assert progress[-1] == {"type": "progress", "current": 5, "max": 5}
        assert all(e["max"] == 5 for e in progress)
        assert any(e["type"] == "log" for e in events)

    def test_broken_callback_does_not_stop_crawl(self, fast_config):
        def explode(event):
            raise RuntimeError("observer bug")

        surface = FakeSurface(initial=[ok(search_body(["1", "2", "3", "4", "5"]))])
        outcome = asyncio.run(_session(surface, fast_config, on_progress=explode).run())
        assert len(outcome.data) == 5


# ====================================================================
# 2. Resume idempotence
# ====================================================================

class TestResume:
    """Ensure previously seen ids are never emitted again."""

    def test_known_ids_never_reemitted(self, fast_config):
        known = ["1", "2", "3", "4", "5"]
        surface = FakeSurface(
            initial=[ok(search_body(known))],
            pages=[[ok(search_body(known))]],
            cycle_pages=True,
        )
        query = SearchQuery("climate", max_records=10, previously_seen_ids=set(known))
        session = _session(surface, fast_config, query=query)
        outcome = asyncio.run(session.run())

        assert outcome.data == []
        assert outcome.meta.stop_reason == "no_new_cap"
        assert outcome.meta.resumed_from == 5
        assert surface.load_more_count == fast_config.max_no_new_cycles_resume
        assert session.monitor.metrics.no_new_cycles == 15

    def test_resume_collects_only_unseen(self, fast_config):
        surface = FakeSurface(
            initial=[ok(search_body(["1", "2", "3"]))],
            pages=[[ok(search_body(["3", "4"]))]],
        )
        query = SearchQuery("climate", max_records=2, previously_seen_ids={"1", "3"})
        outcome = asyncio.run(_session(surface, fast_config, query=query).run())
        assert _ids(outcome.data) == ["2", "4"]

    def test_non_resume_no_new_cap(self, fast_config):
        surface = FakeSurface(
            initial=[ok(search_body(["1"]))],
            pages=[[ok(search_body(["1"]))]],
            cycle_pages=True,
        )
        outcome = asyncio.run(_session(surface, fast_config).run())
        assert outcome.meta.stop_reason == "no_new_cap"
        assert surface.load_more_count == fast_config.max_no_new_cycles


# ====================================================================
# 3. DOM fallback
# ====================================================================

class TestFallback:
    """DOM extraction when the API yields nothing or stays rate-limited."""

    def test_initial_fallback_activation(self, fast_config, events, collect):
        surface = FakeSurface(
            initial=[ok(unrelated_body())],
            html=results_page_html(["11", "12", "13", "14"]),
        )
        query = SearchQuery("climate", max_records=4)
        outcome = asyncio.run(_session(surface, fast_config, query=query, on_progress=collect).run())

        assert _ids(outcome.data) == ["11", "12", "13", "14"]
        assert outcome.meta.fallback_used
        assert outcome.meta.mode == "api+dom"
        assert any(
            e["type"] == "log" and e["message"].startswith("[FALLBACK]") for e in events
        )

    def test_persistent_rate_limit_switches_to_dom(self, fast_config):
        surface = FakeSurface(
            initial=[ok(search_body(["1", "2"]))],
            pages=[[ok(rate_limited_body())]],
            cycle_pages=True,
            html=results_page_html(["2", "30", "31"]),
        )
        query = SearchQuery("climate", max_records=50)
        session = _session(surface, fast_config, query=query)
        outcome = asyncio.run(session.run())

        assert _ids(outcome.data) == ["1", "2", "30", "31"]
        assert outcome.meta.stop_reason == "rate_limited_fallback"
        assert outcome.meta.fallback_used
        assert session.monitor.metrics.backoffs == 2
        assert session.monitor.metrics.fallback_runs == 1
        assert surface.load_more_count == 3

    def test_transient_rate_limit_recovers(self, fast_config):
        surface = FakeSurface(
            initial=[ok(search_body(["1"]))],
            pages=[
                [(429, "")],
                [ok(search_body(["2", "3"]))],
            ],
        )
        query = SearchQuery("climate", max_records=3)
        session = _session(surface, fast_config, query=query)
        outcome = asyncio.run(session.run())
        assert _ids(outcome.data) == ["1", "2", "3"]
        assert outcome.meta.stop_reason == "target_reached"
        assert session.monitor.metrics.backoffs == 1
        assert not outcome.meta.fallback_used

    def test_persistent_rate_limit_with_nothing_collected_is_exhausted(self, fast_config):
        surface = FakeSurface(
            initial=[ok(unrelated_body())],
            pages=[[ok(rate_limited_body())]],
            cycle_pages=True,
        )
        session = _session(surface, fast_config)
        with pytest.raises(CrawlExhausted):
            asyncio.run(session.run())
        assert surface.closed
        assert session.controller.stop_reason == "exhausted"
        assert session.monitor.metrics.backoffs == 2
        assert session.monitor.metrics.fallback_runs == 2

    def test_media_enrichment_from_dom(self, fast_config):
        bare = json.dumps({"data": {"m": {"search_results_connection": {"edges": [
            {"node": {"ad_archive_id": "12", "gated_type": "LOGGED_OUT"}},
        ]}}}})
        surface = FakeSurface(initial=[ok(bare)], html=results_page_html(["12"]))
        query = SearchQuery("climate", max_records=1)
        outcome = asyncio.run(_session(surface, fast_config, query=query).run())
        record = outcome.data[0]
        assert [i.src for i in record.images] == ["https://scontent.xx.fbcdn.net/v/12_n.jpg"]
        assert record.is_restricted


# ====================================================================
# 4. Initial-load exhaustion
# ====================================================================

class TestInitialLoad:
    """Reload retries and exhaustion on the first page."""

    def test_exhausted_after_retries(self, fast_config):
        surface = FakeSurface(
            initial=[ok(rate_limited_body())],
            reloads=[[ok(rate_limited_body())], [ok(rate_limited_body())]],
        )
        session = _session(surface, fast_config)
        with pytest.raises(CrawlExhausted):
            asyncio.run(session.run())
        assert surface.reload_count == fast_config.initial_retry_attempts
        assert surface.closed
        assert session.controller.stop_reason == "exhausted"

    def test_retry_recovers(self, fast_config):
        surface = FakeSurface(
            initial=[(429, "")],
            reloads=[[ok(search_body(["1", "2", "3", "4", "5"]))]],
        )
        outcome = asyncio.run(_session(surface, fast_config).run())
        assert len(outcome.data) == 5
        assert surface.reload_count == 1

    def test_exhausted_when_flag_clears_without_data(self, fast_config):
        surface = FakeSurface(
            initial=[(429, "")],
            reloads=[[ok(unrelated_body())]],
        )
        with pytest.raises(CrawlExhausted):
            asyncio.run(_session(surface, fast_config).run())
        assert surface.reload_count == 1


# ====================================================================
# 5. Cancellation
# ====================================================================

class TestCancellation:
    """Ensure cancel stops promptly and keeps partial records."""

    def test_cancel_mid_wait_returns_partial(self, fast_config):
        fast_config.cycle_delay_s = (60.0, 60.0)
        surface = FakeSurface(
            initial=[ok(search_body(["1"]))],
            pages=[[ok(search_body([str(i)]))] for i in range(2, 6)],
        )
        holder = {}

        def on_progress(event):
            if event["type"] == "progress" and event["current"] == 2:
                asyncio.get_running_loop().call_later(0.05, holder["session"].cancel)

        session = _session(surface, fast_config, on_progress=on_progress)
        holder["session"] = session

        start = time.monotonic()
        with pytest.raises(CrawlCancelled) as info:
            asyncio.run(session.run())
        elapsed = time.monotonic() - start

        assert elapsed < 5
        assert _ids(info.value.outcome.data) == ["1", "2"]
        assert info.value.outcome.meta.stop_reason == "cancelled"
        assert _ids(session.records) == ["1", "2"]
        assert surface.closed

    def test_cancel_before_run(self, fast_config):
        surface = FakeSurface(initial=[ok(search_body(["1"]))])
        session = _session(surface, fast_config)
        session.cancel()
        with pytest.raises(CrawlCancelled) as info:
            asyncio.run(session.run())
        assert info.value.outcome.data == []
        assert surface.closed

    def test_cancel_during_backoff(self, fast_config):
        fast_config.backoff_base_s = 60.0
        surface = FakeSurface(initial=[(429, "")])

        session = _session(surface, fast_config)

        async def run_and_cancel():
            task = asyncio.ensure_future(session.run())
            await asyncio.sleep(0.1)
            session.cancel()
            return await task

        start = time.monotonic()
        with pytest.raises(CrawlCancelled):
            asyncio.run(run_and_cancel())
        assert time.monotonic() - start < 5
        assert surface.reload_count == 0


# ====================================================================
# 6. Interceptor and helpers
# ====================================================================

class TestInterceptor:
    """Filtering and queueing of intercepted API responses."""

    def test_non_api_urls_ignored(self, fast_config):
        session = _session(FakeSurface(), fast_config)
        session._channel = asyncio.Queue(maxsize=4)
        session._on_api_response("https://www.facebook.com/ajax/bz", 200, search_body(["1"]))
        assert session._channel.empty()
        assert session.rate_monitor.requests_last_hour() == 0

    def test_unrelated_bodies_are_still_harvested(self, fast_config):
        session = _session(FakeSurface(), fast_config)
        session._channel = asyncio.Queue(maxsize=4)
        body = json.dumps({"data": {"x": {"edges": [{"node": {"adArchiveID": "7"}}]}}})
        session._on_api_response(API_URL, 200, body)
        assert session._channel.get_nowait().records[0]["node"]["adArchiveID"] == "7"

    def test_rate_limited_bodies_not_queued(self, fast_config):
        session = _session(FakeSurface(), fast_config)
        session._channel = asyncio.Queue(maxsize=4)
        session._on_api_response(API_URL, 200, rate_limited_body())
        session._on_api_response(API_URL, 429, "")
        assert session._channel.empty()
        assert session.rate_monitor.rate_limited

    def test_full_channel_drops_batch(self, fast_config):
        session = _session(FakeSurface(), fast_config)
        session._channel = asyncio.Queue(maxsize=1)
        session._on_api_response(API_URL, 200, search_body(["1"]))
        session._on_api_response(API_URL, 200, search_body(["2"]))
        assert session._channel.qsize() == 1
        assert session.monitor.metrics.batches_dropped == 1


class TestRecordAccumulator:
    """Ordered dedup shared by API and DOM records."""

    def test_dedup_and_order(self):
        acc = RecordAccumulator(seen_ids={"9"})
        added = acc.add_edges([
            {"node": make_node("1")}, {"node": make_node("9")},
            {"node": make_node("2")}, {"node": make_node("1")},
        ])
        assert added == 2
        assert _ids(acc.records) == ["1", "2"]
        assert "9" in acc and "2" in acc

    def test_dom_and_api_share_seen_set(self):
        acc = RecordAccumulator()
        acc.add_edges([{"node": make_node("5")}])
        assert acc.add_records([normalize(make_node("5"))]) == 0


class TestExport:
    """JSON and CSV export, and reading ids back for resume."""

    def test_json_roundtrip_feeds_resume(self, fast_config, tmp_path):
        surface = FakeSurface(initial=[ok(search_body(["1", "2", "3", "4", "5"]))])
        outcome = asyncio.run(_session(surface, fast_config).run())

        path = tmp_path / "out" / "ads.json"
        CrawlSession.export_json(outcome, str(path))
        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["meta"]["total_results"] == 5
        assert data["data"][0]["start_date"] == "2024-01-01"
        assert CrawlSession.load_previous_ids(str(path)) == {"1", "2", "3", "4", "5"}

    def test_csv(self, fast_config, tmp_path):
        surface = FakeSurface(initial=[ok(search_body(["1", "2", "3", "4", "5"]))])
        outcome = asyncio.run(_session(surface, fast_config).run())

        path = tmp_path / "ads.csv"
        CrawlSession.export_csv(outcome, str(path))
        with open(path, newline="", encoding="utf-8") as f:
            rows = list(csv.DictReader(f))
        assert [r["id"] for r in rows] == ["1", "2", "3", "4", "5"]
        assert rows[0]["owner_name"] == "Page 1"
        assert rows[0]["image_count"] == "1"
