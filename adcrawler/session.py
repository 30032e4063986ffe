"""
Crawl Session
=============
Owns one crawl end to end: browser surface, response interceptor,
bounded channel, seen-ID set, rate-limit monitor and pagination
controller.

Sequence::

    open browser → attach interceptor → initial load (+ DOM fallback,
    + rate-limit retries) → pagination loop → media enrichment →
    truncate to max_records → CrawlOutcome

The browser is always closed, whatever happens in between.

Usage::

    session = CrawlSession(SearchQuery("climate", max_records=100))
    outcome = await session.run()
    session.export_json(outcome, "climate.json")
"""

from __future__ import annotations

import asyncio
import csv
import json
import logging
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Set

from . import dom_fallback
from .auth.session_store import SessionStore
from .browser import BrowserSurface, PlaywrightSurface
from .errors import CrawlCancelled, CrawlExhausted
from .harvester import harvest
from .models import CanonicalRecord, CrawlMeta, CrawlOutcome
from .monitor import CrawlMonitor, ProgressCallback
from .normalizer import normalize_many
from .pagination import STOP_CANCELLED, STOP_EXHAUSTED, PaginationController
from .query import SearchQuery
from .rate_limit import RateLimitMonitor, ResponseClass
from .run_config import CrawlerRunConfig

logger = logging.getLogger(__name__)

API_PATH = "/api/graphql"

SurfaceFactory = Callable[[CrawlerRunConfig], BrowserSurface]


class RecordAccumulator:
    """Ordered, deduplicated record store seeded with previously seen ids."""

    def __init__(self, seen_ids: Optional[Iterable[str]] = None):
        self._seen: Set[str] = set(seen_ids or ())
        self.records: List[CanonicalRecord] = []

    def __len__(self) -> int:
        return len(self.records)

    def __contains__(self, record_id: str) -> bool:
        return record_id in self._seen

    @property
    def seen_ids(self) -> Set[str]:
        return set(self._seen)

    def add_records(self, records: Iterable[CanonicalRecord]) -> int:
        """Append records whose id is unseen. Returns how many were added."""
        added = 0
        for record in records:
            if record.id in self._seen:
                continue
            self._seen.add(record.id)
            self.records.append(record)
            added += 1
        return added

    def add_edges(self, raw_edges: Iterable[dict]) -> int:
        return self.add_records(normalize_many(raw_edges))


class CrawlSession:
    """
    One Ad Library search crawl.

    ``cancel()`` may be called from any coroutine on the same loop (or via
    ``loop.call_soon_threadsafe``); ``run()`` then raises ``CrawlCancelled``
    carrying the records collected so far.
    """

    def __init__(
        self,
        query: SearchQuery,
        config: Optional[CrawlerRunConfig] = None,
        *,
        on_progress: Optional[ProgressCallback] = None,
        surface_factory: Optional[SurfaceFactory] = None,
        session_store: Optional[SessionStore] = None,
    ):
        self.query = query
        self.config = config or CrawlerRunConfig()
        self.monitor = CrawlMonitor(callback=on_progress)
        self.rate_monitor = RateLimitMonitor(
            warn_threshold=self.config.request_warn_threshold,
            critical_threshold=self.config.request_critical_threshold,
        )
        self.accumulator = RecordAccumulator(query.previously_seen_ids)
        self._session_store = session_store
        self._surface_factory = surface_factory or self._default_surface
        self._surface: Optional[BrowserSurface] = None
        self._channel: Optional[asyncio.Queue] = None
        self._cancel_event: Optional[asyncio.Event] = None
        self._cancel_requested = False
        self.controller: Optional[PaginationController] = None

    def _default_surface(self, config: CrawlerRunConfig) -> BrowserSurface:
        store = self._session_store
        if store is None and config.auth_state_file:
            store = SessionStore(state_path=config.auth_state_file)
        return PlaywrightSurface(config, session_store=store)

    @property
    def records(self) -> List[CanonicalRecord]:
        """Records accumulated so far, in discovery order."""
        return list(self.accumulator.records)

    def cancel(self) -> None:
        self._cancel_requested = True
        if self._cancel_event is not None:
            self._cancel_event.set()

    # ------------------------------------------------------------------
    # Response interception
    # ------------------------------------------------------------------

    def _on_api_response(self, url: str, status: int, body: str) -> None:
        if API_PATH not in url:
            return
        self.rate_monitor.track_request()
        verdict = self.rate_monitor.classify(status, body)
        if verdict is ResponseClass.RATE_LIMITED:
            return
        if status != 200 or not body:
            return

        # Unrelated bodies are harvested too; some ad payloads carry no indicator.
        batch = harvest(body)
        if batch.is_empty:
            return
        try:
            self._channel.put_nowait(batch)
        except asyncio.QueueFull:
            self.monitor.record_dropped_batch()
            logger.warning(
                f"[HARVEST] Channel full, dropped batch of {len(batch.records)} edges"
            )

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def _build_meta(self, url: str, data: List[CanonicalRecord]) -> CrawlMeta:
        q = self.query
        controller = self.controller
        fallback_used = bool(controller and controller.fallback_used)
        return CrawlMeta(
            query=q.query,
            country=q.country,
            active_status=q.active_status,
            ad_type=q.ad_type,
            media_type=q.media_type,
            sort_by=q.sort_by,
            url=url,
            total_results=len(data),
            reported_total=controller.reported_total if controller else 0,
            resumed_from=len(q.previously_seen_ids) if q.is_resume else None,
            mode="api+dom" if fallback_used else "api",
            stop_reason=controller.stop_reason if controller else "",
            fallback_used=fallback_used,
        )

    def _outcome(self, url: str) -> CrawlOutcome:
        data = self.accumulator.records[: self.query.max_records]
        return CrawlOutcome(meta=self._build_meta(url, data), data=list(data))

    async def _enrich_media(self) -> None:
        """Fill media for records the API delivered without any."""
        needing = [r for r in self.accumulator.records if r.is_media_incomplete]
        if not needing:
            return
        self.monitor.log(
            f"[SESSION] {len(needing)}/{len(self.accumulator)} records have no media, "
            f"extracting from DOM..."
        )
        try:
            media = dom_fallback.extract_media_map(await self._surface.content())
        except Exception as e:
            self.monitor.log(f"[SESSION] DOM media extraction failed: {e}", level=logging.WARNING)
            return

        enriched = 0
        for record in needing:
            found = media.get(record.id)
            if found and record.fill_media(*found):
                enriched += 1
        if enriched:
            self.monitor.log(f"[SESSION] Enriched {enriched} records with media from DOM")
        else:
            self.monitor.log("[SESSION] No matching media found in DOM")

    async def run(self) -> CrawlOutcome:
        """Execute the crawl. Raises ``CrawlExhausted`` or ``CrawlCancelled``."""
        url = self.query.build_search_url()
        self._channel = asyncio.Queue(maxsize=self.config.queue_maxsize)
        self._cancel_event = asyncio.Event()
        if self._cancel_requested:
            self._cancel_event.set()

        self.config.log_summary(url)
        self.monitor.start()
        if self.query.is_resume:
            self.monitor.log(
                f"[SESSION] Resuming: skipping {len(self.query.previously_seen_ids)} known records"
            )

        surface = self._surface_factory(self.config)
        self._surface = surface
        self.controller = PaginationController(
            surface,
            self.accumulator,
            self.rate_monitor,
            self._channel,
            self._cancel_event,
            self.config,
            self.monitor,
            max_records=self.query.max_records,
            resume=self.query.is_resume,
        )

        try:
            await surface.open()
            surface.on_response(self._on_api_response, API_PATH)

            await self.controller.load_initial(url)
            await self.controller.run()

            if self.config.enrich_media:
                await self._enrich_media()
        except CrawlCancelled as exc:
            self.controller.stop_reason = STOP_CANCELLED
            self.monitor.stop(STOP_CANCELLED)
            self.monitor.log(
                f"[SESSION] Cancelled with {len(self.accumulator)} records collected",
                level=logging.WARNING,
            )
            exc.outcome = self._outcome(url)
            raise
        except CrawlExhausted:
            self.controller.stop_reason = STOP_EXHAUSTED
            self.monitor.stop(STOP_EXHAUSTED)
            raise
        finally:
            await surface.close()
            self._surface = None

        outcome = self._outcome(url)
        self.monitor.stop(self.controller.stop_reason)
        self.monitor.progress(len(outcome.data), self.query.max_records)
        self.monitor.log(f"[SESSION] Crawl complete. Total records: {len(outcome.data)}")
        return outcome

    # ------------------------------------------------------------------
    # Export / resume helpers
    # ------------------------------------------------------------------

    @staticmethod
    def export_json(outcome: CrawlOutcome, filepath: str) -> None:
        """Export the outcome as JSON."""
        path = Path(filepath)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(outcome.to_dict(), f, indent=2, ensure_ascii=False)
        logger.info(f"Exported {len(outcome.data)} records to {filepath}")

    @staticmethod
    def export_csv(outcome: CrawlOutcome, filepath: str) -> None:
        """Export records as CSV (one flat row per record)."""
        rows = [record.to_flat_dict() for record in outcome.data]
        path = Path(filepath)
        path.parent.mkdir(parents=True, exist_ok=True)
        fieldnames = list(rows[0].keys()) if rows else list(
            CanonicalRecord(id="-").to_flat_dict().keys()
        )
        with open(path, 'w', newline='', encoding='utf-8') as f:
            writer = csv.DictWriter(f, fieldnames=fieldnames)
            writer.writeheader()
            writer.writerows(rows)
        logger.info(f"Exported {len(rows)} records to {filepath}")

    @staticmethod
    def load_previous_ids(filepath: str) -> Set[str]:
        """Ids from a previous JSON export, for resuming a crawl."""
        with open(filepath, 'r', encoding='utf-8') as f:
            data = json.load(f)
        records = data.get('data', []) if isinstance(data, dict) else data
        ids = {str(r['id']) for r in records if isinstance(r, dict) and r.get('id')}
        logger.info(f"[SESSION] Loaded {len(ids)} previously seen ids from {filepath}")
        return ids
