"""
Pagination Controller
=====================
Drives the search page: initial load, then repeated load-more cycles,
until a termination condition holds.

State machine::

    LOADING ──► HARVESTING ◄──► BACKOFF
                    │              │
                    ▼              ▼ (consecutive cap)
                  DONE ◄──── FALLBACK_ONLY

Each cycle:
    1. click "See more results" if visible, else scroll to the bottom
    2. jittered settle delay
    3. wait (bounded) for the first batch on the channel, then a short grace
    4. drain the channel and classify the cycle:
         new records        → reset both counters
         edges, all seen    → no-new counter += 1
         no edges at all    → empty counter += 1

Termination: record target, empty cap, no-new cap (relaxed in resume
mode), persistent rate limiting (after one DOM fallback pass), or
cancellation. Persistent rate limiting with nothing collected at all
raises ``CrawlExhausted`` instead. Every wait races the cancel event, so
a cancel is observed within one sub-wait.
"""

from __future__ import annotations

import asyncio
import logging
import random
from enum import Enum
from typing import TYPE_CHECKING, Optional, Tuple

from . import dom_fallback
from .browser import BrowserSurface
from .errors import CrawlCancelled, CrawlExhausted
from .models import RawBatch
from .monitor import CrawlMonitor
from .rate_limit import RateLimitMonitor
from .run_config import CONSENT_SELECTORS, CONTENT_SELECTOR, SEE_MORE_SELECTORS, CrawlerRunConfig

if TYPE_CHECKING:
    from .session import RecordAccumulator

logger = logging.getLogger(__name__)


class ControllerState(str, Enum):
    LOADING = "loading"
    HARVESTING = "harvesting"
    BACKOFF = "backoff"
    FALLBACK_ONLY = "fallback_only"
    DONE = "done"


# Stop reasons reported in CrawlMeta.stop_reason
STOP_TARGET = "target_reached"
STOP_EMPTY = "empty_cap"
STOP_NO_NEW = "no_new_cap"
STOP_RATE_LIMITED = "rate_limited_fallback"
STOP_CANCELLED = "cancelled"
STOP_EXHAUSTED = "exhausted"


class PaginationController:
    """
    One controller per crawl session.

    Shares the accumulator, rate-limit monitor and channel with the owning
    ``CrawlSession``; never touches them from another task.
    """

    def __init__(
        self,
        surface: BrowserSurface,
        accumulator: "RecordAccumulator",
        rate_monitor: RateLimitMonitor,
        channel: "asyncio.Queue[RawBatch]",
        cancel_event: asyncio.Event,
        config: CrawlerRunConfig,
        monitor: CrawlMonitor,
        *,
        max_records: int,
        resume: bool = False,
    ):
        self.surface = surface
        self.accumulator = accumulator
        self.rate_monitor = rate_monitor
        self.channel = channel
        self.cancel_event = cancel_event
        self.config = config
        self.monitor = monitor
        self.max_records = max_records
        self.resume = resume

        self.state = ControllerState.LOADING
        self.stop_reason = ""
        self.fallback_used = False
        self.reported_total = 0

        self._empty_cycles = 0
        self._no_new_cycles = 0
        self._consecutive_rate_limits = 0
        self._cycle = 0

    # ------------------------------------------------------------------
    # Cancellation-aware waits
    # ------------------------------------------------------------------

    def _check_cancel(self) -> None:
        if self.cancel_event.is_set():
            raise CrawlCancelled()

    async def _sleep(self, seconds: float) -> None:
        """Sleep that ends early (with ``CrawlCancelled``) on cancel."""
        self._check_cancel()
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self.cancel_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise CrawlCancelled()

    async def _jitter(self, band: Tuple[float, float]) -> None:
        low, high = band
        await self._sleep(random.uniform(low, high))

    async def _wait_for_batch(self, timeout: float) -> Optional[RawBatch]:
        """First batch to arrive within ``timeout``, or None."""
        self._check_cancel()
        get_task = asyncio.ensure_future(self.channel.get())
        cancel_task = asyncio.ensure_future(self.cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {get_task, cancel_task},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (get_task, cancel_task):
                if not task.done():
                    task.cancel()
        if get_task in done:
            return get_task.result()
        self._check_cancel()
        return None

    # ------------------------------------------------------------------
    # Channel handling
    # ------------------------------------------------------------------

    def _absorb(self, batch: RawBatch) -> int:
        if batch.total_count > self.reported_total:
            self.reported_total = batch.total_count
        self.monitor.record_batch()
        return self.accumulator.add_edges(batch.records)

    def _drain(self, first: Optional[RawBatch] = None) -> Tuple[bool, int]:
        """Absorb ``first`` and everything queued. Returns (had_edges, new)."""
        had_edges = False
        new = 0
        if first is not None:
            had_edges = not first.is_empty
            new += self._absorb(first)
        while True:
            try:
                batch = self.channel.get_nowait()
            except asyncio.QueueEmpty:
                break
            had_edges = had_edges or not batch.is_empty
            new += self._absorb(batch)
        return had_edges, new

    def _report_progress(self) -> None:
        self.monitor.progress(len(self.accumulator), self.max_records)

    # ------------------------------------------------------------------
    # DOM fallback
    # ------------------------------------------------------------------

    async def run_fallback(self, context: str) -> int:
        """Extract records from the rendered page; returns how many were new."""
        self._check_cancel()
        self.monitor.record_fallback()
        html = await self.surface.content()
        records = dom_fallback.extract_from_rendered(html)
        new = self.accumulator.add_records(records)
        if new:
            self.fallback_used = True
        self.monitor.log(
            f"[FALLBACK] {context}: DOM extraction found {len(records)} records, {new} new"
        )
        return new

    # ------------------------------------------------------------------
    # Initial load
    # ------------------------------------------------------------------

    async def _dismiss_cookie_consent(self) -> None:
        if await self.surface.locate_and_click(CONSENT_SELECTORS):
            self.monitor.log("[SESSION] Dismissed cookie consent dialog")

    async def load_initial(self, url: str) -> None:
        """Navigate and collect the first page of results.

        Raises ``CrawlExhausted`` when nothing can be obtained because of
        persistent rate limiting. A search that is genuinely empty (not
        rate-limited) simply leaves the accumulator empty.
        """
        self.state = ControllerState.LOADING
        self.monitor.log("[SESSION] Navigating to Ad Library page...")
        await self.surface.navigate(url)
        await self._dismiss_cookie_consent()

        if await self.surface.wait_for_selector(CONTENT_SELECTOR, self.config.content_wait_ms):
            logger.info("[SESSION] Ad content detected on page")
        else:
            logger.info("[SESSION] No ad content selector found, continuing anyway")

        await self._sleep(self.config.initial_settle_s)
        _, new = self._drain()
        self.monitor.log(f"[SESSION] Initial load: {new} records from API")
        self._report_progress()

        if len(self.accumulator) == 0:
            self.monitor.log("[FALLBACK] No records from API interception, trying DOM extraction...")
            await self.run_fallback("initial load")
            self._report_progress()

        if len(self.accumulator) == 0 and self.rate_monitor.rate_limited:
            await self._retry_initial_load()

        self.state = ControllerState.HARVESTING

    async def _retry_initial_load(self) -> None:
        attempts = self.config.initial_retry_attempts
        for attempt in range(1, attempts + 1):
            delay = self.config.backoff_delay(attempt)
            self.state = ControllerState.BACKOFF
            self.monitor.record_backoff()
            self.monitor.log(
                f"[RATE-LIMIT] Rate limited, no records found (attempt {attempt}/{attempts}), "
                f"retrying in {delay:.0f}s...",
                level=logging.WARNING,
            )
            await self._sleep(delay)
            self.rate_monitor.clear()

            await self.surface.reload()
            await self._sleep(self.config.retry_settle_s)

            _, new = self._drain()
            if new:
                self.monitor.log(f"[SESSION] Retry {attempt}: +{new} records from API")
            if len(self.accumulator) == 0:
                await self.run_fallback(f"retry {attempt}")
            self._report_progress()

            if len(self.accumulator) > 0 or not self.rate_monitor.rate_limited:
                break

        if len(self.accumulator) == 0:
            self.monitor.log("[RATE-LIMIT] All retries failed, no records found", level=logging.ERROR)
            raise CrawlExhausted()

    # ------------------------------------------------------------------
    # Pagination loop
    # ------------------------------------------------------------------

    def _finish(self, reason: str) -> str:
        self.state = ControllerState.DONE
        self.stop_reason = reason
        return reason

    async def _handle_rate_limit(self) -> bool:
        """Back off for the current hit. Returns False when the cap is reached."""
        self._consecutive_rate_limits += 1
        self.monitor.record_rate_limit()
        cap = self.config.max_consecutive_rate_limits

        if self._consecutive_rate_limits >= cap:
            self.state = ControllerState.FALLBACK_ONLY
            self.monitor.log(
                "[RATE-LIMIT] Persistent rate limiting, switching to DOM-only extraction...",
                level=logging.WARNING,
            )
            await self.run_fallback("persistent rate limit")
            self._report_progress()
            return False

        delay = self.config.backoff_delay(self._consecutive_rate_limits)
        self.state = ControllerState.BACKOFF
        self.monitor.record_backoff()
        self.monitor.log(
            f"[RATE-LIMIT] Rate limited, backing off {delay:.0f}s "
            f"(retry {self._consecutive_rate_limits}/{cap})...",
            level=logging.WARNING,
        )
        await self._sleep(delay)
        self.rate_monitor.clear()
        self.state = ControllerState.HARVESTING
        return True

    async def _load_more(self) -> None:
        if await self.surface.locate_and_click(SEE_MORE_SELECTORS):
            logger.info("[SESSION] Clicked 'See more results'")
        else:
            await self.surface.scroll_to_bottom()

    async def run(self) -> str:
        """Run load-more cycles until a cap is hit. Returns the stop reason."""
        no_new_cap = self.config.no_new_cap(self.resume)
        self.state = ControllerState.HARVESTING

        while True:
            self._check_cancel()

            if len(self.accumulator) >= self.max_records:
                return self._finish(STOP_TARGET)
            if self._empty_cycles >= self.config.max_empty_cycles:
                return self._finish(STOP_EMPTY)
            if self._no_new_cycles >= no_new_cap:
                return self._finish(STOP_NO_NEW)

            if self.rate_monitor.rate_limited:
                if not await self._handle_rate_limit():
                    if len(self.accumulator) == 0:
                        self.monitor.log(
                            "[RATE-LIMIT] Rate limited with no records from API or DOM",
                            level=logging.ERROR,
                        )
                        raise CrawlExhausted()
                    return self._finish(STOP_RATE_LIMITED)
            else:
                self._consecutive_rate_limits = 0

            self._cycle += 1
            self.monitor.record_cycle()

            await self._load_more()
            await self._jitter(self.config.scroll_settle_s)

            first = await self._wait_for_batch(self.config.response_timeout_s)
            if first is not None:
                await self._sleep(self.config.drain_grace_s)
            had_edges, new = self._drain(first)

            total = len(self.accumulator)
            if new > 0:
                self._empty_cycles = 0
                self._no_new_cycles = 0
                self.monitor.log(
                    f"[SESSION] Cycle {self._cycle}: +{new} records (total: {total}/{self.max_records})"
                )
            elif had_edges:
                self._no_new_cycles += 1
                self._empty_cycles = 0
                self.monitor.record_no_new()
                self.monitor.log(
                    f"[SESSION] Cycle {self._cycle}: all records already seen "
                    f"({self._no_new_cycles}/{no_new_cap} skipped cycles)"
                )
            else:
                self._empty_cycles += 1
                self.monitor.record_empty()
                self.monitor.log(
                    f"[SESSION] Cycle {self._cycle}: no new records "
                    f"({self._empty_cycles} empty cycles, stops after {self.config.max_empty_cycles})"
                )
            self._report_progress()

            if len(self.accumulator) >= self.max_records:
                return self._finish(STOP_TARGET)
            await self._jitter(self.config.cycle_delay_s)
