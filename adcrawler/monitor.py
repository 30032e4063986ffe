"""
Crawl Monitor
=============
Progress reporting and run metrics for one crawl session.

Two audiences:
- the logger (always), with bracketed tags
- an optional caller callback receiving ``{"type": "log", "message": ...}``
  and ``{"type": "progress", "current": n, "max": m}`` events

The callback is observational: whatever it raises is logged at debug
and otherwise ignored.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[dict], None]


@dataclass
class CrawlMetrics:
    """Snapshot of session counters at a point in time."""
    cycles: int = 0
    empty_cycles: int = 0
    no_new_cycles: int = 0
    batches_received: int = 0
    batches_dropped: int = 0
    records_collected: int = 0
    rate_limit_hits: int = 0
    backoffs: int = 0
    fallback_runs: int = 0
    elapsed_sec: float = 0.0
    stop_reason: str = ""


class CrawlMonitor:
    """
    Session-scoped monitor.

    Usage::

        monitor = CrawlMonitor(callback=on_event)
        monitor.start()
        monitor.log("[SESSION] Navigating")
        monitor.progress(12, 50)
        monitor.stop("target_reached")
        print(monitor.format_summary(monitor.snapshot()))
    """

    def __init__(self, callback: Optional[ProgressCallback] = None):
        self._callback = callback
        self._start_time: float = 0.0
        self._end_time: float = 0.0
        self.metrics = CrawlMetrics()

    def start(self) -> None:
        self._start_time = time.monotonic()

    def stop(self, reason: str) -> None:
        self._end_time = time.monotonic()
        self.metrics.stop_reason = reason

    def _emit(self, event: dict) -> None:
        if not self._callback:
            return
        try:
            self._callback(event)
        except Exception as e:
            logger.debug(f"[MONITOR] Progress callback error: {e}")

    def log(self, message: str, level: int = logging.INFO) -> None:
        logger.log(level, message)
        self._emit({"type": "log", "message": message})

    def progress(self, current: int, maximum: int) -> None:
        self.metrics.records_collected = current
        self._emit({"type": "progress", "current": current, "max": maximum})

    # ---- Counters ----

    def record_cycle(self) -> None:
        self.metrics.cycles += 1

    def record_empty(self) -> None:
        self.metrics.empty_cycles += 1

    def record_no_new(self) -> None:
        self.metrics.no_new_cycles += 1

    def record_batch(self) -> None:
        self.metrics.batches_received += 1

    def record_dropped_batch(self) -> None:
        self.metrics.batches_dropped += 1

    def record_rate_limit(self) -> None:
        self.metrics.rate_limit_hits += 1

    def record_backoff(self) -> None:
        self.metrics.backoffs += 1

    def record_fallback(self) -> None:
        self.metrics.fallback_runs += 1

    def snapshot(self) -> CrawlMetrics:
        end = self._end_time or time.monotonic()
        elapsed = end - self._start_time if self._start_time else 0.0
        m = self.metrics
        return CrawlMetrics(
            cycles=m.cycles,
            empty_cycles=m.empty_cycles,
            no_new_cycles=m.no_new_cycles,
            batches_received=m.batches_received,
            batches_dropped=m.batches_dropped,
            records_collected=m.records_collected,
            rate_limit_hits=m.rate_limit_hits,
            backoffs=m.backoffs,
            fallback_runs=m.fallback_runs,
            elapsed_sec=round(elapsed, 2),
            stop_reason=m.stop_reason,
        )

    def format_summary(self, metrics: CrawlMetrics) -> str:
        """Format a human-readable summary string."""
        lines = [
            "=" * 65,
            "  AD LIBRARY CRAWL SUMMARY",
            "=" * 65,
            f"  Records collected:   {metrics.records_collected}",
            f"  Scroll cycles:       {metrics.cycles}",
            f"  Empty cycles:        {metrics.empty_cycles}",
            f"  No-new cycles:       {metrics.no_new_cycles}",
            "-" * 65,
            f"  Batches received:    {metrics.batches_received}",
            f"  Batches dropped:     {metrics.batches_dropped}",
            f"  Rate-limit hits:     {metrics.rate_limit_hits}",
            f"  Backoffs:            {metrics.backoffs}",
            f"  DOM fallback runs:   {metrics.fallback_runs}",
            "-" * 65,
            f"  Elapsed time:        {metrics.elapsed_sec:.1f} s",
            f"  Stop reason:         {metrics.stop_reason}",
            "=" * 65,
        ]
        return "\n".join(lines)
