"""
Rate-Limit Monitor
==================
Classifies intercepted API responses and keeps the session's single
``rate_limited`` flag plus an hourly request budget.

Only ad-search responses count as evidence either way: the page issues
plenty of unrelated GraphQL traffic (notifications, presence) whose
bodies may mention errors that have nothing to do with the search.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from enum import Enum
from typing import Callable, Deque, Optional, Tuple

logger = logging.getLogger(__name__)

AD_SEARCH_INDICATORS: Tuple[str, ...] = (
    "AdLibrarySearchPage",
    "AdLibraryMobileFocusedStateProvider",
    "SearchResultsConnection",
    "search_results_connection",
    "ad_library_search",
    "adLibrarySearch",
    "useAdLibrary",
    "ad_archive",
    "collated_results",
)

RATE_LIMIT_SIGNATURES: Tuple[str, ...] = (
    "Rate limit exceeded",
    '"code":1675004',
)

_HOUR_S = 3600.0


class ResponseClass(str, Enum):
    UNRELATED = "unrelated"
    RATE_LIMITED = "rate_limited"
    CLEAN = "clean"


def is_ad_search_response(body: str) -> bool:
    return any(marker in body for marker in AD_SEARCH_INDICATORS)


def has_rate_limit_signature(body: str) -> bool:
    return any(sig in body for sig in RATE_LIMIT_SIGNATURES)


class RateLimitMonitor:
    """
    Per-session rate-limit state.

    Usage::

        monitor = RateLimitMonitor()
        monitor.track_request()
        verdict = monitor.classify(status, body)
        if monitor.rate_limited:
            ...  # back off
    """

    def __init__(
        self,
        warn_threshold: int = 150,
        critical_threshold: int = 190,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.warn_threshold = warn_threshold
        self.critical_threshold = critical_threshold
        self._clock = clock or time.monotonic
        self._rate_limited = False
        self._requests: Deque[float] = deque()
        self._hits = 0

    @property
    def rate_limited(self) -> bool:
        return self._rate_limited

    @property
    def hits(self) -> int:
        """Responses classified as rate-limited so far."""
        return self._hits

    def clear(self) -> None:
        self._rate_limited = False

    def _flag(self, reason: str) -> None:
        self._hits += 1
        if not self._rate_limited:
            logger.warning(f"[RATE-LIMIT] Detected: {reason}")
        self._rate_limited = True

    def classify(self, status: int, body: Optional[str]) -> ResponseClass:
        if status == 429:
            self._flag("HTTP 429")
            return ResponseClass.RATE_LIMITED

        if status != 200:
            return ResponseClass.UNRELATED

        body = body or ""
        if not is_ad_search_response(body):
            return ResponseClass.UNRELATED

        if has_rate_limit_signature(body):
            self._flag("rate-limit signature in ad-search response")
            return ResponseClass.RATE_LIMITED

        if self._rate_limited:
            logger.info("[RATE-LIMIT] Clean ad-search response, flag cleared")
        self._rate_limited = False
        return ResponseClass.CLEAN

    # ------------------------------------------------------------------
    # Request budget
    # ------------------------------------------------------------------

    def requests_last_hour(self) -> int:
        cutoff = self._clock() - _HOUR_S
        while self._requests and self._requests[0] < cutoff:
            self._requests.popleft()
        return len(self._requests)

    def track_request(self) -> int:
        """Record one API request and log when the hourly budget runs hot."""
        self._requests.append(self._clock())
        count = self.requests_last_hour()
        if count == self.critical_threshold:
            logger.warning(
                f"[RATE-LIMIT] CRITICAL: {count} API requests in the last hour "
                f"(critical at {self.critical_threshold})"
            )
        elif count == self.warn_threshold:
            logger.warning(
                f"[RATE-LIMIT] {count} API requests in the last hour "
                f"(warning at {self.warn_threshold})"
            )
        return count
