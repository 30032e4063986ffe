"""
Crawl error taxonomy.

Parse noise and transient availability problems never reach callers as
exceptions; they are recovered locally and only logged. What remains:

- ``CrawlExhausted``  — every recovery path ran and nothing was obtained
- ``CrawlCancelled``  — caller-initiated stop; carries the partial outcome

Playwright failures (crashed browser, navigation timeout) are not wrapped.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .models import CrawlOutcome


class CrawlError(Exception):
    """Base class for crawl-level failures."""


class CrawlExhausted(CrawlError):
    """No data obtainable, likely persistent rate limiting."""

    def __init__(self, message: str = "No data obtainable, likely persistent rate limiting"):
        super().__init__(message)
        self.reason = message


class CrawlCancelled(CrawlError):
    """The crawl was cancelled by the caller.

    ``outcome`` holds whatever was accumulated before the stop; the session
    fills it in while unwinding.
    """

    def __init__(self, message: str = "Crawl cancelled", outcome: Optional["CrawlOutcome"] = None):
        super().__init__(message)
        self.outcome = outcome
