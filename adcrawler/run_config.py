"""
Unified Run Configuration
=========================
Single source of truth for every crawl timing, cap and browser default.

The pagination controller, browser surface and rate-limit monitor all
read from this object. The CLI populates it from flags; tests build a
fast variant with tiny delays.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Canonical defaults: the ONLY place these numbers live
# ---------------------------------------------------------------------------
_DEFAULTS = {
    # Pagination caps
    "max_empty_cycles": 5,
    "max_no_new_cycles": 5,
    "max_no_new_cycles_resume": 15,     # resumed crawls replay known records first
    "max_consecutive_rate_limits": 3,
    "initial_retry_attempts": 2,
    "backoff_base_s": 30.0,             # backoff = base * 2^(n-1)
    # Waits
    "response_timeout_s": 8.0,          # max wait for a batch after load-more
    "drain_grace_s": 0.5,
    "scroll_settle_s": (3.0, 6.0),      # jitter band after load-more
    "cycle_delay_s": (2.0, 4.0),        # jitter band between cycles
    "initial_settle_s": 3.0,
    "retry_settle_s": 5.0,
    "content_wait_ms": 15000,
    "navigation_timeout_ms": 60000,
    "click_timeout_ms": 2000,
    # Channel
    "queue_maxsize": 64,
    # Request budget (per hour, log-only)
    "request_warn_threshold": 150,
    "request_critical_threshold": 190,
    # Browser
    "headless": True,
    "user_agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
        "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
    ),
    "viewport": (1920, 1080),
    "locale": "en-US",
    "timezone_id": "America/New_York",
    "launch_args": [
        "--no-sandbox",
        "--disable-setuid-sandbox",
        "--disable-dev-shm-usage",
        "--disable-gpu",
        "--no-first-run",
        "--no-zygote",
        "--disable-extensions",
    ],
    # Post-processing
    "enrich_media": True,
    # Output
    "output_json": None,
    "output_csv": None,
}

CONTENT_SELECTOR = (
    'div[role="article"], div[class*="xrvj5dj"], a[href*="/ads/library/?id="]'
)

SEE_MORE_SELECTORS = [
    'div[role="button"]:has-text("See more results")',
    'div[role="button"]:has-text("Ver mais resultados")',
    'button:has-text("See more")',
    'button:has-text("Ver mais")',
]

CONSENT_SELECTORS = [
    '[data-cookiebanner="accept_button"]',
    '[data-testid="cookie-policy-manage-dialog-accept-button"]',
    'button:has-text("Allow all cookies")',
    'button:has-text("Allow essential and optional cookies")',
    'button:has-text("Decline optional cookies")',
]


@dataclass
class CrawlerRunConfig:
    """
    Configuration consumed by every crawl subsystem.

    Populate via:
      - ``CrawlerRunConfig()``                      → all defaults
      - ``CrawlerRunConfig(backoff_base_s=5)``      → override one value
      - ``CrawlerRunConfig.from_cli_args(ns)``      → from argparse Namespace
    """

    # ---- Pagination caps ----
    max_empty_cycles: int = _DEFAULTS["max_empty_cycles"]
    max_no_new_cycles: int = _DEFAULTS["max_no_new_cycles"]
    max_no_new_cycles_resume: int = _DEFAULTS["max_no_new_cycles_resume"]
    max_consecutive_rate_limits: int = _DEFAULTS["max_consecutive_rate_limits"]
    initial_retry_attempts: int = _DEFAULTS["initial_retry_attempts"]
    backoff_base_s: float = _DEFAULTS["backoff_base_s"]

    # ---- Waits ----
    response_timeout_s: float = _DEFAULTS["response_timeout_s"]
    drain_grace_s: float = _DEFAULTS["drain_grace_s"]
    scroll_settle_s: Tuple[float, float] = _DEFAULTS["scroll_settle_s"]
    cycle_delay_s: Tuple[float, float] = _DEFAULTS["cycle_delay_s"]
    initial_settle_s: float = _DEFAULTS["initial_settle_s"]
    retry_settle_s: float = _DEFAULTS["retry_settle_s"]
    content_wait_ms: int = _DEFAULTS["content_wait_ms"]
    navigation_timeout_ms: int = _DEFAULTS["navigation_timeout_ms"]
    click_timeout_ms: int = _DEFAULTS["click_timeout_ms"]

    queue_maxsize: int = _DEFAULTS["queue_maxsize"]

    # ---- Request budget ----
    request_warn_threshold: int = _DEFAULTS["request_warn_threshold"]
    request_critical_threshold: int = _DEFAULTS["request_critical_threshold"]

    # ---- Browser ----
    headless: bool = _DEFAULTS["headless"]
    user_agent: str = _DEFAULTS["user_agent"]
    viewport: Tuple[int, int] = _DEFAULTS["viewport"]
    locale: str = _DEFAULTS["locale"]
    timezone_id: str = _DEFAULTS["timezone_id"]
    launch_args: List[str] = field(default_factory=lambda: list(_DEFAULTS["launch_args"]))

    # ---- Authentication ----
    auth_state_file: Optional[str] = None

    enrich_media: bool = _DEFAULTS["enrich_media"]

    # ---- Output paths (None = skip) ----
    output_json: Optional[str] = _DEFAULTS["output_json"]
    output_csv: Optional[str] = _DEFAULTS["output_csv"]

    # -----------------------------------------------------------------------
    # Factory helpers
    # -----------------------------------------------------------------------
    @classmethod
    def from_cli_args(cls, args) -> "CrawlerRunConfig":
        """Build config from an argparse Namespace (``__main__.py``)."""
        return cls(
            headless=not getattr(args, "headful", False),
            auth_state_file=getattr(args, "auth_state_file", None),
            response_timeout_s=getattr(args, "response_timeout", _DEFAULTS["response_timeout_s"]),
            backoff_base_s=getattr(args, "backoff_base", _DEFAULTS["backoff_base_s"]),
            enrich_media=not getattr(args, "no_enrich", False),
            output_json=getattr(args, "output_json", None),
            output_csv=getattr(args, "output_csv", None),
        )

    def no_new_cap(self, resume: bool) -> int:
        return self.max_no_new_cycles_resume if resume else self.max_no_new_cycles

    def backoff_delay(self, attempt: int) -> float:
        """Exponential backoff for the ``attempt``-th consecutive hit (1-based)."""
        return self.backoff_base_s * (2 ** (max(1, attempt) - 1))

    # -----------------------------------------------------------------------
    # Logging helper
    # -----------------------------------------------------------------------
    def log_summary(self, url: str) -> None:
        """Emit a structured summary to the logger."""
        logger.info("=" * 60)
        logger.info("AD LIBRARY CRAWL CONFIG")
        logger.info("=" * 60)
        logger.info(f"  URL:              {url}")
        logger.info(f"  Headless:         {self.headless}")
        logger.info(f"  Empty Cap:        {self.max_empty_cycles} cycles")
        logger.info(
            f"  No-New Cap:       {self.max_no_new_cycles} "
            f"({self.max_no_new_cycles_resume} when resuming)"
        )
        logger.info(
            f"  Rate-Limit Cap:   {self.max_consecutive_rate_limits} consecutive, "
            f"backoff {self.backoff_base_s:.0f}s x2"
        )
        logger.info(f"  Response Wait:    {self.response_timeout_s}s")
        logger.info(f"  Media Enrichment: {self.enrich_media}")
        if self.auth_state_file:
            logger.info(f"  Auth State:       {self.auth_state_file}")
        logger.info("=" * 60)
