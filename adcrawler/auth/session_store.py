"""
Session Store
=============
Reuses a saved Ad Library session across crawl runs.

Responsibilities:
    1. Locate and parse the saved credentials file
    2. Validate it (readable JSON, at least one cookie, not expired)
    3. Build a ``BrowserContext`` carrying those cookies

A missing or broken file is never fatal: the store logs a warning and
hands back an unauthenticated context.
"""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import List, Optional

from playwright.async_api import Browser, BrowserContext

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Default settings
# ---------------------------------------------------------------------------

_DEFAULT_STATE_PATH = "cookies.json"
_MAX_SESSION_AGE_HOURS = 24 * 30

# Cookies that only exist for a logged-in account
_LOGIN_COOKIE_NAMES = ("c_user", "xs")


class SessionStore:
    """Loads saved cookies into new browser contexts."""

    def __init__(
        self,
        *,
        state_path: str = _DEFAULT_STATE_PATH,
        max_age_hours: float = _MAX_SESSION_AGE_HOURS,
    ):
        self.state_path = state_path
        self.max_age_hours = max_age_hours
        self.authenticated = False

    # ── Public API ────────────────────────────────────────────────

    def load_cookies(self) -> Optional[List[dict]]:
        """Read the credentials file; ``None`` when unusable.

        Accepts either a ``storage_state`` object or a bare cookie list.
        """
        path = Path(self.state_path)
        if not path.exists():
            logger.info(f"[SESSION] No saved session at {path}")
            return None

        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning(f"[SESSION] Corrupt session file: {exc}")
            return None

        if isinstance(data, dict):
            cookies = data.get("cookies", [])
        elif isinstance(data, list):
            cookies = data
        else:
            cookies = []

        cookies = [c for c in cookies if isinstance(c, dict) and c.get("name")]
        if not cookies:
            logger.warning("[SESSION] Session file has no cookies, treating as stale")
            return None
        return cookies

    def has_valid_session(self) -> bool:
        """Check if a saved session file exists and is still valid.

        Validates:
            - File exists and is readable JSON
            - Contains at least one cookie
            - File is not older than ``max_age_hours``
        """
        cookies = self.load_cookies()
        if not cookies:
            return False

        path = Path(self.state_path)
        age_hours = (time.time() - path.stat().st_mtime) / 3600
        if age_hours > self.max_age_hours:
            logger.warning(
                f"[SESSION] Session is {age_hours:.1f}h old, expired "
                f"(max {self.max_age_hours}h)"
            )
            return False

        logged_in = any(c.get("name") in _LOGIN_COOKIE_NAMES for c in cookies)
        logger.info(
            f"[SESSION] Valid session: {len(cookies)} cookies, "
            f"age {age_hours:.1f}h{'' if logged_in else ' (no login cookie)'}"
        )
        return True

    async def get_authenticated_context(
        self,
        browser: Browser,
        *,
        user_agent: str = "",
        viewport: Optional[dict] = None,
        locale: str = "en-US",
        timezone_id: str = "America/New_York",
    ) -> BrowserContext:
        """Create a BrowserContext, authenticated when a valid session exists."""
        ctx_kwargs = {"locale": locale, "timezone_id": timezone_id}
        if user_agent:
            ctx_kwargs["user_agent"] = user_agent
        if viewport:
            ctx_kwargs["viewport"] = viewport

        context = await browser.new_context(**ctx_kwargs)

        if self.has_valid_session():
            cookies = self.load_cookies() or []
            await context.add_cookies(cookies)
            self.authenticated = True
            logger.info(f"[SESSION] Loaded {len(cookies)} session cookies (authenticated mode)")
        else:
            self.authenticated = False
            logger.warning(
                "[SESSION] Running unauthenticated; age-gated ads will have no media"
            )
        return context
