"""
Authentication Module
=====================
Loads pre-captured Ad Library session credentials into a browser context.

Interactive credential capture happens outside this package; all the
crawler needs is the saved file. Two formats are accepted:

    - a Playwright ``storage_state`` JSON (``{"cookies": [...], "origins": [...]}``)
    - a bare cookie list (``[{"name": ..., "value": ..., "domain": ...}, ...]``)

Without credentials the crawl runs unauthenticated: age-gated ads then
come back without media.

Usage::

    from adcrawler.auth import SessionStore

    store = SessionStore(state_path="cookies.json")
    context = await store.get_authenticated_context(browser, user_agent=ua)
"""

from .session_store import SessionStore

__all__ = ["SessionStore"]
