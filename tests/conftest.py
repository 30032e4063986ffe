"""
Shared fixtures: payload builders, a scripted in-memory browser surface
and a crawl config with near-zero delays.
"""

import json
from typing import Any, Callable, Iterable, List, Optional, Sequence, Tuple

import pytest

from adcrawler.browser import BrowserSurface
from adcrawler.run_config import CrawlerRunConfig

API_URL = "https://www.facebook.com/api/graphql/"

Response = Tuple[int, str]


# ---------------------------------------------------------------------------
# Payload builders
# ---------------------------------------------------------------------------

def make_node(ad_id: str, **extra) -> dict:
    node = {
        "ad_archive_id": ad_id,
        "is_active": True,
        "page_name": f"Page {ad_id}",
        "start_date": 1704067200,  # 2024-01-01
        "snapshot": {
            "body": {"text": f"Body of ad {ad_id}"},
            "images": [{"original_image_url": f"https://scontent.example/{ad_id}.jpg"}],
        },
    }
    node.update(extra)
    return node


def compact(payload: Any) -> str:
    """JSON the way the API sends it: no whitespace after separators."""
    return json.dumps(payload, separators=(",", ":"))


def search_body(ids: Iterable[str], count: Optional[int] = None) -> str:
    """One ad-search response line; each id is its own collated group of one."""
    ids = list(ids)
    edges = [{"node": {"collated_results": [make_node(i)]}} for i in ids]
    return compact({
        "data": {
            "ad_library_main": {
                "search_results_connection": {
                    "count": count if count is not None else len(ids),
                    "edges": edges,
                    "page_info": {"has_next_page": True, "end_cursor": "c"},
                }
            }
        }
    })


def rate_limited_body() -> str:
    return compact({
        "errors": [{"message": "Rate limit exceeded", "code": 1675004}],
        "data": {"ad_library_main": {"search_results_connection": None}},
    })


def unrelated_body() -> str:
    return compact({"data": {"viewer": {"notifications": {"unseen_count": 3}}}})


def ok(body: str) -> Response:
    return (200, body)


def ad_card_html(ad_id: str, advertiser: str = "Acme") -> str:
    return f"""
    <div role="article">
      <span>Active</span>
      <a href="/ads/library/?active_status=all&view_all_page_id=1">{advertiser}</a>
      <div style="-webkit-line-clamp: 7">A climate message long enough to count as body text</div>
      <span>Started running on Jan 5, 2024 · Total active time 3 hrs</span>
      <a href="https://www.facebook.com/ads/library/?id={ad_id}">See ad details</a>
      <img src="https://scontent.xx.fbcdn.net/v/{ad_id}_n.jpg" width="400" height="300">
    </div>
    """


def results_page_html(ids: Sequence[str]) -> str:
    cards = "".join(ad_card_html(i) for i in ids)
    return f"<html><body><div id='results'>{cards}</div></body></html>"


# ---------------------------------------------------------------------------
# Fake browser surface
# ---------------------------------------------------------------------------

class FakeSurface(BrowserSurface):
    """
    Scripted stand-in for a Playwright page.

    ``initial`` responses fire on navigate, ``pages[i]`` on the i-th
    load-more, ``reloads[i]`` on the i-th reload. With ``cycle_pages`` the
    load-more script repeats forever.
    """

    def __init__(
        self,
        initial: Sequence[Response] = (),
        pages: Sequence[Sequence[Response]] = (),
        reloads: Sequence[Sequence[Response]] = (),
        html: str = "",
        cycle_pages: bool = False,
        on_load_more: Optional[Callable[[int], None]] = None,
    ):
        self.initial = list(initial)
        self.pages = [list(p) for p in pages]
        self.reloads = [list(r) for r in reloads]
        self.html = html
        self.cycle_pages = cycle_pages
        self.on_load_more = on_load_more

        self.opened = False
        self.closed = False
        self.navigated_to: Optional[str] = None
        self.load_more_count = 0
        self.reload_count = 0
        self.clicked: List[Sequence[str]] = []
        self._callback = None
        self._filter = ""

    def _deliver(self, responses: Sequence[Response]) -> None:
        for status, body in responses:
            if self._callback and self._filter in API_URL:
                self._callback(API_URL, status, body)

    async def open(self) -> None:
        self.opened = True

    async def navigate(self, url: str) -> None:
        self.navigated_to = url
        self._deliver(self.initial)

    def on_response(self, callback, url_filter: str) -> None:
        self._callback = callback
        self._filter = url_filter

    async def evaluate(self, script: str) -> Any:
        return None

    async def content(self) -> str:
        return self.html

    async def locate_and_click(self, selectors) -> bool:
        self.clicked.append(selectors)
        return False

    async def wait_for_selector(self, selector: str, timeout_ms: int) -> bool:
        return True

    async def scroll_to_bottom(self) -> None:
        index = self.load_more_count
        self.load_more_count += 1
        if self.on_load_more:
            self.on_load_more(self.load_more_count)
        if self.pages:
            if self.cycle_pages:
                self._deliver(self.pages[index % len(self.pages)])
            elif index < len(self.pages):
                self._deliver(self.pages[index])

    async def reload(self) -> None:
        index = self.reload_count
        self.reload_count += 1
        if index < len(self.reloads):
            self._deliver(self.reloads[index])

    async def close(self) -> None:
        self.closed = True


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def fast_config() -> CrawlerRunConfig:
    return CrawlerRunConfig(
        backoff_base_s=0.01,
        response_timeout_s=0.05,
        drain_grace_s=0.0,
        scroll_settle_s=(0.0, 0.0),
        cycle_delay_s=(0.0, 0.0),
        initial_settle_s=0.0,
        retry_settle_s=0.0,
        content_wait_ms=1,
    )


@pytest.fixture
def events() -> list:
    return []


@pytest.fixture
def collect(events) -> Callable[[dict], None]:
    return events.append
