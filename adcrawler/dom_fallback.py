"""
DOM Fallback Extractor
======================
Reconstructs ``CanonicalRecord`` objects from the rendered search page
when intercepted API traffic yields nothing (rate limiting, blocked
interception, server-side pre-render).

Works on an HTML snapshot of the page (``page.content()``) parsed with
BeautifulSoup, so it can be exercised without a browser.

Two strategies, because the logged-in and logged-out presentations of the
same page differ:

  A. **Identifier anchors** — every ``/ads/library/?id=`` link, deduped by
     id, with the card found via ``[role="article"]`` or a fixed ancestor
     walk.
  B. **Text anchors** — every "Library ID:" label span; the container
     common to the first two labels is the result *list*, and each direct
     child carrying a label is one card.

Card text is matched against bilingual (English / Portuguese) patterns.
Any field whose pattern fails stays ``None``; only a missing id drops the
card.
"""

from __future__ import annotations

import logging
import re
from dataclasses import fields
from datetime import date, datetime
from typing import Dict, List, Optional, Tuple
from urllib.parse import parse_qs, urlparse

from bs4 import BeautifulSoup, Tag

from .models import CanonicalRecord, CoOwner, ImageAsset, RecordStatus, VideoAsset

logger = logging.getLogger(__name__)

_BS_PARSER = "lxml"

# ---------------------------------------------------------------------------
# Selectors and patterns
# ---------------------------------------------------------------------------

ID_LINK_SELECTOR = 'a[href*="/ads/library/?id="]'
ADVERTISER_FILTER_LINK_SELECTOR = 'a[href*="/ads/library/?active_status"]'
BODY_TEXT_SELECTOR = 'div[style*="webkit-line-clamp"], span[class]'
CDN_IMAGE_SELECTOR = 'img[src*="scontent"], img[src*="fbcdn"]'
VIDEO_SOURCE_SELECTOR = 'video source, video[src]'
PAGE_LINK_SELECTOR = 'a[href*="facebook.com/"]'
CTA_LINK_SELECTOR = 'a[href*="l.facebook.com/l.php"]'

# Ancestor levels walked from an id link when no [role="article"] exists
CONTAINER_WALK_LEVELS = 5

_ID_IN_HREF_RE = re.compile(r"[?&]id=(\d+)")
_LABEL_RE = re.compile(r"Library ID:|ID da biblioteca:")
_ID_IN_TEXT_RE = re.compile(r"(?:Library ID|ID da biblioteca):\s*(\d+)")
_STATUS_RE = re.compile(r"^[\s\u200b]*(Active|Inactive|Ativo|Inativo)\b")
_START_DATE_RE = re.compile(
    r"(?:Started running on|Veiculação iniciada em)\s+(.+?)"
    r"(?:\s*·|\s+Platforms?\b|\s+Plataformas?\b|\s*$)",
    re.MULTILINE,
)
_CREATIVE_COUNT_RE = re.compile(r"(\d+)\s+(?:ads?|anúncios?)\s+(?:use|usam)\b")
_MULTI_VERSION_PHRASES = ("multiple versions", "várias versões")
_AGE_GATE_PHRASES = ("confirm your age", "confirmar sua idade")
_BODY_BUTTON_SKIP_RE = re.compile(
    r"^(See |Ver |Open |Play |Abrir|Reproduzir|Entrar|Reativar|Configurações|Settings)",
    re.IGNORECASE,
)

_STATUS_MAP = {
    "Active": RecordStatus.ACTIVE,
    "Ativo": RecordStatus.ACTIVE,
    "Inactive": RecordStatus.INACTIVE,
    "Inativo": RecordStatus.INACTIVE,
}

_PAGE_LINK_EXCLUDES = ("/ads/library", "/help", "/policies", "/privacy", "/language", "/l.php")

_PT_MONTHS = {
    "jan": 1, "fev": 2, "mar": 3, "abr": 4, "mai": 5, "jun": 6,
    "jul": 7, "ago": 8, "set": 9, "out": 10, "nov": 11, "dez": 12,
}
_PT_DATE_RE = re.compile(r"(\d{1,2})\s+de\s+([A-Za-zç]+)\.?\s+de\s+(\d{4})", re.IGNORECASE)
_EN_DATE_FORMATS = ("%b %d, %Y", "%B %d, %Y", "%d %b %Y", "%d %B %Y", "%b %d %Y")


# ---------------------------------------------------------------------------
# Small helpers
# ---------------------------------------------------------------------------

def _soup(html: str) -> BeautifulSoup:
    return BeautifulSoup(html or "", _BS_PARSER)


def _text(el: Tag, separator: str = "\n") -> str:
    return el.get_text(separator, strip=True)


def _int_attr(el: Tag, name: str) -> int:
    try:
        return int(str(el.get(name, "0")).strip() or 0)
    except ValueError:
        return 0


def _id_from_href(href: str) -> Optional[str]:
    match = _ID_IN_HREF_RE.search(href or "")
    return match.group(1) if match else None


def parse_display_date(text: Optional[str]) -> Optional[date]:
    """Parse a rendered date like "Jan 5, 2024" or "5 de jan de 2024"."""
    if not text:
        return None
    cleaned = text.strip().rstrip(".,·").strip()

    match = _PT_DATE_RE.search(cleaned)
    if match:
        month = _PT_MONTHS.get(match.group(2).lower()[:3])
        if month:
            try:
                return date(int(match.group(3)), month, int(match.group(1)))
            except ValueError:
                return None

    for fmt in _EN_DATE_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt).date()
        except ValueError:
            continue
    return None


def _apply_text_signals(record: CanonicalRecord, text: str) -> None:
    """Fill the pattern-matched fields both strategies share."""
    status = _STATUS_RE.search(text)
    if status:
        record.status = _STATUS_MAP[status.group(1)]

    started = _START_DATE_RE.search(text)
    if started:
        record.start_date = parse_display_date(started.group(1))

    count = _CREATIVE_COUNT_RE.search(text)
    if count:
        record.creative_count = max(1, int(count.group(1)))

    record.has_multiple_versions = (
        record.creative_count > 1
        or any(phrase in text for phrase in _MULTI_VERSION_PHRASES)
    )

    if any(phrase in text for phrase in _AGE_GATE_PHRASES):
        record.is_restricted = True
        record.restriction_reason = "AGE_GATED"


def _cdn_images(container: Tag, *, skip_thumbnails: bool = False) -> List[ImageAsset]:
    images = []
    for img in container.select(CDN_IMAGE_SELECTOR):
        src = img.get("src") or ""
        if not src or "profile" in src or "emoji" in src:
            continue
        if skip_thumbnails and "_s." in src:
            continue
        images.append(ImageAsset(
            src=src, alt=img.get("alt") or "",
            width=_int_attr(img, "width"), height=_int_attr(img, "height"),
        ))
    return images


def _videos(container: Tag) -> List[VideoAsset]:
    videos = []
    for el in container.select(VIDEO_SOURCE_SELECTOR):
        src = el.get("src")
        if not src:
            continue
        video = el if el.name == "video" else el.find_parent("video")
        poster = (video.get("poster") if video is not None else "") or ""
        videos.append(VideoAsset(src=src, poster=poster))
    return videos


# ---------------------------------------------------------------------------
# Strategy A: identifier anchors
# ---------------------------------------------------------------------------

def _card_container(link: Tag) -> Optional[Tag]:
    article = link.find_parent(attrs={"role": "article"})
    if article is not None:
        return article
    el = link
    for _ in range(CONTAINER_WALK_LEVELS):
        el = el.parent
        if el is None or isinstance(el, BeautifulSoup):
            return None
    return el


def _iter_id_links(soup: BeautifulSoup):
    """Yield ``(id, container)`` once per distinct id, in document order."""
    seen = set()
    for link in soup.select(ID_LINK_SELECTOR):
        record_id = _id_from_href(link.get("href", ""))
        if not record_id or record_id in seen:
            continue
        seen.add(record_id)
        yield record_id, _card_container(link)


def extract_by_id_links(soup: BeautifulSoup) -> List[CanonicalRecord]:
    records = []
    for record_id, container in _iter_id_links(soup):
        record = CanonicalRecord(id=record_id)
        if container is not None:
            for link in container.select(ADVERTISER_FILTER_LINK_SELECTOR):
                name = link.get_text(" ", strip=True)
                if len(name) > 1 and "Ad Library" not in name:
                    record.owner_name = name
                    break

            for el in container.select(BODY_TEXT_SELECTOR):
                text = el.get_text(" ", strip=True)
                if len(text) > 20:
                    record.body_text = text
                    break

            record.images = _cdn_images(container)
            record.videos = _videos(container)
            _apply_text_signals(record, _text(container))
        records.append(record)
    return records


# ---------------------------------------------------------------------------
# Strategy B: text anchors
# ---------------------------------------------------------------------------

def _label_markers(soup: BeautifulSoup) -> List[Tag]:
    markers: List[Tag] = []
    seen = set()
    for text_node in soup.find_all(string=_LABEL_RE):
        span = text_node.find_parent("span")
        if span is None or id(span) in seen:
            continue
        seen.add(id(span))
        markers.append(span)
    return markers


def _common_container(first: Tag, second: Tag) -> Optional[Tag]:
    # Identity, not equality: bs4 tags compare equal by markup.
    lineage = {id(el) for el in first.parents}
    lineage.add(id(first))
    for el in [second, *second.parents]:
        if isinstance(el, BeautifulSoup) or el.name in ("body", "html"):
            return None
        if id(el) in lineage:
            return el
    return None


def _page_links(card: Tag) -> List[CoOwner]:
    links: List[CoOwner] = []
    seen_urls = set()
    for link in card.select(PAGE_LINK_SELECTOR):
        href = link.get("href") or ""
        name = link.get_text(" ", strip=True)
        if not href or any(part in href for part in _PAGE_LINK_EXCLUDES):
            continue
        if not name or len(name) >= 100 or href in seen_urls:
            continue
        seen_urls.add(href)
        links.append(CoOwner(name=name, url=href))
    return links


def _cta(card: Tag) -> Tuple[Optional[str], Optional[str]]:
    link = card.select_one(CTA_LINK_SELECTOR)
    if link is None:
        return None, None
    target = parse_qs(urlparse(link.get("href") or "").query).get("u")
    cta_url = target[0] if target else None
    labels = [
        btn.get_text(" ", strip=True) for btn in link.find_all("button")
    ]
    labels = [label for label in labels if label and len(label) < 50]
    return (labels[-1] if labels else None), cta_url


def _card_images(card: Tag) -> List[ImageAsset]:
    images = []
    for img in card.find_all("img"):
        src = img.get("src") or ""
        if not src or "emoji" in src or "rsrc.php" in src:
            continue
        width = _int_attr(img, "width")
        if img.has_attr("width") and width <= 50:
            continue
        images.append(ImageAsset(
            src=src, alt=img.get("alt") or "",
            width=width, height=_int_attr(img, "height"),
        ))
    return images


def _card_videos(card: Tag) -> List[VideoAsset]:
    videos = []
    for video in card.find_all("video"):
        src = video.get("src")
        if not src:
            source = video.find("source")
            src = source.get("src") if source is not None else None
        if src:
            videos.append(VideoAsset(src=src, poster=video.get("poster") or ""))
    return videos


def _parse_card(card: Tag) -> Optional[CanonicalRecord]:
    text = _text(card)
    id_match = _ID_IN_TEXT_RE.search(text)
    if not id_match:
        return None

    record = CanonicalRecord(id=id_match.group(1))
    _apply_text_signals(record, text)

    page_links = _page_links(card)
    if page_links:
        record.owner_name = page_links[0].name
        record.owner_url = page_links[0].url
    if len(page_links) > 1:
        record.co_owner = page_links[1]

    for btn in card.select('button, [role="button"]'):
        btn_text = btn.get_text(" ", strip=True)
        if len(btn_text) > 50 and not _BODY_BUTTON_SKIP_RE.match(btn_text):
            record.body_text = btn_text
            break

    record.cta_text, record.cta_url = _cta(card)
    record.images = _card_images(card)
    record.videos = _card_videos(card)
    return record


def extract_by_label_text(soup: BeautifulSoup) -> List[CanonicalRecord]:
    markers = _label_markers(soup)
    if len(markers) < 2:
        return []

    container = _common_container(markers[0], markers[1])
    if container is None:
        return []

    records = []
    for child in container.find_all(recursive=False):
        if child.name == "hr":
            continue
        if not _LABEL_RE.search(child.get_text(" ")):
            continue
        record = _parse_card(child)
        if record is not None:
            records.append(record)
    return records


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def _fill_missing(target: CanonicalRecord, source: CanonicalRecord) -> None:
    """Copy fields ``target`` lacks from ``source``; set values are kept."""
    for f in fields(CanonicalRecord):
        if f.name == "id":
            continue
        current = getattr(target, f.name)
        incoming = getattr(source, f.name)
        if f.name == "status":
            if current is RecordStatus.UNKNOWN:
                target.status = incoming
        elif f.name == "creative_count":
            target.creative_count = max(current, incoming)
        elif isinstance(current, bool):
            setattr(target, f.name, current or incoming)
        elif current is None or (not current and incoming):
            setattr(target, f.name, incoming)


def extract_from_rendered(html: str) -> List[CanonicalRecord]:
    """Run both strategies and merge by id, anchors first.

    A label-layout record for an id already found by anchor only fills
    the fields the anchor record left empty.
    """
    soup = _soup(html)
    by_links = extract_by_id_links(soup)
    by_labels = extract_by_label_text(soup)

    merged: List[CanonicalRecord] = []
    by_id: Dict[str, CanonicalRecord] = {}
    for record in by_links + by_labels:
        existing = by_id.get(record.id)
        if existing is not None:
            _fill_missing(existing, record)
            continue
        by_id[record.id] = record
        merged.append(record)

    logger.info(
        f"[FALLBACK] DOM extraction: {len(by_links)} via id links, "
        f"{len(by_labels)} via labels, {len(merged)} distinct"
    )
    return merged


def extract_media_map(html: str) -> Dict[str, Tuple[List[ImageAsset], List[VideoAsset]]]:
    """Map ad id → rendered media, for ids whose card shows any media."""
    soup = _soup(html)
    media: Dict[str, Tuple[List[ImageAsset], List[VideoAsset]]] = {}
    for record_id, container in _iter_id_links(soup):
        if container is None:
            continue
        images = _cdn_images(container, skip_thumbnails=True)
        videos = _videos(container)
        if images or videos:
            media[record_id] = (images, videos)
    return media
