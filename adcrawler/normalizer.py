"""
Record Normalizer
=================
Pure functions that turn one raw Ad Library API node into a
``CanonicalRecord``. No I/O.

The upstream API changes shape without a version flag, so every field is
described by a priority-ordered tuple of *extraction rules* — each a pure
function ``node -> Optional[value]`` — and the first rule that yields a
non-empty value wins.

A node without an identifier normalizes to ``None``. Payloads routinely
contain placeholder nodes, so this is a silent skip, not an error.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Any, Callable, Iterable, List, Optional, Sequence, Set, Tuple

from .models import CanonicalRecord, ImageAsset, RecordStatus, VideoAsset

logger = logging.getLogger(__name__)

Rule = Callable[[dict], Any]

# gated_type values that still deliver full creative data
_OPEN_GATED_TYPES = frozenset(["ELIGIBLE", "NOT_GATED", "NONE"])


# ---------------------------------------------------------------------------
# Path helpers
# ---------------------------------------------------------------------------

def _dig(obj: Any, *path) -> Any:
    """Walk dict keys / list indices, returning None on any miss."""
    current = obj
    for step in path:
        if isinstance(step, int):
            if not isinstance(current, list) or len(current) <= step:
                return None
            current = current[step]
        else:
            if not isinstance(current, dict):
                return None
            current = current.get(step)
        if current is None:
            return None
    return current


def _at(*path) -> Rule:
    return lambda node: _dig(node, *path)


def _first(node: dict, rules: Sequence[Rule]) -> Any:
    for rule in rules:
        value = rule(node)
        if value is None or value == "" or value == [] or value == {}:
            continue
        return value
    return None


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        value = value.strip()
        return value or None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return None


def _positive_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    return number if number >= 1 else None


def parse_epoch_date(value: Any) -> Optional[date]:
    """Epoch seconds (int or digit string) → UTC date; 0 or junk → None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value.lstrip("-").isdigit():
            return None
    try:
        seconds = int(value)
    except (TypeError, ValueError):
        return None
    if seconds <= 0:
        return None
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc).date()
    except (OverflowError, OSError, ValueError):
        return None


# ---------------------------------------------------------------------------
# Extraction rules, one tuple per field, highest priority first
# ---------------------------------------------------------------------------

ID_RULES: Tuple[Rule, ...] = (
    _at("ad_archive_id"),
    _at("adArchiveID"),
    _at("adArchiveId"),
)

ACTIVE_RULES: Tuple[Rule, ...] = (
    _at("is_active"),
    _at("isActive"),
)

START_DATE_RULES: Tuple[Rule, ...] = (
    _at("start_date"),
    _at("startDate"),
)

END_DATE_RULES: Tuple[Rule, ...] = (
    _at("end_date"),
    _at("endDate"),
)

BODY_RULES: Tuple[Rule, ...] = (
    _at("snapshot", "body", "text"),
    lambda node: _dig(node, "snapshot", "body") if isinstance(_dig(node, "snapshot", "body"), str) else None,
    _at("snapshot", "cards", 0, "body"),
    _at("ad_creative_bodies", 0),
    _at("adCreativeBodies", 0),
)

TITLE_RULES: Tuple[Rule, ...] = (
    _at("snapshot", "title"),
    _at("snapshot", "cards", 0, "title"),
    _at("ad_creative_link_titles", 0),
    _at("adCreativeLinkTitles", 0),
)

CAPTION_RULES: Tuple[Rule, ...] = (
    _at("snapshot", "caption"),
    _at("snapshot", "cards", 0, "caption"),
    _at("ad_creative_link_captions", 0),
)

CTA_TEXT_RULES: Tuple[Rule, ...] = (
    _at("snapshot", "cta_text"),
    _at("snapshot", "cards", 0, "cta_text"),
    _at("cta_text"),
)

CTA_URL_RULES: Tuple[Rule, ...] = (
    _at("snapshot", "link_url"),
    _at("snapshot", "cards", 0, "link_url"),
    _at("link_url"),
)

OWNER_NAME_RULES: Tuple[Rule, ...] = (
    _at("page_name"),
    _at("pageName"),
    _at("snapshot", "page_name"),
)

OWNER_URL_RULES: Tuple[Rule, ...] = (
    _at("snapshot", "page_profile_uri"),
    _at("page_profile_uri"),
    _at("pageProfileUri"),
)

OWNER_ID_RULES: Tuple[Rule, ...] = (
    _at("page_id"),
    _at("pageId"),
    _at("snapshot", "page_id"),
)

PLATFORM_RULES: Tuple[Rule, ...] = (
    _at("publisher_platform"),
    _at("publisher_platforms"),
    _at("publisherPlatforms"),
)

SPEND_RULES: Tuple[Rule, ...] = (
    _at("spend"),
)

IMPRESSIONS_RULES: Tuple[Rule, ...] = (
    _at("impressions_with_index"),
    _at("impressions"),
)

CURRENCY_RULES: Tuple[Rule, ...] = (
    _at("currency"),
)

CATEGORY_RULES: Tuple[Rule, ...] = (
    _at("categories"),
)

GATED_RULES: Tuple[Rule, ...] = (
    _at("gated_type"),
    _at("gatedType"),
)

COLLATION_COUNT_RULES: Tuple[Rule, ...] = (
    _at("collation_count"),
    _at("collationCount"),
)

GROUP_ID_RULES: Tuple[Rule, ...] = (
    _at("collation_id"),
    _at("collationId"),
)

MULTI_VERSION_RULES: Tuple[Rule, ...] = (
    _at("has_multiple_versions"),
    _at("hasMultipleVersions"),
)


# ---------------------------------------------------------------------------
# Media
# ---------------------------------------------------------------------------

def _extract_images(snapshot: dict) -> List[ImageAsset]:
    images: List[ImageAsset] = []
    for img in snapshot.get("images") or []:
        if not isinstance(img, dict):
            continue
        src = img.get("original_image_url") or img.get("resized_image_url")
        if src:
            images.append(ImageAsset(
                src=src, alt="",
                width=img.get("width") or 0,
                height=img.get("height") or 0,
            ))
    for card in snapshot.get("cards") or []:
        if not isinstance(card, dict):
            continue
        src = card.get("original_image_url") or card.get("resized_image_url")
        if src:
            images.append(ImageAsset(
                src=src, alt="",
                width=card.get("image_width") or 0,
                height=card.get("image_height") or 0,
            ))
    return images


def _extract_videos(snapshot: dict) -> List[VideoAsset]:
    videos: List[VideoAsset] = []
    sources = list(snapshot.get("videos") or []) + list(snapshot.get("cards") or [])
    for vid in sources:
        if not isinstance(vid, dict):
            continue
        src = vid.get("video_hd_url") or vid.get("video_sd_url")
        if src:
            videos.append(VideoAsset(src=src, poster=vid.get("video_preview_image_url") or ""))
    return videos


def _as_string_set(value: Any) -> Set[str]:
    if isinstance(value, str):
        return {value}
    if isinstance(value, Iterable) and not isinstance(value, dict):
        return {str(v) for v in value if v}
    return set()


def _as_string_list(value: Any) -> List[str]:
    if isinstance(value, str):
        return [value]
    if isinstance(value, list):
        return [str(v) for v in value if v]
    return []


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def unwrap(raw: Any) -> Tuple[Optional[dict], dict]:
    """Split a raw edge into ``(node, edge)``. A bare node is its own edge."""
    if not isinstance(raw, dict):
        return None, {}
    node = raw.get("node")
    if isinstance(node, dict):
        return node, raw
    return raw, raw


def derive_creative_count(node: dict, edge: dict) -> int:
    """Largest positive count among the node's own collation count and the
    collated group size attached by the harvester; defaults to 1."""
    candidates = [
        _positive_int(_first(node, COLLATION_COUNT_RULES)),
        _positive_int(edge.get("collated_group_size")),
    ]
    counts = [c for c in candidates if c]
    return max(counts) if counts else 1


def normalize(raw: Any) -> Optional[CanonicalRecord]:
    """Normalize one raw edge or node; ``None`` when it has no usable id."""
    node, edge = unwrap(raw)
    if node is None:
        return None

    record_id = _as_text(_first(node, ID_RULES))
    if not record_id:
        return None

    snapshot = node.get("snapshot") if isinstance(node.get("snapshot"), dict) else {}

    is_active = _first(node, ACTIVE_RULES)
    if is_active is True:
        status = RecordStatus.ACTIVE
    elif is_active is False:
        status = RecordStatus.INACTIVE
    else:
        status = RecordStatus.UNKNOWN

    creative_count = derive_creative_count(node, edge)
    explicit_multi = _first(node, MULTI_VERSION_RULES) is True

    gated = _as_text(_first(node, GATED_RULES))
    is_restricted = bool(gated) and gated.upper() not in _OPEN_GATED_TYPES

    group_id = _as_text(_first(node, GROUP_ID_RULES)) or _as_text(edge.get("collated_group_id"))

    return CanonicalRecord(
        id=record_id,
        status=status,
        start_date=parse_epoch_date(_first(node, START_DATE_RULES)),
        end_date=parse_epoch_date(_first(node, END_DATE_RULES)),
        owner_name=_as_text(_first(node, OWNER_NAME_RULES)),
        owner_url=_as_text(_first(node, OWNER_URL_RULES)),
        owner_id=_as_text(_first(node, OWNER_ID_RULES)),
        co_owner=None,
        body_text=_as_text(_first(node, BODY_RULES)),
        title_text=_as_text(_first(node, TITLE_RULES)),
        caption_text=_as_text(_first(node, CAPTION_RULES)),
        cta_text=_as_text(_first(node, CTA_TEXT_RULES)),
        cta_url=_as_text(_first(node, CTA_URL_RULES)),
        creative_count=creative_count,
        has_multiple_versions=creative_count > 1 or explicit_multi,
        is_restricted=is_restricted,
        images=_extract_images(snapshot),
        videos=_extract_videos(snapshot),
        platforms=_as_string_set(_first(node, PLATFORM_RULES)),
        spend=_first(node, SPEND_RULES),
        impressions=_first(node, IMPRESSIONS_RULES),
        currency=_as_text(_first(node, CURRENCY_RULES)),
        categories=_as_string_list(_first(node, CATEGORY_RULES)),
        restriction_reason=gated if is_restricted else None,
        group_id=group_id,
    )


def normalize_many(raw_edges: Iterable[Any]) -> List[CanonicalRecord]:
    """Normalize a batch, dropping identifier-less nodes."""
    records = []
    for raw in raw_edges:
        record = normalize(raw)
        if record is not None:
            records.append(record)
    return records
