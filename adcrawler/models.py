"""
Ad Record Data Model
====================
Canonical output schema for one crawled Ad Library result, independent
of which extraction path (intercepted API or rendered DOM) produced it.

Key rules:
- ``id`` is the dedup key; uniqueness is enforced by the session's
  seen-ID set, not here
- ``creative_count`` is always >= 1
- ``images`` / ``videos`` never hold entries with an empty ``src``
- a record with no media at all is "media-incomplete" — a queryable
  state, not an error
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set


class RecordStatus(str, Enum):
    """Delivery status reported for an ad."""
    ACTIVE = "Active"
    INACTIVE = "Inactive"
    UNKNOWN = "Unknown"


@dataclass
class ImageAsset:
    src: str
    alt: str = ""
    width: int = 0
    height: int = 0


@dataclass
class VideoAsset:
    src: str
    poster: str = ""


@dataclass
class CoOwner:
    """Second page credited on a co-branded ad ("X with Y")."""
    name: str
    url: Optional[str] = None


@dataclass
class CanonicalRecord:
    """One ad, as emitted by the Normalizer or the DOM fallback."""
    id: str
    status: RecordStatus = RecordStatus.UNKNOWN
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    owner_name: Optional[str] = None
    owner_url: Optional[str] = None
    owner_id: Optional[str] = None
    co_owner: Optional[CoOwner] = None
    body_text: Optional[str] = None
    title_text: Optional[str] = None
    caption_text: Optional[str] = None
    cta_text: Optional[str] = None
    cta_url: Optional[str] = None
    creative_count: int = 1
    has_multiple_versions: bool = False
    is_restricted: bool = False
    images: List[ImageAsset] = field(default_factory=list)
    videos: List[VideoAsset] = field(default_factory=list)
    platforms: Set[str] = field(default_factory=set)
    spend: Optional[Any] = None
    impressions: Optional[Any] = None
    currency: Optional[str] = None
    categories: List[str] = field(default_factory=list)
    restriction_reason: Optional[str] = None
    group_id: Optional[str] = None

    def __post_init__(self):
        if not self.id:
            raise ValueError("CanonicalRecord.id must be non-empty")
        if self.creative_count < 1:
            self.creative_count = 1
        self.images = [img for img in self.images if img.src]
        self.videos = [vid for vid in self.videos if vid.src]

    @property
    def is_media_incomplete(self) -> bool:
        return not self.images and not self.videos

    def fill_media(self, images: List[ImageAsset], videos: List[VideoAsset]) -> bool:
        """Fill media on a media-incomplete record. Returns True if anything was set."""
        if not self.is_media_incomplete:
            return False
        self.images = [img for img in images if img.src]
        self.videos = [vid for vid in videos if vid.src]
        return not self.is_media_incomplete

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'status': self.status.value,
            'start_date': self.start_date.isoformat() if self.start_date else None,
            'end_date': self.end_date.isoformat() if self.end_date else None,
            'owner_name': self.owner_name,
            'owner_url': self.owner_url,
            'owner_id': self.owner_id,
            'co_owner': (
                {'name': self.co_owner.name, 'url': self.co_owner.url}
                if self.co_owner else None
            ),
            'body_text': self.body_text,
            'title_text': self.title_text,
            'caption_text': self.caption_text,
            'cta_text': self.cta_text,
            'cta_url': self.cta_url,
            'creative_count': self.creative_count,
            'has_multiple_versions': self.has_multiple_versions,
            'is_restricted': self.is_restricted,
            'images': [
                {'src': i.src, 'alt': i.alt, 'width': i.width, 'height': i.height}
                for i in self.images
            ],
            'videos': [{'src': v.src, 'poster': v.poster} for v in self.videos],
            'platforms': sorted(self.platforms),
            'spend': self.spend,
            'impressions': self.impressions,
            'currency': self.currency,
            'categories': list(self.categories),
            'restriction_reason': self.restriction_reason,
            'group_id': self.group_id,
        }

    def to_flat_dict(self) -> dict:
        """Flat row for CSV export."""
        return {
            'id': self.id,
            'status': self.status.value,
            'owner_name': self.owner_name or '',
            'owner_url': self.owner_url or '',
            'owner_id': self.owner_id or '',
            'start_date': self.start_date.isoformat() if self.start_date else '',
            'end_date': self.end_date.isoformat() if self.end_date else '',
            'body_text': (self.body_text or '')[:5000],
            'title_text': self.title_text or '',
            'cta_text': self.cta_text or '',
            'cta_url': self.cta_url or '',
            'creative_count': self.creative_count,
            'has_multiple_versions': self.has_multiple_versions,
            'is_restricted': self.is_restricted,
            'image_count': len(self.images),
            'video_count': len(self.videos),
            'platforms': ' | '.join(sorted(self.platforms)),
            'spend': json.dumps(self.spend) if self.spend else '',
            'impressions': json.dumps(self.impressions) if self.impressions else '',
            'currency': self.currency or '',
        }


@dataclass
class RawBatch:
    """Non-owned view over one harvested response body."""
    records: List[Dict[str, Any]] = field(default_factory=list)
    page_info: Any = None
    total_count: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.records


@dataclass
class CrawlMeta:
    """Query parameters echoed back plus run provenance."""
    query: str
    country: str
    active_status: str
    ad_type: str
    media_type: str
    sort_by: str
    url: str = ""
    total_results: int = 0
    reported_total: int = 0
    scraped_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    resumed_from: Optional[int] = None
    mode: str = "api"
    stop_reason: str = ""
    fallback_used: bool = False

    def to_dict(self) -> dict:
        return {
            'query': self.query, 'country': self.country,
            'active_status': self.active_status, 'ad_type': self.ad_type,
            'media_type': self.media_type, 'sort_by': self.sort_by,
            'url': self.url, 'total_results': self.total_results,
            'reported_total': self.reported_total,
            'scraped_at': self.scraped_at, 'resumed_from': self.resumed_from,
            'mode': self.mode, 'stop_reason': self.stop_reason,
            'fallback_used': self.fallback_used,
        }


@dataclass
class CrawlOutcome:
    """Terminal value of a crawl session."""
    meta: CrawlMeta
    data: List[CanonicalRecord] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'meta': self.meta.to_dict(),
            'data': [r.to_dict() for r in self.data],
        }
