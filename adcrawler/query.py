"""
Search Query
============
Caller-supplied parameters for one Ad Library search, plus the URL
builder that turns them into the public search-results address.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Set
from urllib.parse import urlencode

logger = logging.getLogger(__name__)

AD_LIBRARY_URL = "https://www.facebook.com/ads/library/"

ACTIVE_STATUSES = ("active", "inactive", "all")
AD_TYPES = ("all", "political_and_issue_ads", "housing_ads", "employment_ads", "credit_ads")
MEDIA_TYPES = ("all", "image", "video", "meme", "image_and_meme", "none")
SORT_OPTIONS = ("impressions", "newest")

MIN_RECORDS = 1
MAX_RECORDS = 1000
DEFAULT_MAX_RECORDS = 50

COUNTRY_CODES = {
    "US": "United States", "BR": "Brazil", "GB": "United Kingdom",
    "CA": "Canada", "AU": "Australia", "DE": "Germany", "FR": "France",
    "IT": "Italy", "ES": "Spain", "IN": "India", "MX": "Mexico",
    "JP": "Japan", "AR": "Argentina", "CO": "Colombia", "CL": "Chile",
    "PT": "Portugal", "NL": "Netherlands", "SE": "Sweden", "NO": "Norway",
    "DK": "Denmark", "FI": "Finland", "PL": "Poland", "IE": "Ireland",
    "NZ": "New Zealand", "ZA": "South Africa", "NG": "Nigeria",
    "KE": "Kenya", "EG": "Egypt", "SA": "Saudi Arabia",
    "AE": "United Arab Emirates", "IL": "Israel", "TR": "Turkey",
    "KR": "South Korea", "TW": "Taiwan", "PH": "Philippines",
    "TH": "Thailand", "VN": "Vietnam", "ID": "Indonesia", "MY": "Malaysia",
    "SG": "Singapore", "ALL": "All Countries",
}


def clamp_max_records(value) -> int:
    """Coerce to int and clamp into [1, 1000]; junk becomes the default."""
    try:
        number = int(value)
    except (TypeError, ValueError):
        return DEFAULT_MAX_RECORDS
    return max(MIN_RECORDS, min(MAX_RECORDS, number))


@dataclass
class SearchQuery:
    """
    One search request.

    ``previously_seen_ids`` switches the crawl into resume mode: those ids
    are never emitted again and the no-new-records cap is relaxed.
    """
    query: str
    country: str = "US"
    active_status: str = "active"
    ad_type: str = "all"
    media_type: str = "all"
    sort_by: str = "impressions"
    max_records: int = DEFAULT_MAX_RECORDS
    previously_seen_ids: Set[str] = field(default_factory=set)

    def __post_init__(self):
        self.query = (self.query or "").strip()
        if not self.query:
            raise ValueError("query must be a non-empty search term")

        self.country = (self.country or "US").upper()
        if self.country not in COUNTRY_CODES:
            logger.warning(f"[QUERY] Unknown country code '{self.country}', passing through")

        for name, allowed in (
            ("active_status", ACTIVE_STATUSES),
            ("ad_type", AD_TYPES),
            ("media_type", MEDIA_TYPES),
            ("sort_by", SORT_OPTIONS),
        ):
            value = getattr(self, name)
            if value not in allowed:
                raise ValueError(f"{name} must be one of {allowed}, got {value!r}")

        self.max_records = clamp_max_records(self.max_records)
        self.previously_seen_ids = {str(i) for i in (self.previously_seen_ids or ()) if i}

    @property
    def is_resume(self) -> bool:
        return bool(self.previously_seen_ids)

    @property
    def country_name(self) -> str:
        return COUNTRY_CODES.get(self.country, self.country)

    def build_search_url(self) -> str:
        params = [
            ("active_status", self.active_status),
            ("ad_type", self.ad_type),
            ("country", self.country),
            ("is_targeted_country", "false"),
            ("media_type", self.media_type),
            ("q", self.query),
            ("search_type", "keyword_unordered"),
        ]
        if self.sort_by == "newest":
            params.append(("sort_data[direction]", "desc"))
            params.append(("sort_data[mode]", "relevancy_monthly_grouped"))
        else:
            params.append(("sort_data[mode]", "total_impressions"))
        return f"{AD_LIBRARY_URL}?{urlencode(params)}"
