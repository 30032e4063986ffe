"""
Ad Library Crawler Package
Collects Ad Library search results by intercepting the page's GraphQL
traffic, with a rendered-DOM fallback when the API is rate-limited.

CLI Usage:
    python -m adcrawler <query> [options]

    Options:
        --country          Country code (default: US)
        --max-records      Records to collect, 1-1000 (default: 50)
        --resume-from      Previous JSON export whose ads are skipped
        --output-json      Export to JSON file
        --output-csv       Export to CSV file
        --auth-state-file  Saved session cookies
"""

from .errors import CrawlError, CrawlExhausted, CrawlCancelled
from .models import (
    CanonicalRecord, CoOwner, CrawlMeta, CrawlOutcome, ImageAsset,
    RawBatch, RecordStatus, VideoAsset,
)
from .normalizer import normalize, normalize_many
from .harvester import harvest
from .dom_fallback import extract_from_rendered, extract_media_map
from .rate_limit import RateLimitMonitor, ResponseClass
from .query import SearchQuery, COUNTRY_CODES
from .run_config import CrawlerRunConfig
from .browser import BrowserSurface, PlaywrightSurface
from .pagination import ControllerState, PaginationController
from .session import CrawlSession, RecordAccumulator

__all__ = [
    'CrawlError',
    'CrawlExhausted',
    'CrawlCancelled',
    'CanonicalRecord',
    'CoOwner',
    'CrawlMeta',
    'CrawlOutcome',
    'ImageAsset',
    'RawBatch',
    'RecordStatus',
    'VideoAsset',
    'normalize',
    'normalize_many',
    'harvest',
    'extract_from_rendered',
    'extract_media_map',
    'RateLimitMonitor',
    'ResponseClass',
    'SearchQuery',
    'COUNTRY_CODES',
    'CrawlerRunConfig',
    'BrowserSurface',
    'PlaywrightSurface',
    'ControllerState',
    'PaginationController',
    'CrawlSession',
    'RecordAccumulator',
]

__version__ = '1.0.0'
