#!/usr/bin/env python3
"""
Ad Library Crawler CLI
======================
Searches the Ad Library for a keyword and exports the collected ads.

All tuning flows through ``CrawlerRunConfig``. Ctrl+C cancels the crawl
gracefully: whatever was collected so far is still exported.

Environment (``.env`` supported):
    ADCRAWLER_AUTH_STATE   default for --auth-state-file
    ADCRAWLER_HEADFUL      "1" to show the browser window

Run with: python -m adcrawler "climate" --country US --max-records 100
"""

import argparse
import asyncio
import logging
import os
import re
import signal
import sys
from pathlib import Path

from dotenv import load_dotenv

# Load .env before reading any ADCRAWLER_* defaults
env_path = Path(__file__).resolve().parent.parent / '.env'
if env_path.exists():
    load_dotenv(env_path)
else:
    load_dotenv()  # tries CWD

from .errors import CrawlCancelled, CrawlExhausted
from .models import CrawlOutcome
from .query import ACTIVE_STATUSES, AD_TYPES, COUNTRY_CODES, MEDIA_TYPES, SORT_OPTIONS, SearchQuery
from .run_config import CrawlerRunConfig
from .session import CrawlSession

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s | %(levelname)s | %(message)s',
    datefmt='%H:%M:%S'
)
logger = logging.getLogger(__name__)


def _base_name_from_query(query: str, country: str) -> str:
    """Derive a filesystem-safe output base name from the search."""
    slug = re.sub(r'[^\w\-]+', '_', query.strip().lower()).strip('_') or 'ads'
    return f"ads_{slug[:40]}_{country.lower()}"


def _export(outcome: CrawlOutcome, cfg: CrawlerRunConfig):
    """Export the outcome to configured formats."""
    exported = []
    if cfg.output_json:
        CrawlSession.export_json(outcome, cfg.output_json)
        exported.append(cfg.output_json)
    if cfg.output_csv:
        CrawlSession.export_csv(outcome, cfg.output_csv)
        exported.append(cfg.output_csv)
    if exported:
        print("\n" + "-" * 40)
        for path in exported:
            print(f"  Exported: {path}")
        print("-" * 40)
    else:
        logger.warning("No output format was configured, nothing exported")


def print_summary(session: CrawlSession, outcome: CrawlOutcome):
    """Print crawl summary."""
    print()
    print(session.monitor.format_summary(session.monitor.snapshot()))
    meta = outcome.meta
    print(f"  Query:               {meta.query} ({session.query.country_name})")
    print(f"  Records exported:    {len(outcome.data)}")
    if meta.reported_total:
        print(f"  Reported by API:     {meta.reported_total}")
    print(f"  Mode:                {meta.mode}")
    if meta.resumed_from is not None:
        print(f"  Resumed from:        {meta.resumed_from} known records")
    print("=" * 65)


async def _run(session: CrawlSession) -> CrawlOutcome:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, session.cancel)
    except NotImplementedError:
        # Windows event loops: Ctrl+C surfaces as KeyboardInterrupt instead
        pass
    try:
        return await session.run()
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except NotImplementedError:
            pass


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Ad Library crawler - intercepts search results and exports ads',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m adcrawler "climate"                               # 50 active US ads
  python -m adcrawler "climate" --country BR --max-records 200
  python -m adcrawler "climate" --resume-from ads_climate_us.json
  python -m adcrawler "climate" --auth-state-file cookies.json --output-csv ads.csv
        """,
    )
    parser.add_argument('query', nargs='?', help='Search keyword(s)')
    parser.add_argument('--country', default='US', help='Country code (default: US)')
    parser.add_argument('--active-status', choices=ACTIVE_STATUSES, default='active')
    parser.add_argument('--ad-type', choices=AD_TYPES, default='all')
    parser.add_argument('--media-type', choices=MEDIA_TYPES, default='all')
    parser.add_argument('--sort-by', choices=SORT_OPTIONS, default='impressions')
    parser.add_argument('--max-records', type=int, default=50,
                        help='Records to collect, 1-1000 (default: 50)')
    parser.add_argument('--resume-from', type=str,
                        help='Previous JSON export; its ads are skipped')
    parser.add_argument('--output-json', type=str, help='JSON output file path')
    parser.add_argument('--output-csv', type=str, help='CSV output file path')
    parser.add_argument('--response-timeout', type=float, default=8.0,
                        help='Seconds to wait for API data per cycle (default: 8)')
    parser.add_argument('--backoff-base', type=float, default=30.0,
                        help='Rate-limit backoff base in seconds (default: 30)')
    parser.add_argument('--no-enrich', action='store_true',
                        help='Skip filling missing media from the rendered page')
    parser.add_argument('--list-countries', action='store_true',
                        help='Print supported country codes and exit')

    auth_group = parser.add_argument_group('Authentication')
    auth_group.add_argument(
        '--auth-state-file', type=str,
        default=os.environ.get('ADCRAWLER_AUTH_STATE'),
        help='Saved cookies / storage_state JSON (default: $ADCRAWLER_AUTH_STATE)',
    )
    auth_group.add_argument(
        '--headful', action='store_true',
        default=os.environ.get('ADCRAWLER_HEADFUL') == '1',
        help='Show the browser window',
    )
    return parser


def run_cli_with_args(argv=None) -> int:
    """Parse argv, build config and query, run, export."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.list_countries:
        for code, name in COUNTRY_CODES.items():
            print(f"  {code:<4} {name}")
        return 0
    if not args.query:
        parser.error('a search query is required')

    previous_ids = set()
    if args.resume_from:
        previous_ids = CrawlSession.load_previous_ids(args.resume_from)

    try:
        query = SearchQuery(
            query=args.query,
            country=args.country,
            active_status=args.active_status,
            ad_type=args.ad_type,
            media_type=args.media_type,
            sort_by=args.sort_by,
            max_records=args.max_records,
            previously_seen_ids=previous_ids,
        )
    except ValueError as exc:
        parser.error(str(exc))

    cfg = CrawlerRunConfig.from_cli_args(args)
    if not cfg.output_json and not cfg.output_csv:
        cfg.output_json = f"{_base_name_from_query(query.query, query.country)}.json"

    session = CrawlSession(query, cfg)
    try:
        outcome = asyncio.run(_run(session))
    except CrawlCancelled as exc:
        logger.warning("Crawl cancelled, exporting partial results")
        outcome = exc.outcome
    except CrawlExhausted as exc:
        logger.error(f"Crawl failed: {exc.reason}. Try again later.")
        return 2

    if outcome is None:
        return 1
    try:
        _export(outcome, cfg)
    except OSError as exc:
        logger.error(f"Export failed: {exc}", exc_info=True)
        return 1
    print_summary(session, outcome)
    return 0


def main():
    sys.exit(run_cli_with_args())


if __name__ == '__main__':
    main()
