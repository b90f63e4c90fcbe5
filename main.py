#!/usr/bin/env python3
"""
Resource Ingestion Service and command line entry point.

IngestService wires the storage, cache, rate limiter, schedulers and fetchers
together and exposes the operations used by the job runner and the CLI:

1. Fetch due links and feeds (scheduled batches)
2. Fetch a single feed collection on demand
3. Pick news candidates for a user
4. Inspect or clear cached responses, import URLs, reset failing links

This is the only module reading the global configuration; every component
is built with explicit values.
"""

import asyncio
import random
import sys
import time
from datetime import datetime, timezone
from typing import List, Optional
import argparse

from cache import ResponseCache
from config import config, get_logger
from errors import DatabaseError, TransportError
from fetcher import Fetcher, FeedFetcher, FeedOutcome, LinkFetcher, LinkOutcome
from http_client import HttpClient
from models import DatabaseQueue
from news import NewsCandidate, NewsOptions, NewsPicker
from ratelimit import FetchLog
from resources import FeedCollection, Link
from scheduler import RetryScheduler
from telemetry import init_telemetry, trace_span
from utils import format_duration, sanitize_url, validate_url

# Module-specific logger
logger = get_logger("service")


class IngestService:
    """Facade over the ingestion pipeline."""

    def __init__(self, db: DatabaseQueue, http, cache: ResponseCache, *,
                 max_failures: int = 25, feed_interval: int = 3600,
                 rate_limit_window: int = 60, rate_limit_threshold: int = 25,
                 rate_limit_sleep: tuple = (5.0, 10.0), rate_limit_max_sleep: Optional[float] = None,
                 concurrency: int = 5, batch_timeout: float = 300.0, news_pool_limit: int = 500,
                 cache_enabled: bool = True, rate_limit_enabled: bool = True,
                 rng: Optional[random.Random] = None) -> None:
        self.db = db
        self.http = http
        self.cache = cache
        self.rng = rng or random.Random()
        self.fetch_log = FetchLog(db, window_seconds=rate_limit_window, threshold=rate_limit_threshold,
                                  sleep_range=rate_limit_sleep, max_sleep=rate_limit_max_sleep, rng=self.rng)
        self.fetcher = Fetcher(http, cache=cache, fetch_log=self.fetch_log,
                               cache_enabled=cache_enabled, rate_limit_enabled=rate_limit_enabled)
        self.link_scheduler = RetryScheduler(max_failures=max_failures, rng=self.rng)
        self.feed_scheduler = RetryScheduler(max_failures=max_failures, min_interval=feed_interval, rng=self.rng)
        self.link_fetcher = LinkFetcher(db, self.fetcher, self.link_scheduler,
                                        concurrency=concurrency, batch_timeout=batch_timeout)
        self.feed_fetcher = FeedFetcher(db, self.fetcher, self.feed_scheduler,
                                        concurrency=concurrency, batch_timeout=batch_timeout)
        self.news_picker = NewsPicker(db, rng=self.rng, pool_limit=news_pool_limit)

    @classmethod
    def from_config(cls, cfg=config) -> "IngestService":
        """Build the service from the global configuration."""
        db = DatabaseQueue(cfg.DATABASE_PATH, schema_path=cfg.SCHEMA_FILE_PATH)
        http = HttpClient(cfg.USER_AGENT, timeout=cfg.HTTP_TIMEOUT, max_redirects=cfg.MAX_REDIRECTS)
        cache = ResponseCache(cfg.CACHE_PATH, ttl_seconds=cfg.CACHE_TTL_SECONDS)
        return cls(
            db, http, cache,
            max_failures=cfg.MAX_FETCH_FAILURES,
            feed_interval=cfg.FEED_FETCH_INTERVAL_SECONDS,
            rate_limit_window=cfg.RATE_LIMIT_WINDOW_SECONDS,
            rate_limit_threshold=cfg.RATE_LIMIT_THRESHOLD,
            rate_limit_sleep=(cfg.RATE_LIMIT_SLEEP_MIN, cfg.RATE_LIMIT_SLEEP_MAX),
            rate_limit_max_sleep=cfg.RATE_LIMIT_MAX_SLEEP,
            concurrency=cfg.FETCH_CONCURRENCY,
            batch_timeout=cfg.BATCH_TIMEOUT,
            news_pool_limit=cfg.NEWS_POOL_LIMIT,
            cache_enabled=cfg.CACHE_ENABLED,
            rate_limit_enabled=cfg.RATE_LIMIT_ENABLED,
        )

    async def start(self) -> None:
        await self.db.start()

    async def close(self) -> None:
        close = getattr(self.http, 'close', None)
        if close is not None:
            await close()
        await self.db.stop()

    async def fetch_due(self, batch_size: int) -> List[LinkOutcome]:
        """Fetch a batch of due links."""
        return await self.link_fetcher.fetch_due(batch_size)

    async def fetch_due_feeds(self, batch_size: int) -> List[FeedOutcome]:
        """Poll a batch of due feed collections."""
        return await self.feed_fetcher.fetch_due_feeds(batch_size)

    async def fetch_link(self, link_id: int) -> LinkOutcome:
        """Fetch one link now, waiting out any rate limit."""
        row = await self.db.execute('get_link', link_id=link_id)
        if row is None:
            raise ValueError(f"Link {link_id} does not exist")
        return await self.link_fetcher.fetch_link(Link.from_row(row))

    @trace_span("service.fetch_feed", tracer_name="service",
                attr_from_args=lambda self, collection_id: {"feed.collection_id": collection_id})
    async def fetch_feed(self, collection_id: int) -> FeedOutcome:
        """Fetch one feed collection now, waiting out any rate limit."""
        row = await self.db.execute('get_collection', collection_id=collection_id)
        if row is None or row['type'] != 'feed':
            raise ValueError(f"Collection {collection_id} is not a feed collection")
        return await self.feed_fetcher.fetch_feed(FeedCollection.from_row(row))

    async def pick_news_candidates(self, user_id: int, options: NewsOptions,
                                   remember: bool = False) -> List[NewsCandidate]:
        """Select news candidates; with remember=True they are added to the user's news queue."""
        candidates = await self.news_picker.pick(user_id, options)
        if remember and candidates:
            await self.news_picker.remember(user_id, candidates)
        return candidates

    def clear_cache(self, url: str) -> bool:
        """Drop the cached response for a URL. Returns False if nothing was cached."""
        return self.cache.remove(ResponseCache.hash(url))

    async def inspect(self, url: str, live: bool = False) -> Optional[bytes]:
        """Raw response for a URL: the last cached one, or a fresh GET with live=True."""
        if not live:
            return self.cache.peek(ResponseCache.hash(url))
        try:
            response = await self.http.get(url)
        except TransportError as e:
            logger.error(f"Could not fetch {url}: {e}")
            return None
        return response.to_bytes()

    async def import_urls(self, user_id: int, urls: List[str], collection_id: Optional[int] = None) -> int:
        """Create unfetched links for the valid URLs the user does not have yet."""
        valid = []
        for url in urls:
            if validate_url(url):
                valid.append(sanitize_url(url))
            else:
                logger.warning(f"Ignoring invalid URL: {url}")
        if not valid:
            return 0
        return await self.db.execute('import_urls', user_id=user_id, urls=valid, collection_id=collection_id)

    async def reset_link(self, link_id: int) -> bool:
        return await self.db.execute('reset_link_failures', link_id=link_id)

    async def prune_fetch_logs(self, retention_hours: int) -> int:
        before = int(time.time()) - retention_hours * 3600
        return await self.db.execute('prune_fetch_logs', before=before)

    async def status(self) -> dict:
        counts = await self.db.execute('get_status_counts', max_failures=self.link_scheduler.max_failures)
        return {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'counts': counts,
        }


def print_link_outcomes(outcomes: List[LinkOutcome]) -> None:
    for outcome in outcomes:
        if outcome.skipped:
            print(f"⏭️  {outcome.url} (rate limited, skipped)")
        elif outcome.error:
            print(f"❌ {outcome.url} [{outcome.status}] {outcome.error[:80]}")
        else:
            print(f"✅ {outcome.url} [{outcome.status}] {outcome.title or ''}")


def print_feed_outcome(outcome: FeedOutcome) -> None:
    if outcome.skipped:
        print(f"⏭️  feed {outcome.collection_id} (rate limited, skipped)")
    elif outcome.error:
        print(f"❌ feed {outcome.collection_id} [{outcome.status}] {outcome.error[:80]}")
    elif outcome.unchanged:
        print(f"💤 feed {outcome.collection_id} unchanged")
    else:
        print(f"✅ feed {outcome.collection_id}: {outcome.created} new, {outcome.renamed} renamed")


def print_status(status: dict) -> None:
    counts = status['counts']
    print(f"\n📊 Resource Ingestor Status")
    print(f"⏰ {status['timestamp']}")
    print(f"\n🔗 Links: {counts['links']}")
    print(f"   🆕 Never fetched: {counts['links_unfetched']}")
    print(f"   ⚠️  Failing: {counts['links_failing']}")
    print(f"   🪦 Abandoned: {counts['links_abandoned']}")
    print(f"\n📡 Feeds: {counts['feeds']} ({counts['feeds_failing']} failing)")
    print(f"\n📝 Fetch log rows: {counts['fetch_logs']}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Resource Ingestor')
    subparsers = parser.add_subparsers(dest='command', required=True)

    fetch_links = subparsers.add_parser('fetch-links', help='Fetch a batch of due links')
    fetch_links.add_argument('--batch-size', type=int, default=config.LINKS_BATCH_SIZE)

    fetch_feeds = subparsers.add_parser('fetch-feeds', help='Fetch a batch of due feed collections')
    fetch_feeds.add_argument('--batch-size', type=int, default=config.FEEDS_BATCH_SIZE)

    fetch_feed = subparsers.add_parser('fetch-feed', help='Fetch one feed collection now')
    fetch_feed.add_argument('collection_id', type=int)

    news = subparsers.add_parser('news', help='Pick news candidates for a user')
    news.add_argument('user_id', type=int)
    news.add_argument('--number', type=int, default=9, help='Number of links to pick')
    news.add_argument('--from', dest='from_', choices=['bookmarks', 'followed'],
                      help='Restrict the source pools')
    news.add_argument('--min-duration', type=int, help='Minimum reading time in minutes')
    news.add_argument('--max-duration', type=int, help='Maximum reading time in minutes')
    news.add_argument('--remember', action='store_true',
                      help='Add the picked links to the news queue so they are not picked again')

    inspect = subparsers.add_parser('inspect', help='Show the cached response of a URL')
    inspect.add_argument('url')
    inspect.add_argument('--live', action='store_true', help='Perform a GET instead of reading the cache')

    uncache = subparsers.add_parser('uncache', help='Remove the cached response of a URL')
    uncache.add_argument('url')

    importer = subparsers.add_parser('import', help='Import URLs as links for a user')
    importer.add_argument('user_id', type=int)
    importer.add_argument('urls', nargs='+')
    importer.add_argument('--collection', type=int, help='Target collection (defaults to bookmarks)')

    reset = subparsers.add_parser('reset', help='Clear the failure history of a link')
    reset.add_argument('link_id', type=int)

    prune = subparsers.add_parser('prune-logs', help='Delete old fetch log rows')
    prune.add_argument('--hours', type=int, default=config.FETCH_LOG_RETENTION_HOURS)

    subparsers.add_parser('status', help='Show ingestion counters')
    return parser


async def run_command(args: argparse.Namespace, service: IngestService) -> int:
    """Run one CLI command and return the process exit code."""
    command = args.command

    if command == 'uncache':
        removed = service.clear_cache(args.url)
        print(f"🧹 Cache cleared for {args.url}" if removed else f"🤷 Nothing cached for {args.url}")
        return 0 if removed else 1

    if command == 'inspect' and not args.live:
        raw = await service.inspect(args.url)
        if raw is None:
            print(f"🤷 Nothing cached for {args.url}")
            return 1
        sys.stdout.write(raw.decode('utf-8', errors='replace'))
        return 0

    await service.start()
    try:
        start_time = time.time()
        if command == 'fetch-links':
            outcomes = await service.fetch_due(args.batch_size)
            print_link_outcomes(outcomes)
            logger.info(f"🎉 {len(outcomes)} links processed in {format_duration(time.time() - start_time)}")
            return 0

        if command == 'fetch-feeds':
            outcomes = await service.fetch_due_feeds(args.batch_size)
            for outcome in outcomes:
                print_feed_outcome(outcome)
            logger.info(f"🎉 {len(outcomes)} feeds processed in {format_duration(time.time() - start_time)}")
            return 0

        if command == 'fetch-feed':
            outcome = await service.fetch_feed(args.collection_id)
            print_feed_outcome(outcome)
            return 1 if outcome.error else 0

        if command == 'news':
            options = NewsOptions(number_links=args.number, from_=args.from_,
                                  min_duration=args.min_duration, max_duration=args.max_duration)
            candidates = await service.pick_news_candidates(args.user_id, options, remember=args.remember)
            if not candidates:
                print("📭 No news candidates")
            for candidate in candidates:
                via = candidate.via_type
                if candidate.via_collection_id is not None:
                    via += f" #{candidate.via_collection_id}"
                print(f"📰 [{via}] {candidate.link.title or candidate.url} <{candidate.url}>")
            return 0

        if command == 'inspect':
            raw = await service.inspect(args.url, live=True)
            if raw is None:
                return 1
            sys.stdout.write(raw.decode('utf-8', errors='replace'))
            return 0

        if command == 'import':
            created = await service.import_urls(args.user_id, args.urls, collection_id=args.collection)
            print(f"📥 {created} links imported")
            return 0

        if command == 'reset':
            reset = await service.reset_link(args.link_id)
            print(f"🔁 Link {args.link_id} reset" if reset else f"🤷 Link {args.link_id} not found")
            return 0 if reset else 1

        if command == 'prune-logs':
            deleted = await service.prune_fetch_logs(args.hours)
            print(f"🧹 {deleted} fetch log rows deleted")
            return 0

        if command == 'status':
            print_status(await service.status())
            return 0

        logger.error(f"Unknown command: {command}")
        return 2
    finally:
        await service.close()


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    init_telemetry("resource-ingestor")
    logger.debug(f"Configuration: {config.get_config_summary()}")
    service = IngestService.from_config(config)

    try:
        sys.exit(asyncio.run(run_command(args, service)))
    except KeyboardInterrupt:
        logger.info("👋 Ingestor shutting down")
    except (ValueError, DatabaseError) as e:
        logger.error(f"❌ {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
