#!/usr/bin/env python3
"""
Fetch orchestration for links and feeds.

Fetcher is the single path to the network: it serves fresh responses from
the cache, applies the per-host rate limit, logs every outbound request,
caches successful responses and turns failures into FetchResult values.
LinkFetcher and FeedFetcher build on it to refresh link metadata and to
ingest feed entries, either one resource at a time or as scheduled batches.
"""

from asyncio import create_task, get_running_loop, wait, Semaphore, gather
from collections import defaultdict
from dataclasses import dataclass
from functools import partial
from time import time
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, TypeVar

from cache import ResponseCache
from config import get_logger
from differ import reconcile
from errors import DatabaseError, ErrorKind, FeedParseError, TransportError
from extractor import extract, illustration, Dom
from feeds import FeedModel, is_feed_content_type, parse_feed
from http_client import Response
from ratelimit import FetchLog
from resources import FeedCollection, Link
from scheduler import RetryScheduler
from telemetry import trace_span
from utils import absolutize_url, parse_content_type, sanitize_url, truncate_string, url_host

# Module-specific logger
logger = get_logger("fetcher")

HTML_CONTENT_TYPES = ('text/html', 'application/xhtml+xml')
ERROR_BODY_MAX_LENGTH = 500
NAME_MAX_LENGTH = 100

T = TypeVar('T')


@dataclass
class FetchResult:
    """Outcome of a single fetch. Failures are values, not exceptions."""

    url: str
    status: int = 0
    error: Optional[str] = None
    kind: Optional[ErrorKind] = None
    response: Optional[Response] = None
    feed: Optional[FeedModel] = None
    from_cache: bool = False
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.skipped


class Fetcher:
    """Cache, rate limiter and HTTP client in front of every request."""

    def __init__(self, http, cache: Optional[ResponseCache] = None, fetch_log: Optional[FetchLog] = None,
                 cache_enabled: bool = True, rate_limit_enabled: bool = True):
        self.http = http
        self.cache = cache
        self.fetch_log = fetch_log
        self.cache_enabled = cache_enabled and cache is not None
        self.rate_limit_enabled = rate_limit_enabled and fetch_log is not None

    def _cached_response(self, key: str) -> Optional[Response]:
        if not self.cache_enabled:
            return None
        raw = self.cache.get(key)
        if raw is None:
            return None
        try:
            return Response.from_bytes(raw)
        except ValueError as e:
            logger.warning(f"Ignoring unreadable cache entry {key[:12]}: {e}")
            return None

    @trace_span(
        "fetcher.fetch",
        tracer_name="fetcher",
        attr_from_args=lambda self, url, purpose='page', on_rate_limit='wait': {
            "fetch.url": url,
            "fetch.purpose": purpose,
        },
    )
    async def fetch(self, url: str, purpose: str = 'page', on_rate_limit: str = 'wait') -> FetchResult:
        """Fetch a URL for a purpose ('page' or 'feed').

        on_rate_limit decides what happens when the host is saturated:
        'wait' sleeps a random delay then proceeds, 'skip' returns a skipped
        result without touching the network.
        """
        key = ResponseCache.hash(url)
        response = self._cached_response(key)
        from_cache = response is not None

        if response is None:
            host = url_host(url)
            lock = self.fetch_log.host_lock(host) if self.fetch_log else None
            if lock is not None:
                await lock.acquire()
            try:
                if self.rate_limit_enabled and await self.fetch_log.has_reached_rate_limit(url, purpose):
                    if on_rate_limit == 'skip':
                        logger.info(f"Skipping {url} for this run, {host} is rate limited")
                        return FetchResult(url=url, skipped=True)
                    await self.fetch_log.slow_down()

                if self.fetch_log:
                    await self.fetch_log.log(url, purpose)
                try:
                    response = await self.http.get(url)
                except TransportError as e:
                    return FetchResult(url=url, status=0, error=str(e), kind=ErrorKind.TRANSPORT)
            finally:
                if lock is not None:
                    lock.release()

            if response.success and self.cache_enabled:
                self.cache.save(key, response.to_bytes())
        else:
            logger.debug(f"Cache hit for {url}")

        return await self._interpret(url, purpose, response, from_cache)

    async def _interpret(self, url: str, purpose: str, response: Response, from_cache: bool) -> FetchResult:
        result = FetchResult(url=url, status=response.status, response=response, from_cache=from_cache)

        if not response.success:
            body = response.text.strip()
            result.error = truncate_string(body, ERROR_BODY_MAX_LENGTH) if body else f"HTTP {response.status} {response.reason}".strip()
            result.kind = ErrorKind.HTTP
            return result

        if purpose != 'feed':
            return result

        content_type = response.content_type
        if not is_feed_content_type(content_type):
            result.error = f"Invalid content type: {content_type}"
            result.kind = ErrorKind.CONTENT_TYPE
            return result

        try:
            loop = get_running_loop()
            result.feed = await loop.run_in_executor(None, partial(parse_feed, response.body))
        except FeedParseError as e:
            result.error = str(e)
            result.kind = ErrorKind.PARSE
        return result


async def run_grouped(items: Iterable[T], key: Callable[[T], str], worker: Callable[[T], Awaitable[Any]],
                      concurrency: int, timeout: float) -> List[Any]:
    """Run worker over items, groups in parallel, items of a group one by one.

    Groups are bounded by a semaphore and the whole run by timeout; groups
    still running when it expires are cancelled and their remaining items
    are left for the next run.
    """
    groups: Dict[str, List[T]] = defaultdict(list)
    for item in items:
        groups[key(item)].append(item)
    if not groups:
        return []

    results: List[Any] = []
    semaphore = Semaphore(max(1, concurrency))

    async def run_group(group_items: List[T]) -> None:
        async with semaphore:
            for item in group_items:
                results.append(await worker(item))

    tasks = [create_task(run_group(group_items)) for group_items in groups.values()]
    done, pending = await wait(tasks, timeout=timeout)

    if pending:
        logger.warning(f"Batch timed out after {timeout}s, {len(pending)} host group(s) left for the next run")
        for task in pending:
            task.cancel()
        await gather(*pending, return_exceptions=True)

    for task in done:
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Unexpected error in batch worker: {task.exception()}")

    return results


@dataclass
class LinkOutcome:
    link_id: int
    url: str
    status: int = 0
    error: Optional[str] = None
    kind: Optional[ErrorKind] = None
    title: Optional[str] = None
    from_cache: bool = False
    skipped: bool = False


class LinkFetcher:
    """Refreshes links: fetch status, title, reading time and illustration."""

    def __init__(self, db, fetcher: Fetcher, scheduler: RetryScheduler,
                 concurrency: int = 5, batch_timeout: float = 300.0):
        self.db = db
        self.fetcher = fetcher
        self.scheduler = scheduler
        self.concurrency = concurrency
        self.batch_timeout = batch_timeout

    @trace_span(
        "fetch_link",
        tracer_name="fetcher",
        attr_from_args=lambda self, link, on_rate_limit='wait': {"link.id": link.id, "link.url": link.url},
    )
    async def fetch_link(self, link: Link, on_rate_limit: str = 'wait') -> LinkOutcome:
        """Fetch one link and record the outcome."""
        result = await self.fetcher.fetch(link.url, 'page', on_rate_limit=on_rate_limit)
        outcome = LinkOutcome(link_id=link.id, url=link.url, status=result.status, error=result.error,
                              kind=result.kind, from_cache=result.from_cache, skipped=result.skipped)
        if result.skipped:
            return outcome

        now = int(time())
        if not result.ok:
            logger.info(f"Link {link.id} failed ({result.kind.value if result.kind else 'error'}): {truncate_string(result.error, 120)}")
            await self.db.execute('update_link_fetch', link_id=link.id, fetched_at=now,
                                  fetched_code=result.status, fetched_error=result.error)
            return outcome

        fields: Dict[str, Any] = {}
        mime, _ = parse_content_type(result.response.content_type)
        if mime in HTML_CONTENT_TYPES:
            loop = get_running_loop()
            extracted = await loop.run_in_executor(None, partial(extract, result.response.text, link.url))
            fields = {
                'title': extracted.title,
                'reading_time': extracted.reading_time,
                'image_url': extracted.illustration,
            }
            outcome.title = extracted.title or None

        await self.db.execute('update_link_fetch', link_id=link.id, fetched_at=now,
                              fetched_code=result.status, fetched_error=None, **fields)
        return outcome

    async def _fetch_link_in_batch(self, link: Link) -> Optional[LinkOutcome]:
        try:
            return await self.fetch_link(link, on_rate_limit='skip')
        except DatabaseError as e:
            logger.error(f"Could not record fetch of link {link.id}: {e}")
            return None
        except Exception as e:
            logger.error(f"Unexpected error fetching link {link.id}: {e}", exc_info=True)
            return await self._record_unexpected_failure(link, e)

    async def _record_unexpected_failure(self, link: Link, error: Exception) -> Optional[LinkOutcome]:
        """Count a crash while processing a link as a failed fetch, so it backs off."""
        message = truncate_string(f"Unexpected error: {error}", ERROR_BODY_MAX_LENGTH)
        try:
            await self.db.execute('update_link_fetch', link_id=link.id, fetched_at=int(time()),
                                  fetched_code=0, fetched_error=message)
        except DatabaseError as e:
            logger.error(f"Could not record failure of link {link.id}: {e}")
            return None
        return LinkOutcome(link_id=link.id, url=link.url, error=message)

    @trace_span("fetch_due_links", tracer_name="fetcher")
    async def fetch_due(self, batch_size: int, now: Optional[int] = None) -> List[LinkOutcome]:
        """Fetch a random batch of due links, hosts in parallel, same host in sequence."""
        rows = await self.db.execute('list_link_fetch_candidates', max_failures=self.scheduler.max_failures)
        links = self.scheduler.select_due([Link.from_row(row) for row in rows], batch_size, now)
        if not links:
            logger.debug("No links due for fetching")
            return []

        logger.info(f"Fetching {len(links)} due links")
        outcomes = await run_grouped(links, lambda link: url_host(link.url), self._fetch_link_in_batch,
                                     self.concurrency, self.batch_timeout)
        outcomes = [outcome for outcome in outcomes if outcome is not None]
        failed = sum(1 for outcome in outcomes if outcome.error)
        skipped = sum(1 for outcome in outcomes if outcome.skipped)
        logger.info(f"Links batch done: {len(outcomes)} processed, {failed} failed, {skipped} skipped")
        return outcomes


@dataclass
class FeedOutcome:
    collection_id: int
    status: int = 0
    error: Optional[str] = None
    kind: Optional[ErrorKind] = None
    unchanged: bool = False
    created: int = 0
    renamed: int = 0
    skipped: bool = False


class FeedFetcher:
    """Ingests feed collections: metadata, new entries, renamed entries, illustration."""

    def __init__(self, db, fetcher: Fetcher, scheduler: RetryScheduler,
                 concurrency: int = 5, batch_timeout: float = 300.0):
        self.db = db
        self.fetcher = fetcher
        self.scheduler = scheduler
        self.concurrency = concurrency
        self.batch_timeout = batch_timeout

    @trace_span(
        "fetch_feed",
        tracer_name="fetcher",
        attr_from_args=lambda self, collection, on_rate_limit='wait': {
            "feed.collection_id": collection.id,
            "feed.url": collection.url,
        },
    )
    async def fetch_feed(self, collection: FeedCollection, on_rate_limit: str = 'wait') -> FeedOutcome:
        """Fetch a feed collection and reconcile its entries."""
        result = await self.fetcher.fetch(collection.feed_url, 'feed', on_rate_limit=on_rate_limit)
        outcome = FeedOutcome(collection_id=collection.id, status=result.status, error=result.error,
                              kind=result.kind, skipped=result.skipped)
        if result.skipped:
            return outcome

        now = int(time())
        if not result.ok:
            logger.info(f"Feed {collection.id} failed ({result.kind.value if result.kind else 'error'}): {truncate_string(result.error, 120)}")
            await self.db.execute('update_feed_fetch', collection_id=collection.id, fetched_at=now,
                                  fetched_code=result.status, fetched_error=result.error)
            return outcome

        feed = result.feed
        feed_hash = feed.hash()
        if feed_hash == collection.feed_last_hash:
            logger.debug(f"Feed {collection.id} did not change")
            await self.db.execute('update_feed_fetch', collection_id=collection.id, fetched_at=now,
                                  fetched_code=result.status, fetched_error=None)
            outcome.unchanged = True
            return outcome

        name = feed.title.strip()[:NAME_MAX_LENGTH]
        if feed.link:
            site_url = sanitize_url(absolutize_url(feed.link, collection.feed_url))
        else:
            site_url = collection.feed_url
        await self.db.execute('update_feed_metadata', collection_id=collection.id, name=name,
                              description=feed.description.strip(), feed_site_url=site_url)

        known_urls = await self.db.execute('list_link_ids_by_urls_for_collection', collection_id=collection.id)
        known_entries = await self.db.execute('list_links_by_entry_ids_for_collection', collection_id=collection.id)
        plan = reconcile(feed, collection.feed_url, known_urls, known_entries, now=now)
        if not plan.is_empty:
            counts = await self.db.execute('apply_feed_plan', collection_id=collection.id,
                                           user_id=collection.user_id, now=now, **plan.as_params())
            outcome.created = counts['created']
            outcome.renamed = counts['renamed']

        # The hash is stored once the entries are persisted
        await self.db.execute('update_feed_fetch', collection_id=collection.id, fetched_at=now,
                              fetched_code=result.status, fetched_error=None, feed_hash=feed_hash)
        logger.info(f"Feed {collection.id}: {outcome.created} new, {outcome.renamed} renamed, {plan.skipped} known")

        if collection.image_fetched_at is None:
            try:
                await self._fetch_image(collection, site_url)
            except Exception as e:
                # Entries are already stored; the illustration is retried next time
                logger.warning(f"Could not store illustration for feed {collection.id}: {e}")

        return outcome

    async def _fetch_image(self, collection: FeedCollection, site_url: str) -> None:
        """Look for an illustration on the feed's site. Failures leave it unset."""
        result = await self.fetcher.fetch(site_url, 'page')
        if not result.ok:
            logger.debug(f"No illustration for feed {collection.id}: {result.error}")
            return

        now = int(time())
        mime, _ = parse_content_type(result.response.content_type)
        image_url = None
        if mime in HTML_CONTENT_TYPES:
            image_url = illustration(Dom.from_text(result.response.text), site_url) or None
        await self.db.execute('update_feed_image', collection_id=collection.id,
                              image_fetched_at=now, image_url=image_url)

    async def _fetch_feed_in_batch(self, collection: FeedCollection) -> Optional[FeedOutcome]:
        try:
            return await self.fetch_feed(collection, on_rate_limit='skip')
        except DatabaseError as e:
            logger.error(f"Could not record fetch of feed {collection.id}: {e}")
            return None
        except Exception as e:
            logger.error(f"Unexpected error fetching feed {collection.id}: {e}", exc_info=True)
            return await self._record_unexpected_failure(collection, e)

    async def _record_unexpected_failure(self, collection: FeedCollection,
                                         error: Exception) -> Optional[FeedOutcome]:
        message = truncate_string(f"Unexpected error: {error}", ERROR_BODY_MAX_LENGTH)
        try:
            await self.db.execute('update_feed_fetch', collection_id=collection.id, fetched_at=int(time()),
                                  fetched_code=0, fetched_error=message)
        except DatabaseError as e:
            logger.error(f"Could not record failure of feed {collection.id}: {e}")
            return None
        return FeedOutcome(collection_id=collection.id, error=message)

    @trace_span("fetch_due_feeds", tracer_name="fetcher")
    async def fetch_due_feeds(self, batch_size: int, now: Optional[int] = None) -> List[FeedOutcome]:
        """Poll a random batch of due feeds."""
        rows = await self.db.execute('list_feed_fetch_candidates', max_failures=self.scheduler.max_failures)
        collections = self.scheduler.select_due([FeedCollection.from_row(row) for row in rows], batch_size, now)
        if not collections:
            logger.debug("No feeds due for fetching")
            return []

        logger.info(f"Fetching {len(collections)} due feeds")
        outcomes = await run_grouped(collections, lambda collection: url_host(collection.feed_url),
                                     self._fetch_feed_in_batch, self.concurrency, self.batch_timeout)
        return [outcome for outcome in outcomes if outcome is not None]
