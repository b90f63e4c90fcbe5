#!/usr/bin/env python3
"""
News candidate selection.

Builds a user's news selection from three pools: their own bookmarks, links
of the public collections they follow, and links of collections tagged with
topics they subscribed to. Followed and topic pools exclude URLs already
placed in the user's news queue. No network access happens here.
"""

import random
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from config import get_logger
from resources import Link
from telemetry import trace_span

# Module-specific logger
logger = get_logger("news")

SOURCES = ('bookmarks', 'followed')


@dataclass
class NewsOptions:
    number_links: int = 9
    from_: Optional[str] = None
    min_duration: Optional[int] = None
    max_duration: Optional[int] = None

    def __post_init__(self):
        if self.from_ is not None and self.from_ not in SOURCES:
            raise ValueError(f"Unknown news source: {self.from_}")
        if self.number_links < 0:
            raise ValueError("number_links must not be negative")


# Presets matching the news screen options
NEWSFEED_OPTIONS = NewsOptions(number_links=9, from_='followed')
SHORT_READS_OPTIONS = NewsOptions(number_links=3, from_='bookmarks', max_duration=10)
LONG_READS_OPTIONS = NewsOptions(number_links=1, from_='bookmarks', min_duration=10)


@dataclass
class NewsCandidate:
    link: Link
    via_type: str
    via_collection_id: Optional[int] = None

    @property
    def url(self) -> str:
        return self.link.url


class NewsPicker:
    """Selects a bounded, duplicate-free set of links for a user's news."""

    def __init__(self, db, rng: Optional[random.Random] = None, pool_limit: int = 500):
        self.db = db
        self.rng = rng or random.Random()
        self.pool_limit = pool_limit

    async def _pool(self, operation: str, via_type: str, user_id: int, **params) -> List[NewsCandidate]:
        rows: List[Dict[str, Any]] = await self.db.execute(operation, user_id=user_id, **params)
        candidates = [
            NewsCandidate(link=Link.from_row(row), via_type=via_type, via_collection_id=row.get('via_collection_id'))
            for row in rows
        ]
        self.rng.shuffle(candidates)
        return candidates

    def _within_duration(self, candidate: NewsCandidate, options: NewsOptions) -> bool:
        reading_time = candidate.link.reading_time
        if options.min_duration is not None and reading_time < options.min_duration:
            return False
        if options.max_duration is not None and reading_time > options.max_duration:
            return False
        return True

    @trace_span(
        "news.pick",
        tracer_name="news",
        attr_from_args=lambda self, user_id, options: {
            "news.user_id": user_id,
            "news.number_links": options.number_links,
            "news.from": options.from_ or "",
        },
    )
    async def pick(self, user_id: int, options: NewsOptions) -> List[NewsCandidate]:
        """Return at most options.number_links candidates, in pool order.

        Bookmarks come first, then followed collections, then topics. A URL
        appearing in several pools is kept once, with its first provenance.
        """
        pools: List[NewsCandidate] = []
        if options.from_ in (None, 'bookmarks'):
            pools += await self._pool('list_bookmarks_for_news', 'bookmarks', user_id)
        if options.from_ in (None, 'followed'):
            pools += await self._pool('list_followed_for_news', 'followed', user_id, limit=self.pool_limit)
            pools += await self._pool('list_topics_for_news', 'topics', user_id, limit=self.pool_limit)

        selected: List[NewsCandidate] = []
        seen_urls = set()
        for candidate in pools:
            if len(selected) >= options.number_links:
                break
            if candidate.url in seen_urls or not self._within_duration(candidate, options):
                continue
            seen_urls.add(candidate.url)
            selected.append(candidate)

        logger.info(f"Picked {len(selected)} news candidates for user {user_id} out of {len(pools)}")
        return selected

    async def remember(self, user_id: int, candidates: List[NewsCandidate]) -> int:
        """Record picked URLs in the user's news queue so they are not picked again."""
        entries = [
            {'url': c.url, 'via_type': c.via_type, 'via_collection_id': c.via_collection_id}
            for c in candidates
        ]
        if not entries:
            return 0
        return await self.db.execute('mark_news_seen', user_id=user_id, entries=entries)
