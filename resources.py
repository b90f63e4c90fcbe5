#!/usr/bin/env python3
"""
Domain records for fetchable resources.

Links and feed-backed collections share the fetch bookkeeping used by the
retry scheduler: last fetch time, status code, error and the consecutive
failure count. Rows from the database map onto these via from_row().
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass
class Resource:
    """A fetchable URL with its fetch history."""

    url: str
    fetched_at: Optional[int] = None
    fetched_code: int = 0
    fetched_error: Optional[str] = None
    fetched_count: int = 0

    @property
    def never_fetched(self) -> bool:
        return self.fetched_at is None

    @property
    def in_error(self) -> bool:
        return self.fetched_error is not None


@dataclass
class Link(Resource):
    id: int = 0
    user_id: int = 0
    title: str = ""
    created_at: int = 0
    reading_time: int = 0
    image_url: Optional[str] = None
    is_hidden: bool = False
    feed_entry_id: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Link":
        return cls(
            id=row['id'],
            user_id=row['user_id'],
            url=row['url'],
            title=row.get('title') or "",
            created_at=row.get('created_at') or 0,
            reading_time=row.get('reading_time') or 0,
            image_url=row.get('image_url'),
            is_hidden=bool(row.get('is_hidden')),
            feed_entry_id=row.get('feed_entry_id'),
            fetched_at=row.get('fetched_at'),
            fetched_code=row.get('fetched_code') or 0,
            fetched_error=row.get('fetched_error'),
            fetched_count=row.get('fetched_count') or 0,
        )


@dataclass
class FeedCollection(Resource):
    """A collection whose links come from a syndication feed.

    The collection's feed_* columns are exposed under the generic Resource
    names so the scheduler can treat links and feeds alike.
    """

    id: int = 0
    user_id: int = 0
    name: str = ""
    description: str = ""
    feed_site_url: Optional[str] = None
    feed_last_hash: Optional[str] = None
    image_url: Optional[str] = None
    image_fetched_at: Optional[int] = None
    is_public: bool = True

    @property
    def feed_url(self) -> str:
        return self.url

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "FeedCollection":
        return cls(
            id=row['id'],
            user_id=row['user_id'],
            url=row['feed_url'],
            name=row.get('name') or "",
            description=row.get('description') or "",
            feed_site_url=row.get('feed_site_url'),
            feed_last_hash=row.get('feed_last_hash'),
            image_url=row.get('image_url'),
            image_fetched_at=row.get('image_fetched_at'),
            is_public=bool(row.get('is_public', 1)),
            fetched_at=row.get('feed_fetched_at'),
            fetched_code=row.get('feed_fetched_code') or 0,
            fetched_error=row.get('feed_fetched_error'),
            fetched_count=row.get('feed_fetched_count') or 0,
        )
