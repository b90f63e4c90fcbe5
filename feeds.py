#!/usr/bin/env python3
"""
Syndication feed parsing.

Turns RSS/Atom/RDF payloads into a small normalized model (title,
description, site link, entries) and computes a content hash used to detect
feeds that did not change since the last fetch.
"""

import json
from calendar import timegm
from dataclasses import dataclass, field, asdict
from hashlib import sha256
from typing import List, Optional, Union

import feedparser

from config import get_logger
from errors import FeedParseError
from utils import parse_content_type

# Module-specific logger
logger = get_logger("feeds")

FEED_CONTENT_TYPES = {
    'application/atom+xml',
    'application/rss+xml',
    'application/rdf+xml',
    'application/xml',
    'text/xml',
}

FEEDPARSER_OPTIONS = {
    'sanitize_html': True,
    'resolve_relative_uris': False,  # links are absolutized against the feed URL by the caller
}


@dataclass
class FeedEntry:
    link: str
    title: str = ""
    id: Optional[str] = None
    published: Optional[int] = None


@dataclass
class FeedModel:
    title: str = ""
    description: str = ""
    link: str = ""
    entries: List[FeedEntry] = field(default_factory=list)

    def hash(self) -> str:
        """SHA-256 of a canonical JSON dump of the model."""
        canonical = json.dumps(asdict(self), sort_keys=True, ensure_ascii=False, separators=(',', ':'))
        return sha256(canonical.encode('utf-8')).hexdigest()


def is_feed_content_type(content_type: Optional[str]) -> bool:
    mime, _ = parse_content_type(content_type)
    return mime in FEED_CONTENT_TYPES


def _entry_timestamp(entry) -> Optional[int]:
    for key in ('published_parsed', 'updated_parsed', 'created_parsed'):
        value = entry.get(key)
        if value:
            try:
                return int(timegm(value))
            except (OverflowError, ValueError, TypeError):
                logger.debug(f"Ignoring unusable {key} value {value!r}")
    return None


def _text(value) -> str:
    return (value or "").strip() if isinstance(value, str) else ""


def parse_feed(data: Union[bytes, str]) -> FeedModel:
    """Parse a feed payload.

    Entries without a link are dropped. Links are kept as published
    (possibly relative).

    Raises:
        FeedParseError: If the payload is not a recognizable RSS/Atom/RDF feed.
    """
    parsed = feedparser.parse(data, **FEEDPARSER_OPTIONS)

    if not parsed.get('version'):
        reason = parsed.get('bozo_exception') or "unrecognized feed format"
        raise FeedParseError(f"Invalid feed: {reason}")

    if parsed.get('bozo') and parsed.get('bozo_exception'):
        logger.warning(f"Feed parsing warning: {parsed.bozo_exception}")

    channel = parsed.get('feed', {})
    model = FeedModel(
        title=_text(channel.get('title')),
        description=_text(channel.get('subtitle') or channel.get('description')),
        link=_text(channel.get('link')),
    )

    for entry in parsed.get('entries', []):
        link = _text(entry.get('link'))
        if not link:
            continue
        model.entries.append(FeedEntry(
            link=link,
            title=_text(entry.get('title')),
            id=_text(entry.get('id')) or None,
            published=_entry_timestamp(entry),
        ))

    logger.debug(f"Parsed {parsed.version} feed '{model.title}' with {len(model.entries)} entries")
    return model
