#!/usr/bin/env python3
"""
Reconciliation of feed entries against the links already in a collection.

For every entry the plan decides one of three things:
  - skip: the entry URL is already in the collection
  - rename: the entry id is known under another URL (the publisher changed
    the URL); the existing link is updated in place and refetched
  - create: a new link is added to the collection
"""

from dataclasses import dataclass, field, asdict
from time import time
from typing import Any, Dict, List, Optional

from config import get_logger
from feeds import FeedModel
from utils import absolutize_url, sanitize_url

# Module-specific logger
logger = get_logger("differ")


@dataclass
class LinkCreate:
    url: str
    title: str
    created_at: int
    feed_entry_id: str


@dataclass
class LinkRename:
    link_id: int
    url: str
    title: str
    created_at: int


@dataclass
class FeedPlan:
    creates: List[LinkCreate] = field(default_factory=list)
    renames: List[LinkRename] = field(default_factory=list)
    skipped: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.creates and not self.renames

    def as_params(self) -> Dict[str, List[Dict[str, Any]]]:
        """Plan as plain dicts for the apply_feed_plan database operation."""
        return {
            'creates': [asdict(create) for create in self.creates],
            'renames': [asdict(rename) for rename in self.renames],
        }


def reconcile(feed: FeedModel, feed_url: str, known_urls: Dict[str, int],
              known_entries: Dict[str, Dict[str, Any]], now: Optional[int] = None) -> FeedPlan:
    """Build the plan turning feed entries into collection links.

    Args:
        feed: Parsed feed
        feed_url: URL the feed was fetched from, used to absolutize entry links
        known_urls: URL -> link id for links already in the collection
        known_entries: feed entry id -> {'id', 'url'} for links already in the collection
        now: Timestamp used for entries without a publication date
    """
    now = int(time()) if now is None else now
    known_urls = dict(known_urls)
    renamed_entries = set()
    plan = FeedPlan()

    for entry in feed.entries:
        if not entry.link:
            continue

        url = sanitize_url(absolutize_url(entry.link, feed_url))
        if not url or url in known_urls:
            plan.skipped += 1
            continue

        created_at = entry.published or now
        feed_entry_id = entry.id or url

        if feed_entry_id in renamed_entries:
            # The first URL listed for a moved entry wins
            plan.skipped += 1
            continue

        known = known_entries.get(feed_entry_id)
        if known is not None and known['url'] != url:
            logger.debug(f"Entry {feed_entry_id} moved from {known['url']} to {url}")
            plan.renames.append(LinkRename(link_id=known['id'], url=url, title=url, created_at=created_at))
            known_urls[url] = known['id']
            renamed_entries.add(feed_entry_id)
        else:
            plan.creates.append(LinkCreate(
                url=url,
                title=entry.title.strip() or url,
                created_at=created_at,
                feed_entry_id=feed_entry_id,
            ))
            # Later duplicates of the same URL in this feed are skipped
            known_urls[url] = 0

    return plan
