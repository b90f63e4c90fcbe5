#!/usr/bin/env python3
"""
Content extraction from HTML pages.

Dom wraps a BeautifulSoup node and exposes the few queries the heuristics
need. Each heuristic is an ordered tuple of strategies; the first one that
yields a non-empty value wins. Nothing found is not an error: the result is
an empty string.
"""

from copy import copy
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from bs4 import BeautifulSoup, Tag
from soupsieve import SelectorSyntaxError

from config import get_logger
from utils import absolutize_url, sanitize_url

# Module-specific logger
logger = get_logger("extractor")

WORDS_PER_MINUTE = 200


class Dom:
    """Queryable view of an HTML node (CSS selectors, relative to the node)."""

    def __init__(self, node: Tag):
        self.node = node

    @classmethod
    def from_text(cls, html: str) -> "Dom":
        return cls(BeautifulSoup(html or "", 'html.parser'))

    def select(self, query: str) -> Optional["Dom"]:
        """First node matching the query, as a detached copy.

        Returns None when nothing matches or the query is invalid. Changes
        made to the returned Dom never affect this one.
        """
        try:
            found = self.node.select_one(query)
        except SelectorSyntaxError as e:
            logger.debug(f"Invalid selector '{query}': {e}")
            return None
        return Dom(copy(found)) if found is not None else None

    def select_all(self, query: str) -> List["Dom"]:
        try:
            found = self.node.select(query)
        except SelectorSyntaxError as e:
            logger.debug(f"Invalid selector '{query}': {e}")
            return []
        return [Dom(copy(tag)) for tag in found]

    def remove(self, query: str) -> int:
        """Remove every node matching the query from this node; returns how many."""
        try:
            found = self.node.select(query)
        except SelectorSyntaxError as e:
            logger.debug(f"Invalid selector '{query}': {e}")
            return 0
        for tag in found:
            tag.decompose()
        return len(found)

    def attr(self, name: str) -> str:
        value = self.node.get(name) if isinstance(self.node, Tag) else None
        if isinstance(value, list):
            value = " ".join(value)
        return (value or "").strip()

    def text(self) -> str:
        """Text content with whitespace collapsed to single spaces."""
        return " ".join(self.node.get_text(" ").split())


@dataclass
class ExtractedContent:
    title: str = ""
    content: str = ""
    illustration: str = ""

    @property
    def reading_time(self) -> int:
        return reading_time(self.content)


def _meta_content(query: str) -> Callable[[Dom], str]:
    def strategy(dom: Dom) -> str:
        node = dom.select(query)
        return node.attr('content') if node else ""
    return strategy


def _link_href(query: str) -> Callable[[Dom], str]:
    def strategy(dom: Dom) -> str:
        node = dom.select(query)
        return node.attr('href') if node else ""
    return strategy


def _node_text(query: str) -> Callable[[Dom], str]:
    def strategy(dom: Dom) -> str:
        node = dom.select(query)
        return node.text() if node else ""
    return strategy


def _title_outside_svg(dom: Dom) -> str:
    for tag in dom.node.find_all('title'):
        if tag.find_parent('svg') is None:
            return " ".join(tag.get_text(" ").split())
    return ""


TITLE_STRATEGIES: Tuple[Callable[[Dom], str], ...] = (
    _meta_content('head meta[property="og:title"]'),
    _meta_content('head meta[name="twitter:title"]'),
    _node_text('head > title'),
    # Some sites put their meta and title tags in the body
    _meta_content('meta[property="og:title"]'),
    _meta_content('meta[name="twitter:title"]'),
    _title_outside_svg,
)

ILLUSTRATION_STRATEGIES: Tuple[Callable[[Dom], str], ...] = (
    _meta_content('head meta[property="og:image"]'),
    _meta_content('head meta[name="twitter:image"]'),
    _meta_content('meta[property="og:image"], meta[property="og:image:url"]'),
    _meta_content('meta[name="twitter:image"], meta[name="twitter:image:src"]'),
    _link_href('link[rel~="image_src"]'),
)


def _first_match(dom: Dom, strategies: Tuple[Callable[[Dom], str], ...]) -> str:
    for strategy in strategies:
        value = strategy(dom)
        if value:
            return value
    return ""


def title(dom: Dom) -> str:
    """Best-effort page title."""
    return _first_match(dom, TITLE_STRATEGIES)


def content(dom: Dom) -> str:
    """Main text of the page: <main>, else #main, else the whole body (scripts removed).

    Documents that leave out the <body> tag use everything outside the head.
    """
    body = dom.select('body')
    if body is None:
        body = dom.select('html') or Dom(copy(dom.node))
        body.remove('head, title')

    main_node = body.select('main') or body.select('#main') or body
    main_node.remove('script')
    return main_node.text()


def illustration(dom: Dom, base_url: str) -> str:
    """Representative image URL, absolute and sanitized, or an empty string."""
    url = _first_match(dom, ILLUSTRATION_STRATEGIES)
    if not url:
        return ""
    return sanitize_url(absolutize_url(url, base_url))


def reading_time(text: str) -> int:
    """Estimated reading time in minutes."""
    return len(text.split()) // WORDS_PER_MINUTE


def extract(html: str, base_url: str) -> ExtractedContent:
    """Run every heuristic over an HTML document."""
    dom = Dom.from_text(html)
    return ExtractedContent(
        title=title(dom),
        content=content(dom),
        illustration=illustration(dom, base_url),
    )
