#!/usr/bin/env python3
"""
Utility functions for the ingestion pipeline.

This module contains shared helpers used by the fetcher, the cache and the
extractor: URL validation and normalization, charset handling for response
bodies, and small formatting helpers for log messages.
"""

from typing import Optional, Tuple
import re
from urllib.parse import urljoin, urlsplit, urlunsplit, parse_qsl, urlencode

from bs4 import UnicodeDammit

from config import get_logger

# Module-specific logger
logger = get_logger("utils")

# Query parameters that only carry click tracking and never change the resource
TRACKING_PARAMS = {
    "fbclid", "gclid", "dclid", "msclkid", "mc_cid", "mc_eid",
    "_hsenc", "_hsmi", "igshid", "yclid", "ref_src",
}
TRACKING_PARAM_PREFIXES = ("utm_", "pk_", "mtm_")

CHARSET_RE = re.compile(r'charset\s*=\s*["\']?([\w.:-]+)', re.I)


def validate_url(url: str) -> bool:
    """Validate if a string is a properly formatted URL.

    Args:
        url: The URL string to validate

    Returns:
        True if the URL appears to be valid, False otherwise
    """
    if not url or not isinstance(url, str):
        return False

    url = url.strip()
    if not url:
        return False

    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    return parts.scheme in ('http', 'https') and bool(parts.hostname) and '.' in parts.hostname


def url_host(url: str) -> str:
    """Return the lowercased host of a URL, or an empty string."""
    if not url:
        return ""
    try:
        return (urlsplit(url.strip()).hostname or "").lower()
    except ValueError:
        return ""


def absolutize_url(url: Optional[str], base_url: str) -> str:
    """Resolve a possibly relative URL against the URL of the document containing it."""
    if not url:
        return ""
    url = url.strip()
    if not url:
        return ""
    try:
        return urljoin(base_url, url)
    except ValueError:
        logger.debug(f"Cannot absolutize '{url}' against '{base_url}'")
        return url


def _is_tracking_param(name: str) -> bool:
    lowered = name.lower()
    return lowered in TRACKING_PARAMS or lowered.startswith(TRACKING_PARAM_PREFIXES)


def sanitize_url(url: Optional[str]) -> str:
    """Normalize an absolute URL so that equivalent URLs compare equal.

    - Strips surrounding whitespace and the fragment
    - Lowercases scheme and host, removes default ports
    - Drops click-tracking query parameters (utm_*, fbclid, ...)
    - Uses "/" for an empty path

    Non-HTTP(S) or unparsable values are returned stripped but otherwise untouched.
    """
    if not url:
        return ""
    url = url.strip()
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    scheme = parts.scheme.lower()
    if scheme not in ('http', 'https') or not parts.netloc:
        return url

    netloc = parts.netloc.lower()
    if (scheme == 'http' and netloc.endswith(':80')) or (scheme == 'https' and netloc.endswith(':443')):
        netloc = netloc.rsplit(':', 1)[0]

    original_pairs = parse_qsl(parts.query, keep_blank_values=True)
    query_pairs = [(key, value) for key, value in original_pairs if not _is_tracking_param(key)]
    if len(query_pairs) == len(original_pairs):
        # Keep the publisher's exact encoding when nothing was removed
        query = parts.query
    else:
        query = urlencode(query_pairs, doseq=True)

    return urlunsplit((scheme, netloc, parts.path or "/", query, ""))


def parse_content_type(content_type: Optional[str]) -> Tuple[str, Optional[str]]:
    """Split a Content-Type header into (mime type, charset)."""
    if not content_type:
        return "", None
    mime = content_type.split(';', 1)[0].strip().lower()
    match = CHARSET_RE.search(content_type)
    charset = match.group(1).lower() if match else None
    return mime, charset


def decode_body(body: bytes, content_type: Optional[str] = None) -> str:
    """Convert a response body to text.

    UTF-8 bodies (declared in the Content-Type header) are decoded directly;
    anything else goes through UnicodeDammit, which tries the declared charset,
    then the document's own declarations, then detection.
    """
    if not body:
        return ""
    _, charset = parse_content_type(content_type)
    if charset in ('utf-8', 'utf8'):
        return body.decode('utf-8', errors='replace')

    known = [charset] if charset else []
    dammit = UnicodeDammit(body, known_definite_encodings=known, is_html=True)
    if dammit.unicode_markup is None:
        logger.debug("Charset detection failed, falling back to lossy UTF-8")
        return body.decode('utf-8', errors='replace')
    return dammit.unicode_markup


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted duration string (e.g., "2d 1h 23m 45s")
    """
    if seconds < 0:
        return "0s"

    days = int(seconds // 86400)
    hours = int((seconds % 86400) // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    parts = []
    if days > 0:
        parts.append(f"{days}d")
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:  # Always show seconds if nothing else
        parts.append(f"{secs}s")

    return " ".join(parts)


def truncate_string(text: str, max_length: int, suffix: str = "...") -> str:
    """Truncate a string to a maximum length, adding a suffix if truncated.

    Args:
        text: The text to potentially truncate
        max_length: Maximum allowed length (including suffix)
        suffix: Suffix to add when truncating

    Returns:
        The original text or truncated version with suffix
    """
    if not text or len(text) <= max_length:
        return text

    if len(suffix) >= max_length:
        return text[:max_length]

    return text[:max_length - len(suffix)] + suffix
