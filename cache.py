#!/usr/bin/env python3
"""
On-disk response cache.

Each entry is a file named after the SHA-256 of the sanitized URL and holds
the raw serialized HTTP response. The file modification time is the entry's
freshness: reads older than the TTL are misses. There is no other eviction.
"""

from hashlib import sha256
from os import makedirs, path, replace, remove as remove_file
from time import time
from typing import Optional
import tempfile

from config import get_logger
from utils import sanitize_url

# Module-specific logger
logger = get_logger("cache")


class ResponseCache:
    """File-per-URL cache of raw HTTP responses with TTL-on-read freshness."""

    def __init__(self, cache_path: str, ttl_seconds: int = 3600):
        self.cache_path = cache_path
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def hash(url: str) -> str:
        """Return the cache key for a URL (hex SHA-256 of its sanitized form)."""
        return sha256(sanitize_url(url).encode('utf-8')).hexdigest()

    def _entry_path(self, key: str) -> str:
        return path.join(self.cache_path, key)

    def get(self, key: str) -> Optional[bytes]:
        """Return the cached bytes for a key, or None when missing or stale."""
        entry_path = self._entry_path(key)
        try:
            age = time() - path.getmtime(entry_path)
        except OSError:
            return None
        if age > self.ttl_seconds:
            logger.debug(f"Cache entry {key[:12]} is stale ({int(age)}s old)")
            return None
        try:
            with open(entry_path, 'rb') as f:
                return f.read()
        except OSError as e:
            logger.warning(f"Could not read cache entry {key[:12]}: {e}")
            return None

    def peek(self, key: str) -> Optional[bytes]:
        """Return the stored bytes for a key regardless of age."""
        try:
            with open(self._entry_path(key), 'rb') as f:
                return f.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning(f"Could not read cache entry {key[:12]}: {e}")
            return None

    def save(self, key: str, raw: bytes) -> bool:
        """Write an entry atomically, overwriting any previous value.

        Returns False (after logging) when the write fails.
        """
        entry_path = self._entry_path(key)
        tmp_path = None
        try:
            makedirs(self.cache_path, exist_ok=True)
            # Atomic write
            with tempfile.NamedTemporaryFile(mode='wb', suffix='.tmp', dir=self.cache_path, delete=False) as tf:
                tmp_path = tf.name
                tf.write(raw)
            replace(tmp_path, entry_path)
            return True
        except OSError as e:
            logger.warning(f"Could not write cache entry {key[:12]}: {e}")
            try:
                if tmp_path and path.exists(tmp_path):
                    remove_file(tmp_path)
            except OSError:
                pass
            return False

    def remove(self, key: str) -> bool:
        """Delete an entry. Returns True if a file was removed."""
        try:
            remove_file(self._entry_path(key))
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning(f"Could not remove cache entry {key[:12]}: {e}")
            return False
