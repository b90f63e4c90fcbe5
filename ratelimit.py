#!/usr/bin/env python3
"""
Per-host fetch log and rate limiter.

Every outbound (non-cached) request is logged with its host and purpose.
A host is considered saturated for a purpose when the number of requests
logged within the sliding window reaches the threshold.
"""

import asyncio
import random
from time import time
from typing import Dict, Optional, Tuple

from config import get_logger
from errors import DatabaseError
from utils import url_host

# Module-specific logger
logger = get_logger("ratelimit")

PURPOSES = ('page', 'feed')


class FetchLog:
    """Sliding-window request counter backed by the fetch_logs table."""

    def __init__(self, db, window_seconds: int = 60, threshold: int = 25,
                 sleep_range: Tuple[float, float] = (5.0, 10.0), max_sleep: Optional[float] = None,
                 rng: Optional[random.Random] = None, clock=time):
        self.db = db
        self.window_seconds = window_seconds
        self.threshold = threshold
        self.sleep_range = sleep_range
        self.max_sleep = max_sleep
        self.rng = rng or random.Random()
        self.clock = clock
        self._host_locks: Dict[str, asyncio.Lock] = {}

    async def log(self, url: str, purpose: str) -> None:
        """Append a fetch log row. Failures are logged, never raised."""
        if purpose not in PURPOSES:
            raise ValueError(f"Unknown fetch purpose: {purpose}")
        try:
            await self.db.execute(
                'log_fetch', url=url, host=url_host(url), fetch_type=purpose, created_at=int(self.clock())
            )
        except DatabaseError as e:
            logger.warning(f"Could not log fetch of {url}: {e}")

    async def has_reached_rate_limit(self, url: str, purpose: str) -> bool:
        """True when the host has `threshold` or more requests in the window."""
        host = url_host(url)
        since = int(self.clock()) - self.window_seconds
        try:
            count = await self.db.execute('count_fetches', host=host, fetch_type=purpose, since=since)
        except DatabaseError as e:
            logger.warning(f"Could not count fetches for {host}: {e}")
            return False
        if count >= self.threshold:
            logger.info(f"Rate limit reached for {host} ({count} {purpose} requests in {self.window_seconds}s)")
            return True
        return False

    def sleep_duration(self) -> float:
        low, high = self.sleep_range
        duration = self.rng.uniform(low, high)
        if self.max_sleep is not None:
            duration = min(duration, self.max_sleep)
        return max(duration, 0.0)

    async def slow_down(self) -> float:
        """Sleep a random delay within the configured range and return it."""
        duration = self.sleep_duration()
        logger.debug(f"Slowing down for {duration:.1f}s")
        await asyncio.sleep(duration)
        return duration

    def host_lock(self, host: str) -> asyncio.Lock:
        """Lock serializing requests to the same host."""
        lock = self._host_locks.get(host)
        if lock is None:
            lock = asyncio.Lock()
            self._host_locks[host] = lock
        return lock
