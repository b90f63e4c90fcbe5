#!/usr/bin/env python3
"""
Retry scheduling for links and feeds.

Decides which resources are due for a fetch. Failed resources back off
polynomially (5 + failures^4 seconds) and are abandoned once they exceed the
failure ceiling; successful resources are only refetched when a minimum
interval is configured (feed polling).
"""

import random
from time import time
from typing import Iterable, List, Optional, TypeVar

from config import get_logger
from resources import Resource

# Module-specific logger
logger = get_logger("scheduler")

R = TypeVar('R', bound=Resource)

BASE_WAIT_SECONDS = 5


class RetryScheduler:
    """Failure-aware selection of due resources."""

    def __init__(self, max_failures: int = 25, min_interval: Optional[int] = None,
                 rng: Optional[random.Random] = None):
        self.max_failures = max_failures
        self.min_interval = min_interval
        self.rng = rng or random.Random()

    @staticmethod
    def wait_seconds(failure_count: int) -> int:
        """Seconds to wait after the given number of consecutive failures."""
        return BASE_WAIT_SECONDS + failure_count ** 4

    def is_due(self, resource: Resource, now: Optional[int] = None) -> bool:
        if resource.never_fetched:
            return True
        if resource.fetched_count > self.max_failures:
            return False

        now = int(time()) if now is None else now
        elapsed = now - resource.fetched_at
        if resource.in_error:
            return elapsed >= self.wait_seconds(resource.fetched_count)
        if self.min_interval is not None:
            return elapsed >= self.min_interval
        return False

    def select_due(self, resources: Iterable[R], batch_size: int, now: Optional[int] = None) -> List[R]:
        """Random sample of at most batch_size due resources."""
        now = int(time()) if now is None else now
        due = [resource for resource in resources if self.is_due(resource, now)]
        if len(due) > batch_size:
            due = self.rng.sample(due, batch_size)
        else:
            self.rng.shuffle(due)
        logger.debug(f"{len(due)} resources selected for this batch")
        return due
