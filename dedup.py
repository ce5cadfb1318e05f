"""
Suppression of duplicate Telegram updates.

Telegram may deliver the same callback query or message more than once
(network retries, users double tapping a button). Handlers ask
:meth:`EventDeduplicator.should_process` before doing any work and call
:meth:`EventDeduplicator.rollback` when handling fails, so that a genuine
retry by the user is processed again.

Seen keys are forgotten after ``ttl`` seconds and the set never holds more
than ``max_size`` keys.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from typing import Callable, Hashable

logger = logging.getLogger(__name__)


class EventDeduplicator:
    def __init__(
        self,
        ttl: float,
        max_size: int,
        name: str = "events",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = ttl
        self.max_size = max_size
        self.name = name
        self.clock = clock
        self._seen: "OrderedDict[Hashable, float]" = OrderedDict()

    def should_process(self, key: Hashable) -> bool:
        """Mark ``key`` as seen and return True, or return False if it already was."""
        now = self.clock()
        self._expire(now)
        if key in self._seen:
            logger.info("Duplicate %s ignored: %s", self.name, key)
            return False
        self._seen[key] = now
        while len(self._seen) > self.max_size:
            self._seen.popitem(last=False)
        return True

    def rollback(self, key: Hashable) -> None:
        """Forget ``key`` after its handler failed."""
        self._seen.pop(key, None)

    def _expire(self, now: float) -> None:
        # Insertion order is also expiry order
        while self._seen:
            key, seen_at = next(iter(self._seen.items()))
            if now - seen_at < self.ttl:
                break
            del self._seen[key]

    def __contains__(self, key: Hashable) -> bool:
        seen_at = self._seen.get(key)
        return seen_at is not None and self.clock() - seen_at < self.ttl

    def __len__(self) -> int:
        return len(self._seen)
