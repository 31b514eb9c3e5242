"""
security/rate_limit.py: sliding-window rate limiter.

One moving window per (client key, operation), kept by the `limits`
library that backs Flask-Limiter. hit() records the attempt and decides in
one step under the storage's per-key lock, so two concurrent attempts on
the same key can never both pass when only one slot is left. Rejected
attempts are not recorded.

Storage defaults to memory:// (per process). Any `limits` storage URI
works, e.g. redis://host:6379/0 to share buckets between workers. Memory
storage expires idle keys on its own, so a churn of distinct client keys
does not grow memory without bound.

Operations without a configured limit are always allowed.
"""

from __future__ import annotations

import logging
import math
import time
from datetime import timedelta

from limits import RateLimitItem, RateLimitItemPerSecond
from limits.storage import MemoryStorage, Storage, storage_from_string
from limits.strategies import MovingWindowRateLimiter

logger = logging.getLogger(__name__)


class RateLimiter:

    def __init__(
            self,
            limits: dict[str, tuple[int, timedelta]] | None = None,
            storage: Storage | None = None,
    ) -> None:
        self._storage = storage or MemoryStorage()
        self._strategy = MovingWindowRateLimiter(self._storage)
        self._limits: dict[str, RateLimitItem] = {}
        if limits:
            self.configure(limits)

    def init_app(self, app) -> None:
        uri = app.config.get("RATE_LIMIT_STORAGE_URI", "memory://")
        self._storage = storage_from_string(uri)
        self._strategy = MovingWindowRateLimiter(self._storage)
        self.configure(app.config["RATE_LIMITS"])
        logger.debug("Rate limiter storage: %s", uri.split("://", 1)[0])

    def configure(self, limits: dict[str, tuple[int, timedelta]]) -> None:
        """Loads limits in the config shape: operation → (max, window)."""
        self._limits = {
            operation: RateLimitItemPerSecond(max_requests, max(1, int(window.total_seconds())))
            for operation, (max_requests, window) in limits.items()
        }

    def allow(self, client_key: str, operation: str) -> bool:
        return self.check(client_key, operation)[0]

    def check(self, client_key: str, operation: str) -> tuple[bool, int]:
        """
        Records an attempt and returns (allowed, retry_after_seconds).
        retry_after is 0 when allowed; otherwise the whole seconds until the
        oldest counted attempt leaves the window.
        """
        item = self._limits.get(operation)
        if item is None:
            return True, 0

        if self._strategy.hit(item, client_key, operation):
            return True, 0

        stats = self._strategy.get_window_stats(item, client_key, operation)
        return False, max(1, math.ceil(stats.reset_time - time.time()))

    def reset(self) -> None:
        self._storage.reset()
