"""
security/revocation.py: in-memory blacklist of access tokens revoked before
their natural expiry.

Entries are keyed by the token identifier (SHA-256 hex of the raw access
token, see security/tokens.py), never by the raw token. Each entry carries
its own expiry:

  - is_revoked() treats an entry past its expiry as absent and deletes it
    on the way out (lazy expiry), so correctness never depends on the sweep.
  - sweep() purges every expired entry. It runs on a PeriodicTask every
    SECURITY_SWEEP_INTERVAL to bound memory regardless of read traffic.

The underlying dict is never exposed. Lookups share a read lock; add,
delete and sweep take the write lock.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable

from backend.app.security.locks import ReadWriteLock
from backend.app.security.scheduler import PeriodicTask

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RevocationCache:

    def __init__(self, clock: Callable[[], datetime] = _utcnow) -> None:
        self._clock = clock
        self._entries: dict[str, datetime] = {}
        self._lock = ReadWriteLock()
        self._sweeper: PeriodicTask | None = None

    def init_app(self, app) -> None:
        interval = app.config["SECURITY_SWEEP_INTERVAL"].total_seconds()
        self._sweeper = PeriodicTask("revocation-cache-sweep", interval, self.sweep)
        if app.config.get("SECURITY_BACKGROUND_TASKS", True):
            self._sweeper.start()
        app.extensions.setdefault("security_tasks", []).append(self._sweeper)

    def add(self, token_id: str, expires_at: datetime) -> None:
        with self._lock.write_locked():
            current = self._entries.get(token_id)
            # Never shorten an existing revocation.
            if current is None or expires_at > current:
                self._entries[token_id] = expires_at
        logger.debug("Access token %s… revoked until %s", token_id[:12], expires_at.isoformat())

    def is_revoked(self, token_id: str) -> bool:
        now = self._clock()
        with self._lock.read_locked():
            expires_at = self._entries.get(token_id)

        if expires_at is None:
            return False
        if now < expires_at:
            return True

        with self._lock.write_locked():
            # Re-check: the entry may have been extended since the read.
            if self._entries.get(token_id) == expires_at:
                del self._entries[token_id]
        return False

    def sweep(self) -> int:
        now = self._clock()
        with self._lock.write_locked():
            expired = [tid for tid, exp in self._entries.items() if now >= exp]
            for tid in expired:
                del self._entries[tid]
        if expired:
            logger.debug("Revocation sweep removed %d expired entries", len(expired))
        return len(expired)

    def clear(self) -> None:
        with self._lock.write_locked():
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock.read_locked():
            return len(self._entries)
