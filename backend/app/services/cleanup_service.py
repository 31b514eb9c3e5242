"""
services/cleanup_service.py: daily deletion of expired tokens.

Runs once a day at TOKEN_CLEANUP_HOUR (local server time) on its own
daemon thread, inside an app context, and removes every expired token of
every kind (refresh, verification, password reset). stop() wakes the
thread immediately. A failed run is logged and retried at the next slot;
it is never retried in a loop.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timedelta

from flask import Flask
from sqlalchemy.exc import SQLAlchemyError

from backend.app.extensions import db
from backend.app.services import token_store

logger = logging.getLogger(__name__)


def seconds_until(hour: int, now: datetime) -> float:
    """Seconds from `now` until the next occurrence of hh:00."""
    next_run = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if now >= next_run:
        next_run += timedelta(days=1)
    return (next_run - now).total_seconds()


class CleanupService:

    def __init__(self, app: Flask, hour: int = 3) -> None:
        if not 0 <= hour <= 23:
            hour = 3
        self._app = app
        self.hour = hour
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            logger.warning("CleanupService is already running")
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="token-cleanup", daemon=True)
        self._thread.start()
        logger.info("CleanupService started; runs daily at %02d:00", self.hour)

    def stop(self, timeout: float = 5.0) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join(timeout)
        self._thread = None
        logger.info("CleanupService stopped")

    def run_once(self) -> int:
        """Deletes expired tokens now. Returns the number of rows removed."""
        started = time.monotonic()
        with self._app.app_context():
            try:
                removed = token_store.sweep_expired(db.session)
                db.session.commit()
            except SQLAlchemyError:
                db.session.rollback()
                logger.exception("Expired-token cleanup failed")
                return 0
        logger.info(
            "Expired-token cleanup removed %d rows in %.1f ms",
            removed,
            (time.monotonic() - started) * 1000,
        )
        return removed

    def _loop(self) -> None:
        while True:
            wait = seconds_until(self.hour, datetime.now())
            logger.debug("Next expired-token cleanup in %.0f s", wait)
            if self._stop.wait(wait):
                return
            self.run_once()
