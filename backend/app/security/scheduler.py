"""
security/scheduler.py: periodic background task on its own daemon thread.

Used for the revocation-cache sweep. A task never touches
request state; stop() signals the thread and waits briefly for it to exit.
An exception raised by one run is logged and the next run still happens.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable

logger = logging.getLogger(__name__)


class PeriodicTask:

    def __init__(self, name: str, interval_seconds: float, func: Callable[[], object]) -> None:
        self.name = name
        self.interval_seconds = interval_seconds
        self._func = func
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            logger.warning("Background task %s is already running", self.name)
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        logger.info("Background task %s started (every %ss)", self.name, self.interval_seconds)

    def stop(self, timeout: float = 5.0) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join(timeout)
        self._thread = None
        logger.info("Background task %s stopped", self.name)

    def _run(self) -> None:
        # Event.wait doubles as the timer and the shutdown signal.
        while not self._stop.wait(self.interval_seconds):
            try:
                self._func()
            except Exception:
                logger.exception("Background task %s failed", self.name)
