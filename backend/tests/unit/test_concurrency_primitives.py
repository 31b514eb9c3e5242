"""
tests/unit/test_concurrency_primitives.py: security/locks.py and
security/scheduler.py.
"""

from __future__ import annotations

import threading
import time

from backend.app.security.locks import ReadWriteLock
from backend.app.security.scheduler import PeriodicTask


class TestReadWriteLock:

    def test_readers_share_the_lock(self):
        lock = ReadWriteLock()
        both_inside = threading.Barrier(2, timeout=2)
        errors: list[Exception] = []

        def reader():
            try:
                with lock.read_locked():
                    both_inside.wait()
            except threading.BrokenBarrierError as exc:
                errors.append(exc)

        threads = [threading.Thread(target=reader) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []

    def test_writer_waits_for_reader(self):
        lock = ReadWriteLock()
        order: list[str] = []
        lock.acquire_read()

        def writer():
            with lock.write_locked():
                order.append("writer")

        t = threading.Thread(target=writer)
        t.start()
        time.sleep(0.05)
        order.append("reader-done")
        lock.release_read()
        t.join(2)

        assert order == ["reader-done", "writer"]

    def test_waiting_writer_blocks_new_readers(self):
        lock = ReadWriteLock()
        order: list[str] = []
        lock.acquire_read()

        def writer():
            with lock.write_locked():
                order.append("writer")

        def late_reader():
            with lock.read_locked():
                order.append("late-reader")

        w = threading.Thread(target=writer)
        w.start()
        time.sleep(0.05)
        r = threading.Thread(target=late_reader)
        r.start()
        time.sleep(0.05)
        assert order == []

        lock.release_read()
        w.join(2)
        r.join(2)
        assert order == ["writer", "late-reader"]

    def test_counter_is_consistent_under_writers(self):
        lock = ReadWriteLock()
        counter = {"n": 0}

        def bump():
            for _ in range(1000):
                with lock.write_locked():
                    counter["n"] += 1

        threads = [threading.Thread(target=bump) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert counter["n"] == 8000


class TestPeriodicTask:

    def test_runs_repeatedly_until_stopped(self):
        calls = threading.Semaphore(0)
        task = PeriodicTask("test-task", 0.01, calls.release)
        task.start()
        try:
            assert all(calls.acquire(timeout=2) for _ in range(3))
        finally:
            task.stop()
        assert task.running is False

    def test_failing_run_does_not_stop_the_task(self, caplog):
        calls = threading.Semaphore(0)
        attempts = {"n": 0}

        def flaky():
            attempts["n"] += 1
            if attempts["n"] == 1:
                raise RuntimeError("boom")
            calls.release()

        task = PeriodicTask("flaky-task", 0.01, flaky)
        with caplog.at_level("ERROR", logger="backend.app.security.scheduler"):
            task.start()
            try:
                assert calls.acquire(timeout=2)
            finally:
                task.stop()

        assert "Background task flaky-task failed" in caplog.text

    def test_stop_wakes_a_long_interval_immediately(self):
        task = PeriodicTask("slow-task", 3600, lambda: None)
        task.start()
        started = time.monotonic()
        task.stop()
        assert time.monotonic() - started < 2
        assert task.running is False

    def test_stop_without_start_is_a_noop(self):
        PeriodicTask("never-started", 1, lambda: None).stop()
