"""
Tests for ScheduleGuard keyed locks.
"""

import threading
import time

from cadence.scheduling.guard import ScheduleGuard


class TestScheduleGuard:
    def test_hold_locks_and_releases(self):
        guard = ScheduleGuard()
        with guard.hold("p", "s"):
            assert guard.is_locked("p", "s")
            assert not guard.is_locked("p", "other")
        assert not guard.is_locked("p", "s")

    def test_entries_are_pruned(self):
        guard = ScheduleGuard()
        with guard.hold("p", "a"), guard.hold("p", "b"):
            assert len(guard) == 2
        assert len(guard) == 0

    def test_acquire_timeout_when_held_elsewhere(self):
        guard = ScheduleGuard()
        held = threading.Event()
        done = threading.Event()

        def holder():
            with guard.hold("p", "s"):
                held.set()
                done.wait(5)

        thread = threading.Thread(target=holder)
        thread.start()
        held.wait(5)
        try:
            assert guard.acquire("p", "s", timeout=0.05) is False
        finally:
            done.set()
            thread.join(5)
        assert len(guard) == 0

    def test_serialises_same_key(self):
        guard = ScheduleGuard()
        active = 0
        peak = 0
        lock = threading.Lock()

        def worker():
            nonlocal active, peak
            with guard.hold("p", "s"):
                with lock:
                    active += 1
                    peak = max(peak, active)
                time.sleep(0.01)
                with lock:
                    active -= 1

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(5)
        assert peak == 1
