"""Tests for the keyed lock registry."""

import threading
import time

from hotelbook.infra.locks import KeyedLocks


class TestKeyedLocks:
    def test_entry_dropped_after_release(self):
        locks = KeyedLocks()
        with locks.hold("res-1"):
            assert len(locks) == 1
        assert len(locks) == 0

    def test_many_keys_leave_nothing_behind(self):
        locks = KeyedLocks()
        for i in range(50):
            with locks.hold(f"res-{i}"):
                pass
        assert len(locks) == 0

    def test_entry_dropped_when_block_raises(self):
        locks = KeyedLocks()
        try:
            with locks.hold("res-1"):
                raise RuntimeError("boom")
        except RuntimeError:
            pass
        assert len(locks) == 0

    def test_same_key_is_mutually_exclusive(self):
        locks = KeyedLocks()
        inside = 0
        overlap = []
        counter_lock = threading.Lock()

        def worker():
            nonlocal inside
            with locks.hold("room-101"):
                with counter_lock:
                    inside += 1
                    overlap.append(inside)
                time.sleep(0.01)
                with counter_lock:
                    inside -= 1

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert max(overlap) == 1
        assert len(locks) == 0

    def test_different_keys_do_not_block(self):
        locks = KeyedLocks()
        entered = threading.Event()

        def other():
            with locks.hold("res-2"):
                entered.set()

        with locks.hold("res-1"):
            t = threading.Thread(target=other)
            t.start()
            assert entered.wait(timeout=1)
            t.join()
        assert len(locks) == 0
