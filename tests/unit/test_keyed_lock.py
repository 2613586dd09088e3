"""Tests for the per-key lock registry."""

from __future__ import annotations

import threading
import time

from subwatch.infrastructure.locks import KeyedLock


def test_same_key_serializes():
    locks = KeyedLock()
    active = []
    overlap = []

    def worker():
        with locks.hold(("user_1", "netflix")):
            active.append(1)
            if len(active) > 1:
                overlap.append(True)
            time.sleep(0.01)
            active.pop()

    threads = [threading.Thread(target=worker) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert overlap == []


def test_different_keys_do_not_block():
    locks = KeyedLock()
    entered = threading.Event()

    def other_merchant():
        with locks.hold(("user_1", "spotify")):
            entered.set()

    with locks.hold(("user_1", "netflix")):
        thread = threading.Thread(target=other_merchant)
        thread.start()
        thread.join(timeout=1)

    assert entered.is_set()


def test_released_locks_are_dropped():
    locks = KeyedLock()
    with locks.hold("a"):
        with locks.hold("b"):
            assert locks.active_keys() == 2
    assert locks.active_keys() == 0
