"""
Per-key locks for serializing writes on a shared aggregate.

The candidate engine holds one of these per (user, merchant key) while it
reads and mutates the matching subscription or candidate, so two reconcile
calls in the same process never race on the same merchant. Cross-process
exclusion comes from the SQLite write transaction taken inside the lock.
"""

from __future__ import annotations

import threading
from collections.abc import Hashable, Iterator
from contextlib import contextmanager


class KeyedLock:
    """A lock per key, created on demand and dropped when nobody holds it."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Hashable, threading.Lock] = {}
        self._waiters: dict[Hashable, int] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._waiters[key] = self._waiters.get(key, 0) + 1

        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                self._waiters[key] -= 1
                if self._waiters[key] == 0:
                    del self._waiters[key]
                    del self._locks[key]

    def active_keys(self) -> int:
        with self._guard:
            return len(self._locks)
