"""Per-key lock registry.

Each key (order id, slot key) gets its own re-entrant lock, created lazily.
The registry guard is only held while looking up or creating a lock, never
while the caller's critical section runs.
"""

from __future__ import annotations

import threading
from collections.abc import Hashable


class KeyedLocks:
    """Lazily materialized map of key -> RLock."""

    def __init__(self) -> None:
        self._locks: dict[Hashable, threading.RLock] = {}
        self._guard = threading.Lock()

    def get(self, key: Hashable) -> threading.RLock:
        lock = self._locks.get(key)
        if lock is not None:
            return lock

        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    def __len__(self) -> int:
        return len(self._locks)
