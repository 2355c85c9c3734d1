"""Per-key mutual exclusion (one lock per volume id or service id)."""

from collections.abc import Iterator
from contextlib import contextmanager
import threading


class KeyedLocks:
    """Hands out one lock per key; callers hold it for every read-modify-write of that key's record."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def _lock_for(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._lock_for(key):
            yield
