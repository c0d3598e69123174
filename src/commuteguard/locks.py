"""Per-key locks so writers to different buckets never contend."""

import threading
from typing import Dict, Hashable


class KeyedLocks:
    """
    Lazily creates one lock per key.

    The registry lock is held only while looking up or creating a key's lock,
    never while the caller's critical section runs.
    """

    def __init__(self):
        self._registry_lock = threading.Lock()
        self._locks: Dict[Hashable, threading.Lock] = {}

    def get(self, key: Hashable) -> threading.Lock:
        lock = self._locks.get(key)
        if lock is not None:
            return lock
        with self._registry_lock:
            return self._locks.setdefault(key, threading.Lock())

    def __len__(self) -> int:
        return len(self._locks)
