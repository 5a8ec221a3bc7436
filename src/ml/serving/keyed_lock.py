"""
Per-key locks for the online update path.

Weight updates for one user must run one at a time, while updates for
different users proceed in parallel.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Hashable, Iterator


class _KeyedLockEntry:
    __slots__ = ("lock", "refcount")

    def __init__(self):
        self.lock = threading.Lock()
        self.refcount = 0


class KeyedLockTable:
    """Mutual exclusion per key.

    Holders of the same key run one at a time; different keys never share a
    lock. Entries exist only while some thread holds or waits on them, so the
    table stays as small as the number of keys in flight.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._entries: Dict[Hashable, _KeyedLockEntry] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = _KeyedLockEntry()
                self._entries[key] = entry
            entry.refcount += 1

        entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()
            with self._guard:
                entry.refcount -= 1
                if entry.refcount == 0:
                    del self._entries[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)
