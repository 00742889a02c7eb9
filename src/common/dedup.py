from __future__ import annotations

import threading
from collections import OrderedDict
from typing import Hashable


class DedupWindow:
    """
    A bounded, insertion-ordered set of recently seen message ids.

    - `admit(id)` returns True the first time an id is seen and records it.
    - At most `capacity` ids are kept; the oldest-inserted id is evicted first.
    - Lookups never refresh an entry's position (FIFO, not LRU).

    Thread-safe so that a single writer can be combined with readers from
    other threads (e.g., admin introspection).
    """

    def __init__(self, capacity: int = 500) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be > 0")
        self._capacity = capacity
        self._ids: "OrderedDict[Hashable, None]" = OrderedDict()
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        with self._lock:
            return len(self._ids)

    def __contains__(self, message_id: object) -> bool:
        with self._lock:
            return message_id in self._ids

    def admit(self, message_id: Hashable) -> bool:
        """Record `message_id`; return False if it was already in the window."""
        with self._lock:
            if message_id in self._ids:
                return False
            self._ids[message_id] = None
            while len(self._ids) > self._capacity:
                self._ids.popitem(last=False)
            return True


__all__ = ["DedupWindow"]
