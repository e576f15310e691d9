# market/stores/notification_store.py
from collections import OrderedDict
from typing import Hashable


class NotificationDedupSet:
    """
    Bounded set of handled notification ids. Oldest ids are evicted first once
    capacity is exceeded.
    """

    def __init__(self, capacity: int = 100) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self._capacity = capacity
        self._seen: "OrderedDict[Hashable, None]" = OrderedDict()

    @property
    def capacity(self) -> int:
        return self._capacity

    def add(self, key: Hashable) -> bool:
        """Record key; False if it was already seen."""
        if key in self._seen:
            return False
        self._seen[key] = None
        while len(self._seen) > self._capacity:
            self._seen.popitem(last=False)
        return True

    def __contains__(self, key: Hashable) -> bool:
        return key in self._seen

    def __len__(self) -> int:
        return len(self._seen)

    def clear(self) -> None:
        self._seen.clear()
