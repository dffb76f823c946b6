import time
from collections import defaultdict

from config.env import SNAPSHOT_CACHE_TTL_SECONDS


class SnapshotCache:
    """
    Process-scoped {order_id: snapshot} cache with a fixed TTL.
    ttl_seconds=0 disables it: get() always misses and put() is a no-op.

    Every invalidate() and put() advances the order's version. A reader
    takes version() before computing and passes it to put(); the put is
    dropped if a write moved the version in between.
    """

    def __init__(self, ttl_seconds: float = SNAPSHOT_CACHE_TTL_SECONDS, clock=time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[float, dict]] = {}
        self._versions = defaultdict(int)

    @property
    def enabled(self) -> bool:
        return self.ttl_seconds > 0

    def version(self, order_id: str) -> int:
        return self._versions[order_id]

    def get(self, order_id: str) -> dict | None:
        if not self.enabled:
            return None

        entry = self._entries.get(order_id)
        if entry is None:
            return None

        expires_at, snapshot = entry
        if self._clock() >= expires_at:
            self._entries.pop(order_id, None)
            return None
        return dict(snapshot)

    def put(self, order_id: str, snapshot: dict, *, if_version: int | None = None) -> bool:
        if not self.enabled:
            return False
        if if_version is not None and self._versions[order_id] != if_version:
            return False

        self._versions[order_id] += 1
        self._entries[order_id] = (self._clock() + self.ttl_seconds, dict(snapshot))
        return True

    def invalidate(self, order_id: str):
        self._versions[order_id] += 1
        self._entries.pop(order_id, None)

    def clear(self):
        self._entries.clear()

    def __len__(self):
        return len(self._entries)


snapshot_cache = SnapshotCache()
