import time
from collections import OrderedDict
from typing import Callable, Optional


DEFAULT_TTL_SECONDS = 5 * 60
DEFAULT_MAX_ENTRIES = 1024


class CacheError(RuntimeError):
    pass


class ByteCache:
    """Process-wide keyed byte store with a uniform TTL and a bounded number of entries.

    Entries are evicted oldest-first once ``max_entries`` is reached. The cache is
    never authoritative: callers fetch on a miss and store the serialized result.
    """

    def __init__(
        self,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._store: "OrderedDict[str, dict]" = OrderedDict()

    def _cleanup(self) -> None:
        now = self._clock()
        expired = [k for k, v in self._store.items() if v["expires_at"] <= now]
        for k in expired:
            del self._store[k]

    def get(self, key: str) -> Optional[bytes]:
        entry = self._store.get(key)
        if entry is None:
            return None
        if entry["expires_at"] <= self._clock():
            del self._store[key]
            return None
        return entry["value"]

    def set(self, key: str, value: bytes) -> None:
        if not isinstance(value, (bytes, bytearray)):
            raise CacheError(f"Cache values must be bytes, not {type(value).__name__}")
        self._cleanup()
        if key in self._store:
            del self._store[key]
        while len(self._store) >= self.max_entries:
            self._store.popitem(last=False)
        self._store[key] = {
            "value": bytes(value),
            "expires_at": self._clock() + self.ttl_seconds,
        }

    def __len__(self) -> int:
        self._cleanup()
        return len(self._store)
