"""Simple in-memory TTL cache with a size cap."""
import time
from typing import Any, Callable

DEFAULT_TTL_SECONDS = 86400
DEFAULT_MAX_ENTRIES = 1000


class TTLCache:
    """One TTL per key (from set). Oldest-expiring entry is evicted at capacity."""

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._ttl = ttl_seconds
        self._max = max_entries
        self._clock = clock
        self._store: dict[str, tuple[Any, float]] = {}

    def get(self, key: str) -> Any | None:
        entry = self._store.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._store[key]
            return None
        return value

    def set(self, key: str, value: Any) -> None:
        if key not in self._store and len(self._store) >= self._max:
            oldest_key = min(self._store, key=lambda k: self._store[k][1])
            self._store.pop(oldest_key, None)
        self._store[key] = (value, self._clock() + self._ttl)

    def __len__(self) -> int:
        return len(self._store)
