import logging
import time
from typing import Any, Callable, Dict, NamedTuple, Optional

log = logging.getLogger(__name__)


class CacheEntry(NamedTuple):
    payload: Any
    stored_at: float


class ResponseCache:
    """
    Per-endpoint response memoization.

    Each caller passes its own TTL on lookup. Stale entries are never swept,
    they are ignored and overwritten by the next successful fetch that has a
    payload. Empty (None) payloads are not stored, so get() returning None
    always means a miss.
    """

    def __init__(self, clock: Callable[[], float] = time.perf_counter):
        self.clock = clock
        self._entries: Dict[str, CacheEntry] = {}

    def get(self, key: str, ttl: float) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self.clock() - entry.stored_at < ttl:
            log.debug(' -- cache: Returning cached %s' % key)
            return entry.payload
        return None

    def put(self, key: str, payload: Any) -> None:
        if payload is None:
            return
        self._entries[key] = CacheEntry(payload, self.clock())

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
