import logging
import threading
import time
from typing import Any, Callable, Hashable, Optional, Protocol

from cachetools import TTLCache

from config import get_settings

logger = logging.getLogger(__name__)

MISS = object()


class AggregateCache(Protocol):
    def get(self, user_id: int, period_key: Hashable) -> Any: ...

    def put(
        self,
        user_id: int,
        period_key: Hashable,
        result: Any,
        expiry: Optional[float] = None,
    ) -> None: ...

    def invalidate(self, user_id: int) -> None: ...


class NullAggregateCache:
    def get(self, user_id: int, period_key: Hashable) -> Any:
        return MISS

    def put(
        self,
        user_id: int,
        period_key: Hashable,
        result: Any,
        expiry: Optional[float] = None,
    ) -> None:
        return None

    def invalidate(self, user_id: int) -> None:
        return None


class TTLAggregateCache:
    """Process-local read-through cache of aggregation results.

    Entries are keyed by ``(user_id, period_key)`` and expire after the
    configured TTL. ``put`` accepts an absolute ``expiry`` (timer seconds)
    to cut a single entry's lifetime shorter than the TTL.
    """

    def __init__(
        self,
        ttl_secs: Optional[float] = None,
        *,
        maxsize: int = 1024,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        ttl = ttl_secs if ttl_secs is not None else get_settings().cache_ttl_secs
        self._timer = timer
        self._entries: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl, timer=timer)
        self._lock = threading.Lock()

    def get(self, user_id: int, period_key: Hashable) -> Any:
        with self._lock:
            entry = self._entries.get((user_id, period_key))
            if entry is None:
                return MISS
            result, expiry = entry
            if expiry is not None and self._timer() >= expiry:
                del self._entries[(user_id, period_key)]
                return MISS
            return result

    def put(
        self,
        user_id: int,
        period_key: Hashable,
        result: Any,
        expiry: Optional[float] = None,
    ) -> None:
        with self._lock:
            self._entries[(user_id, period_key)] = (result, expiry)

    def invalidate(self, user_id: int) -> None:
        with self._lock:
            stale = [key for key in list(self._entries.keys()) if key[0] == user_id]
            for key in stale:
                self._entries.pop(key, None)
        if stale:
            logger.info(f"cache_invalidate: user_id={user_id} entries={len(stale)}")

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


_default_cache: Optional[TTLAggregateCache] = None


def get_default_cache() -> TTLAggregateCache:
    global _default_cache
    if _default_cache is None:
        _default_cache = TTLAggregateCache()
    return _default_cache
