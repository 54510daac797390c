"""Process-local discovery cache.

Bounded LRU with a per-entry TTL. A single lock guards the map, so the
cache can be shared by concurrent discovery calls. Expiry is checked on
read; expired entries count as misses.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .config import DEFAULT_CACHE_MAX_ENTRIES, DEFAULT_CACHE_TTL_SECONDS

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    value: Any
    expires_at: float


class DiscoveryCache:
    """LRU + TTL cache keyed by ``(project id, discovery options key)``."""

    def __init__(
        self,
        max_entries: int = DEFAULT_CACHE_MAX_ENTRIES,
        ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._max_entries = max_entries
        self._ttl = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: OrderedDict[tuple[str, str], _Entry] = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0

    def get(self, project_id: str, options_key: str = "") -> Any | None:
        key = (project_id, options_key)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            if self._clock() >= entry.expires_at:
                del self._entries[key]
                self._expirations += 1
                self._misses += 1
                return None
            self._entries.move_to_end(key)
            self._hits += 1
            return entry.value

    def put(self, project_id: str, value: Any, options_key: str = "") -> None:
        key = (project_id, options_key)
        with self._lock:
            self._entries[key] = _Entry(value=value, expires_at=self._clock() + self._ttl)
            self._entries.move_to_end(key)
            while len(self._entries) > self._max_entries:
                evicted, _ = self._entries.popitem(last=False)
                self._evictions += 1
                logger.debug("Evicted cache entry", extra={"project_id": evicted[0]})

    def invalidate(self, project_id: str) -> int:
        """Drop every entry for ``project_id``; returns how many were removed."""
        with self._lock:
            keys = [k for k in self._entries if k[0] == project_id]
            for key in keys:
                del self._entries[key]
        if keys:
            logger.debug(
                "Invalidated cache entries", extra={"project_id": project_id, "count": len(keys)}
            )
        return len(keys)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> dict[str, Any]:
        with self._lock:
            lookups = self._hits + self._misses
            return {
                "size": len(self._entries),
                "hits": self._hits,
                "misses": self._misses,
                "hitRate": self._hits / lookups if lookups else 0.0,
                "evictions": self._evictions,
                "expirations": self._expirations,
            }
