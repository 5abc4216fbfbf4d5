"""
Response Cache — avoids repeat provider calls for identical readings.

Exact-match on the request fingerprint, with a per-entry TTL (three days by
default).  Expired entries are dropped lazily on the first read after they
expire; there is no background sweep and no size cap, since fingerprint
cardinality over the TTL window is naturally small.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from iching_gateway.models import THREE_DAYS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    """A single cached reading.  Replaced wholesale, never mutated."""
    value: Any
    created_at: float
    ttl: float  # seconds

    @property
    def expires_at(self) -> float:
        return self.created_at + self.ttl

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


class ResponseCache:
    """
    In-memory fingerprint → reading cache with TTL expiry.

    ``clock`` is injectable so tests can move time forward.
    """

    def __init__(
        self,
        default_ttl: float = THREE_DAYS,
        clock: Callable[[], float] = time.time,
    ):
        self._default_ttl = default_ttl
        self._clock = clock
        self._store: dict[str, CacheEntry] = {}
        self._lock = asyncio.Lock()
        self._stats = {"hits": 0, "misses": 0, "expirations": 0}

    async def get(self, key: str) -> Any | None:
        """Return a copy of the cached value, or None if missing/expired."""
        async with self._lock:
            entry = self._store.get(key)
            if entry is None:
                self._stats["misses"] += 1
                return None
            if entry.is_expired(self._clock()):
                del self._store[key]
                self._stats["misses"] += 1
                self._stats["expirations"] += 1
                logger.debug("Cache EXPIRED: %s", key)
                return None
            self._stats["hits"] += 1
            logger.debug("Cache HIT: %s", key)
            return copy.deepcopy(entry.value)

    async def set(self, key: str, value: Any, ttl: float | None = None):
        """Store ``value`` under ``key``, overwriting any previous entry."""
        async with self._lock:
            self._store[key] = CacheEntry(
                value=copy.deepcopy(value),
                created_at=self._clock(),
                ttl=ttl if ttl is not None else self._default_ttl,
            )

    async def clear(self):
        """Flush the entire cache."""
        async with self._lock:
            self._store.clear()

    @property
    def stats(self) -> dict[str, Any]:
        total = self._stats["hits"] + self._stats["misses"]
        return {
            **self._stats,
            "size": len(self._store),
            "default_ttl": self._default_ttl,
            "hit_rate": round(self._stats["hits"] / total, 3) if total > 0 else 0,
        }
