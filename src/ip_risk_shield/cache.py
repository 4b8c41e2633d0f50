"""Short-lived, sharded in-memory caches.

The decision cache memoizes the last Decision per IP so that the analyzer does
not re-score on every request. It is not durable: analysis is idempotent and
a lost cache is simply recomputed.
"""

import logging
import time
from typing import Any, Callable, Dict, Generic, List, Optional, Tuple, TypeVar

from ip_risk_shield.concurrency import StripedLock
from ip_risk_shield.config import SettingsManager
from ip_risk_shield.models import Decision

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TTLCache(Generic[T]):
    """Thread-safe TTL cache partitioned into independently locked shards."""

    def __init__(self, default_ttl: float = 3600.0, shards: int = 16,
                 clock: Callable[[], float] = time.monotonic):
        self.default_ttl = default_ttl
        self._clock = clock
        self._locks = StripedLock(shards)
        self._shards: List[Dict[str, Tuple[T, float]]] = [{} for _ in range(shards)]
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[T]:
        index = self._locks.index(key)
        with self._locks.at(index):
            entry = self._shards[index].get(key)
            if entry is None:
                self.misses += 1
                return None
            value, expires_at = entry
            if self._clock() >= expires_at:
                del self._shards[index][key]
                self.misses += 1
                return None
            self.hits += 1
            return value

    def put(self, key: str, value: T, ttl: Optional[float] = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        index = self._locks.index(key)
        with self._locks.at(index):
            self._shards[index][key] = (value, self._clock() + ttl)

    def invalidate(self, key: str) -> bool:
        index = self._locks.index(key)
        with self._locks.at(index):
            return self._shards[index].pop(key, None) is not None

    def purge_expired(self) -> int:
        """Drop expired entries from every shard."""
        now = self._clock()
        removed = 0
        for index, shard in enumerate(self._shards):
            with self._locks.at(index):
                expired = [key for key, (_, expires_at) in shard.items() if now >= expires_at]
                for key in expired:
                    del shard[key]
                removed += len(expired)
        return removed

    def clear(self) -> None:
        for index, shard in enumerate(self._shards):
            with self._locks.at(index):
                shard.clear()

    def __len__(self) -> int:
        return sum(len(shard) for shard in self._shards)

    def stats(self) -> Dict[str, Any]:
        return {"size": len(self), "hits": self.hits, "misses": self.misses}


class DecisionCache:
    """Read-through memo of the latest Decision per IP."""

    def __init__(self, settings: Optional[SettingsManager] = None, shards: int = 16,
                 clock: Callable[[], float] = time.monotonic):
        self._settings = settings or SettingsManager()
        self._cache: TTLCache[Decision] = TTLCache(
            default_ttl=self._settings.settings.decision_cache_ttl, shards=shards, clock=clock
        )

    def get(self, ip: str) -> Optional[Decision]:
        decision = self._cache.get(ip)
        if decision is not None:
            logger.debug(f"Decision cache hit for {ip}: {decision.action.value}")
        return decision

    def put(self, ip: str, decision: Decision, ttl: Optional[float] = None) -> None:
        """Cache a decision; ``ttl`` defaults to the configured decision TTL."""
        if ttl is None:
            ttl = self._settings.settings.decision_cache_ttl
        self._cache.put(ip, decision, ttl)

    def put_negative(self, ip: str, decision: Decision) -> None:
        """Cache a decision produced by a degraded path with the negative TTL."""
        self._cache.put(ip, decision, self._settings.settings.negative_cache_ttl)

    def invalidate(self, ip: str) -> bool:
        return self._cache.invalidate(ip)

    def purge_expired(self) -> int:
        return self._cache.purge_expired()

    def clear(self) -> None:
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)

    def stats(self) -> Dict[str, Any]:
        return self._cache.stats()
