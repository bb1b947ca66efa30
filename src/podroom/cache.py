"""
Two-tier cache for expensive pipeline artifacts.

Tier 1 is a bounded in-process map with per-entry TTL. Tier 2 is the
shared LanceDB cache table, which survives restarts. Reads check tier 1
then tier 2 and promote tier-2 hits. Writes go to both tiers. Tier-2
failures are logged and never fail the caller.
"""

import inspect
import logging
import time
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Union

from .config import Settings, settings
from .stats import UsageStats

logger = logging.getLogger(__name__)

_MISSING = object()


class cache_keys:
    """Key builders for cached artifacts, keyed by source URL."""

    @staticmethod
    def transcript(url: str) -> str:
        return f"transcript:{url}"

    @staticmethod
    def script(url: str) -> str:
        return f"script:{url}"

    @staticmethod
    def summary(url: str) -> str:
        return f"summary:{url}"

    @staticmethod
    def episode(url: str) -> str:
        return f"episode:{url}"

    @staticmethod
    def status(task_id: str) -> str:
        return f"status:{task_id}"


def ttl_for_key(key: str, config: Settings = None) -> float:
    """TTL by key category: status data short, artifacts long, everything else medium."""
    config = config or settings
    prefix = key.split(":", 1)[0]
    if prefix == "status":
        return config.cache_short_ttl
    if prefix in ("transcript", "script", "summary", "episode", "audio"):
        return config.cache_long_ttl
    return config.cache_medium_ttl


class MultiLevelCache:
    """Memory tier in front of an optional shared store."""

    def __init__(
        self,
        store=None,
        max_size: int = None,
        default_ttl: float = None,
        stats: Optional[UsageStats] = None,
        config: Settings = None,
    ):
        """
        Args:
            store: Object with cache_get/cache_set/cache_delete/cache_clear
                (normally the Database). None disables tier 2.
            max_size: Memory tier capacity; the oldest entry is evicted
            default_ttl: TTL when neither the caller nor the key category sets one
            config: Settings supplying the per-category TTLs
        """
        self.store = store
        self.config = config or settings
        self.max_size = max_size or self.config.cache_memory_size
        self.default_ttl = default_ttl or self.config.cache_default_ttl
        self.stats = stats or UsageStats()
        self._memory: "OrderedDict[str, Tuple[Any, float]]" = OrderedDict()

    def _resolve_ttl(self, key: str, ttl: Optional[float]) -> float:
        if ttl is not None:
            return ttl
        return ttl_for_key(key, self.config) if ":" in key else self.default_ttl

    def _memory_get(self, key: str) -> Any:
        entry = self._memory.get(key)
        if entry is None:
            return _MISSING
        value, expires_at = entry
        if expires_at <= time.time():
            del self._memory[key]
            return _MISSING
        return value

    def _memory_set(self, key: str, value: Any, ttl: float) -> None:
        if key in self._memory:
            del self._memory[key]
        elif len(self._memory) >= self.max_size:
            evicted, _ = self._memory.popitem(last=False)
            logger.debug(f"Evicted cache entry: {evicted}")
        self._memory[key] = (value, time.time() + ttl)

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value or None."""
        value = self._memory_get(key)
        if value is not _MISSING:
            self.stats.incr("cache_hits")
            return value

        if self.store is not None:
            try:
                stored = self.store.cache_get(key)
            except Exception as e:
                logger.warning(f"Shared cache read failed for {key}: {e}")
                stored = None
            if stored is not None:
                self._memory_set(key, stored, self._resolve_ttl(key, None))
                self.stats.incr("cache_hits")
                return stored

        self.stats.incr("cache_misses")
        return None

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Write through both tiers."""
        ttl = self._resolve_ttl(key, ttl)
        self._memory_set(key, value, ttl)
        if self.store is not None:
            try:
                self.store.cache_set(key, value, ttl)
            except Exception as e:
                logger.warning(f"Shared cache write failed for {key}: {e}")

    def delete(self, key: str) -> None:
        self._memory.pop(key, None)
        if self.store is not None:
            try:
                self.store.cache_delete(key)
            except Exception as e:
                logger.warning(f"Shared cache delete failed for {key}: {e}")

    def clear(self) -> None:
        self._memory.clear()
        if self.store is not None:
            try:
                self.store.cache_clear()
            except Exception as e:
                logger.warning(f"Shared cache clear failed: {e}")

    async def get_or_compute(
        self,
        key: str,
        factory: Callable[[], Union[Any, Awaitable[Any]]],
        ttl: Optional[float] = None,
    ) -> Any:
        """Return the cached value, computing and caching it on a miss."""
        cached = self.get(key)
        if cached is not None:
            return cached
        value = factory()
        if inspect.isawaitable(value):
            value = await value
        if value is not None:
            self.set(key, value, ttl)
        return value

    def stats_summary(self) -> Dict[str, Any]:
        snapshot = self.stats.snapshot()
        return {
            "memory_entries": len(self._memory),
            "max_size": self.max_size,
            "hits": snapshot["cache_hits"],
            "misses": snapshot["cache_misses"],
        }
