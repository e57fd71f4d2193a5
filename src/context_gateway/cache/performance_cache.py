"""In-memory LRU/TTL cache with dependency-driven invalidation.

This is the engine behind the semantic-analysis and cross-domain caches. Entries
are bounded both by total byte size and by entry count; expired entries are
dropped lazily on read and by a periodic background sweep.
"""

import asyncio
import json
import time
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

import structlog
from pydantic import BaseModel, Field

from ..events import EventBus
from .dependency_graph import DependencyGraph

logger = structlog.get_logger()

_MISSING = object()

Clock = Callable[[], float]


class CacheSettings(BaseModel):
    """Capacity and timing limits for a cache instance."""
    max_size: int = 100 * 1024 * 1024  # bytes
    max_entries: int = 10_000
    default_ttl: float = 30 * 60  # seconds
    cleanup_interval: float = 5 * 60  # seconds
    enable_metrics: bool = True


class CacheEntry(BaseModel):
    """A cached value with its bookkeeping."""
    value: Any
    timestamp: float
    access_count: int = 1
    last_accessed: float
    size: int
    dependencies: set[str] = Field(default_factory=set)


class CacheMetrics(BaseModel):
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    total_size: int = 0
    hit_rate: float = 0.0


class WarmingStrategy(BaseModel):
    """Pre-populates ``key`` with the result of ``loader``."""
    key: str
    loader: Callable[[], Awaitable[Any]]
    dependencies: list[str] = Field(default_factory=list)


def estimate_size(value: Any) -> int:
    """Approximate footprint: UTF-8 length of a canonical JSON encoding.

    Values JSON cannot encode (reference cycles, unorderable keys) are sized by
    their ``repr`` instead.
    """
    try:
        encoded = json.dumps(value, sort_keys=True, default=str)
    except (TypeError, ValueError):
        encoded = repr(value)
    return len(encoded.encode("utf-8"))


class PerformanceCache:
    """Bounded key/value store with LRU eviction, TTL and dependency tags."""

    def __init__(
        self,
        settings: CacheSettings | None = None,
        *,
        name: str = "performance",
        clock: Clock = time.time,
        event_bus: EventBus | None = None,
    ):
        self.settings = settings or CacheSettings()
        self.name = name
        self._clock = clock
        self._events = event_bus

        self._entries: dict[str, CacheEntry] = {}
        self._dependency_graph = DependencyGraph()
        self._metrics = CacheMetrics()

        self._cleanup_task: asyncio.Task | None = None

    async def initialize(self):
        """Start the background expiry sweep."""
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())

        self._emit("cache:initialized", {"config": self.settings.model_dump()})
        logger.info("PerformanceCache initialized",
                   cache=self.name,
                   max_size=self.settings.max_size,
                   max_entries=self.settings.max_entries)

    def get(self, key: str, default: Any = None) -> Any:
        """Return the cached value, or ``default`` on miss or expiry.

        A stored ``None`` is indistinguishable from a miss unless a sentinel
        ``default`` is passed.
        """
        entry = self._entries.get(key)

        if entry is None:
            self._record_miss()
            return default

        now = self._clock()
        if now - entry.timestamp > self.settings.default_ttl:
            self.delete(key)
            self._record_miss()
            logger.debug("Cache entry expired on read", cache=self.name, key=key)
            return default

        entry.last_accessed = now
        entry.access_count += 1
        self._record_hit()

        return entry.value

    def set(self, key: str, value: Any, dependencies: Iterable[str] | None = None) -> None:
        """Store ``value`` under ``key``, evicting LRU entries to make room."""
        size = estimate_size(value)
        deps = set(dependencies or ())

        # The entry being replaced must not count against the limits.
        self._remove(key)
        self._ensure_space(size)

        now = self._clock()
        self._entries[key] = CacheEntry(
            value=value,
            timestamp=now,
            last_accessed=now,
            size=size,
            dependencies=deps,
        )
        self._metrics.total_size += size
        self._dependency_graph.register(key, deps)

        self._emit("cache:set", {"key": key, "size": size, "dependencies": sorted(deps)})

    def delete(self, key: str) -> bool:
        """Remove ``key``. Returns whether an entry existed."""
        entry = self._remove(key)
        if entry is None:
            return False

        self._emit("cache:delete", {"key": key, "size": entry.size})
        return True

    def invalidate_by_dependency(self, dependency: str) -> int:
        """Delete every entry that declared ``dependency``."""
        keys = self._dependency_graph.pop_tag(dependency)

        invalidated = 0
        for key in keys:
            if self.delete(key):
                invalidated += 1

        self._emit("cache:invalidated", {"dependency": dependency, "count": invalidated})
        if invalidated:
            logger.debug("Cache invalidated by dependency",
                        cache=self.name,
                        dependency=dependency,
                        count=invalidated)
        return invalidated

    def set_many(self, entries: Iterable[tuple[str, Any, Iterable[str] | None]]) -> None:
        """Store several ``(key, value, dependencies)`` triples."""
        entries = list(entries)
        total_size = sum(estimate_size(value) for _, value, _ in entries)

        self._ensure_space(total_size)
        for key, value, dependencies in entries:
            self.set(key, value, dependencies)

        self._emit("cache:bulk_set", {"count": len(entries), "total_size": total_size})

    def get_many(self, keys: Iterable[str]) -> dict[str, Any]:
        keys = list(keys)
        results = {}
        for key in keys:
            value = self.get(key, _MISSING)
            if value is not _MISSING:
                results[key] = value

        self._emit("cache:bulk_get", {"requested": len(keys), "found": len(results)})
        return results

    async def warm_cache(self, strategies: Iterable[WarmingStrategy]) -> int:
        """Load and store each strategy's value. Loader failures are skipped."""
        strategies = list(strategies)
        self._emit("cache:warming_started", {"strategies": len(strategies)})

        loaded = 0
        for strategy in strategies:
            try:
                value = await strategy.loader()
            except Exception as e:
                logger.warning("Cache warming loader failed",
                              cache=self.name,
                              key=strategy.key,
                              error=str(e))
                self._emit("cache:warming_error", {"pattern": strategy.key, "error": str(e)})
                continue

            self.set(strategy.key, value, strategy.dependencies)
            loaded += 1

        self._emit("cache:warming_completed", {
            "strategies": len(strategies),
            "cache_size": len(self._entries),
        })
        return loaded

    def cleanup_expired(self) -> int:
        """Delete every entry older than the TTL."""
        now = self._clock()
        expired = [
            key for key, entry in self._entries.items()
            if now - entry.timestamp > self.settings.default_ttl
        ]

        for key in expired:
            self.delete(key)

        if expired:
            self._emit("cache:cleanup", {
                "cleaned_count": len(expired),
                "remaining_count": len(self._entries),
            })
            logger.debug("Expired cache entries removed",
                        cache=self.name,
                        count=len(expired))
        return len(expired)

    def get_metrics(self) -> CacheMetrics:
        total_requests = self._metrics.hits + self._metrics.misses
        self._metrics.hit_rate = self._metrics.hits / total_requests if total_requests else 0.0
        return self._metrics.model_copy()

    def get_detailed_metrics(self, top_n: int = 10) -> dict[str, Any]:
        metrics = self.get_metrics()
        entry_count = len(self._entries)

        return {
            **metrics.model_dump(),
            "entry_count": entry_count,
            "average_entry_size": metrics.total_size / entry_count if entry_count else 0,
            "memory_usage": {
                "total_bytes": metrics.total_size,
                "total_mb": metrics.total_size / (1024 * 1024),
                "utilization_percent": metrics.total_size / self.settings.max_size * 100,
            },
            "top_keys": self._top_accessed_keys(top_n),
        }

    def entry(self, key: str) -> CacheEntry | None:
        """Entry metadata without touching access statistics."""
        return self._entries.get(key)

    def keys(self) -> list[str]:
        return list(self._entries)

    @property
    def dependency_graph(self) -> DependencyGraph:
        return self._dependency_graph

    async def dispose(self):
        """Stop the sweep and drop every entry."""
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

        self._entries.clear()
        self._dependency_graph.clear()
        self._metrics.total_size = 0

        self._emit("cache:disposed", {})
        logger.info("PerformanceCache disposed", cache=self.name)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def _remove(self, key: str) -> CacheEntry | None:
        entry = self._entries.pop(key, None)
        if entry is None:
            return None

        self._metrics.total_size -= entry.size
        self._dependency_graph.remove_key(key)
        return entry

    def _ensure_space(self, required_size: int) -> None:
        while (
            self._metrics.total_size + required_size > self.settings.max_size
            or len(self._entries) >= self.settings.max_entries
        ):
            if not self._evict_lru():
                break

    def _evict_lru(self) -> bool:
        if not self._entries:
            return False

        oldest_key = min(self._entries, key=lambda k: self._entries[k].last_accessed)
        self.delete(oldest_key)
        self._metrics.evictions += 1

        self._emit("cache:evicted", {"key": oldest_key, "reason": "LRU"})
        return True

    async def _cleanup_loop(self):
        """Background expiry sweep."""
        while True:
            try:
                await asyncio.sleep(self.settings.cleanup_interval)
                self.cleanup_expired()

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Cache cleanup error", cache=self.name, error=str(e))

    def _record_hit(self) -> None:
        if self.settings.enable_metrics:
            self._metrics.hits += 1

    def _record_miss(self) -> None:
        if self.settings.enable_metrics:
            self._metrics.misses += 1

    def _top_accessed_keys(self, limit: int) -> list[dict[str, Any]]:
        ranked = sorted(
            self._entries.items(),
            key=lambda item: item[1].access_count,
            reverse=True,
        )
        return [
            {"key": key, "access_count": entry.access_count}
            for key, entry in ranked[:limit]
        ]

    def _emit(self, event: str, payload: dict[str, Any]) -> None:
        if self._events is not None:
            self._events.emit(event, {"cache": self.name, **payload})
