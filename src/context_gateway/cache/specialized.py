"""Tuned cache instances for per-file analysis and cross-domain mappings."""

import hashlib
import time
from collections.abc import Iterable
from typing import Any

from ..events import EventBus
from .performance_cache import CacheMetrics, CacheSettings, Clock, PerformanceCache

MB = 1024 * 1024


def _md5(text: str) -> str:
    return hashlib.md5(text.encode("utf-8")).hexdigest()


class _CacheFacade:
    """Shared plumbing for caches that wrap a PerformanceCache."""

    def __init__(self, cache: PerformanceCache):
        self.cache = cache

    async def initialize(self):
        await self.cache.initialize()

    async def dispose(self):
        await self.cache.dispose()

    def invalidate_file(self, file_path: str) -> int:
        return self.cache.invalidate_by_dependency(file_path)

    def get_metrics(self) -> CacheMetrics:
        return self.cache.get_metrics()

    def __len__(self) -> int:
        return len(self.cache)


class SemanticAnalysisCache(_CacheFacade):
    """Per-file semantic analysis results, keyed by a hash of the file path."""

    DEPENDENCY = "analysis-results"

    def __init__(self, *, clock: Clock = time.time, event_bus: EventBus | None = None):
        super().__init__(PerformanceCache(
            CacheSettings(max_size=50 * MB, max_entries=5000, default_ttl=60 * 60),
            name="semantic-analysis",
            clock=clock,
            event_bus=event_bus,
        ))

    @staticmethod
    def key_for(file_path: str) -> str:
        return f"analysis:{_md5(file_path)}"

    def cache_analysis_result(self, file_path: str, result: Any) -> None:
        self.cache.set(self.key_for(file_path), result, [file_path, self.DEPENDENCY])

    def get_cached_analysis(self, file_path: str) -> Any | None:
        return self.cache.get(self.key_for(file_path))


class CrossDomainCache(_CacheFacade):
    """Domain mappings keyed by the (order-insensitive) set of changed files."""

    DEPENDENCY = "domain-mappings"

    def __init__(self, *, clock: Clock = time.time, event_bus: EventBus | None = None):
        super().__init__(PerformanceCache(
            CacheSettings(max_size=30 * MB, max_entries=3000, default_ttl=45 * 60),
            name="cross-domain",
            clock=clock,
            event_bus=event_bus,
        ))

    @staticmethod
    def key_for(files: Iterable[str]) -> str:
        return f"domain-mapping:{_md5('|'.join(sorted(files)))}"

    def cache_domain_mapping(self, files: Iterable[str], result: Any) -> None:
        files = list(files)
        self.cache.set(self.key_for(files), result, [*files, self.DEPENDENCY])

    def get_cached_domain_mapping(self, files: Iterable[str]) -> Any | None:
        return self.cache.get(self.key_for(files))
