"""In-memory caching for analysis and domain-mapping results.

Key Components:
- PerformanceCache: LRU/TTL cache bounded by byte size and entry count
- DependencyGraph: reverse index used for tag-based bulk invalidation
- SemanticAnalysisCache: per-file analysis results
- CrossDomainCache: domain mappings keyed by the changed file set

Usage Example:
    ```python
    cache = PerformanceCache(CacheSettings(max_entries=1000))
    await cache.initialize()

    cache.set("analysis:abc", result, dependencies=["/repo/src/app.py"])

    # A file changed: drop everything derived from it
    cache.invalidate_by_dependency("/repo/src/app.py")

    await cache.dispose()
    ```
"""

from .dependency_graph import DependencyGraph
from .performance_cache import (
    CacheEntry,
    CacheMetrics,
    CacheSettings,
    PerformanceCache,
    WarmingStrategy,
    estimate_size,
)
from .specialized import CrossDomainCache, SemanticAnalysisCache

__all__ = [
    "CacheEntry",
    "CacheMetrics",
    "CacheSettings",
    "CrossDomainCache",
    "DependencyGraph",
    "PerformanceCache",
    "SemanticAnalysisCache",
    "WarmingStrategy",
    "estimate_size",
]
