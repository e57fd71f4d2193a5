"""Dependency-aware caching, performance orchestration and snapshot rollback
for context-engineering MCP gateways."""

__version__ = "0.4.0"

from .cache import CrossDomainCache, PerformanceCache, SemanticAnalysisCache
from .events import EventBus
from .orchestration import PerformanceOrchestrator
from .storage import AtomicFileManager, RollbackManager

__all__ = [
    "AtomicFileManager",
    "CrossDomainCache",
    "EventBus",
    "PerformanceCache",
    "PerformanceOrchestrator",
    "RollbackManager",
    "SemanticAnalysisCache",
]
