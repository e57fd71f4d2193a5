"""Performance orchestration for context-engineering operations.

Key Components:
- PerformanceOrchestrator: cache-first semantic, cross-domain and holistic operations
- ParallelProcessor: bounded asyncio worker pool with retries and timeouts
- MemoryOptimizer: size reduction for analysis payloads
- DomainLockRegistry: serializes holistic updates per domain
"""

from .backends import AnalysisBackend, FileHeuristicBackend
from .domains import group_files_by_domain, infer_domains
from .locks import DomainLockRegistry
from .memory_optimizer import MemoryOptimizer
from .models import (
    CrossDomainRequest,
    HolisticUpdateRequest,
    OrchestrationConfig,
    OrchestrationMetrics,
    OrchestrationResult,
    PerformanceMetrics,
    SemanticAnalysisRequest,
)
from .orchestrator import PerformanceOrchestrator, timed_operation
from .parallel_processor import ParallelProcessor, ProcessingTask, TaskResult

__all__ = [
    "AnalysisBackend",
    "CrossDomainRequest",
    "DomainLockRegistry",
    "FileHeuristicBackend",
    "HolisticUpdateRequest",
    "MemoryOptimizer",
    "OrchestrationConfig",
    "OrchestrationMetrics",
    "OrchestrationResult",
    "ParallelProcessor",
    "PerformanceMetrics",
    "PerformanceOrchestrator",
    "ProcessingTask",
    "SemanticAnalysisRequest",
    "TaskResult",
    "group_files_by_domain",
    "infer_domains",
    "timed_operation",
]
