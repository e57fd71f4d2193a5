"""Performance orchestrator for context-engineering operations.

Gives semantic analysis, cross-domain analysis and holistic context updates one
optimized path: cache check, parallel-or-sequential compute, cache store. Every
public operation returns an ``OrchestrationResult``; exceptions never escape.

Holistic updates additionally snapshot the affected domains before writing and
roll the snapshot back when any later phase fails.
"""

import asyncio
import copy
import time
import uuid
from collections import deque
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import structlog

from ..cache import CrossDomainCache, SemanticAnalysisCache
from ..errors import AtomicOperationError, PreconditionError
from ..events import EventBus
from ..storage import (
    AtomicFileManager,
    FileOperation,
    FileOperationType,
    RollbackManager,
    domain_context_path,
)
from .backends import AnalysisBackend, FileHeuristicBackend
from .domains import group_files_by_domain, infer_domains
from .locks import DomainLockRegistry
from .memory_optimizer import MemoryOptimizer
from .models import (
    CachingMetrics,
    CrossDomainRequest,
    HolisticUpdateRequest,
    MemoryMetrics,
    OrchestrationConfig,
    OrchestrationMetrics,
    OrchestrationResult,
    PerformanceMetrics,
    ProcessingMetrics,
    RequestMetrics,
    ResponseTimeMetrics,
    SemanticAnalysisRequest,
)
from .parallel_processor import ParallelProcessor

logger = structlog.get_logger()

RESPONSE_TIME_HISTORY = 1000
DEFAULT_RELIABILITY_SCORE = 0.94
DEFAULT_ROLLBACK_DIR = Path.home() / ".context-gateway" / "rollback"


class Stopwatch:
    def __init__(self):
        self.started = time.perf_counter()
        self.stopped: float | None = None

    @property
    def elapsed_ms(self) -> float:
        end = self.stopped if self.stopped is not None else time.perf_counter()
        return (end - self.started) * 1000


@contextmanager
def timed_operation(operation: str, request_id: str):
    """Time the enclosed block; the stopwatch keeps running until the block exits."""
    stopwatch = Stopwatch()
    try:
        yield stopwatch
    finally:
        stopwatch.stopped = time.perf_counter()
        logger.debug("Operation finished",
                    operation=operation,
                    request_id=request_id,
                    total_time_ms=round(stopwatch.elapsed_ms, 2))


def new_request_id(prefix: str) -> str:
    return f"{prefix}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


def consolidate_semantic_results(results: dict[str, dict[str, Any]]) -> dict[str, Any]:
    """Merge per-file analysis results into one summary."""
    concepts = {}
    rules = {}
    total_accuracy = 0.0

    for result in results.values():
        for concept in result.get("concepts") or []:
            concepts.setdefault(concept, None)
        for rule in result.get("businessRules") or []:
            rules.setdefault(rule, None)
        total_accuracy += result.get("accuracy") or 0.0

    return {
        "totalFiles": len(results),
        "aggregatedConcepts": list(concepts),
        "aggregatedBusinessRules": list(rules),
        "averageAccuracy": total_accuracy / len(results) if results else 0.0,
        "fileResults": list(results.values()),
    }


def assess_risk(domain_results: dict[str, Any]) -> dict[str, Any]:
    """Coarse risk rating for a set of per-domain analysis results."""
    domain_count = len(domain_results)
    file_count = sum(len(result.get("files", [])) for result in domain_results.values())

    factors = []
    if domain_count > 1:
        factors.append("Cross-domain dependencies")
    if file_count > 1:
        factors.append("Multiple file changes")

    if domain_count >= 3:
        level = "High"
    elif domain_count == 2 or file_count > 5:
        level = "Medium"
    else:
        level = "Low"

    mitigations = ["Rollback preparation"]
    if level != "Low":
        mitigations.insert(0, "Incremental deployment")

    return {
        "riskLevel": level,
        "riskFactors": factors,
        "mitigationStrategies": mitigations,
    }


class PerformanceOrchestrator:
    """Coordinates caches, the worker pool, memory optimization and rollback.

    Collaborators not supplied are built from ``config``. Call ``initialize``
    at startup and ``shutdown`` at exit, or use the instance as an async
    context manager.
    """

    def __init__(
        self,
        config: OrchestrationConfig | None = None,
        *,
        backend: AnalysisBackend | None = None,
        parallel_processor: ParallelProcessor | None = None,
        memory_optimizer: MemoryOptimizer | None = None,
        rollback_manager: RollbackManager | None = None,
        atomic_file_manager: AtomicFileManager | None = None,
        event_bus: EventBus | None = None,
        semantic_cache: SemanticAnalysisCache | None = None,
        cross_domain_cache: CrossDomainCache | None = None,
    ):
        self.config = config or OrchestrationConfig()
        self.events = event_bus or EventBus()
        self.backend = backend or FileHeuristicBackend()

        self.semantic_cache = semantic_cache or SemanticAnalysisCache(event_bus=self.events)
        self.cross_domain_cache = cross_domain_cache or CrossDomainCache(event_bus=self.events)
        self.parallel_processor = parallel_processor or ParallelProcessor(
            self.config.parallel_processing,
            backend=self.backend,
            event_bus=self.events,
        )
        self.memory_optimizer = memory_optimizer or MemoryOptimizer(self.config.memory_optimization)

        self._rollback_manager = rollback_manager
        self._atomic_file_manager = atomic_file_manager
        self._domain_locks = DomainLockRegistry()

        self._response_times: deque[float] = deque(maxlen=RESPONSE_TIME_HISTORY)
        self._request_counter = 0
        self._success_counter = 0
        self._failure_counter = 0
        self._started_at = time.perf_counter()

        self._metrics_task: asyncio.Task | None = None
        self._initialized = False

    @property
    def rollback_manager(self) -> RollbackManager:
        if self._rollback_manager is None:
            self._rollback_manager = RollbackManager(DEFAULT_ROLLBACK_DIR)
        return self._rollback_manager

    @property
    def atomic_file_manager(self) -> AtomicFileManager:
        if self._atomic_file_manager is None:
            self._atomic_file_manager = self.rollback_manager.atomic_file_manager
        return self._atomic_file_manager

    async def initialize(self):
        """Start cache sweeps, the worker pool and the metrics loop."""
        if self._initialized:
            return

        if self.config.caching.enabled:
            await self.semantic_cache.initialize()
            await self.cross_domain_cache.initialize()
        await self.parallel_processor.initialize()

        if self.config.performance.enable_metrics:
            self._metrics_task = asyncio.create_task(self._metrics_loop())

        self._started_at = time.perf_counter()
        self._initialized = True

        self.events.emit("orchestrator:initialized", {"config": self.config.model_dump()})
        logger.info("PerformanceOrchestrator initialized",
                   caching=self.config.caching.enabled,
                   parallel_processing=self.config.parallel_processing.enabled,
                   memory_optimization=self.config.memory_optimization.enabled)

    async def shutdown(self):
        if self._metrics_task:
            self._metrics_task.cancel()
            try:
                await self._metrics_task
            except asyncio.CancelledError:
                pass
            self._metrics_task = None

        await self.semantic_cache.dispose()
        await self.cross_domain_cache.dispose()
        await self.parallel_processor.shutdown()

        self._initialized = False
        self.events.emit("orchestrator:shutdown", {"requests": self._request_counter})
        logger.info("PerformanceOrchestrator shutdown", requests=self._request_counter)

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.shutdown()

    async def process_semantic_analysis(self, request: SemanticAnalysisRequest) -> OrchestrationResult:
        """Analyse files, serving fully cached requests without any compute."""
        request_id = request.request_id or new_request_id("semantic")
        optimizations: list[str] = []
        self._request_counter += 1

        with timed_operation("semantic-analysis", request_id) as timer:
            try:
                if self.config.caching.enabled:
                    cached = self._cached_semantic_results(request.file_paths)
                    if len(cached) == len(request.file_paths):
                        optimizations.append("cache-hit")
                        return self._success(request_id, consolidate_semantic_results(cached), timer, OrchestrationMetrics(
                            cache_hit=True,
                            parallel_tasks=0,
                            optimizations_applied=optimizations,
                        ))

                if self.config.parallel_processing.enabled and len(request.file_paths) > 1:
                    optimizations.append("parallel-processing")
                    analysis = await self.parallel_processor.process_semantic_analysis_batch(request.file_paths)
                    parallel_tasks = len(analysis)
                else:
                    optimizations.append("sequential-processing")
                    analysis = await self._analyze_files_sequential(request.file_paths)
                    parallel_tasks = 1

                if not request.include_business_rules:
                    analysis = {
                        path: {key: value for key, value in result.items() if key != "businessRules"}
                        for path, result in analysis.items()
                    }

                if self.config.memory_optimization.enabled and analysis:
                    optimizations.append("memory-optimization")
                    paths = list(analysis)
                    reduced = self.memory_optimizer.optimize_semantic_data([analysis[path] for path in paths])
                    analysis = dict(zip(paths, reduced))

                # Results without business rules are partial and are not cached.
                if self.config.caching.enabled and request.include_business_rules:
                    for path, result in analysis.items():
                        self.semantic_cache.cache_analysis_result(path, copy.deepcopy(result))
                    optimizations.append("result-caching")

                consolidated = consolidate_semantic_results(analysis)
                return self._success(request_id, consolidated, timer, OrchestrationMetrics(
                    cache_hit=False,
                    parallel_tasks=parallel_tasks,
                    memory_used=self.memory_optimizer.estimate_size(consolidated),
                    optimizations_applied=optimizations,
                ))

            except Exception as e:
                return self._failure(request_id, e, timer, optimizations, operation="semantic-analysis")

    async def process_cross_domain_analysis(self, request: CrossDomainRequest) -> OrchestrationResult:
        """Group changed files by domain and build a coordination result."""
        request_id = request.request_id or new_request_id("cross-domain")
        optimizations: list[str] = []
        self._request_counter += 1

        with timed_operation("cross-domain-analysis", request_id) as timer:
            try:
                if self.config.caching.enabled:
                    cached = self.cross_domain_cache.get_cached_domain_mapping(request.changed_files)
                    if cached is not None and (cached.get("riskAnalysis") is not None or not request.include_risk_analysis):
                        optimizations.append("cross-domain-cache-hit")
                        return self._success(request_id, copy.deepcopy(cached), timer, OrchestrationMetrics(
                            cache_hit=True,
                            parallel_tasks=0,
                            optimizations_applied=optimizations,
                        ))

                domains = request.target_domains or self.config.known_domains
                domain_files = group_files_by_domain(request.changed_files, domains)
                optimizations.append("domain-grouping")

                if self.config.parallel_processing.enabled and len(domain_files) > 1:
                    optimizations.append("parallel-domain-processing")
                    analysis = await self.parallel_processor.process_cross_domain_analysis(domain_files)
                    coordination = analysis.pop("coordination", None)
                else:
                    optimizations.append("sequential-domain-processing")
                    analysis, coordination = await self._analyze_domains_sequential(domain_files)

                result = {
                    "coordinationPlan": (coordination or {}).get("coordinationPlan", f"plan-{int(time.time() * 1000)}"),
                    "affectedDomains": list(analysis),
                    "crossDomainImpacts": analysis,
                    "estimatedDuration": (coordination or {}).get("estimatedDuration", 15_000),
                    "reliabilityScore": DEFAULT_RELIABILITY_SCORE,
                }
                optimizations.append("coordination-analysis")

                if request.include_risk_analysis:
                    result["riskAnalysis"] = assess_risk(analysis)
                    optimizations.append("risk-analysis")

                if self.config.caching.enabled:
                    self.cross_domain_cache.cache_domain_mapping(request.changed_files, copy.deepcopy(result))
                    optimizations.append("domain-mapping-cached")

                return self._success(request_id, result, timer, OrchestrationMetrics(
                    cache_hit=False,
                    parallel_tasks=len(domain_files),
                    memory_used=self.memory_optimizer.estimate_size(result),
                    optimizations_applied=optimizations,
                ))

            except Exception as e:
                return self._failure(request_id, e, timer, optimizations, operation="cross-domain-analysis")

    async def process_holistic_context_update(self, request: HolisticUpdateRequest) -> OrchestrationResult:
        """Regenerate context files for every domain touched by the changed files.

        The affected domains are snapshotted before anything is written; a
        failure in any later phase restores the snapshot. Updates touching the
        same domain run one at a time.
        """
        request_id = request.request_id or new_request_id("holistic")
        optimizations: list[str] = []
        self._request_counter += 1

        with timed_operation("holistic-update", request_id) as timer:
            try:
                if not self.config.parallel_processing.enabled:
                    raise PreconditionError("Holistic context updates require parallel processing to be enabled")

                domains = infer_domains(request.changed_files, self.config.known_domains)
                optimizations.append("domain-inference")

                async with self._domain_locks.hold(domains):
                    optimizations.append("domain-locking")
                    outcome = await self._run_holistic_update(request, request_id, domains, optimizations)

                if timer.elapsed_ms > request.performance_timeout * 1000:
                    self._warn_timeout(request_id, timer.elapsed_ms, request.performance_timeout)

                if not outcome["success"]:
                    self._record_failure(timer.elapsed_ms)
                    return OrchestrationResult(
                        request_id=request_id,
                        success=False,
                        result=outcome,
                        error="; ".join(outcome["errors"]),
                        metrics=OrchestrationMetrics(
                            total_time=timer.elapsed_ms,
                            parallel_tasks=len(domains),
                            optimizations_applied=optimizations,
                        ),
                    )

                return self._success(request_id, outcome, timer, OrchestrationMetrics(
                    cache_hit=False,
                    parallel_tasks=len(domains),
                    memory_used=outcome.get("optimizedMemoryUsage") or self.memory_optimizer.estimate_size(outcome),
                    optimizations_applied=optimizations,
                ))

            except Exception as e:
                return self._failure(request_id, e, timer, optimizations, operation="holistic-update")

    def invalidate_file(self, file_path: str) -> int:
        """Drop every cached result derived from ``file_path``."""
        return self.semantic_cache.invalidate_file(file_path) + self.cross_domain_cache.invalidate_file(file_path)

    def get_performance_metrics(self) -> PerformanceMetrics:
        semantic = self.semantic_cache.get_metrics()
        cross_domain = self.cross_domain_cache.get_metrics()
        hits = semantic.hits + cross_domain.hits
        lookups = hits + semantic.misses + cross_domain.misses

        processor = self.parallel_processor.get_metrics()
        memory = self.memory_optimizer.get_metrics()

        average = sum(self._response_times) / len(self._response_times) if self._response_times else 0.0

        return PerformanceMetrics(
            requests=RequestMetrics(
                total=self._request_counter,
                successful=self._success_counter,
                failed=self._failure_counter,
                average_response_time=average,
            ),
            caching=CachingMetrics(
                hit_rate=hits / lookups if lookups else 0.0,
                total_size=semantic.total_size + cross_domain.total_size,
                evictions=semantic.evictions + cross_domain.evictions,
            ),
            parallel_processing=ProcessingMetrics(
                active_workers=processor.active_workers,
                queue_size=processor.current_queue_size,
                tasks_processed=processor.tasks_processed,
                average_task_time=processor.average_processing_time,
            ),
            memory=MemoryMetrics(
                current_usage=memory.current_usage,
                peak_usage=memory.peak_usage,
                gc_triggered=memory.gc_triggered,
                optimizations=memory.optimizations,
            ),
            performance=ResponseTimeMetrics(
                average_response_time=average,
                p95_response_time=self._percentile(0.95),
                p99_response_time=self._percentile(0.99),
                throughput_per_second=self._throughput(),
            ),
        )

    async def perform_health_check(self) -> dict[str, Any]:
        metrics = self.get_performance_metrics()
        warnings = self._threshold_breaches(metrics)

        return {
            "healthy": not warnings,
            "components": {
                "caching": self.config.caching.enabled,
                "parallelProcessing": self.config.parallel_processing.enabled,
                "memoryOptimization": self.config.memory_optimization.enabled,
            },
            "metrics": metrics.to_json_dict(),
            "warnings": [warning["message"] for warning in warnings],
        }

    async def _run_holistic_update(
        self,
        request: HolisticUpdateRequest,
        request_id: str,
        domains: list[str],
        optimizations: list[str],
    ) -> dict[str, Any]:
        update_id = f"holistic-{request_id}"

        # Nothing has been written yet if this raises.
        await self.rollback_manager.create_holistic_snapshot(update_id, domains, request.base_path)
        optimizations.append("rollback-preparation")

        try:
            for path in request.changed_files:
                self.invalidate_file(path)
            optimizations.append("cache-invalidation")

            result = await self.parallel_processor.process_holistic_context_update(
                request.changed_files, domains, request.trigger_type,
            )
            optimizations.append("holistic-parallel-processing")

            if self.config.memory_optimization.enabled:
                result["optimizedMemoryUsage"] = self.memory_optimizer.optimize_holistic_result(result)
                optimizations.append("holistic-memory-optimization")

            operations = self._context_file_operations(request.base_path, result["generationResults"])
            atomic_result = await self.atomic_file_manager.execute_atomic_operations(operations)
            if not atomic_result.success:
                raise AtomicOperationError(atomic_result.error or "Context file batch failed")
            optimizations.append("atomic-file-operations")

            await self.rollback_manager.mark_update_completed(update_id)

        except Exception as e:
            logger.error("Holistic update failed, rolling back",
                        update_id=update_id,
                        domains=domains,
                        error=str(e))
            return await self._recover_failed_update(update_id, domains, e)

        logger.info("Holistic update completed",
                   update_id=update_id,
                   domains=domains,
                   files=len(operations),
                   commit=request.git_commit_hash)

        return {
            **result,
            "success": True,
            "updateId": update_id,
            "gitCommitHash": request.git_commit_hash,
            "affectedDomains": domains,
            "updatedFiles": [operation.target_path for operation in operations],
            "rollbackInfo": {
                "rollbackId": update_id,
                "snapshotSaved": True,
                "rollbackCapable": True,
            },
        }

    async def _recover_failed_update(self, update_id: str, domains: list[str], error: Exception) -> dict[str, Any]:
        errors = [str(error)]

        rolled_back = await self.rollback_manager.execute_holistic_rollback(update_id)
        if not rolled_back:
            state = await self.rollback_manager.load_rollback_state(update_id)
            reason = state.failure_reason if state and state.failure_reason else "see rollback logs"
            errors.append(f"Rollback failed: {reason}")
            logger.critical("Holistic rollback failed, manual intervention required",
                           update_id=update_id,
                           domains=domains)

        cleanup = await self.rollback_manager.trigger_cleanup("holistic-update-failure")
        if cleanup.errors:
            logger.warning("Rollback cleanup reported errors",
                          update_id=update_id,
                          errors=cleanup.errors)

        return {
            "success": False,
            "updateId": update_id,
            "affectedDomains": domains,
            "errors": errors,
            "rolledBack": rolled_back,
            "rollbackInfo": {
                "rollbackId": update_id,
                "snapshotSaved": True,
                "rollbackCapable": rolled_back,
            },
        }

    @staticmethod
    def _context_file_operations(base_path: str, generation_results: dict[str, Any]) -> list[FileOperation]:
        operations = []
        for domain, generated in generation_results.items():
            target = domain_context_path(base_path, domain) / generated["fileName"]
            operations.append(FileOperation(
                type=FileOperationType.UPDATE if target.exists() else FileOperationType.CREATE,
                target_path=str(target),
                content=generated["content"],
            ))
        return operations

    def _cached_semantic_results(self, file_paths: list[str]) -> dict[str, Any]:
        results = {}
        for path in file_paths:
            cached = self.semantic_cache.get_cached_analysis(path)
            if cached is not None:
                results[path] = copy.deepcopy(cached)
        return results

    async def _analyze_files_sequential(self, file_paths: list[str]) -> dict[str, Any]:
        results = {}
        for path in file_paths:
            results[path] = await self.backend.analyze_file(path)
        return results

    async def _analyze_domains_sequential(
        self,
        domain_files: dict[str, list[str]],
    ) -> tuple[dict[str, Any], dict[str, Any]]:
        analysis = {}
        for domain, files in domain_files.items():
            analysis[domain] = await self.backend.analyze_domain(domain, files)
        coordination = await self.backend.coordinate_domains(list(analysis))
        return analysis, coordination

    def _success(
        self,
        request_id: str,
        result: Any,
        timer: Stopwatch,
        metrics: OrchestrationMetrics,
    ) -> OrchestrationResult:
        metrics.total_time = timer.elapsed_ms
        self._record_success(metrics.total_time)
        return OrchestrationResult(request_id=request_id, success=True, result=result, metrics=metrics)

    def _failure(
        self,
        request_id: str,
        error: Exception,
        timer: Stopwatch,
        optimizations: list[str],
        operation: str,
    ) -> OrchestrationResult:
        total_time = timer.elapsed_ms
        self._record_failure(total_time)
        logger.error("Orchestrated operation failed",
                    operation=operation,
                    request_id=request_id,
                    error=str(error),
                    error_type=type(error).__name__)

        return OrchestrationResult(
            request_id=request_id,
            success=False,
            error=str(error),
            metrics=OrchestrationMetrics(
                total_time=total_time,
                optimizations_applied=optimizations,
            ),
        )

    def _record_success(self, response_time: float) -> None:
        self._success_counter += 1
        self._response_times.append(response_time)

    def _record_failure(self, response_time: float) -> None:
        self._failure_counter += 1
        self._response_times.append(response_time)

    def _warn_timeout(self, request_id: str, total_time: float, timeout: float) -> None:
        # Soft deadline: the update has already finished, nothing is cancelled.
        logger.warning("Holistic update exceeded performance timeout",
                      request_id=request_id,
                      total_time_ms=round(total_time, 2),
                      timeout_s=timeout)
        self.events.emit("performance:timeout_warning", {
            "request_id": request_id,
            "total_time": total_time,
            "timeout": timeout * 1000,
        })

    def _percentile(self, percentile: float) -> float:
        if not self._response_times:
            return 0.0
        ordered = sorted(self._response_times)
        return ordered[min(int(percentile * len(ordered)), len(ordered) - 1)]

    def _throughput(self) -> float:
        uptime = time.perf_counter() - self._started_at
        return self._request_counter / uptime if uptime > 0 else 0.0

    def _threshold_breaches(self, metrics: PerformanceMetrics) -> list[dict[str, Any]]:
        thresholds = self.config.performance.alert_thresholds
        breaches = []

        if metrics.performance.average_response_time > thresholds.response_time:
            breaches.append({
                "type": "high_response_time",
                "value": metrics.performance.average_response_time,
                "threshold": thresholds.response_time,
                "message": f"Average response time {metrics.performance.average_response_time:.1f}ms exceeds threshold",
            })

        if metrics.memory.current_usage > thresholds.memory_usage:
            breaches.append({
                "type": "high_memory_usage",
                "value": metrics.memory.current_usage,
                "threshold": thresholds.memory_usage,
                "message": f"Memory usage {metrics.memory.current_usage} bytes exceeds threshold",
            })

        if metrics.parallel_processing.queue_size > thresholds.queue_size:
            breaches.append({
                "type": "high_queue_size",
                "value": metrics.parallel_processing.queue_size,
                "threshold": thresholds.queue_size,
                "message": f"Queue size {metrics.parallel_processing.queue_size} exceeds threshold",
            })

        return breaches

    def check_performance_alerts(self) -> list[dict[str, Any]]:
        """Emit ``performance:metrics`` and one ``performance:alert`` per breached threshold."""
        metrics = self.get_performance_metrics()
        self.events.emit("performance:metrics", metrics.to_json_dict())

        breaches = self._threshold_breaches(metrics)
        for breach in breaches:
            alert = {key: value for key, value in breach.items() if key != "message"}
            self.events.emit("performance:alert", alert)
            logger.warning("Performance alert", **alert)
        return breaches

    async def _metrics_loop(self):
        """Background metrics publication."""
        while True:
            try:
                await asyncio.sleep(self.config.performance.metrics_interval)
                self.check_performance_alerts()
                if self.config.memory_optimization.enabled:
                    self.memory_optimizer.maybe_collect()

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Metrics loop error", error=str(e))
