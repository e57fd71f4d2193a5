"""Bounded asyncio worker pool for analysis fan-out.

Tasks are dispatched to handlers registered per task type. Concurrency is capped
by ``max_workers``; the number of queued plus running tasks is capped by
``queue_capacity``. Each task attempt runs under a timeout and failed attempts
are retried up to ``retry_attempts`` times in total.
"""

import asyncio
import itertools
import time
from collections import Counter
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

import structlog

from ..errors import ProcessorShutdownError, QueueFullError
from ..events import EventBus
from .backends import AnalysisBackend, FileHeuristicBackend
from .domains import path_in_domain
from .models import ParallelProcessingConfig

logger = structlog.get_logger()

TaskHandler = Callable[[dict[str, Any]], Awaitable[Any]]


class TaskStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ProcessingTask:
    id: str
    type: str
    payload: dict[str, Any] = field(default_factory=dict)
    priority: int = 5
    timeout: float | None = None  # seconds, defaults to the pool setting
    retries: int | None = None  # total attempts, defaults to the pool setting
    status: TaskStatus = TaskStatus.PENDING


@dataclass
class TaskResult:
    task_id: str
    success: bool
    result: Any = None
    error: str | None = None
    processing_time: float = 0.0  # milliseconds
    attempts: int = 0


@dataclass
class ProcessorMetrics:
    tasks_processed: int = 0
    tasks_succeeded: int = 0
    tasks_failed: int = 0
    average_processing_time: float = 0.0
    current_queue_size: int = 0
    active_workers: int = 0
    total_processing_time: float = 0.0


class ParallelProcessor:
    """Runs batches of typed tasks concurrently with retries and timeouts."""

    def __init__(
        self,
        config: ParallelProcessingConfig | None = None,
        backend: AnalysisBackend | None = None,
        event_bus: EventBus | None = None,
        retry_delay: float = 0.1,
    ):
        self.config = config or ParallelProcessingConfig()
        self.backend = backend or FileHeuristicBackend()
        self.retry_delay = retry_delay
        self._events = event_bus

        self._semaphore = asyncio.Semaphore(self.config.max_workers)
        self._queued = 0
        self._active = 0
        self._shutting_down = False
        self._ids = itertools.count(1)

        self._metrics = ProcessorMetrics()
        self._tasks_by_type: Counter[str] = Counter()

        self._handlers: dict[str, TaskHandler] = {
            "semantic-analysis": lambda p: self.backend.analyze_file(p["filePath"]),
            "domain-analysis": lambda p: self.backend.analyze_domain(p["domain"], p["files"]),
            "cross-domain-coordination": lambda p: self.backend.coordinate_domains(p["domains"]),
            "context-generation": lambda p: self.backend.generate_context(
                p["domain"], p["analysisResults"], p.get("domainResult"),
            ),
        }

    def register_handler(self, task_type: str, handler: TaskHandler) -> None:
        self._handlers[task_type] = handler

    async def initialize(self):
        self._shutting_down = False
        self._emit("processor:initialized", {"max_workers": self.config.max_workers})
        logger.info("ParallelProcessor initialized",
                   max_workers=self.config.max_workers,
                   queue_capacity=self.config.queue_capacity)

    async def submit_batch(self, tasks: list[ProcessingTask]) -> dict[str, TaskResult]:
        """Run ``tasks`` concurrently, highest priority first.

        Raises:
            QueueFullError: the batch would exceed the queue capacity
            ProcessorShutdownError: the pool is shutting down
        """
        if self._shutting_down:
            raise ProcessorShutdownError("Processor is shutting down")

        if self._queued + self._active + len(tasks) > self.config.queue_capacity:
            raise QueueFullError(
                f"Task queue is full (capacity {self.config.queue_capacity}, "
                f"pending {self._queued + self._active}, requested {len(tasks)})"
            )

        self._queued += len(tasks)
        for position, task in enumerate(tasks, start=1):
            self._emit("task:submitted", {"task_id": task.id, "queue_position": self._queued - len(tasks) + position})

        ordered = sorted(tasks, key=lambda t: t.priority, reverse=True)
        results = await asyncio.gather(*(self._run(task) for task in ordered))

        by_id = {result.task_id: result for result in results}
        self._emit("batch:completed", {"batch_size": len(tasks), "results": len(by_id)})
        return by_id

    async def process_semantic_analysis_batch(self, file_paths: list[str]) -> dict[str, Any]:
        """Analysis result per file path; failed files are left out."""
        tasks = {
            self._task_id("semantic", path): path
            for path in file_paths
        }
        results = await self.submit_batch([
            ProcessingTask(id=task_id, type="semantic-analysis", payload={"filePath": path}, priority=5)
            for task_id, path in tasks.items()
        ])

        return {
            path: results[task_id].result
            for task_id, path in tasks.items()
            if results[task_id].success and results[task_id].result
        }

    async def process_cross_domain_analysis(self, domain_files: dict[str, list[str]]) -> dict[str, Any]:
        """Per-domain analysis plus a ``coordination`` entry built from the domains that succeeded."""
        tasks = {
            self._task_id("domain-analysis", domain): domain
            for domain in domain_files
        }
        results = await self.submit_batch([
            ProcessingTask(
                id=task_id,
                type="domain-analysis",
                payload={"domain": domain, "files": domain_files[domain]},
                priority=7,
                timeout=max(self.config.default_timeout, 45.0),
            )
            for task_id, domain in tasks.items()
        ])

        analysis = {
            domain: results[task_id].result
            for task_id, domain in tasks.items()
            if results[task_id].success
        }

        # Coordination depends on every domain analysis having finished.
        coordination_id = self._task_id("cross-domain-coord", "all")
        coordination = await self.submit_batch([ProcessingTask(
            id=coordination_id,
            type="cross-domain-coordination",
            payload={"domains": list(analysis)},
            priority=8,
            timeout=max(self.config.default_timeout, 60.0),
        )])
        if coordination[coordination_id].success:
            analysis["coordination"] = coordination[coordination_id].result

        return analysis

    async def process_context_generation(
        self,
        domains: list[str],
        analysis_results: dict[str, Any],
        domain_results: dict[str, Any],
    ) -> dict[str, Any]:
        tasks = {
            self._task_id("context-gen", domain): domain
            for domain in domains
        }
        results = await self.submit_batch([
            ProcessingTask(
                id=task_id,
                type="context-generation",
                payload={
                    "domain": domain,
                    "analysisResults": analysis_results,
                    "domainResult": domain_results.get(domain),
                },
                priority=9,
            )
            for task_id, domain in tasks.items()
        ])

        generated = {}
        for task_id, domain in tasks.items():
            result = results[task_id]
            if not result.success:
                raise RuntimeError(f"Context generation failed for {domain}: {result.error}")
            generated[domain] = result.result
        return generated

    async def process_holistic_context_update(
        self,
        changed_files: list[str],
        target_domains: list[str],
        update_type: str,
    ) -> dict[str, Any]:
        """Semantic, domain and context-generation phases for one update."""
        started = time.perf_counter()

        analysis_results = await self.process_semantic_analysis_batch(changed_files)

        domain_files = {
            domain: [path for path in changed_files if path_in_domain(path, domain)]
            for domain in target_domains
        }
        domain_results = await self.process_cross_domain_analysis(domain_files)

        generation_results = await self.process_context_generation(
            target_domains, analysis_results, domain_results,
        )

        return {
            "success": True,
            "updateType": update_type,
            "processingTime": (time.perf_counter() - started) * 1000,
            "analysisResults": analysis_results,
            "domainResults": domain_results,
            "generationResults": generation_results,
        }

    def get_metrics(self) -> ProcessorMetrics:
        self._metrics.current_queue_size = self._queued
        self._metrics.active_workers = self._active
        if self._metrics.tasks_processed:
            self._metrics.average_processing_time = (
                self._metrics.total_processing_time / self._metrics.tasks_processed
            )
        return ProcessorMetrics(**asdict(self._metrics))

    def get_detailed_metrics(self) -> dict[str, Any]:
        metrics = self.get_metrics()
        return {
            **asdict(metrics),
            "success_rate": metrics.tasks_succeeded / metrics.tasks_processed if metrics.tasks_processed else 0.0,
            "queue_utilization": self._queued / self.config.queue_capacity,
            "worker_utilization": self._active / self.config.max_workers,
            "tasks_by_type": dict(self._tasks_by_type),
        }

    async def shutdown(self):
        """Refuse new work and wait for running tasks to drain."""
        self._shutting_down = True

        while self._active or self._queued:
            await asyncio.sleep(0.01)

        self._emit("processor:shutdown", {"tasks_processed": self._metrics.tasks_processed})
        logger.info("ParallelProcessor shutdown", tasks_processed=self._metrics.tasks_processed)

    async def _run(self, task: ProcessingTask) -> TaskResult:
        async with self._semaphore:
            self._queued -= 1
            self._active += 1
            task.status = TaskStatus.RUNNING
            self._emit("task:started", {"task_id": task.id, "type": task.type})
            try:
                result = await self._execute_with_retries(task)
            finally:
                self._active -= 1

        self._record(task, result)
        return result

    async def _execute_with_retries(self, task: ProcessingTask) -> TaskResult:
        started = time.perf_counter()

        handler = self._handlers.get(task.type)
        if handler is None:
            return TaskResult(task_id=task.id, success=False, error=f"Unknown task type: {task.type}")

        timeout = task.timeout if task.timeout is not None else self.config.default_timeout
        max_attempts = max(1, task.retries if task.retries is not None else self.config.retry_attempts)

        error = None
        for attempt in range(1, max_attempts + 1):
            try:
                value = await asyncio.wait_for(handler(task.payload), timeout)
                return TaskResult(
                    task_id=task.id,
                    success=True,
                    result=value,
                    processing_time=(time.perf_counter() - started) * 1000,
                    attempts=attempt,
                )
            except asyncio.TimeoutError:
                error = f"Task {task.id} timed out after {timeout}s"
            except Exception as e:
                error = str(e)

            logger.warning("Task attempt failed",
                          task_id=task.id,
                          attempt=attempt,
                          max_attempts=max_attempts,
                          error=error)
            if attempt < max_attempts:
                await asyncio.sleep(self.retry_delay * attempt)

        return TaskResult(
            task_id=task.id,
            success=False,
            error=error,
            processing_time=(time.perf_counter() - started) * 1000,
            attempts=max_attempts,
        )

    def _record(self, task: ProcessingTask, result: TaskResult) -> None:
        self._tasks_by_type[task.type] += 1
        self._metrics.tasks_processed += 1
        self._metrics.total_processing_time += result.processing_time

        if result.success:
            task.status = TaskStatus.COMPLETED
            self._metrics.tasks_succeeded += 1
            self._emit("task:completed", {"task_id": task.id, "processing_time": result.processing_time})
        else:
            task.status = TaskStatus.FAILED
            self._metrics.tasks_failed += 1
            self._emit("task:failed", {"task_id": task.id, "error": result.error})

    def _task_id(self, prefix: str, subject: str) -> str:
        return f"{prefix}:{subject}:{next(self._ids)}"

    def _emit(self, event: str, payload: dict[str, Any]) -> None:
        if self._events is not None:
            self._events.emit(event, payload)
