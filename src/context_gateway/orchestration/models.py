"""Configuration, request and result shapes for the performance orchestrator."""

from typing import Any

from pydantic import BaseModel, Field

from ..storage.models import CamelModel

MB = 1024 * 1024

DEFAULT_DOMAINS = ["Analysis", "Data", "Messaging", "Infrastructure"]


class CachingConfig(BaseModel):
    enabled: bool = True


class ParallelProcessingConfig(BaseModel):
    enabled: bool = True
    max_workers: int = 4
    queue_capacity: int = 1000
    default_timeout: float = 30.0  # seconds per task attempt
    retry_attempts: int = 3


class MemoryOptimizationConfig(BaseModel):
    enabled: bool = True
    max_memory_usage: int = 500 * MB
    gc_threshold: float = 0.8


class AlertThresholds(BaseModel):
    response_time: float = 30_000  # milliseconds
    memory_usage: int = 400 * MB
    queue_size: int = 500


class PerformanceConfig(BaseModel):
    enable_metrics: bool = True
    metrics_interval: float = 60.0  # seconds
    alert_thresholds: AlertThresholds = Field(default_factory=AlertThresholds)


class OrchestrationConfig(BaseModel):
    caching: CachingConfig = Field(default_factory=CachingConfig)
    parallel_processing: ParallelProcessingConfig = Field(default_factory=ParallelProcessingConfig)
    memory_optimization: MemoryOptimizationConfig = Field(default_factory=MemoryOptimizationConfig)
    performance: PerformanceConfig = Field(default_factory=PerformanceConfig)
    known_domains: list[str] = Field(default_factory=lambda: list(DEFAULT_DOMAINS))


class SemanticAnalysisRequest(CamelModel):
    file_paths: list[str]
    include_business_rules: bool = True
    priority: int = 5
    request_id: str | None = None


class CrossDomainRequest(CamelModel):
    changed_files: list[str]
    target_domains: list[str] | None = None
    include_risk_analysis: bool = False
    request_id: str | None = None


class HolisticUpdateRequest(CamelModel):
    changed_files: list[str]
    git_commit_hash: str | None = None
    trigger_type: str = "manual"
    performance_timeout: float = 60.0  # seconds, warn-only
    request_id: str | None = None
    base_path: str = "."


class OrchestrationMetrics(CamelModel):
    total_time: float = 0.0  # milliseconds
    cache_hit: bool = False
    parallel_tasks: int = 0
    memory_used: int = 0
    optimizations_applied: list[str] = Field(default_factory=list)


class OrchestrationResult(CamelModel):
    """Uniform envelope returned by every orchestrator operation."""
    request_id: str
    success: bool
    result: Any = None
    error: str | None = None
    metrics: OrchestrationMetrics = Field(default_factory=OrchestrationMetrics)


class RequestMetrics(CamelModel):
    total: int = 0
    successful: int = 0
    failed: int = 0
    average_response_time: float = 0.0


class CachingMetrics(CamelModel):
    hit_rate: float = 0.0
    total_size: int = 0
    evictions: int = 0


class ProcessingMetrics(CamelModel):
    active_workers: int = 0
    queue_size: int = 0
    tasks_processed: int = 0
    average_task_time: float = 0.0


class MemoryMetrics(CamelModel):
    current_usage: int = 0
    peak_usage: int = 0
    gc_triggered: int = 0
    optimizations: int = 0


class ResponseTimeMetrics(CamelModel):
    average_response_time: float = 0.0
    p95_response_time: float = 0.0
    p99_response_time: float = 0.0
    throughput_per_second: float = 0.0


class PerformanceMetrics(CamelModel):
    requests: RequestMetrics
    caching: CachingMetrics
    parallel_processing: ProcessingMetrics
    memory: MemoryMetrics
    performance: ResponseTimeMetrics
