"""Integration tests for the performance orchestrator's analysis operations."""

from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from context_gateway.cache import CrossDomainCache, SemanticAnalysisCache, estimate_size
from context_gateway.orchestration import (
    CrossDomainRequest,
    OrchestrationConfig,
    PerformanceOrchestrator,
    SemanticAnalysisRequest,
)
from context_gateway.orchestration.models import AlertThresholds, ParallelProcessingConfig, PerformanceConfig

FILES = ["/repo/Analysis/a.py", "/repo/Analysis/b.py", "/repo/Data/c.py"]


def make_config(**overrides) -> OrchestrationConfig:
    config = OrchestrationConfig(
        parallel_processing=ParallelProcessingConfig(retry_attempts=1),
        performance=PerformanceConfig(enable_metrics=False),
    )
    return config.model_copy(update=overrides)


@pytest_asyncio.fixture
async def orchestrator(fake_backend, event_bus, rollback_manager, clock):
    orchestrator = PerformanceOrchestrator(
        make_config(),
        backend=fake_backend,
        event_bus=event_bus,
        rollback_manager=rollback_manager,
        semantic_cache=SemanticAnalysisCache(clock=clock, event_bus=event_bus),
        cross_domain_cache=CrossDomainCache(clock=clock, event_bus=event_bus),
    )
    await orchestrator.initialize()
    yield orchestrator
    await orchestrator.shutdown()


class TestSemanticAnalysis:
    """Cache-first semantic analysis."""

    @pytest.mark.asyncio
    async def test_miss_fans_out_and_caches(self, orchestrator, fake_backend):
        result = await orchestrator.process_semantic_analysis(SemanticAnalysisRequest(file_paths=FILES))

        assert result.success
        assert not result.metrics.cache_hit
        assert result.metrics.parallel_tasks == 3
        assert result.metrics.optimizations_applied == [
            "parallel-processing", "memory-optimization", "result-caching",
        ]
        assert result.result["totalFiles"] == 3

    @pytest.mark.asyncio
    async def test_mutating_a_result_leaves_cache_intact(self, orchestrator):
        first = await orchestrator.process_semantic_analysis(SemanticAnalysisRequest(file_paths=FILES))
        first.result["fileResults"][0]["concepts"].append("Mutated")

        hit = await orchestrator.process_semantic_analysis(SemanticAnalysisRequest(file_paths=FILES))
        hit.result["fileResults"][0]["concepts"].append("Mutated")

        cached = orchestrator.semantic_cache.get_cached_analysis(FILES[0])
        assert "Mutated" not in cached["concepts"]
        entry = orchestrator.semantic_cache.cache.entry(orchestrator.semantic_cache.key_for(FILES[0]))
        assert entry.size == estimate_size(cached)
        assert result.result["aggregatedConcepts"] == ["A", "Shared", "B", "C"]
        assert result.result["averageAccuracy"] == pytest.approx(0.8)
        assert sorted(fake_backend.file_calls) == sorted(FILES)

    @pytest.mark.asyncio
    async def test_full_hit_skips_compute(self, orchestrator, fake_backend):
        await orchestrator.process_semantic_analysis(SemanticAnalysisRequest(file_paths=FILES))
        fake_backend.file_calls.clear()

        result = await orchestrator.process_semantic_analysis(
            SemanticAnalysisRequest(file_paths=list(reversed(FILES)), request_id="again"),
        )

        assert result.request_id == "again"
        assert result.metrics.cache_hit
        assert result.metrics.parallel_tasks == 0
        assert result.metrics.optimizations_applied == ["cache-hit"]
        assert fake_backend.file_calls == []
        assert result.result["totalFiles"] == 3

    @pytest.mark.asyncio
    async def test_invalidated_file_forces_recompute(self, orchestrator, fake_backend):
        await orchestrator.process_semantic_analysis(SemanticAnalysisRequest(file_paths=FILES))
        fake_backend.file_calls.clear()

        assert orchestrator.invalidate_file(FILES[0]) == 1
        result = await orchestrator.process_semantic_analysis(SemanticAnalysisRequest(file_paths=FILES))

        assert not result.metrics.cache_hit
        assert FILES[0] in fake_backend.file_calls

    @pytest.mark.asyncio
    async def test_single_file_runs_sequentially(self, orchestrator):
        result = await orchestrator.process_semantic_analysis(SemanticAnalysisRequest(file_paths=FILES[:1]))

        assert "sequential-processing" in result.metrics.optimizations_applied
        assert result.metrics.parallel_tasks == 1

    @pytest.mark.asyncio
    async def test_business_rules_can_be_excluded(self, orchestrator):
        result = await orchestrator.process_semantic_analysis(
            SemanticAnalysisRequest(file_paths=FILES, include_business_rules=False),
        )

        assert result.result["aggregatedBusinessRules"] == []
        assert "result-caching" not in result.metrics.optimizations_applied

    @pytest.mark.asyncio
    async def test_compute_error_becomes_failure_envelope(self, orchestrator, fake_backend):
        fake_backend.analyze_file = AsyncMock(side_effect=RuntimeError("parser crashed"))

        result = await orchestrator.process_semantic_analysis(SemanticAnalysisRequest(file_paths=FILES[:1]))

        assert not result.success
        assert result.error == "parser crashed"
        assert result.result is None
        assert orchestrator.get_performance_metrics().requests.failed == 1

    @pytest.mark.asyncio
    async def test_envelope_serializes_camel_case(self, orchestrator):
        result = await orchestrator.process_semantic_analysis(SemanticAnalysisRequest(file_paths=FILES[:1]))

        payload = result.to_json_dict()
        assert set(payload) == {"requestId", "success", "result", "error", "metrics"}
        assert set(payload["metrics"]) == {
            "totalTime", "cacheHit", "parallelTasks", "memoryUsed", "optimizationsApplied",
        }


class TestCrossDomainAnalysis:
    """Domain grouping, coordination and risk analysis."""

    @pytest.mark.asyncio
    async def test_coordination_result(self, orchestrator):
        result = await orchestrator.process_cross_domain_analysis(CrossDomainRequest(changed_files=FILES))

        assert result.success
        assert result.metrics.parallel_tasks == 2
        assert result.result["affectedDomains"] == ["Analysis", "Data"]
        assert result.result["coordinationPlan"] == "plan-test"
        assert result.result["crossDomainImpacts"]["Analysis"]["files"] == FILES[:2]
        assert "riskAnalysis" not in result.result
        assert result.metrics.optimizations_applied == [
            "domain-grouping", "parallel-domain-processing", "coordination-analysis", "domain-mapping-cached",
        ]

    @pytest.mark.asyncio
    async def test_second_request_is_cache_hit(self, orchestrator, fake_backend):
        await orchestrator.process_cross_domain_analysis(CrossDomainRequest(changed_files=FILES))
        fake_backend.domain_calls.clear()

        result = await orchestrator.process_cross_domain_analysis(CrossDomainRequest(changed_files=FILES[::-1]))

        assert result.metrics.cache_hit
        assert result.metrics.parallel_tasks == 0
        assert fake_backend.domain_calls == []

    @pytest.mark.asyncio
    async def test_mutating_a_mapping_leaves_cache_intact(self, orchestrator):
        first = await orchestrator.process_cross_domain_analysis(CrossDomainRequest(changed_files=FILES))
        first.result["affectedDomains"].clear()

        hit = await orchestrator.process_cross_domain_analysis(CrossDomainRequest(changed_files=FILES))
        hit.result["affectedDomains"].clear()

        cached = orchestrator.cross_domain_cache.get_cached_domain_mapping(FILES)
        assert cached["affectedDomains"] == ["Analysis", "Data"]

    @pytest.mark.asyncio
    async def test_risk_request_bypasses_mapping_without_risk(self, orchestrator):
        await orchestrator.process_cross_domain_analysis(CrossDomainRequest(changed_files=FILES))

        result = await orchestrator.process_cross_domain_analysis(
            CrossDomainRequest(changed_files=FILES, include_risk_analysis=True),
        )

        assert not result.metrics.cache_hit
        assert result.result["riskAnalysis"]["riskLevel"] == "Medium"
        assert "Cross-domain dependencies" in result.result["riskAnalysis"]["riskFactors"]

    @pytest.mark.asyncio
    async def test_target_domains_restrict_grouping(self, orchestrator):
        result = await orchestrator.process_cross_domain_analysis(
            CrossDomainRequest(changed_files=FILES, target_domains=["Data"]),
        )

        assert result.result["affectedDomains"] == ["Data"]
        assert "sequential-domain-processing" in result.metrics.optimizations_applied

    @pytest.mark.asyncio
    async def test_file_change_evicts_mapping(self, orchestrator):
        await orchestrator.process_cross_domain_analysis(CrossDomainRequest(changed_files=FILES))

        orchestrator.invalidate_file(FILES[2])
        result = await orchestrator.process_cross_domain_analysis(CrossDomainRequest(changed_files=FILES))

        assert not result.metrics.cache_hit


class TestMetricsAndHealth:
    """System-wide metrics, alerts and the health check."""

    @pytest.mark.asyncio
    async def test_request_counters_and_percentiles(self, orchestrator):
        for _ in range(3):
            await orchestrator.process_semantic_analysis(SemanticAnalysisRequest(file_paths=FILES))

        metrics = orchestrator.get_performance_metrics()

        assert metrics.requests.total == 3
        assert metrics.requests.successful == 3
        assert metrics.caching.hit_rate > 0
        assert metrics.parallel_processing.tasks_processed == 3
        assert metrics.performance.p99_response_time >= metrics.performance.p95_response_time > 0
        assert metrics.performance.throughput_per_second > 0

    @pytest.mark.asyncio
    async def test_healthy_by_default(self, orchestrator):
        health = await orchestrator.perform_health_check()

        assert health["healthy"] is True
        assert health["warnings"] == []
        assert health["components"] == {"caching": True, "parallelProcessing": True, "memoryOptimization": True}
        assert "requests" in health["metrics"]

    @pytest.mark.asyncio
    async def test_threshold_breaches_raise_warnings_and_alerts(self, fake_backend, event_bus, recorder, rollback_manager):
        config = make_config(performance=PerformanceConfig(
            enable_metrics=False,
            alert_thresholds=AlertThresholds(response_time=-1, memory_usage=0, queue_size=0),
        ))
        orchestrator = PerformanceOrchestrator(
            config, backend=fake_backend, event_bus=event_bus, rollback_manager=rollback_manager,
        )
        await orchestrator.process_semantic_analysis(SemanticAnalysisRequest(file_paths=FILES[:1]))

        health = await orchestrator.perform_health_check()
        breaches = orchestrator.check_performance_alerts()

        assert health["healthy"] is False
        assert len(health["warnings"]) == 2
        assert {breach["type"] for breach in breaches} == {"high_response_time", "high_memory_usage"}
        assert len(recorder.named("performance:alert")) == 2
        assert recorder.named("performance:metrics")

    @pytest.mark.asyncio
    async def test_lifecycle_events(self, fake_backend, event_bus, recorder, rollback_manager):
        async with PerformanceOrchestrator(
            make_config(), backend=fake_backend, event_bus=event_bus, rollback_manager=rollback_manager,
        ):
            assert recorder.named("orchestrator:initialized")

        assert recorder.named("orchestrator:shutdown")
