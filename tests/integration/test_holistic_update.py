"""Integration tests for holistic context updates with snapshot rollback."""

import asyncio
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from context_gateway.orchestration import HolisticUpdateRequest, OrchestrationConfig, PerformanceOrchestrator
from context_gateway.orchestration.models import ParallelProcessingConfig, PerformanceConfig
from context_gateway.storage import AtomicOperationResult, RollbackManager, RollbackStatus


def make_config(parallel: bool = True) -> OrchestrationConfig:
    return OrchestrationConfig(
        parallel_processing=ParallelProcessingConfig(enabled=parallel, retry_attempts=1),
        performance=PerformanceConfig(enable_metrics=False),
    )


@pytest_asyncio.fixture
async def orchestrator(fake_backend, event_bus, rollback_manager):
    orchestrator = PerformanceOrchestrator(
        make_config(),
        backend=fake_backend,
        event_bus=event_bus,
        rollback_manager=rollback_manager,
    )
    await orchestrator.initialize()
    yield orchestrator
    await orchestrator.shutdown()


def update_request(repo, **kwargs) -> HolisticUpdateRequest:
    return HolisticUpdateRequest(
        changed_files=[str(repo / "Analysis" / "src" / "fractal.py")],
        base_path=str(repo),
        **kwargs,
    )


class TestHolisticUpdateSuccess:
    """Happy path."""

    @pytest.mark.asyncio
    async def test_context_written_and_record_completed(self, orchestrator, rollback_manager, repo, read_tree):
        result = await orchestrator.process_holistic_context_update(
            update_request(repo, git_commit_hash="abc123", request_id="req-1"),
        )

        assert result.success, result.error
        payload = result.result
        assert payload["updateId"] == "holistic-req-1"
        assert payload["affectedDomains"] == ["Analysis"]
        assert payload["rollbackInfo"] == {
            "rollbackId": "holistic-req-1",
            "snapshotSaved": True,
            "rollbackCapable": True,
        }
        assert result.metrics.parallel_tasks == 1
        assert "rollback-preparation" in result.metrics.optimizations_applied
        assert "atomic-file-operations" in result.metrics.optimizations_applied

        context = read_tree(repo / "Analysis" / ".context")
        assert context["a.md"] == "A"
        assert context["b.md"] == "B\r\n"
        assert "fractal.py" in context["domain-overview.md"]

        state = await rollback_manager.load_rollback_state("holistic-req-1")
        assert state.status == RollbackStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_changed_files_are_evicted_from_cache(self, orchestrator, repo):
        changed = str(repo / "Analysis" / "src" / "fractal.py")
        orchestrator.semantic_cache.cache_analysis_result(changed, {"concepts": ["Stale"]})

        await orchestrator.process_holistic_context_update(update_request(repo))

        assert orchestrator.semantic_cache.get_cached_analysis(changed) is None

    @pytest.mark.asyncio
    async def test_soft_timeout_only_warns(self, orchestrator, recorder, repo):
        result = await orchestrator.process_holistic_context_update(update_request(repo, performance_timeout=0))

        assert result.success
        [warning] = recorder.named("performance:timeout_warning")
        assert warning["request_id"] == result.request_id

    @pytest.mark.asyncio
    async def test_concurrent_updates_on_same_domain_both_complete(self, orchestrator, rollback_manager, repo):
        results = await asyncio.gather(
            orchestrator.process_holistic_context_update(update_request(repo, request_id="one")),
            orchestrator.process_holistic_context_update(update_request(repo, request_id="two")),
        )

        assert all(result.success for result in results)
        states = await rollback_manager.list_rollback_states(RollbackStatus.COMPLETED)
        assert {state.update_id for state in states} == {"holistic-one", "holistic-two"}


class TestHolisticUpdatePreconditions:
    """Configuration that cannot serve a holistic update."""

    @pytest.mark.asyncio
    async def test_parallel_processing_required(self, fake_backend, rollback_manager, repo, read_tree):
        orchestrator = PerformanceOrchestrator(
            make_config(parallel=False), backend=fake_backend, rollback_manager=rollback_manager,
        )
        before = read_tree(repo)

        result = await orchestrator.process_holistic_context_update(update_request(repo))

        assert not result.success
        assert result.error == "Holistic context updates require parallel processing to be enabled"
        assert list(rollback_manager.state_dir.iterdir()) == []
        assert list(rollback_manager.snapshot_dir.iterdir()) == []
        assert read_tree(repo) == before

    @pytest.mark.asyncio
    async def test_snapshot_failure_aborts_before_writing(self, orchestrator, rollback_manager, repo, read_tree):
        before = read_tree(repo)
        rollback_manager.create_holistic_snapshot = AsyncMock(side_effect=OSError("no space left"))

        result = await orchestrator.process_holistic_context_update(update_request(repo))

        assert not result.success
        assert result.error == "no space left"
        assert read_tree(repo) == before


class TestHolisticUpdateFailure:
    """Automatic rollback after the snapshot was taken."""

    @pytest.mark.asyncio
    async def test_generation_failure_rolls_back(self, orchestrator, fake_backend, rollback_manager, repo, read_tree):
        fake_backend.fail_generation_for.add("Analysis")
        before = read_tree(repo)

        result = await orchestrator.process_holistic_context_update(update_request(repo, request_id="bad"))

        assert not result.success
        assert result.result["rolledBack"] is True
        assert "generation exploded for Analysis" in result.result["errors"][0]
        assert read_tree(repo) == before

        state = await rollback_manager.load_rollback_state("holistic-bad")
        assert state.status == RollbackStatus.ROLLED_BACK
        assert orchestrator.get_performance_metrics().requests.failed == 1

    @pytest.mark.asyncio
    async def test_partial_write_is_restored(self, fake_backend, event_bus, rollback_manager, repo, read_tree):
        context = repo / "Analysis" / ".context"
        before = read_tree(context)

        async def half_written(operations):
            (context / "a.md").unlink()
            (context / "c.md").write_text("C")
            return AtomicOperationResult(success=False, error="disk full", transaction_id="tx")

        atomic = AsyncMock()
        atomic.execute_atomic_operations.side_effect = half_written
        orchestrator = PerformanceOrchestrator(
            make_config(),
            backend=fake_backend,
            event_bus=event_bus,
            rollback_manager=rollback_manager,
            atomic_file_manager=atomic,
        )

        result = await orchestrator.process_holistic_context_update(update_request(repo))

        assert not result.success
        assert result.result["errors"] == ["disk full"]
        assert read_tree(context) == before

    @pytest.mark.asyncio
    async def test_failed_rollback_is_reported(self, tmp_path, fake_backend, date_clock, repo):
        atomic = AsyncMock()
        atomic.execute_atomic_operations.return_value = AtomicOperationResult(
            success=False, error="disk full", transaction_id="tx",
        )
        rollback_manager = RollbackManager(tmp_path / "rb", atomic_file_manager=atomic, clock=date_clock)
        orchestrator = PerformanceOrchestrator(
            make_config(), backend=fake_backend, rollback_manager=rollback_manager,
        )

        result = await orchestrator.process_holistic_context_update(update_request(repo, request_id="doomed"))

        assert not result.success
        assert result.result["errors"] == ["disk full", "Rollback failed: disk full"]
        assert result.result["rollbackInfo"]["rollbackCapable"] is False

        state = await rollback_manager.load_rollback_state("holistic-doomed")
        assert state.status == RollbackStatus.FAILED

    @pytest.mark.asyncio
    async def test_failure_fires_cleanup_trigger(self, orchestrator, fake_backend, rollback_manager, repo):
        fake_backend.fail_generation_for.add("Analysis")
        rollback_manager.trigger_cleanup = AsyncMock(wraps=rollback_manager.trigger_cleanup)

        await orchestrator.process_holistic_context_update(update_request(repo))

        rollback_manager.trigger_cleanup.assert_awaited_once_with("holistic-update-failure")
