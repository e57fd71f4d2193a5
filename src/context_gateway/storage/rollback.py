"""Snapshot and rollback management for holistic context updates.

Before a holistic update writes anything, every affected domain's ``.context``
directory is captured into a snapshot file. If the update fails, the snapshot
is replayed through the atomic file executor so that each domain ends up
byte-identical to its pre-update state.

Directory layout under ``base_dir``::

    state/<update_id>.rollback.json      small index record (status etc.)
    snapshots/<update_id>.snapshot.json  full HolisticRollbackData
    atomic/                              atomic executor work directory
"""

import json
import time
from collections import Counter
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import structlog

from ..errors import AtomicOperationError, RollbackDataNotFoundError
from .atomic_files import AtomicFileManager, read_json, read_text, write_json
from .models import (
    AgeBuckets,
    CleanupResult,
    CleanupStatistics,
    ContextSnapshot,
    FileOperation,
    FileOperationType,
    HolisticRollbackData,
    RollbackCleanupConfig,
    RollbackState,
    RollbackStatus,
)

logger = structlog.get_logger()

CONTEXT_DIR_NAME = ".context"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def domain_context_path(base_path: str | Path, domain: str) -> Path:
    return Path(base_path).resolve() / domain / CONTEXT_DIR_NAME


class RollbackManager:
    """Owns the on-disk rollback state and snapshot directories."""

    def __init__(
        self,
        base_dir: str | Path,
        cleanup_config: RollbackCleanupConfig | None = None,
        atomic_file_manager: AtomicFileManager | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.base_dir = Path(base_dir)
        self.state_dir = self.base_dir / "state"
        self.snapshot_dir = self.base_dir / "snapshots"
        self.atomic_dir = self.base_dir / "atomic"

        for directory in [self.state_dir, self.snapshot_dir, self.atomic_dir]:
            directory.mkdir(parents=True, exist_ok=True)

        self.cleanup_config = cleanup_config or RollbackCleanupConfig()
        self.atomic_file_manager = atomic_file_manager or AtomicFileManager(self.atomic_dir)
        self._clock = clock

    def state_path(self, update_id: str) -> Path:
        return self.state_dir / f"{update_id}.rollback.json"

    def snapshot_path(self, update_id: str) -> Path:
        return self.snapshot_dir / f"{update_id}.snapshot.json"

    async def create_holistic_snapshot(
        self,
        update_id: str,
        affected_domains: list[str],
        base_path: str | Path = ".",
    ) -> HolisticRollbackData:
        """Capture every affected domain's context directory and persist it.

        Domains without a context directory get an empty snapshot. Any I/O
        error propagates; callers must not proceed with the update then.
        """
        timestamp = self._clock()

        snapshots = []
        for domain in affected_domains:
            context_path = domain_context_path(base_path, domain)
            snapshots.append(ContextSnapshot(
                domain_path=str(context_path),
                files=await self._read_tree(context_path),
                timestamp=timestamp,
            ))

        rollback_data = HolisticRollbackData(
            update_id=update_id,
            timestamp=timestamp,
            affected_domains=list(affected_domains),
            snapshots=snapshots,
        )
        state = RollbackState(
            update_id=update_id,
            timestamp=timestamp,
            affected_domains=list(affected_domains),
            snapshot_path=str(self.snapshot_path(update_id)),
        )

        # Snapshot first: a state record must never point at a missing snapshot.
        await write_json(self.snapshot_path(update_id), rollback_data.to_json_dict())
        try:
            await self._save_state(state)
        except Exception:
            # A snapshot without a state record is invisible to cleanup.
            self.snapshot_path(update_id).unlink(missing_ok=True)
            raise

        logger.info("Holistic snapshot created",
                   update_id=update_id,
                   domains=affected_domains,
                   files=sum(len(s.files) for s in snapshots))
        return rollback_data

    async def execute_holistic_rollback(self, update_id: str) -> bool:
        """Restore every snapshotted domain. Never raises; returns success."""
        try:
            rollback_data = await self.load_rollback_data(update_id)
            if rollback_data is None:
                raise RollbackDataNotFoundError(update_id)

            operations = self._plan_restore(rollback_data)
            result = await self.atomic_file_manager.execute_atomic_operations(operations)
            if not result.success:
                raise AtomicOperationError(result.error or "atomic batch failed")

            await self._update_state(
                update_id,
                status=RollbackStatus.ROLLED_BACK,
                completed_at=self._clock(),
            )

            logger.info("Holistic rollback executed",
                       update_id=update_id,
                       operations=result.operations_executed,
                       transaction_id=result.transaction_id)
            return True

        except Exception as e:
            logger.error("Holistic rollback failed",
                        update_id=update_id,
                        error=str(e),
                        error_type=type(e).__name__)
            await self._record_rollback_failure(update_id, e)
            return False

    async def mark_update_completed(self, update_id: str) -> RollbackState:
        state = await self._update_state(
            update_id,
            status=RollbackStatus.COMPLETED,
            completed_at=self._clock(),
        )
        logger.info("Holistic update marked completed", update_id=update_id)
        return state

    async def mark_rollback_failed(
        self,
        update_id: str,
        error: Exception | str,
        context_details: dict[str, Any] | None = None,
    ) -> RollbackState:
        """Move a record to ``failed`` so it is kept for operator inspection."""
        state = await self._update_state(
            update_id,
            status=RollbackStatus.FAILED,
            failed_at=self._clock(),
            failure_reason=str(error),
            context_details=context_details,
        )
        logger.warning("Rollback record marked failed",
                      update_id=update_id,
                      reason=str(error))
        return state

    async def load_rollback_state(self, update_id: str) -> RollbackState | None:
        path = self.state_path(update_id)
        if not path.exists():
            return None
        return RollbackState.model_validate(await read_json(path))

    async def load_rollback_data(self, update_id: str) -> HolisticRollbackData | None:
        path = self.snapshot_path(update_id)
        if not path.exists():
            return None
        return HolisticRollbackData.model_validate(await read_json(path))

    async def list_rollback_states(self, status: RollbackStatus | None = None) -> list[RollbackState]:
        """All state records, oldest first."""
        states = []
        for state_file in self.state_dir.glob("*.rollback.json"):
            try:
                state = RollbackState.model_validate(await read_json(state_file))
            except (json.JSONDecodeError, ValueError) as e:
                logger.warning("Unreadable rollback state",
                              path=str(state_file),
                              error=str(e))
                continue

            if status is None or state.status == status:
                states.append(state)

        return sorted(states, key=lambda s: s.timestamp)

    async def get_pending_rollbacks(self) -> list[RollbackState]:
        return await self.list_rollback_states(RollbackStatus.PENDING)

    async def validate_rollback_data(self, update_id: str) -> bool:
        """True when the snapshot exists and records only absolute paths."""
        try:
            rollback_data = await self.load_rollback_data(update_id)
        except (json.JSONDecodeError, ValueError, OSError) as e:
            logger.warning("Rollback data unreadable", update_id=update_id, error=str(e))
            return False

        if rollback_data is None:
            return False

        for snapshot in rollback_data.snapshots:
            if not Path(snapshot.domain_path).is_absolute():
                return False
            if not all(Path(path).is_absolute() for path in snapshot.files):
                return False
        return True

    async def cleanup_by_age(self, max_age_hours: float | None = None, trigger: str = "age") -> CleanupResult:
        """Remove purgeable records older than ``max_age_hours``."""
        max_age_hours = self.cleanup_config.max_age_hours if max_age_hours is None else max_age_hours
        started = time.perf_counter()
        now = self._clock()

        states = await self.list_rollback_states()
        expired = [
            state for state in states
            if state.purgeable and self._age_hours(state, now) > max_age_hours
        ]

        result = await self._remove_records(expired, trigger)
        result.execution_time = time.perf_counter() - started
        return result

    async def cleanup_by_count(self, max_count: int | None = None, trigger: str = "count") -> CleanupResult:
        """Keep only the newest ``max_count`` purgeable records."""
        max_count = self.cleanup_config.max_count if max_count is None else max_count
        started = time.perf_counter()

        purgeable = [state for state in await self.list_rollback_states() if state.purgeable]
        excess = purgeable[:max(len(purgeable) - max_count, 0)]

        result = await self._remove_records(excess, trigger)
        result.execution_time = time.perf_counter() - started
        return result

    async def cleanup_completed_rollbacks(self, older_than_hours: float = 168) -> CleanupResult:
        return await self.cleanup_by_age(older_than_hours, trigger="completed-rollbacks")

    async def perform_automatic_cleanup(self, trigger: str) -> CleanupResult:
        """Age-based cleanup, plus count-based cleanup when aggressive."""
        started = time.perf_counter()

        result = await self.cleanup_by_age(trigger=trigger)
        if self.cleanup_config.aggressive_cleanup:
            by_count = await self.cleanup_by_count(trigger=trigger)
            result.removed_count += by_count.removed_count
            result.errors.extend(by_count.errors)

        result.execution_time = time.perf_counter() - started
        logger.info("Rollback cleanup completed",
                   trigger=trigger,
                   removed=result.removed_count,
                   errors=len(result.errors))
        return result

    async def trigger_cleanup(self, trigger: str) -> CleanupResult:
        """Run automatic cleanup if ``trigger`` is configured, otherwise do nothing."""
        if trigger not in self.cleanup_config.cleanup_triggers:
            logger.debug("Cleanup trigger not configured", trigger=trigger)
            return CleanupResult(cleanup_trigger=trigger)

        return await self.perform_automatic_cleanup(trigger)

    async def get_cleanup_statistics(self) -> CleanupStatistics:
        now = self._clock()
        states = await self.list_rollback_states()

        buckets = AgeBuckets()
        for state in states:
            age = self._age_hours(state, now)
            if age < 1:
                buckets.less_than_1_hour += 1
            elif age < 24:
                buckets.less_than_24_hours += 1
            else:
                buckets.more_than_24_hours += 1

        by_status = Counter(state.status.value for state in states)

        return CleanupStatistics(
            total_records=len(states),
            total_pending_rollbacks=by_status.get(RollbackStatus.PENDING.value, 0),
            by_status=dict(by_status),
            oldest_rollback_age=self._age_hours(states[0], now) if states else 0.0,
            rollbacks_by_age=buckets,
            cleanup_config=self.cleanup_config,
        )

    def _plan_restore(self, rollback_data: HolisticRollbackData) -> list[FileOperation]:
        """Deletes for files created since the snapshot, then rewrites of every snapshotted file."""
        operations = []
        for snapshot in rollback_data.snapshots:
            context_path = Path(snapshot.domain_path)
            current = {
                str(path) for path in context_path.rglob("*") if path.is_file()
            } if context_path.exists() else set()

            for path in sorted(current - snapshot.files.keys()):
                operations.append(FileOperation(type=FileOperationType.DELETE, target_path=path))

            for path, content in snapshot.files.items():
                operations.append(FileOperation(
                    type=FileOperationType.UPDATE if path in current else FileOperationType.CREATE,
                    target_path=path,
                    content=content,
                ))
        return operations

    async def _read_tree(self, root: Path) -> dict[str, str]:
        if not root.exists():
            return {}

        files = {}
        for path in sorted(root.rglob("*")):
            if path.is_file():
                files[str(path)] = await read_text(path)
        return files

    async def _save_state(self, state: RollbackState) -> None:
        await write_json(self.state_path(state.update_id), state.to_json_dict(exclude_none=True))

    async def _update_state(self, update_id: str, **changes) -> RollbackState:
        state = await self.load_rollback_state(update_id)
        if state is None:
            raise RollbackDataNotFoundError(update_id)

        state = state.model_copy(update=changes)
        await self._save_state(state)
        return state

    async def _record_rollback_failure(self, update_id: str, error: Exception) -> None:
        if not self.state_path(update_id).exists():
            return
        try:
            await self.mark_rollback_failed(update_id, error, {"phase": "rollback"})
        except OSError as e:
            logger.error("Could not record rollback failure",
                        update_id=update_id,
                        error=str(e))

    async def _remove_records(self, states: list[RollbackState], trigger: str) -> CleanupResult:
        result = CleanupResult(cleanup_trigger=trigger)
        for state in states:
            try:
                self.state_path(state.update_id).unlink(missing_ok=True)
                self.snapshot_path(state.update_id).unlink(missing_ok=True)
                result.removed_count += 1
            except OSError as e:
                result.errors.append(f"{state.update_id}: {e}")

        if result.removed_count:
            logger.debug("Rollback records removed",
                        trigger=trigger,
                        count=result.removed_count)
        return result

    @staticmethod
    def _age_hours(state: RollbackState, now: datetime) -> float:
        return (now - state.timestamp).total_seconds() / 3600
