"""Persisted shapes for snapshots, rollback state and cleanup reporting.

Field names serialize in camelCase so that rollback files written by other
gateway instances can be read back unchanged.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model accepting both snake_case and camelCase input."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_json_dict(self, **kwargs) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, **kwargs)


class FileOperationType(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class RollbackStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


# Records in these states may be purged; pending and failed ones never are.
PURGEABLE_STATUSES = frozenset({RollbackStatus.COMPLETED, RollbackStatus.ROLLED_BACK})


class FileOperation(CamelModel):
    type: FileOperationType
    target_path: str
    content: str | None = None


class ContextSnapshot(CamelModel):
    """Every file under one domain's context directory, keyed by absolute path."""
    domain_path: str
    files: dict[str, str] = Field(default_factory=dict)
    timestamp: datetime


class HolisticRollbackData(CamelModel):
    update_id: str
    timestamp: datetime
    affected_domains: list[str]
    snapshots: list[ContextSnapshot] = Field(default_factory=list)
    file_operations: list[FileOperation] = Field(default_factory=list)


class RollbackState(CamelModel):
    """Small index record kept next to each snapshot."""
    update_id: str
    timestamp: datetime
    affected_domains: list[str]
    status: RollbackStatus = RollbackStatus.PENDING
    snapshot_path: str
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    failure_reason: str | None = None
    context_details: dict[str, Any] | None = None

    @property
    def transaction_id(self) -> str:
        return self.update_id

    @property
    def purgeable(self) -> bool:
        return self.status in PURGEABLE_STATUSES


class RollbackCleanupConfig(BaseModel):
    max_age_hours: float = 168
    max_count: int = 10
    cleanup_triggers: list[str] = Field(default_factory=lambda: [
        "full-reindex",
        "startup",
        "holistic-update-failure",
        "manual-cleanup",
    ])
    aggressive_cleanup: bool = False


class CleanupResult(BaseModel):
    removed_count: int = 0
    errors: list[str] = Field(default_factory=list)
    cleanup_trigger: str
    execution_time: float = 0.0  # seconds


class AgeBuckets(CamelModel):
    less_than_1_hour: int = Field(0, alias="lessThan1Hour")
    less_than_24_hours: int = Field(0, alias="lessThan24Hours")
    more_than_24_hours: int = Field(0, alias="moreThan24Hours")


class CleanupStatistics(BaseModel):
    total_records: int
    total_pending_rollbacks: int
    by_status: dict[str, int]
    oldest_rollback_age: float  # hours, 0 when empty
    rollbacks_by_age: AgeBuckets
    cleanup_config: RollbackCleanupConfig


class AtomicOperationResult(BaseModel):
    success: bool
    operations_executed: int = 0
    error: str | None = None
    transaction_id: str
