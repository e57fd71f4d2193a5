"""Snapshot, rollback and atomic file storage for holistic updates."""

from .atomic_files import AtomicFileManager, atomic_write
from .models import (
    AtomicOperationResult,
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
from .rollback import RollbackManager, domain_context_path

__all__ = [
    "AtomicFileManager",
    "AtomicOperationResult",
    "CleanupResult",
    "CleanupStatistics",
    "ContextSnapshot",
    "FileOperation",
    "FileOperationType",
    "HolisticRollbackData",
    "RollbackCleanupConfig",
    "RollbackManager",
    "RollbackState",
    "RollbackStatus",
    "atomic_write",
    "domain_context_path",
]
