"""All-or-nothing execution of create/update/delete file operation batches."""

import hashlib
import json
import secrets
import shutil
import time
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os
import structlog

from ..errors import AtomicOperationError
from .models import AtomicOperationResult, FileOperation, FileOperationType

logger = structlog.get_logger()


@asynccontextmanager
async def atomic_write(file_path: Path):
    """Write through a temp file that is renamed over ``file_path`` on close."""
    temp_file = file_path.with_suffix(f"{file_path.suffix}.tmp")
    file_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        async with aiofiles.open(temp_file, "w", encoding="utf-8", newline="") as f:
            yield f
        await aiofiles.os.rename(str(temp_file), str(file_path))
    except BaseException:
        if temp_file.exists():
            await aiofiles.os.unlink(str(temp_file))
        raise


async def read_text(file_path: Path) -> str:
    """Read ``file_path`` without translating line endings."""
    async with aiofiles.open(file_path, encoding="utf-8", newline="") as f:
        return await f.read()


async def write_json(file_path: Path, data: Any) -> None:
    async with atomic_write(file_path) as f:
        await f.write(json.dumps(data, indent=2))


async def read_json(file_path: Path) -> Any:
    return json.loads(await read_text(file_path))


def new_transaction_id() -> str:
    return f"tx_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


class AtomicFileManager:
    """Applies a batch of file operations, restoring the pre-batch state on failure.

    Each batch runs as a transaction with a record under ``transactions/`` and
    backups of every target under ``backup/<transaction_id>/``. Records left in
    the ``pending`` state indicate a batch interrupted by a crash.
    """

    def __init__(self, base_dir: str | Path):
        self.base_dir = Path(base_dir)
        self.backup_dir = self.base_dir / "backup"
        self.transactions_dir = self.base_dir / "transactions"

        for directory in [self.backup_dir, self.transactions_dir]:
            directory.mkdir(parents=True, exist_ok=True)

    async def execute_atomic_operations(self, operations: list[FileOperation]) -> AtomicOperationResult:
        """Execute ``operations`` in order as a single unit.

        Returns:
            Result with ``success`` False and the error message when any
            operation failed; the filesystem is then back in its pre-batch state.
        """
        transaction_id = new_transaction_id()

        problems = self._validate(operations)
        if problems:
            logger.warning("Atomic batch rejected",
                          transaction_id=transaction_id,
                          problems=problems)
            return AtomicOperationResult(
                success=False,
                error="; ".join(problems),
                transaction_id=transaction_id,
            )

        await self._write_record(transaction_id, "pending", len(operations))
        backups = await self._backup_targets(transaction_id, operations)

        executed = 0
        try:
            for operation in operations:
                await self._apply(operation)
                executed += 1

        except Exception as e:
            logger.error("Atomic batch failed, restoring",
                        transaction_id=transaction_id,
                        executed=executed,
                        error=str(e))
            await self._restore(backups)
            await self._write_record(transaction_id, "rolled_back", len(operations), error=str(e))
            return AtomicOperationResult(
                success=False,
                operations_executed=executed,
                error=str(e),
                transaction_id=transaction_id,
            )

        finally:
            shutil.rmtree(self.backup_dir / transaction_id, ignore_errors=True)

        await self._write_record(transaction_id, "committed", len(operations))
        logger.debug("Atomic batch committed",
                    transaction_id=transaction_id,
                    operations=executed)

        return AtomicOperationResult(
            success=True,
            operations_executed=executed,
            transaction_id=transaction_id,
        )

    async def get_pending_transactions(self) -> list[dict[str, Any]]:
        records = await self._load_records()
        return [record for record in records if record["status"] == "pending"]

    async def cleanup_old_transactions(self, older_than_hours: float = 24) -> int:
        """Remove finished transaction records older than the cutoff."""
        cutoff = datetime.now(timezone.utc) - timedelta(hours=older_than_hours)

        removed = 0
        for record in await self._load_records():
            if record["status"] == "pending":
                continue
            if datetime.fromisoformat(record["timestamp"]) >= cutoff:
                continue

            (self.transactions_dir / f"{record['transactionId']}.json").unlink(missing_ok=True)
            shutil.rmtree(self.backup_dir / record["transactionId"], ignore_errors=True)
            removed += 1

        if removed:
            logger.info("Old transactions cleaned up", removed=removed)
        return removed

    def _validate(self, operations: list[FileOperation]) -> list[str]:
        problems = []
        for operation in operations:
            target = Path(operation.target_path)
            if operation.type in (FileOperationType.UPDATE, FileOperationType.DELETE) and not target.exists():
                problems.append(f"{operation.type.value} target does not exist: {target}")
            if operation.type in (FileOperationType.CREATE, FileOperationType.UPDATE) and operation.content is None:
                problems.append(f"{operation.type.value} requires content: {target}")
        return problems

    async def _backup_targets(
        self,
        transaction_id: str,
        operations: list[FileOperation],
    ) -> list[tuple[Path, Path | None]]:
        """Copy every distinct target aside. ``None`` marks a target that did not exist."""
        tx_dir = self.backup_dir / transaction_id
        tx_dir.mkdir(parents=True, exist_ok=True)

        backups = []
        seen = set()
        for operation in operations:
            target = Path(operation.target_path)
            if target in seen:
                continue
            seen.add(target)

            if not target.exists():
                backups.append((target, None))
                continue

            backup_file = tx_dir / hashlib.md5(str(target).encode()).hexdigest()
            shutil.copy2(target, backup_file)
            backups.append((target, backup_file))

        return backups

    async def _apply(self, operation: FileOperation) -> None:
        target = Path(operation.target_path)

        if operation.type == FileOperationType.DELETE:
            await aiofiles.os.unlink(str(target))
            return

        async with atomic_write(target) as f:
            await f.write(operation.content)

    async def _restore(self, backups: list[tuple[Path, Path | None]]) -> None:
        errors = []
        for target, backup_file in reversed(backups):
            try:
                if backup_file is None:
                    target.unlink(missing_ok=True)
                else:
                    target.parent.mkdir(parents=True, exist_ok=True)
                    shutil.copy2(backup_file, target)
            except OSError as e:
                errors.append(f"{target}: {e}")

        if errors:
            raise AtomicOperationError(f"Restore incomplete: {'; '.join(errors)}")

    async def _write_record(self, transaction_id: str, status: str, operation_count: int, error: str | None = None):
        record = {
            "transactionId": transaction_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "status": status,
            "operationCount": operation_count,
        }
        if error:
            record["error"] = error
        await write_json(self.transactions_dir / f"{transaction_id}.json", record)

    async def _load_records(self) -> list[dict[str, Any]]:
        records = []
        for record_file in sorted(self.transactions_dir.glob("*.json")):
            try:
                records.append(await read_json(record_file))
            except (json.JSONDecodeError, OSError) as e:
                logger.warning("Unreadable transaction record",
                              path=str(record_file),
                              error=str(e))
        return records
