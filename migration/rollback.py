"""
Rollback Log - append-only record of applied mutations and their undo.

Every write the migration performs is recorded as an Operation carrying the
row images needed to invert it. Rollback walks pending operations newest
first and applies the inverse through a RollbackTarget:

    insert  -> delete the same row by key
    update  -> restore the before-image
    delete  -> reinsert the before-image

Operations are never modified. A successful undo appends a new Operation
whose inverse_of points at the original, so a repeated rollback skips work
that was already reverted.
"""

from abc import ABC, abstractmethod
from collections import Counter, defaultdict
from contextlib import asynccontextmanager
from datetime import timezone
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Union
import asyncio
import heapq
import json
import logging
import os
import re
import time
import uuid

from pydantic import ValidationError
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from core.config import settings as default_settings, Settings
from core.database import get_session_maker
from core.exceptions import RollbackError, RollbackUnsafe
from migration.retry import ErrorClassifier
from models.base import OperationType, RollbackMode
from models.operation import OperationLogEntry
from schemas.operation import (
    Operation,
    RollbackEntry,
    RollbackPlan,
    RollbackPoint,
    RollbackReport,
)

logger = logging.getLogger(__name__)

# Destination messages that make further manual replay pointless
FATAL_ROLLBACK_PATTERNS = (
    "doesn't exist",
    "does not exist",
    "no such table",
    "unknown column",
    "access denied",
)

INVERSE_TYPES = {
    OperationType.INSERT.value: OperationType.DELETE,
    OperationType.UPDATE.value: OperationType.UPDATE,
    OperationType.DELETE.value: OperationType.INSERT,
}

UNDO_ACTIONS = {
    OperationType.INSERT.value: "delete",
    OperationType.UPDATE.value: "restore",
    OperationType.DELETE.value: "reinsert",
}


# ============================================================================
# Operation stores
# ============================================================================

class OperationStore(ABC):
    """Append-only persistence for operations, segmented by worker"""

    @abstractmethod
    async def append(self, operation: Operation):
        pass

    @abstractmethod
    async def list(self, run_id: str) -> List[Operation]:
        """All operations of a run, each worker segment in sequence order"""
        pass

    async def max_sequence(self, run_id: str, worker_id: int) -> int:
        sequences = [op.sequence for op in await self.list(run_id) if op.worker_id == worker_id]
        return max(sequences) if sequences else -1


class InMemoryOperationStore(OperationStore):
    """Process-local store, mostly for tests and dry runs"""

    def __init__(self):
        self._operations: Dict[str, List[Operation]] = defaultdict(list)

    async def append(self, operation: Operation):
        self._operations[operation.run_id].append(operation)

    async def list(self, run_id: str) -> List[Operation]:
        return sorted(self._operations.get(run_id, []), key=lambda op: (op.worker_id, op.sequence))


class FileOperationStore(OperationStore):
    """
    JSON-lines segments named {run_id}.{worker_id}.jsonl.

    Each worker appends to its own segment so concurrent workers never share
    a file handle. A truncated trailing line (crash mid-write) is ignored.
    """

    def __init__(self, directory: Optional[Union[str, Path]] = None, settings: Optional[Settings] = None):
        settings = settings or default_settings
        self.directory = Path(directory or settings.OPERATION_LOG_DIR)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._locks: Dict[Path, asyncio.Lock] = defaultdict(asyncio.Lock)

    @staticmethod
    def _safe(value: str) -> str:
        return re.sub(r"[^A-Za-z0-9_\-]", "_", value)

    def segment_path(self, run_id: str, worker_id: int) -> Path:
        return self.directory / f"{self._safe(run_id)}.{worker_id}.jsonl"

    @staticmethod
    def _write_line(path: Path, line: str):
        with open(path, "a", encoding="utf-8") as f:
            f.write(line)
            f.flush()
            os.fsync(f.fileno())

    async def append(self, operation: Operation):
        path = self.segment_path(operation.run_id, operation.worker_id)
        line = operation.model_dump_json() + "\n"
        # One writer per segment; other segments append concurrently
        async with self._locks[path]:
            await asyncio.to_thread(self._write_line, path, line)

    async def list(self, run_id: str) -> List[Operation]:
        pattern = re.compile(rf"^{re.escape(self._safe(run_id))}\.(\d+)\.jsonl$")
        operations: List[Operation] = []

        for path in sorted(self.directory.iterdir()):
            if not pattern.match(path.name):
                continue
            with open(path, "r", encoding="utf-8") as f:
                for line_number, line in enumerate(f, start=1):
                    if not line.strip():
                        continue
                    try:
                        operations.append(Operation.model_validate_json(line))
                    except ValidationError as e:
                        logger.warning(f"Skipping unreadable operation at {path}:{line_number}: {e}")

        return sorted(operations, key=lambda op: (op.worker_id, op.sequence))


class SQLOperationStore(OperationStore):
    """Operation rows in the migration_operations table"""

    def __init__(self, engine: Optional[AsyncEngine] = None, session_maker: Optional[async_sessionmaker] = None):
        self._session_maker = session_maker or get_session_maker(engine)

    async def append(self, operation: Operation):
        data = json.loads(operation.model_dump_json())
        async with self._session_maker() as session:
            session.add(OperationLogEntry(
                operation_id=operation.id,
                run_id=operation.run_id,
                worker_id=operation.worker_id,
                sequence=operation.sequence,
                type=OperationType(operation.type),
                target=operation.target,
                key=data["key"],
                before_image=data["before"],
                after_image=data["after"],
                inverse_of=operation.inverse_of,
                timestamp=operation.timestamp,
            ))
            await session.commit()

    async def list(self, run_id: str) -> List[Operation]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(OperationLogEntry)
                .where(OperationLogEntry.run_id == run_id)
                .order_by(OperationLogEntry.worker_id, OperationLogEntry.sequence)
            )
            rows = result.scalars().all()

        operations = []
        for row in rows:
            timestamp = row.timestamp
            if timestamp.tzinfo is None:
                timestamp = timestamp.replace(tzinfo=timezone.utc)
            operations.append(Operation(
                id=row.operation_id,
                type=row.type,
                target=row.target,
                key=row.key,
                before=row.before_image,
                after=row.after_image,
                timestamp=timestamp,
                run_id=row.run_id,
                worker_id=row.worker_id,
                sequence=row.sequence,
                inverse_of=row.inverse_of,
            ))
        return operations

    async def max_sequence(self, run_id: str, worker_id: int) -> int:
        async with self._session_maker() as session:
            result = await session.execute(
                select(func.max(OperationLogEntry.sequence)).where(
                    OperationLogEntry.run_id == run_id,
                    OperationLogEntry.worker_id == worker_id
                )
            )
            value = result.scalar()
        return -1 if value is None else value


# ============================================================================
# Rollback target
# ============================================================================

class RollbackTarget(ABC):
    """Destination able to apply inverse operations"""

    supports_transactions = False

    @abstractmethod
    async def insert_row(self, target: str, row: Dict[str, Any]):
        pass

    @abstractmethod
    async def update_row(self, target: str, key: Dict[str, Any], values: Dict[str, Any]):
        pass

    @abstractmethod
    async def delete_row(self, target: str, key: Dict[str, Any]):
        pass

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """All-or-nothing scope; the default offers no atomicity"""
        yield


# ============================================================================
# Rollback log
# ============================================================================

class RollbackLog:
    """
    Record operations for one run and undo them on request.

    Attributes:
        run_id: Run the log belongs to
        worker_id: Segment this instance appends to
        mode: transactional or manual replay
    """

    def __init__(
        self,
        run_id: str,
        store: Optional[OperationStore] = None,
        target: Optional[RollbackTarget] = None,
        mode: Optional[Union[str, RollbackMode]] = None,
        settings: Optional[Settings] = None,
        worker_id: int = 0,
        classifier: Optional[ErrorClassifier] = None,
        points: Optional[Dict[str, RollbackPoint]] = None
    ):
        self.settings = settings or default_settings
        self.run_id = run_id
        self.store = store or InMemoryOperationStore()
        self.target = target
        self.mode = RollbackMode(mode or self.settings.ROLLBACK_MODE)
        self.worker_id = worker_id
        self.classifier = classifier or ErrorClassifier()
        self.points: Dict[str, RollbackPoint] = points if points is not None else {}
        self._sequence: Optional[int] = None
        self._lock = asyncio.Lock()

    def segment(self, worker_id: int) -> "RollbackLog":
        """Log appending to its own worker segment of the same run"""
        return RollbackLog(
            self.run_id,
            store=self.store,
            target=self.target,
            mode=self.mode,
            settings=self.settings,
            worker_id=worker_id,
            classifier=self.classifier,
            points=self.points,
        )

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    async def record(self, operation: Operation) -> Operation:
        """Append an operation stamped with this run, worker and sequence"""
        async with self._lock:
            if self._sequence is None:
                self._sequence = await self.store.max_sequence(self.run_id, self.worker_id)
            self._sequence += 1
            stamped = operation.model_copy(update={
                "run_id": self.run_id,
                "worker_id": self.worker_id,
                "sequence": self._sequence,
            })
            await self.store.append(stamped)
        return stamped

    async def record_many(self, operations: Iterable[Operation]) -> List[Operation]:
        return [await self.record(operation) for operation in operations]

    async def operations(self) -> List[Operation]:
        """All operations of the run, worker segments merged by timestamp"""
        segments: Dict[int, List[Operation]] = defaultdict(list)
        for operation in await self.store.list(self.run_id):
            segments[operation.worker_id].append(operation)
        return list(heapq.merge(
            *segments.values(),
            key=lambda op: (op.timestamp, op.worker_id, op.sequence)
        ))

    async def create_point(self, name: str) -> RollbackPoint:
        """Mark the current end of the log so later work can be undone alone"""
        operations = await self.operations()
        sequences: Dict[int, int] = {}
        for operation in operations:
            sequences[operation.worker_id] = max(sequences.get(operation.worker_id, -1), operation.sequence)

        point = RollbackPoint(
            id=uuid.uuid4().hex,
            name=name,
            run_id=self.run_id,
            operations_count=len(operations),
            sequences=sequences,
        )
        self.points[point.id] = point
        logger.info(f"Rollback point '{name}' created at {len(operations)} operations")
        return point

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    async def _pending(self, since_point_id: Optional[str] = None) -> List[Operation]:
        """Forward operations not yet inverted, newest first"""
        operations = await self.operations()
        inverted = {op.inverse_of for op in operations if op.is_inverse}
        pending = [op for op in operations if not op.is_inverse and op.id not in inverted]

        if since_point_id is not None:
            point = self.points.get(since_point_id)
            if point is None:
                raise RollbackError(
                    "Unknown rollback point",
                    context={"run_id": self.run_id, "point_id": since_point_id}
                )
            pending = [op for op in pending if op.sequence > point.sequences.get(op.worker_id, -1)]

        pending.reverse()
        return pending

    @staticmethod
    def _missing(operation: Operation) -> List[str]:
        if operation.type == OperationType.INSERT.value:
            return [] if operation.key else ["key"]
        if operation.type == OperationType.UPDATE.value:
            missing = [] if operation.key else ["key"]
            if not operation.before:
                missing.append("before_image")
            return missing
        return [] if operation.before else ["before_image"]

    # ------------------------------------------------------------------
    # Undo
    # ------------------------------------------------------------------

    def _check_invertible(self, operation: Operation):
        missing = self._missing(operation)
        if missing:
            raise RollbackUnsafe(
                f"Cannot safely invert {operation.type} on {operation.target}",
                context={
                    "operation_id": operation.id,
                    "operation_type": operation.type,
                    "missing": ", ".join(missing),
                }
            )

    async def _undo(self, operation: Operation) -> Operation:
        """Apply the inverse of operation to the target and build its record"""
        self._check_invertible(operation)

        if operation.type == OperationType.INSERT.value:
            await self.target.delete_row(operation.target, operation.key)
        elif operation.type == OperationType.UPDATE.value:
            await self.target.update_row(operation.target, operation.key, operation.before)
        else:
            await self.target.insert_row(operation.target, operation.before)

        return Operation(
            type=INVERSE_TYPES[operation.type],
            target=operation.target,
            key=operation.key,
            before=operation.after,
            after=operation.before,
            inverse_of=operation.id,
        )

    @staticmethod
    def _entry(operation: Operation, status: str, error: Optional[str] = None, unsafe: bool = False) -> RollbackEntry:
        return RollbackEntry(
            operation_id=operation.id,
            type=operation.type,
            target=operation.target,
            status=status,
            error=error,
            could_not_safely_invert=unsafe,
        )

    def _is_fatal(self, error: Exception) -> bool:
        message = str(error).lower()
        if any(pattern in message for pattern in FATAL_ROLLBACK_PATTERNS):
            return True
        return self.classifier.is_fatal(self.classifier.classify(error))

    async def _replay_manual(self, pending: List[Operation], report: RollbackReport):
        for index, operation in enumerate(pending):
            try:
                inverse = await self._undo(operation)
            except RollbackUnsafe as e:
                report.unsafe += 1
                report.entries.append(self._entry(operation, "unsafe", e.message, unsafe=True))
                logger.warning(f"Skipping rollback of {operation.id}: {e}", extra={"error_context": e.to_dict()})
                continue
            except Exception as e:
                report.failed += 1
                report.entries.append(self._entry(operation, "failed", str(e)))
                logger.error(f"Rollback of {operation.type} {operation.id} on {operation.target} failed: {e}")
                if self._is_fatal(e):
                    report.aborted = True
                    report.abort_reason = f"Fatal error during rollback: {e}"
                    report.entries.extend(
                        self._entry(remaining, "skipped", "rollback aborted")
                        for remaining in pending[index + 1:]
                    )
                    logger.error(f"Aborting manual rollback of run {self.run_id}: {e}")
                    break
                continue

            try:
                await self.record(inverse)
            except Exception as e:
                # Destination already changed; a repeated rollback would undo it again
                report.failed += 1
                report.entries.append(self._entry(operation, "failed", f"reverted but not logged: {e}"))
                logger.error(f"Reverted {operation.id} but could not record its inverse: {e}")
                continue

            report.reverted += 1
            report.entries.append(self._entry(operation, "reverted"))

    async def _replay_transactional(self, pending: List[Operation], report: RollbackReport):
        inverses: List[Operation] = []
        entries: List[RollbackEntry] = []
        unsafe = 0

        try:
            async with self.target.transaction():
                for operation in pending:
                    try:
                        inverses.append(await self._undo(operation))
                        entries.append(self._entry(operation, "reverted"))
                    except RollbackUnsafe as e:
                        unsafe += 1
                        entries.append(self._entry(operation, "unsafe", e.message, unsafe=True))
                        logger.warning(f"Skipping rollback of {operation.id}: {e}", extra={"error_context": e.to_dict()})
                    except Exception as e:
                        entries.append(self._entry(operation, "failed", str(e)))
                        raise
        except Exception as e:
            # Nothing was applied; reverted entries are reported as skipped
            report.aborted = True
            report.abort_reason = f"Transactional rollback failed: {e}"
            report.failed = 1
            report.unsafe = unsafe
            report.entries = [
                entry if entry.status != "reverted" else entry.model_copy(update={
                    "status": "skipped",
                    "error": "transaction rolled back",
                })
                for entry in entries
            ]
            report.entries.extend(
                self._entry(operation, "skipped", "rollback aborted")
                for operation in pending[len(entries):]
            )
            logger.error(f"Transactional rollback of run {self.run_id} rolled back: {e}")
            return

        for inverse in inverses:
            await self.record(inverse)
        report.reverted = len(inverses)
        report.unsafe = unsafe
        report.entries = entries

    async def _execute(self, pending: List[Operation]) -> RollbackReport:
        if self.target is None:
            raise RollbackError("No rollback target configured", context={"run_id": self.run_id})

        mode = self.mode
        if mode == RollbackMode.TRANSACTIONAL and not self.target.supports_transactions:
            logger.warning("Rollback target has no transaction support; falling back to manual replay")
            mode = RollbackMode.MANUAL

        started = time.monotonic()
        report = RollbackReport(
            run_id=self.run_id,
            mode=mode.value,
            success=False,
            operations_considered=len(pending),
        )
        logger.info(f"Rolling back {len(pending)} operations of run {self.run_id} ({mode.value})")

        if mode == RollbackMode.TRANSACTIONAL:
            await self._replay_transactional(pending, report)
        else:
            await self._replay_manual(pending, report)

        report.success = not report.aborted and report.failed == 0 and report.unsafe == 0
        report.duration = round(time.monotonic() - started, 4)

        log = logger.info if report.success else logger.warning
        log(
            f"Rollback of run {self.run_id} finished: {report.reverted} reverted, "
            f"{report.failed} failed, {report.unsafe} unsafe"
        )
        return report

    async def rollback(self, since_point_id: Optional[str] = None) -> RollbackReport:
        """
        Undo pending operations newest first.

        Args:
            since_point_id: Only undo operations recorded after this point

        Returns:
            RollbackReport with one entry per considered operation
        """
        return await self._execute(await self._pending(since_point_id))

    async def rollback_operations(self, operation_ids: Iterable[str]) -> RollbackReport:
        """Undo only the given operations (still newest first)"""
        wanted = set(operation_ids)
        pending = [op for op in await self._pending() if op.id in wanted]
        unknown = wanted - {op.id for op in pending}
        if unknown:
            logger.warning(f"{len(unknown)} requested operations are unknown or already reverted")
        return await self._execute(pending)

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    @staticmethod
    def _complexity(total: int, kinds: int) -> str:
        if total == 0:
            return "none"
        if total < 10 and kinds == 1:
            return "simple"
        if total < 100:
            return "moderate"
        if total < 1000:
            return "complex"
        return "very_complex"

    async def plan(self, since_point_id: Optional[str] = None) -> RollbackPlan:
        """Describe what rollback would do without touching the target"""
        pending = await self._pending(since_point_id)
        by_type = Counter(op.type for op in pending)

        warnings = []
        steps = []
        for operation in pending:
            missing = self._missing(operation)
            if missing:
                warnings.append(
                    f"Operation {operation.id} ({operation.type} on {operation.target}) "
                    f"cannot be safely inverted: missing {', '.join(missing)}"
                )
            steps.append({
                "operation_id": operation.id,
                "action": UNDO_ACTIONS[operation.type],
                "target": operation.target,
                "safe": not missing,
            })

        risks = []
        if by_type.get(OperationType.DELETE.value):
            risks.append("Reinserting deleted rows may conflict with rows created since the migration")
        if by_type.get(OperationType.UPDATE.value):
            risks.append("Restoring before-images overwrites changes made after the migration")
        if self.mode == RollbackMode.TRANSACTIONAL and (self.target is None or not self.target.supports_transactions):
            risks.append("Destination does not support transactions; rollback will run in manual mode")
        if len(pending) >= 1000:
            risks.append("Large rollback; expect a long-running operation")

        return RollbackPlan(
            run_id=self.run_id,
            total_operations=len(pending),
            operations_by_type=dict(by_type),
            targets=sorted({op.target for op in pending}),
            complexity=self._complexity(len(pending), len(by_type)),
            warnings=warnings,
            risks=risks,
            steps=steps,
        )
