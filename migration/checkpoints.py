"""
Checkpoint stores for resumable migrations.

Two interchangeable backends share one async interface:
- FileCheckpointStore: one JSON document per checkpoint, written atomically
  (temp file + fsync + rename)
- SQLCheckpointStore: rows in the migration_checkpoints table

Both validate that loaded checkpoints belong to the store's run, keep the
checkpoint cursor monotonic and prune to the most recent K checkpoints.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
import asyncio
import json
import logging
import os
import re
import tempfile

from pydantic import ValidationError
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from core.config import settings as default_settings, Settings
from core.database import get_session_maker
from core.exceptions import (
    CheckpointCorrupt,
    CheckpointError,
    CheckpointMismatch,
    CheckpointNotFound,
)
from migration.progress import format_duration
from models.checkpoint import MigrationCheckpoint
from schemas.checkpoint import Checkpoint

logger = logging.getLogger(__name__)

LOW_SUCCESS_RATE = 90.0
HIGH_MEMORY_BYTES = 500 * 1024 * 1024
HIGH_ERROR_COUNT = 10


def checkpoint_id_for(run_id: str, sequence: int) -> str:
    return f"{run_id}-{sequence:06d}"


class CheckpointStore(ABC):
    """
    Abstract checkpoint store bound to one run.

    Responsibilities:
    - Assign ids and sequence numbers
    - Enforce run ownership and cursor monotonicity
    - Retention pruning after each save
    """

    def __init__(self, run_id: str, retention: Optional[int] = None, settings: Optional[Settings] = None):
        if not run_id:
            raise CheckpointError("A run identifier is required")
        self.settings = settings or default_settings
        self.run_id = run_id
        self.retention = retention or self.settings.CHECKPOINT_RETENTION
        self._lock = asyncio.Lock()
        self._last_sequence: Optional[int] = None
        self._last_cursor: Optional[int] = None

    # ------------------------------------------------------------------
    # Backend primitives
    # ------------------------------------------------------------------

    @abstractmethod
    async def _write(self, checkpoint: Checkpoint):
        pass

    @abstractmethod
    async def _read(self, checkpoint_id: str) -> Checkpoint:
        """Load any checkpoint by id, regardless of run"""
        pass

    @abstractmethod
    async def _all(self) -> List[Checkpoint]:
        """All readable checkpoints of this run, any order"""
        pass

    @abstractmethod
    async def _remove(self, checkpoints: List[Checkpoint]):
        pass

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    async def _initialize(self):
        if self._last_sequence is None:
            existing = await self._all()
            if existing:
                newest = max(existing, key=lambda c: c.sequence)
                self._last_sequence = newest.sequence
                self._last_cursor = newest.cursor
            else:
                self._last_sequence = -1
                self._last_cursor = None

    async def create(
        self,
        cursor: int,
        success_count: int = 0,
        failure_count: int = 0,
        current_batch_index: int = 0,
        total_batches: Optional[int] = None,
        memory: Optional[Dict[str, Any]] = None,
        state: Optional[Dict[str, Any]] = None
    ) -> Checkpoint:
        """Build and save the next checkpoint of this run"""
        async with self._lock:
            await self._initialize()
            sequence = self._last_sequence + 1
            checkpoint = Checkpoint(
                id=checkpoint_id_for(self.run_id, sequence),
                run_id=self.run_id,
                sequence=sequence,
                cursor=cursor,
                success_count=success_count,
                failure_count=failure_count,
                current_batch_index=current_batch_index,
                total_batches=total_batches,
                memory=memory,
                state=state or {},
            )
            await self._save_locked(checkpoint)
            return checkpoint

    async def save(self, checkpoint: Checkpoint) -> str:
        """
        Persist a checkpoint and prune old ones.

        Raises:
            CheckpointMismatch: Checkpoint of another run
            CheckpointError: Cursor moved backwards
        """
        async with self._lock:
            await self._initialize()
            await self._save_locked(checkpoint)
            return checkpoint.id

    async def _save_locked(self, checkpoint: Checkpoint):
        if checkpoint.run_id != self.run_id:
            raise CheckpointMismatch(
                "Checkpoint belongs to a different run",
                context={"run_id": self.run_id, "checkpoint_run_id": checkpoint.run_id, "checkpoint_id": checkpoint.id}
            )
        if self._last_cursor is not None and checkpoint.cursor < self._last_cursor:
            raise CheckpointError(
                "Checkpoint cursor cannot move backwards within a run",
                context={"run_id": self.run_id, "cursor": checkpoint.cursor, "last_cursor": self._last_cursor}
            )

        try:
            await self._write(checkpoint)
        except CheckpointError:
            raise
        except Exception as e:
            raise CheckpointError(
                "Failed to persist checkpoint",
                context={"run_id": self.run_id, "checkpoint_id": checkpoint.id, "operation": "save"},
                original_exception=e
            )

        self._last_sequence = max(self._last_sequence, checkpoint.sequence)
        self._last_cursor = checkpoint.cursor
        logger.info(
            f"Checkpoint {checkpoint.id} saved at cursor {checkpoint.cursor} "
            f"({checkpoint.success_count} ok, {checkpoint.failure_count} failed)"
        )
        await self._prune()

    async def _prune(self):
        checkpoints = sorted(await self._all(), key=lambda c: c.sequence, reverse=True)
        stale = checkpoints[self.retention:]
        if stale:
            await self._remove(stale)
            logger.debug(f"Pruned {len(stale)} old checkpoints for run {self.run_id}")

    async def load(self, checkpoint_id: str) -> Checkpoint:
        """
        Load a checkpoint of this run.

        Raises:
            CheckpointNotFound / CheckpointCorrupt / CheckpointMismatch
        """
        checkpoint = await self._read(checkpoint_id)
        if checkpoint.run_id != self.run_id:
            raise CheckpointMismatch(
                "Checkpoint belongs to a different run",
                context={"run_id": self.run_id, "checkpoint_run_id": checkpoint.run_id, "checkpoint_id": checkpoint_id}
            )
        return checkpoint

    async def list(self) -> List[Checkpoint]:
        """Checkpoints of this run ordered by creation time"""
        return sorted(await self._all(), key=lambda c: (c.created_at, c.sequence))

    async def latest(self) -> Optional[Checkpoint]:
        checkpoints = await self._all()
        if not checkpoints:
            return None
        return max(checkpoints, key=lambda c: c.sequence)

    async def delete_run(self):
        """Remove every checkpoint of this run"""
        async with self._lock:
            await self._remove(await self._all())
            self._last_sequence = None
            self._last_cursor = None

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    async def metrics(self) -> Dict[str, Any]:
        """Processing rate and memory trend across retained checkpoints"""
        checkpoints = await self.list()
        if len(checkpoints) < 2:
            return {"checkpoints": len(checkpoints), "average_rate": 0.0, "memory_trend": "unknown"}

        first, last = checkpoints[0], checkpoints[-1]
        elapsed = (last.created_at - first.created_at).total_seconds()
        processed = last.processed - first.processed
        rate = round(processed / elapsed, 2) if elapsed > 0 else 0.0

        usages = [c.memory.get("current_usage", 0) for c in checkpoints if c.memory]
        trend = "unknown"
        if len(usages) >= 2 and usages[0] > 0:
            growth = usages[-1] / usages[0]
            if growth > 1.5:
                trend = "rapidly_increasing"
            elif growth > 1.1:
                trend = "increasing"
            elif growth < 0.9:
                trend = "decreasing"
            else:
                trend = "stable"

        return {"checkpoints": len(checkpoints), "average_rate": rate, "memory_trend": trend}

    async def recovery_report(self) -> Dict[str, Any]:
        """Summary of the latest checkpoint for an operator deciding to resume"""
        latest = await self.latest()
        if latest is None:
            return {"run_id": self.run_id, "resumable": False, "recommendations": []}

        processed = latest.processed
        success_rate = round(latest.success_count / processed * 100, 2) if processed else 0.0
        progress = None
        if latest.total_batches:
            progress = round(min(latest.current_batch_index / latest.total_batches, 1.0) * 100, 2)

        checkpoints = await self.list()
        elapsed = (latest.created_at - checkpoints[0].created_at).total_seconds() if checkpoints else 0.0

        recommendations = []
        if processed and success_rate < LOW_SUCCESS_RATE:
            recommendations.append("Success rate is below 90%; review failed records before resuming")
        if latest.memory and latest.memory.get("peak_usage", 0) > HIGH_MEMORY_BYTES:
            recommendations.append("Peak memory above 500 MB; consider a smaller batch size")
        if latest.failure_count > HIGH_ERROR_COUNT:
            recommendations.append("More than 10 failures recorded; inspect error categories")

        return {
            "run_id": self.run_id,
            "resumable": latest.status not in ("completed",),
            "checkpoint_id": latest.id,
            "cursor": latest.cursor,
            "status": latest.status,
            "success_rate": success_rate,
            "progress_percentage": progress,
            "elapsed": format_duration(elapsed),
            "recommendations": recommendations,
        }


class FileCheckpointStore(CheckpointStore):
    """
    JSON checkpoint files named {run_id}_{sequence}.json.

    Writes go to a temp file in the same directory which is fsynced and
    renamed over the target, so a crash never leaves a partial document.
    """

    def __init__(
        self,
        run_id: str,
        directory: Optional[Union[str, Path]] = None,
        retention: Optional[int] = None,
        settings: Optional[Settings] = None
    ):
        super().__init__(run_id, retention, settings)
        self.directory = Path(directory or self.settings.CHECKPOINT_DIR)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._prefix = self._safe(run_id)
        self._pattern = re.compile(rf"^{re.escape(self._prefix)}_(\d{{6,}})\.json$")

    @staticmethod
    def _safe(value: str) -> str:
        return re.sub(r"[^A-Za-z0-9_.\-]", "_", value)

    def _path_for(self, run_id: str, sequence: int) -> Path:
        return self.directory / f"{self._safe(run_id)}_{sequence:06d}.json"

    def _write_atomic(self, target: Path, payload: str):
        fd, temp_path = tempfile.mkstemp(prefix=".tmp-", suffix=".json", dir=self.directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, target)
        except BaseException:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise

    async def _write(self, checkpoint: Checkpoint):
        target = self._path_for(checkpoint.run_id, checkpoint.sequence)
        await asyncio.to_thread(self._write_atomic, target, checkpoint.model_dump_json(indent=2))

    def _parse(self, path: Path, checkpoint_id: str) -> Checkpoint:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return Checkpoint.model_validate(data)
        except (ValueError, ValidationError, TypeError) as e:
            raise CheckpointCorrupt(
                "Checkpoint file is corrupt",
                context={"checkpoint_id": checkpoint_id, "path": str(path)},
                original_exception=e
            )

    async def _read(self, checkpoint_id: str) -> Checkpoint:
        run_part, _, sequence = checkpoint_id.rpartition("-")
        if not run_part or not sequence.isdigit():
            raise CheckpointNotFound(
                "Unrecognized checkpoint id",
                context={"run_id": self.run_id, "checkpoint_id": checkpoint_id}
            )

        path = self._path_for(run_part, int(sequence))
        if not path.exists():
            raise CheckpointNotFound(
                "Checkpoint does not exist",
                context={"run_id": self.run_id, "checkpoint_id": checkpoint_id}
            )
        return self._parse(path, checkpoint_id)

    async def _all(self) -> List[Checkpoint]:
        checkpoints = []
        for path in self.directory.iterdir():
            if not self._pattern.match(path.name):
                continue
            try:
                checkpoints.append(self._parse(path, path.stem))
            except CheckpointCorrupt as e:
                logger.warning(f"Ignoring unreadable checkpoint {path}", extra={"error_context": e.to_dict()})
        return checkpoints

    async def _remove(self, checkpoints: List[Checkpoint]):
        for checkpoint in checkpoints:
            path = self._path_for(checkpoint.run_id, checkpoint.sequence)
            try:
                path.unlink()
            except FileNotFoundError:
                pass


class SQLCheckpointStore(CheckpointStore):
    """Checkpoint rows in the migration_checkpoints table"""

    def __init__(
        self,
        run_id: str,
        engine: Optional[AsyncEngine] = None,
        session_maker: Optional[async_sessionmaker] = None,
        retention: Optional[int] = None,
        settings: Optional[Settings] = None
    ):
        super().__init__(run_id, retention, settings)
        self._session_maker = session_maker or get_session_maker(engine)

    @staticmethod
    def _to_schema(row: MigrationCheckpoint) -> Checkpoint:
        try:
            created_at = row.created_at
            if created_at is not None and created_at.tzinfo is None:
                created_at = created_at.replace(tzinfo=timezone.utc)
            return Checkpoint(
                id=row.checkpoint_id,
                run_id=row.run_id,
                sequence=row.sequence,
                cursor=row.cursor,
                success_count=row.success_count,
                failure_count=row.failure_count,
                current_batch_index=row.current_batch_index,
                total_batches=row.total_batches,
                memory=row.memory_snapshot,
                state=row.state or {},
                created_at=created_at or datetime.now(timezone.utc),
            )
        except (ValidationError, TypeError) as e:
            raise CheckpointCorrupt(
                "Checkpoint row is corrupt",
                context={"checkpoint_id": row.checkpoint_id, "run_id": row.run_id},
                original_exception=e
            )

    async def _write(self, checkpoint: Checkpoint):
        data = json.loads(checkpoint.model_dump_json())
        async with self._session_maker() as session:
            session.add(MigrationCheckpoint(
                run_id=checkpoint.run_id,
                checkpoint_id=checkpoint.id,
                sequence=checkpoint.sequence,
                cursor=checkpoint.cursor,
                success_count=checkpoint.success_count,
                failure_count=checkpoint.failure_count,
                current_batch_index=checkpoint.current_batch_index,
                total_batches=checkpoint.total_batches,
                memory_snapshot=data["memory"],
                state=data["state"],
                created_at=checkpoint.created_at,
            ))
            await session.commit()

    async def _read(self, checkpoint_id: str) -> Checkpoint:
        async with self._session_maker() as session:
            result = await session.execute(
                select(MigrationCheckpoint).where(MigrationCheckpoint.checkpoint_id == checkpoint_id)
            )
            row = result.scalars().first()
        if row is None:
            raise CheckpointNotFound(
                "Checkpoint does not exist",
                context={"run_id": self.run_id, "checkpoint_id": checkpoint_id}
            )
        return self._to_schema(row)

    async def _all(self) -> List[Checkpoint]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(MigrationCheckpoint)
                .where(MigrationCheckpoint.run_id == self.run_id)
                .order_by(MigrationCheckpoint.sequence)
            )
            rows = result.scalars().all()

        checkpoints = []
        for row in rows:
            try:
                checkpoints.append(self._to_schema(row))
            except CheckpointCorrupt as e:
                logger.warning(f"Ignoring unreadable checkpoint {row.checkpoint_id}", extra={"error_context": e.to_dict()})
        return checkpoints

    async def _remove(self, checkpoints: List[Checkpoint]):
        if not checkpoints:
            return
        async with self._session_maker() as session:
            await session.execute(
                delete(MigrationCheckpoint).where(
                    MigrationCheckpoint.run_id == self.run_id,
                    MigrationCheckpoint.checkpoint_id.in_([c.id for c in checkpoints])
                )
            )
            await session.commit()
