"""
Progress Aggregator - totals, throughput and ETA across entities and batches.

The aggregator feeds an optional reporting sink with ProgressSnapshot
objects. Emission is throttled: a snapshot goes out when both the minimum
interval and the minimum percentage delta have passed, when enough items
accumulated since the last emission, or on completion. Sink failures are
logged and never propagate into the migration.
"""

from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, Optional, Tuple
import inspect
import logging
import time

from core.config import settings as default_settings, Settings
from schemas.batch import BatchResult, EntityProgress, ProgressSnapshot

logger = logging.getLogger(__name__)

ProgressSink = Callable[[ProgressSnapshot], Any]

MILESTONES = (25, 50, 75, 100)
BAR_WIDTH = 20


def format_duration(seconds: Optional[float]) -> str:
    """Human-readable duration, e.g. 1h 2m 3s"""
    if seconds is None:
        return "unknown"
    seconds = max(0, int(round(seconds)))
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


class ProgressAggregator:
    """
    Accumulate batch results and report progress.

    Attributes:
        total: Expected record count (None when unknown)
        emitted: Number of snapshots handed to the sink
    """

    def __init__(
        self,
        sink: Optional[ProgressSink] = None,
        settings: Optional[Settings] = None,
        total: Optional[int] = None,
        min_interval: Optional[float] = None,
        min_percentage_delta: Optional[float] = None,
        force_every: Optional[int] = None,
        clock: Optional[Callable[[], float]] = None,
        window: int = 10
    ):
        self.settings = settings or default_settings
        self.sink = sink
        self.total = total
        self.min_interval = self.settings.PROGRESS_MIN_INTERVAL if min_interval is None else min_interval
        self.min_percentage_delta = (
            self.settings.PROGRESS_MIN_PERCENTAGE if min_percentage_delta is None else min_percentage_delta
        )
        self.force_every = self.settings.PROGRESS_FORCE_EVERY if force_every is None else force_every
        self._clock = clock or time.monotonic

        self.entities: Dict[str, EntityProgress] = {}
        self.processed = 0
        self.succeeded = 0
        self.failed = 0
        self.skipped = 0
        self.batches = 0
        self.completed = False
        self.emitted = 0
        self.sink_failures = 0

        self._started: Optional[float] = None
        self._window: Deque[Tuple[float, int]] = deque(maxlen=max(2, window))
        self._last_emit_at: Optional[float] = None
        self._last_emit_percentage: Optional[float] = None
        self._items_since_emit = 0
        self._milestones_logged = set()

    # ------------------------------------------------------------------
    # Accounting
    # ------------------------------------------------------------------

    def _start(self):
        if self._started is None:
            self._started = self._clock()
            self._window.append((self._started, 0))

    def _entity(self, name: str) -> EntityProgress:
        entity = self.entities.get(name)
        if entity is None:
            entity = EntityProgress(name=name, status="running", started_at=datetime.now(timezone.utc))
            self.entities[name] = entity
        return entity

    def start_entity(self, name: str, total: Optional[int] = None) -> EntityProgress:
        self._start()
        entity = self._entity(name)
        entity.total = total
        entity.status = "running"
        logger.info(f"Started {name}" + (f" ({total} records)" if total is not None else ""))
        return entity

    def skip(self, count: int, entity: str = "default"):
        """Count records already handled by an earlier run (resume)"""
        if count <= 0:
            return
        self._start()
        progress = self._entity(entity)
        progress.skipped += count
        progress.processed += count
        self.skipped += count
        self.processed += count

    async def record_batch(self, result: BatchResult) -> Optional[ProgressSnapshot]:
        """Account for a finished batch and emit a snapshot if due"""
        self._start()
        entity = self._entity(result.entity)
        entity.processed += result.record_count
        entity.succeeded += result.success_count
        entity.failed += result.failure_count

        self.processed += result.record_count
        self.succeeded += result.success_count
        self.failed += result.failure_count
        self.batches += 1
        self._items_since_emit += result.record_count
        self._window.append((self._clock(), self.processed - self.skipped))

        logger.debug(
            f"Batch {result.batch_id} ({result.entity}, worker {result.worker_id}): "
            f"{result.success_count}/{result.record_count} ok in {result.duration:.2f}s"
        )
        return await self._maybe_emit()

    async def complete_entity(self, name: str) -> Optional[ProgressSnapshot]:
        entity = self._entity(name)
        entity.status = "completed"
        entity.completed_at = datetime.now(timezone.utc)
        if entity.total is None:
            entity.total = entity.processed
        logger.info(f"Completed {name}: {entity.succeeded} succeeded, {entity.failed} failed")
        return await self._maybe_emit()

    async def complete(self) -> ProgressSnapshot:
        """Mark the run finished; always emits"""
        self.completed = True
        for entity in self.entities.values():
            if entity.status == "running":
                entity.status = "completed"
                entity.completed_at = datetime.now(timezone.utc)
        return await self._maybe_emit(force=True)

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def _overall_total(self) -> Optional[int]:
        if self.total is not None:
            return self.total
        if self.entities and all(e.total is not None for e in self.entities.values()):
            return sum(e.total for e in self.entities.values())
        return None

    def elapsed(self) -> float:
        if self._started is None:
            return 0.0
        return max(self._clock() - self._started, 0.0)

    def throughput(self) -> float:
        """Records per second over the recent window of batches"""
        if len(self._window) >= 2:
            (first_at, first_count), (last_at, last_count) = self._window[0], self._window[-1]
            if last_at > first_at:
                return (last_count - first_count) / (last_at - first_at)
        elapsed = self.elapsed()
        return (self.processed - self.skipped) / elapsed if elapsed > 0 else 0.0

    @staticmethod
    def _percentage(processed: int, total: Optional[int]) -> Optional[float]:
        if total is None:
            return None
        if total <= 0:
            return 100.0
        return min(processed / total * 100, 100.0)

    def _entity_snapshot(self, entity: EntityProgress, rate: float) -> EntityProgress:
        percentage = self._percentage(entity.processed, entity.total)
        eta = None
        if entity.total is not None and rate > 0:
            eta = max(entity.total - entity.processed, 0) / rate
        return entity.model_copy(update={
            "percentage": round(percentage, 2) if percentage is not None else None,
            "throughput": round(rate, 2),
            "eta_seconds": round(eta, 2) if eta is not None else None,
        })

    def snapshot(self) -> ProgressSnapshot:
        total = self._overall_total()
        rate = self.throughput()
        percentage = self._percentage(self.processed, total)
        eta = None
        if self.completed:
            eta = 0.0
        elif total is not None and rate > 0:
            eta = max(total - self.processed, 0) / rate

        snapshot = ProgressSnapshot(
            total=total,
            processed=self.processed,
            succeeded=self.succeeded,
            failed=self.failed,
            percentage=round(percentage, 2) if percentage is not None else None,
            throughput=round(rate, 2),
            eta_seconds=round(eta, 2) if eta is not None else None,
            elapsed_seconds=round(self.elapsed(), 2),
            batches=self.batches,
            completed=self.completed,
            entities={name: self._entity_snapshot(e, rate) for name, e in self.entities.items()},
        )
        return snapshot.model_copy(update={"line": self.progress_line(snapshot)})

    @staticmethod
    def progress_line(snapshot: ProgressSnapshot) -> str:
        """One-line summary, e.g. [=========-----------] 45.00% (450/1000) | 120.50 rec/s | ETA 4s"""
        if snapshot.percentage is None:
            return f"{snapshot.processed} processed | {snapshot.throughput:.2f} rec/s"
        filled = int(snapshot.percentage / 100 * BAR_WIDTH)
        bar = "=" * filled + "-" * (BAR_WIDTH - filled)
        return (
            f"[{bar}] {snapshot.percentage:.2f}% ({snapshot.processed}/{snapshot.total}) | "
            f"{snapshot.throughput:.2f} rec/s | ETA {format_duration(snapshot.eta_seconds)}"
        )

    # ------------------------------------------------------------------
    # Emission
    # ------------------------------------------------------------------

    def _due(self, percentage: Optional[float]) -> bool:
        if self.force_every and self._items_since_emit >= self.force_every:
            return True
        if self._last_emit_at is None:
            return True

        interval_ok = self._clock() - self._last_emit_at >= self.min_interval
        if percentage is None or self._last_emit_percentage is None:
            delta_ok = True
        else:
            delta_ok = percentage - self._last_emit_percentage >= self.min_percentage_delta
        return interval_ok and delta_ok

    def _log_milestones(self, percentage: Optional[float], line: str):
        if percentage is None:
            return
        for milestone in MILESTONES:
            if percentage >= milestone and milestone not in self._milestones_logged:
                self._milestones_logged.add(milestone)
                logger.info(f"Progress {milestone}%: {line}")

    async def _maybe_emit(self, force: bool = False) -> Optional[ProgressSnapshot]:
        snapshot = self.snapshot()
        self._log_milestones(snapshot.percentage, snapshot.line)

        if not (force or self._due(snapshot.percentage)):
            return None

        self._last_emit_at = self._clock()
        self._last_emit_percentage = snapshot.percentage
        self._items_since_emit = 0

        if self.sink is not None:
            try:
                result = self.sink(snapshot)
                if inspect.isawaitable(result):
                    await result
                self.emitted += 1
            except Exception as e:
                self.sink_failures += 1
                logger.warning(f"Progress sink failed, continuing: {e}")
        return snapshot
