# ============================================================================
# File: migration/runner.py
# Description: Batch executors with checkpoint/resume and failure breaker
# ============================================================================
"""
Migration Runner - drives decode -> process -> log -> checkpoint loops.

This module provides:
- MigrationRunner: single-threaded cooperative executor; records are
  processed, logged and checkpointed in strict source order
- ParallelMigrationRunner: fixed-size asyncio worker pool fed by one
  producer; checkpoints follow the highest contiguous completed batch

Both runners:
- Consult the Memory Governor between batches for the batch size
- Wrap every record in the Retry Controller
- Observe cancellation only at batch boundaries
- Leave a resumable checkpoint on completion, cancellation and abort
"""

from dataclasses import dataclass, field
from functools import partial
from itertools import islice
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Union
import asyncio
import logging
import math
import time
import uuid

from core.config import settings as default_settings, Settings
from core.exceptions import (
    CheckpointError,
    CheckpointMismatch,
    ClassifiedError,
    ClassifiedFatal,
    ClassifiedRecoverable,
    FailureThresholdExceeded,
    MigrationAborted,
    MigrationError,
)
from migration.checkpoints import CheckpointStore, FileCheckpointStore
from migration.decoders.base import Decoder
from migration.memory import MemoryGovernor
from migration.progress import ProgressAggregator
from migration.retry import RetryController
from migration.rollback import RollbackLog
from models.base import RunStatus
from schemas.batch import BatchResult, MigrationResult, RecordFailure
from schemas.checkpoint import Checkpoint
from schemas.operation import Operation
from schemas.records import Record

logger = logging.getLogger(__name__)

ProcessFn = Callable[[Record], Any]
ResumeFrom = Union[None, bool, str, Checkpoint]

MAX_REPORTED_FAILURES = 1000


@dataclass
class BatchOutcome:
    """Mutable tally of one batch while it is being processed"""

    index: int
    start_position: int
    record_count: int
    worker_id: int = 0
    end_position: int = 0
    success_count: int = 0
    failure_count: int = 0
    failures: List[RecordFailure] = field(default_factory=list)
    fatal: Optional[ClassifiedFatal] = None
    fatal_position: Optional[int] = None
    timed_out: bool = False
    duration: float = 0.0

    def __post_init__(self):
        self.end_position = self.start_position

    def fail(self, position: int, category: str, error_type: str, message: str,
             attempts: int = 1, provenance: Optional[Dict[str, Any]] = None):
        self.failure_count += 1
        self.failures.append(RecordFailure(
            position=position,
            category=category,
            error_type=error_type,
            error_message=message[:500],
            attempts=attempts,
            provenance=provenance or {},
        ))

    def fail_classified(self, record: Record, error: ClassifiedError):
        original = error.original_exception or error
        self.fail(
            record.position,
            error.category,
            type(original).__name__,
            str(original) if error.original_exception else error.message,
            attempts=error.attempts,
            provenance=record.provenance,
        )

    def result(self, entity: str) -> BatchResult:
        return BatchResult.build(
            batch_id=self.index,
            record_count=self.end_position - self.start_position,
            success_count=self.success_count,
            failure_count=self.failure_count,
            duration=self.duration,
            worker_id=self.worker_id,
            entity=entity,
            start_position=self.start_position,
            timed_out=self.timed_out,
        )


class MigrationRunner:
    """
    Sequential migration executor.

    Responsibilities:
    - Pull batches sized by the Memory Governor
    - Process records through the Retry Controller
    - Record returned Operations in the Rollback Log
    - Persist checkpoints every CHECKPOINT_INTERVAL records
    - Trip the failure-ratio breaker and abort on fatal records
    """

    def __init__(
        self,
        decoder: Decoder,
        process: ProcessFn,
        run_id: Optional[str] = None,
        checkpoint_store: Optional[CheckpointStore] = None,
        rollback_log: Optional[RollbackLog] = None,
        governor: Optional[MemoryGovernor] = None,
        retry: Optional[RetryController] = None,
        progress: Optional[ProgressAggregator] = None,
        settings: Optional[Settings] = None,
        entity: Optional[str] = None,
        expected_total: Optional[int] = None,
        decoder_options: Optional[Dict[str, Any]] = None,
        flush: Optional[Callable[[], Any]] = None
    ):
        self.settings = settings or default_settings
        self.decoder = decoder
        self.process = process
        self.run_id = run_id or uuid.uuid4().hex
        self.checkpoint_store = checkpoint_store or FileCheckpointStore(self.run_id, settings=self.settings)
        self.rollback_log = rollback_log
        self.governor = governor or MemoryGovernor(settings=self.settings)
        self.retry = retry or RetryController(settings=self.settings)
        self.progress = progress or ProgressAggregator(settings=self.settings)
        self.entity = entity
        self.expected_total = expected_total
        self.decoder_options = decoder_options or {}
        self._flush_fn = flush or getattr(process, "flush", None)
        self._cancel = asyncio.Event()
        self._reset(None)

    # ------------------------------------------------------------------
    # Run state
    # ------------------------------------------------------------------

    def _reset(self, checkpoint: Optional[Checkpoint]):
        self.cursor = checkpoint.cursor if checkpoint else 0
        self.success_count = checkpoint.success_count if checkpoint else 0
        self.failure_count = checkpoint.failure_count if checkpoint else 0
        self.batch_index = checkpoint.current_batch_index if checkpoint else 0
        self.resumed_from = checkpoint.id if checkpoint else None
        self.last_checkpoint_id = checkpoint.id if checkpoint else None
        self._last_checkpoint_cursor = self.cursor
        self.batches = 0
        self.failures: List[RecordFailure] = []
        self._started = time.monotonic()

    def cancel(self):
        """Request a stop at the next batch boundary"""
        logger.info(f"Cancellation requested for run {self.run_id}")
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    @property
    def processed(self) -> int:
        return self.success_count + self.failure_count

    async def _resolve_resume(self, resume_from: ResumeFrom) -> Optional[Checkpoint]:
        if resume_from is None or resume_from is False:
            return None
        if resume_from is True:
            checkpoint = await self.checkpoint_store.latest()
            if checkpoint is None:
                logger.info(f"No checkpoint found for run {self.run_id}; starting from the beginning")
            return checkpoint
        if isinstance(resume_from, str):
            checkpoint = await self.checkpoint_store.load(resume_from)
        elif resume_from.run_id != self.run_id:
            raise CheckpointMismatch(
                "Checkpoint belongs to a different run",
                context={"run_id": self.run_id, "checkpoint_run_id": resume_from.run_id, "checkpoint_id": resume_from.id}
            )
        else:
            checkpoint = resume_from

        # Cursors never move backwards within a run
        latest = await self.checkpoint_store.latest()
        if latest is not None and checkpoint.cursor < latest.cursor:
            raise CheckpointError(
                "Only the most advanced checkpoint of a run can be resumed",
                context={"run_id": self.run_id, "checkpoint_id": checkpoint.id, "latest_checkpoint_id": latest.id}
            )
        return checkpoint

    def _entity_name(self, source: Union[str, Path]) -> str:
        return self.entity or Path(source).stem

    def _total_batches(self, batch_size: int) -> Optional[int]:
        if self.expected_total is None or batch_size <= 0:
            return None
        return max(self.batch_index, math.ceil(self.expected_total / batch_size))

    # ------------------------------------------------------------------
    # Record processing
    # ------------------------------------------------------------------

    async def _record_operations(self, log: Optional[RollbackLog], outcome: Any):
        if log is None or outcome is None:
            return
        if isinstance(outcome, Operation):
            await log.record(outcome)
        elif isinstance(outcome, (list, tuple)):
            for item in outcome:
                if isinstance(item, Operation):
                    await log.record(item)

    async def _execute_batch(
        self,
        outcome: BatchOutcome,
        records: List[Record],
        process: ProcessFn,
        log: Optional[RollbackLog]
    ) -> BatchOutcome:
        """Process records in order, updating outcome as each one finishes"""
        started = time.monotonic()
        try:
            for record in records:
                try:
                    result = await self.retry.execute_with_retry(
                        partial(process, record),
                        context={"run_id": self.run_id, "position": record.position},
                        provenance=record.describe(),
                    )
                except ClassifiedFatal as e:
                    if self.settings.ABORT_ON_FATAL:
                        outcome.fatal = e
                        outcome.fatal_position = record.position
                        logger.error(
                            f"Fatal {e.category} error at record {record.position}: {e.message}",
                            extra={"error_context": e.to_dict()}
                        )
                        break
                    outcome.fail_classified(record, e)
                except ClassifiedRecoverable as e:
                    outcome.fail_classified(record, e)
                    logger.warning(f"Record {record.position} failed after {e.attempts} attempts ({e.category})")
                else:
                    await self._record_operations(log, result)
                    outcome.success_count += 1
                outcome.end_position = record.position + 1
        finally:
            outcome.duration = time.monotonic() - started
        return outcome

    async def _flush(self, flush: Optional[Callable[[], Any]]):
        if flush is None:
            return
        result = flush()
        if asyncio.iscoroutine(result):
            await result

    def _absorb(self, outcome: BatchOutcome):
        """Advance run totals past a finished batch"""
        self.cursor = outcome.end_position
        self.success_count += outcome.success_count
        self.failure_count += outcome.failure_count
        self.batch_index = outcome.index + 1
        self.batches += 1
        room = MAX_REPORTED_FAILURES - len(self.failures)
        if room > 0:
            self.failures.extend(outcome.failures[:room])

    # ------------------------------------------------------------------
    # Checkpoints and results
    # ------------------------------------------------------------------

    async def _save_checkpoint(self, status: RunStatus, source: Union[str, Path], extra: Optional[Dict[str, Any]] = None) -> Checkpoint:
        memory = None
        if self.governor.history:
            memory = {
                "current_usage": self.governor.last_usage,
                "peak_usage": self.governor.peak_usage,
                "batch_size": self.governor.batch_size,
                "level": self.governor.level.value,
            }
        state = {
            "status": status.value,
            "source": str(source),
            "entity": self._entity_name(source),
        }
        state.update(extra or {})

        checkpoint = await self.checkpoint_store.create(
            cursor=self.cursor,
            success_count=self.success_count,
            failure_count=self.failure_count,
            current_batch_index=self.batch_index,
            total_batches=self._total_batches(self.governor.batch_size),
            memory=memory,
            state=state,
        )
        self.last_checkpoint_id = checkpoint.id
        self._last_checkpoint_cursor = self.cursor
        return checkpoint

    async def _maybe_checkpoint(self, source: Union[str, Path]):
        interval = max(1, self.settings.CHECKPOINT_INTERVAL)
        if self.cursor // interval > self._last_checkpoint_cursor // interval:
            await self._save_checkpoint(RunStatus.RUNNING, source)

    def _result(self, status: RunStatus) -> MigrationResult:
        return MigrationResult(
            run_id=self.run_id,
            status=status,
            processed=self.processed,
            success_count=self.success_count,
            failure_count=self.failure_count,
            batches=self.batches,
            cursor=self.cursor,
            last_checkpoint_id=self.last_checkpoint_id,
            resumed_from=self.resumed_from,
            failures=list(self.failures),
            duration=round(time.monotonic() - self._started, 4),
        )

    def _breaker_tripped(self) -> bool:
        processed = self.processed
        if processed < self.settings.FAILURE_BREAKER_MIN_RECORDS or processed == 0:
            return False
        return self.failure_count / processed > self.settings.MAX_FAILURE_RATIO

    def _breaker_error(self) -> FailureThresholdExceeded:
        return FailureThresholdExceeded(
            "Failure ratio exceeded",
            report=self._result(RunStatus.ABORTED),
            context={
                "failures": self.failure_count,
                "processed": self.processed,
                "max_failure_ratio": self.settings.MAX_FAILURE_RATIO,
            }
        )

    async def _abort(self, message: str, source: Union[str, Path], error: Optional[BaseException] = None):
        """Persist an aborted checkpoint at the cursor and raise MigrationAborted"""
        extra = {"reason": message}
        if isinstance(error, ClassifiedError):
            extra["category"] = error.category
        try:
            await self._save_checkpoint(RunStatus.ABORTED, source, extra)
        except MigrationError as e:
            logger.error(f"Could not persist abort checkpoint for run {self.run_id}: {e}")

        result = self._result(RunStatus.ABORTED)
        logger.error(
            f"Run {self.run_id} aborted at cursor {self.cursor}: {message}. "
            f"Resume from checkpoint {self.last_checkpoint_id}"
        )
        raise MigrationAborted(
            message,
            last_checkpoint_id=self.last_checkpoint_id,
            result=result,
            context={"run_id": self.run_id, "cursor": self.cursor},
            original_exception=error
        )

    async def _start(self, source: Union[str, Path], resume_from: ResumeFrom) -> Optional[Checkpoint]:
        checkpoint = await self._resolve_resume(resume_from)
        self._reset(checkpoint)
        self._cancel.clear()

        entity = self._entity_name(source)
        self.progress.start_entity(entity, total=self.expected_total)
        if checkpoint is not None:
            if checkpoint.status == RunStatus.COMPLETED.value:
                logger.info(f"Checkpoint {checkpoint.id} marks run {self.run_id} as completed")
            logger.info(f"Resuming run {self.run_id} from checkpoint {checkpoint.id} at cursor {checkpoint.cursor}")
            self.progress.skip(checkpoint.cursor, entity)
        else:
            logger.info(f"Starting run {self.run_id} for {source}")
        return checkpoint

    async def _finish(self, status: RunStatus, source: Union[str, Path]) -> MigrationResult:
        await self._save_checkpoint(status, source)
        entity = self._entity_name(source)
        await self.progress.complete_entity(entity)
        await self.progress.complete()

        result = self._result(status)
        logger.info(
            f"Run {self.run_id} {status.value}: {result.success_count} succeeded, "
            f"{result.failure_count} failed, cursor {result.cursor}, {result.duration:.2f}s"
        )
        return result

    # ------------------------------------------------------------------
    # Sequential run
    # ------------------------------------------------------------------

    async def run(self, source: Union[str, Path], resume_from: ResumeFrom = None) -> MigrationResult:
        """
        Migrate every record of source.

        Args:
            source: Path handed to the decoder
            resume_from: None, a checkpoint id, a Checkpoint, or True for the
                latest checkpoint of this run

        Returns:
            MigrationResult with status completed or cancelled

        Raises:
            MigrationAborted: Fatal record, breaker trip or unexpected error;
                carries the id of the checkpoint to resume from
            SourceUnreadable: The source could not be opened
            CheckpointNotFound / CheckpointCorrupt / CheckpointMismatch
        """
        await self._start(source, resume_from)

        # --------------------------------------------------
        # PHASE 1: OPEN SOURCE
        # --------------------------------------------------
        handle = self.decoder.open(source, **self.decoder_options)
        records = self.decoder.skip(handle, self.cursor)
        entity = self._entity_name(source)
        status = RunStatus.COMPLETED

        try:
            # --------------------------------------------------
            # PHASE 2: BATCH LOOP
            # --------------------------------------------------
            while True:
                if self.cancelled:
                    status = RunStatus.CANCELLED
                    logger.info(f"Run {self.run_id} cancelled at cursor {self.cursor}")
                    break

                size = self.governor.sample().batch_size
                try:
                    batch = list(islice(records, size))
                except MigrationError as e:
                    await self._abort("Source could not be decoded", source, e)
                if not batch:
                    break

                outcome = BatchOutcome(
                    index=self.batch_index,
                    start_position=batch[0].position,
                    record_count=len(batch),
                )
                await self._execute_batch(outcome, batch, self.process, self.rollback_log)
                await self._flush(self._flush_fn)

                self._absorb(outcome)
                await self.progress.record_batch(outcome.result(entity))

                if outcome.fatal is not None:
                    await self._abort(
                        f"Fatal {outcome.fatal.category} error at record {outcome.fatal_position}",
                        source,
                        outcome.fatal,
                    )

                await self._maybe_checkpoint(source)

                if self._breaker_tripped():
                    await self._abort("Failure ratio exceeded", source, self._breaker_error())

            # --------------------------------------------------
            # PHASE 3: FINALIZE
            # --------------------------------------------------
            return await self._finish(status, source)

        except MigrationAborted:
            raise

        except MigrationError as e:
            await self._abort(e.message, source, e)

        except Exception as e:
            await self._abort("Unexpected error during migration", source, e)

        finally:
            handle.close()


class ParallelMigrationRunner(MigrationRunner):
    """
    Worker-pool executor.

    One producer reads batches and queues them; WORKER_COUNT workers process
    them independently, each with its own rollback log segment and
    (optionally) its own processor. The checkpoint cursor only advances over
    contiguous completed batches, so a resume never skips unfinished work.
    Only per-batch record order is guaranteed.
    """

    def __init__(
        self,
        decoder: Decoder,
        process: ProcessFn,
        workers: Optional[int] = None,
        batch_timeout: Optional[float] = None,
        process_factory: Optional[Callable[[int], ProcessFn]] = None,
        **kwargs
    ):
        super().__init__(decoder, process, **kwargs)
        self.workers = max(1, workers or self.settings.WORKER_COUNT)
        self.batch_timeout = batch_timeout if batch_timeout is not None else self.settings.BATCH_TIMEOUT
        self.process_factory = process_factory
        self._lock = asyncio.Lock()
        self._completed: Dict[int, BatchOutcome] = {}
        self._abort_error: Optional[BaseException] = None
        self._abort_message: Optional[str] = None
        self._frozen = False

    def _set_abort(self, message: str, error: BaseException):
        if self._abort_error is None:
            self._abort_error = error
            self._abort_message = message
            logger.error(f"Run {self.run_id} stopping: {message}")

    # ------------------------------------------------------------------
    # Producer
    # ------------------------------------------------------------------

    async def _produce(self, records: Iterator[Record], queue: asyncio.Queue):
        index = self.batch_index
        try:
            while not self.cancelled and self._abort_error is None:
                size = self.governor.sample().batch_size
                batch = list(islice(records, size))
                if not batch:
                    break
                await queue.put((index, batch))
                index += 1
                # Let workers pick up the batch before decoding the next one
                await asyncio.sleep(0)
        except MigrationError as e:
            self._set_abort("Source could not be decoded", e)
        except Exception as e:
            self._set_abort("Unexpected error while reading source", e)
        finally:
            for _ in range(self.workers):
                await queue.put(None)

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    async def _run_batch(self, outcome: BatchOutcome, batch: List[Record], process: ProcessFn, log: Optional[RollbackLog]):
        if not self.batch_timeout:
            await self._execute_batch(outcome, batch, process, log)
            return

        try:
            await asyncio.wait_for(self._execute_batch(outcome, batch, process, log), timeout=self.batch_timeout)
        except asyncio.TimeoutError:
            outcome.timed_out = True
            remaining = [record for record in batch if record.position >= outcome.end_position]
            for record in remaining:
                outcome.fail(
                    record.position,
                    "connection_timeout",
                    "TimeoutError",
                    f"Batch {outcome.index} timed out after {self.batch_timeout}s",
                    provenance=record.provenance,
                )
            if remaining:
                outcome.end_position = remaining[-1].position + 1
            logger.warning(
                f"Batch {outcome.index} on worker {outcome.worker_id} timed out; "
                f"{len(remaining)} records marked as failed"
            )

    async def _work(self, worker_id: int, queue: asyncio.Queue, source: Union[str, Path]):
        process = self.process_factory(worker_id) if self.process_factory else self.process
        flush = getattr(process, "flush", None) if self.process_factory else self._flush_fn
        log = self.rollback_log.segment(worker_id) if self.rollback_log is not None else None

        while True:
            item = await queue.get()
            if item is None:
                break
            if self._abort_error is not None:
                continue

            index, batch = item
            outcome = BatchOutcome(
                index=index,
                start_position=batch[0].position,
                record_count=len(batch),
                worker_id=worker_id,
            )
            try:
                await self._run_batch(outcome, batch, process, log)
                await self._flush(flush)
            except Exception as e:
                self._set_abort(f"Worker {worker_id} failed on batch {index}", e)
                continue

            if outcome.fatal is not None:
                self._set_abort(
                    f"Fatal {outcome.fatal.category} error at record {outcome.fatal_position}",
                    outcome.fatal,
                )
            await self._complete(outcome, source)

    async def _complete(self, outcome: BatchOutcome, source: Union[str, Path]):
        """Advance the watermark over contiguous finished batches"""
        entity = self._entity_name(source)
        async with self._lock:
            self._completed[outcome.index] = outcome

            while not self._frozen and self.batch_index in self._completed:
                done = self._completed.pop(self.batch_index)
                self._absorb(done)
                await self.progress.record_batch(done.result(entity))
                if done.fatal is not None:
                    # Positions past the fatal record stay unprocessed
                    self._frozen = True

            try:
                await self._maybe_checkpoint(source)
            except MigrationError as e:
                self._set_abort("Checkpoint could not be saved", e)

            if self._breaker_tripped():
                self._frozen = True
                self._set_abort("Failure ratio exceeded", self._breaker_error())

    # ------------------------------------------------------------------
    # Parallel run
    # ------------------------------------------------------------------

    async def run(self, source: Union[str, Path], resume_from: ResumeFrom = None) -> MigrationResult:
        """Same contract as MigrationRunner.run, with batches spread over workers"""
        await self._start(source, resume_from)
        self._completed = {}
        self._abort_error = None
        self._abort_message = None
        self._frozen = False

        handle = self.decoder.open(source, **self.decoder_options)
        records = self.decoder.skip(handle, self.cursor)
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.workers * 2)
        logger.info(f"Run {self.run_id}: {self.workers} workers, batch timeout {self.batch_timeout}")

        try:
            await asyncio.gather(
                self._produce(records, queue),
                *[self._work(worker_id, queue, source) for worker_id in range(self.workers)]
            )
        finally:
            handle.close()

        if self._abort_error is not None:
            await self._abort(self._abort_message or "Migration aborted", source, self._abort_error)

        status = RunStatus.CANCELLED if self.cancelled else RunStatus.COMPLETED
        return await self._finish(status, source)
