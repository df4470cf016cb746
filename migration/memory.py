"""
Memory Governor - adaptive batch sizing under memory pressure.

The governor samples process memory between batches, classifies the usage
ratio against the configured ceiling into a pressure level and adjusts the
recommended batch size:

    normal     grow 10% back toward the original batch size
    warning    shrink 15%
    critical   shrink 30%, collect garbage if none ran within the cooldown
    emergency  halve, always collect garbage

It never raises; probe, collector and callback failures are logged.
"""

from collections import deque
from datetime import datetime, timezone
from typing import Callable, Deque, Dict, List, Optional, Tuple
import gc
import logging
import os
import time

import psutil

from core.config import settings as default_settings, Settings, parse_size
from models.base import PressureLevel
from schemas.memory import MemoryState

logger = logging.getLogger(__name__)

GovernorCallback = Callable[[MemoryState], None]

RAPID_GROWTH_BYTES_PER_SEC = 1024 * 1024
GROWTH_BYTES_PER_SEC = 100 * 1024

SHRINK_FACTORS = {
    PressureLevel.WARNING: 0.85,
    PressureLevel.CRITICAL: 0.70,
    PressureLevel.EMERGENCY: 0.50,
}
GROWTH_FACTOR = 1.10


def process_memory_usage() -> int:
    """Resident set size of the current process"""
    return psutil.Process(os.getpid()).memory_info().rss


def format_bytes(size: float, precision: int = 2) -> str:
    units = ["B", "KB", "MB", "GB", "TB"]
    size = max(float(size), 0.0)
    unit = 0
    while size >= 1024 and unit < len(units) - 1:
        size /= 1024
        unit += 1
    return f"{round(size, precision)} {units[unit]}"


class MemoryGovernor:
    """
    Recommend batch sizes from live memory usage.

    Attributes:
        batch_size: Current recommendation
        original_batch_size: Size the governor grows back toward
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        batch_size: Optional[int] = None,
        min_batch_size: Optional[int] = None,
        max_batch_size: Optional[int] = None,
        memory_limit=None,
        usage_probe: Optional[Callable[[], int]] = None,
        collector: Optional[Callable[[], object]] = None,
        clock: Optional[Callable[[], float]] = None
    ):
        self.settings = settings or default_settings
        self.min_batch_size = min_batch_size or self.settings.MIN_BATCH_SIZE
        self.max_batch_size = max_batch_size or self.settings.MAX_BATCH_SIZE
        self.original_batch_size = self._clamp(batch_size or self.settings.BATCH_SIZE)
        self.batch_size = self.original_batch_size

        limit = memory_limit if memory_limit is not None else self.settings.MEMORY_LIMIT
        self.ceiling: Optional[int] = parse_size(limit)

        self.thresholds: List[Tuple[float, PressureLevel]] = [
            (self.settings.MEMORY_EMERGENCY_THRESHOLD, PressureLevel.EMERGENCY),
            (self.settings.MEMORY_CRITICAL_THRESHOLD, PressureLevel.CRITICAL),
            (self.settings.MEMORY_WARNING_THRESHOLD, PressureLevel.WARNING),
        ]
        self.cooldown = self.settings.COLLECTION_COOLDOWN_SECONDS

        self._probe = usage_probe or process_memory_usage
        self._collector = collector or gc.collect
        self._clock = clock or time.monotonic

        self.history: Deque[Tuple[float, int]] = deque(maxlen=self.settings.MEMORY_HISTORY_SIZE)
        self.level = PressureLevel.NORMAL
        self.peak_usage = 0
        self.last_usage = 0
        self.last_collection_at: Optional[datetime] = None
        self._last_collection_clock: Optional[float] = None
        self.collections = 0
        self._callbacks: Dict[PressureLevel, List[GovernorCallback]] = {level: [] for level in PressureLevel}

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    def on(self, level: PressureLevel, callback: GovernorCallback):
        """Register a callback invoked whenever a sample lands on level"""
        self._callbacks[PressureLevel(level)].append(callback)

    def _notify(self, state: MemoryState):
        for callback in self._callbacks[self.level]:
            try:
                callback(state)
            except Exception as e:
                logger.error(f"Memory governor callback failed at {self.level.value}: {e}")

    # ------------------------------------------------------------------
    # Sampling
    # ------------------------------------------------------------------

    def _clamp(self, size: int) -> int:
        return max(self.min_batch_size, min(self.max_batch_size, int(size)))

    def _read_usage(self) -> int:
        try:
            return int(self._probe())
        except Exception as e:
            logger.warning(f"Memory probe failed, reusing last reading: {e}")
            return self.last_usage

    def _classify(self, ratio: float) -> PressureLevel:
        for threshold, level in self.thresholds:
            if ratio >= threshold:
                return level
        return PressureLevel.NORMAL

    def growth_rate(self) -> float:
        """Least-squares slope of usage over time, in bytes per second"""
        if len(self.history) < 2:
            return 0.0
        times = [t for t, _ in self.history]
        usages = [u for _, u in self.history]
        mean_t = sum(times) / len(times)
        mean_u = sum(usages) / len(usages)
        denominator = sum((t - mean_t) ** 2 for t in times)
        if denominator == 0:
            return 0.0
        return sum((t - mean_t) * (u - mean_u) for t, u in self.history) / denominator

    @staticmethod
    def trend_label(rate: float) -> str:
        if rate > RAPID_GROWTH_BYTES_PER_SEC:
            return "rapidly_increasing"
        if rate > GROWTH_BYTES_PER_SEC:
            return "increasing"
        if rate < -GROWTH_BYTES_PER_SEC:
            return "decreasing"
        return "stable"

    def _collect(self, force: bool) -> bool:
        now = self._clock()
        if not force and self._last_collection_clock is not None:
            if now - self._last_collection_clock < self.cooldown:
                return False
        try:
            self._collector()
        except Exception as e:
            logger.warning(f"Garbage collection pass failed: {e}")
            return False
        self._last_collection_clock = now
        self.last_collection_at = datetime.now(timezone.utc)
        self.collections += 1
        return True

    def _adjust(self, level: PressureLevel):
        if level == PressureLevel.NORMAL:
            if self.batch_size < self.original_batch_size:
                grown = max(self.batch_size + 1, int(self.batch_size * GROWTH_FACTOR))
                self.batch_size = self._clamp(min(grown, self.original_batch_size))
            return

        self.batch_size = self._clamp(int(self.batch_size * SHRINK_FACTORS[level]))
        if level == PressureLevel.EMERGENCY:
            self._collect(force=True)
        elif level == PressureLevel.CRITICAL:
            self._collect(force=False)

    def sample(self) -> MemoryState:
        """Take a reading, adjust the batch size and return the new state"""
        usage = self._read_usage()
        now = self._clock()
        self.last_usage = usage
        self.peak_usage = max(self.peak_usage, usage)
        self.history.append((now, usage))

        ratio = usage / self.ceiling if self.ceiling else 0.0
        level = self._classify(ratio)
        if level != self.level:
            log = logger.info if level == PressureLevel.NORMAL else logger.warning
            log(
                f"Memory pressure {self.level.value} -> {level.value}: "
                f"{format_bytes(usage)} of {format_bytes(self.ceiling or 0)} ({ratio:.0%})"
            )
        self.level = level

        before = self.batch_size
        self._adjust(level)
        if self.batch_size != before:
            logger.debug(f"Batch size {before} -> {self.batch_size} at {level.value} pressure")

        rate = self.growth_rate()
        to_ceiling = None
        if self.ceiling and rate > 0:
            to_ceiling = round(max(self.ceiling - usage, 0) / rate, 2)

        state = MemoryState(
            current_usage=usage,
            ceiling=self.ceiling,
            usage_ratio=round(ratio, 4),
            level=level,
            batch_size=self.batch_size,
            original_batch_size=self.original_batch_size,
            peak_usage=self.peak_usage,
            growth_rate=round(rate, 2),
            trend=self.trend_label(rate),
            seconds_to_ceiling=to_ceiling,
            last_collection_at=self.last_collection_at,
            sampled_at=datetime.now(timezone.utc),
        )
        self._notify(state)
        return state

    @property
    def current_batch_size(self) -> int:
        return self.batch_size

    def suggest_batch_size(self, average_record_bytes: int, headroom: float = 0.5) -> int:
        """
        Batch size that fits in a share of the remaining memory.

        Returns the current recommendation when the ceiling is unlimited or
        the record size is unknown.
        """
        if not self.ceiling or average_record_bytes <= 0:
            return self.batch_size
        available = max(self.ceiling - self.last_usage, 0) * headroom
        return self._clamp(min(self.batch_size, int(available // average_record_bytes)))

    def reset(self):
        self.batch_size = self.original_batch_size
        self.level = PressureLevel.NORMAL
        self.history.clear()
        self.peak_usage = 0
