"""
Error classification and retry control.

This module provides:
- ErrorClassifier: maps any exception to a category through ordered rules
- RetryPolicy: backoff settings (strategy, base/max delay, jitter)
- RetryController: retries recoverable failures with backoff and supports
  "continue on partial failure" processing with a failure-ratio breaker
"""

from collections import Counter, deque
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Tuple
import asyncio
import inspect
import logging
import random

from pydantic import BaseModel, Field

from core.config import settings as default_settings, Settings
from core.exceptions import (
    ClassifiedError,
    ClassifiedFatal,
    ClassifiedRecoverable,
    FailureThresholdExceeded,
)
from schemas.batch import ItemFailure, PartialFailureReport, RetryAttempt

logger = logging.getLogger(__name__)

UNKNOWN_CATEGORY = "unknown"

RECOVERABLE_CATEGORIES = frozenset([
    "connection_timeout",
    "memory_limit",
    "rate_limit",
    "network_error",
    "temporary_lock",
    UNKNOWN_CATEGORY,
])

FATAL_CATEGORIES = frozenset([
    "invalid_data_format",
    "permission_denied",
    "file_not_found",
    "authentication_failed",
])

# Ordered: the first rule with a matching keyword wins
CLASSIFICATION_RULES: List[Tuple[str, Tuple[str, ...]]] = [
    ("temporary_lock", ("lock wait timeout", "deadlock", "table locked", "database is locked")),
    ("connection_timeout", ("connection timed out", "timed out", "timeout", "connection lost")),
    ("memory_limit", ("memory limit", "out of memory", "memory exhausted", "cannot allocate memory")),
    ("rate_limit", ("rate limit", "too many requests", "quota exceeded")),
    ("network_error", ("network error", "dns lookup failed", "connection refused", "connection reset", "network is unreachable")),
    ("invalid_data_format", ("invalid format", "parse error", "malformed data", "invalid input syntax", "incorrect integer value")),
    ("permission_denied", ("permission denied", "access denied", "insufficient privileges")),
    ("file_not_found", ("file not found", "no such file", "file does not exist")),
    ("authentication_failed", ("authentication failed", "invalid credentials", "password authentication failed")),
]

# Builtin exception types mapped before message rules are consulted
TYPE_CATEGORIES: List[Tuple[type, str]] = [
    (asyncio.TimeoutError, "connection_timeout"),
    (TimeoutError, "connection_timeout"),
    (MemoryError, "memory_limit"),
    (PermissionError, "permission_denied"),
    (FileNotFoundError, "file_not_found"),
    (ConnectionError, "network_error"),
]

RECOMMENDATIONS: Dict[str, List[str]] = {
    "connection_timeout": [
        "Increase connection and statement timeouts",
        "Reduce batch size to shorten individual writes",
    ],
    "memory_limit": [
        "Lower the memory ceiling thresholds or the batch size",
        "Enable streaming for large sources",
    ],
    "rate_limit": [
        "Increase the base retry delay",
        "Reduce worker count",
    ],
    "network_error": [
        "Check network connectivity to the destination",
        "Increase the maximum retry attempts",
    ],
    "temporary_lock": [
        "Run the migration outside peak hours",
        "Reduce batch size to shorten transactions",
    ],
    "invalid_data_format": [
        "Review the inferred schema and field casts",
        "Clean the offending records before re-running",
    ],
    "permission_denied": ["Grant the migration user write access to the target"],
    "file_not_found": ["Verify the source path and target tables exist"],
    "authentication_failed": ["Verify destination credentials"],
    UNKNOWN_CATEGORY: ["Inspect the error log for the failing records"],
}

Operation = Callable[[], Any]
Sleeper = Callable[[float], Awaitable[Any]]


class ErrorClassifier:
    """
    Classify exceptions into recoverable and fatal categories.

    Precedence: an explicit category attribute on the error, then builtin
    exception types, then ordered keyword rules over the message.
    """

    def __init__(self, rules: Optional[List[Tuple[str, Tuple[str, ...]]]] = None):
        self.rules = rules if rules is not None else CLASSIFICATION_RULES

    def classify(self, error: BaseException) -> str:
        category = getattr(error, "category", None)
        if isinstance(category, str) and category:
            return category

        for error_type, mapped in TYPE_CATEGORIES:
            if isinstance(error, error_type):
                return mapped

        message = str(error).lower()
        for name, keywords in self.rules:
            if any(keyword in message for keyword in keywords):
                return name
        return UNKNOWN_CATEGORY

    @staticmethod
    def is_recoverable(category: str) -> bool:
        return category not in FATAL_CATEGORIES

    @staticmethod
    def is_fatal(category: str) -> bool:
        return category in FATAL_CATEGORIES

    @staticmethod
    def recommendations(category: str) -> List[str]:
        return list(RECOMMENDATIONS.get(category, RECOMMENDATIONS[UNKNOWN_CATEGORY]))


class RetryPolicy(BaseModel):
    """Backoff configuration"""

    max_attempts: int = Field(3, ge=1)
    strategy: str = Field("exponential", pattern="^(linear|exponential|fixed)$")
    base_delay: float = Field(1.0, ge=0)
    max_delay: float = Field(60.0, ge=0)
    jitter: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.MAX_RETRIES,
            strategy=settings.BACKOFF_STRATEGY,
            base_delay=settings.RETRY_BASE_DELAY,
            max_delay=settings.RETRY_MAX_DELAY,
            jitter=settings.RETRY_JITTER,
        )

    def base_delay_for(self, attempt: int) -> float:
        """Un-jittered, clamped delay after the given (1-based) failed attempt"""
        if self.strategy == "linear":
            delay = attempt * self.base_delay
        elif self.strategy == "exponential":
            delay = self.base_delay * (2 ** (attempt - 1))
        else:
            delay = self.base_delay
        return min(delay, self.max_delay)


class RetryController:
    """
    Retry recoverable failures with backoff.

    Attributes:
        history: Recent failed attempts across calls (bounded)
        last_delays: Delays slept during the most recent execute_with_retry
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        classifier: Optional[ErrorClassifier] = None,
        settings: Optional[Settings] = None,
        sleep: Optional[Sleeper] = None,
        rng: Optional[random.Random] = None,
        history_limit: int = 1000
    ):
        self.settings = settings or default_settings
        self.policy = policy or RetryPolicy.from_settings(self.settings)
        self.classifier = classifier or ErrorClassifier()
        self._sleep = sleep or asyncio.sleep
        self._rng = rng or random.Random()
        self.history: Deque[RetryAttempt] = deque(maxlen=history_limit)
        self.last_delays: List[float] = []
        self.category_counts: Counter = Counter()

    def compute_delay(self, attempt: int, error: Optional[BaseException] = None) -> float:
        delay = self.policy.base_delay_for(attempt)

        retry_after = getattr(error, "retry_after", None)
        if retry_after:
            delay = max(delay, min(float(retry_after), self.policy.max_delay))

        if self.policy.jitter and delay > 0:
            delay += self._rng.uniform(0, delay * 0.1)
        return round(delay, 4)

    def _record(self, attempt: int, category: str, error: BaseException, delay: Optional[float]):
        self.category_counts[category] += 1
        self.history.append(RetryAttempt(
            attempt=attempt,
            category=category,
            recoverable=self.classifier.is_recoverable(category),
            delay=delay,
            error_type=type(error).__name__,
            error_message=str(error)[:500],
        ))

    async def execute_with_retry(
        self,
        operation: Operation,
        max_attempts: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
        provenance: Optional[Dict[str, Any]] = None
    ) -> Any:
        """
        Run operation, retrying recoverable failures.

        Args:
            operation: Zero-argument callable, sync or async
            max_attempts: Overrides the policy's attempt limit
            context: Extra context attached to a surfaced error
            provenance: Record provenance attached to a surfaced error

        Returns:
            The operation's result

        Raises:
            ClassifiedFatal: Immediately on a fatal category
            ClassifiedRecoverable: After the last attempt failed
        """
        attempts = max_attempts or self.policy.max_attempts
        self.last_delays = []

        for attempt in range(1, attempts + 1):
            try:
                result = operation()
                if inspect.isawaitable(result):
                    result = await result
                if attempt > 1:
                    logger.info(f"Operation succeeded on attempt {attempt}/{attempts}")
                return result

            except ClassifiedFatal:
                raise

            except Exception as e:
                category = self.classifier.classify(e)

                if self.classifier.is_fatal(category):
                    self._record(attempt, category, e, None)
                    raise ClassifiedFatal(
                        f"Fatal {category} error: {e}",
                        category=category,
                        context=dict(context or {}),
                        original_exception=e,
                        provenance=provenance,
                        attempts=attempt,
                    )

                if attempt >= attempts:
                    self._record(attempt, category, e, None)
                    logger.error(f"Giving up after {attempt} attempts ({category}): {e}")
                    raise ClassifiedRecoverable(
                        f"Retries exhausted for {category} error: {e}",
                        category=category,
                        context=dict(context or {}),
                        original_exception=e,
                        provenance=provenance,
                        attempts=attempt,
                    )

                delay = self.compute_delay(attempt, e)
                self._record(attempt, category, e, delay)
                self.last_delays.append(delay)
                logger.warning(
                    f"Attempt {attempt}/{attempts} failed ({category}): {e}. "
                    f"Retrying in {delay:.2f}s"
                )
                await self._sleep(delay)

        # attempts >= 1 always returns or raises above
        raise RuntimeError("unreachable")

    async def process_with_partial_failures(
        self,
        items: Iterable[Any],
        fn: Callable[[Any], Any],
        max_failure_ratio: Optional[float] = None,
        sub_batch_size: Optional[int] = None,
        max_attempts: Optional[int] = None
    ) -> PartialFailureReport:
        """
        Process items individually, collecting successes and failures.

        Each item is retried on its own. Processing stops once failures
        exceed max_failure_ratio of the item count.

        Raises:
            FailureThresholdExceeded: With the partial report attached
        """
        items = list(items)
        ratio = self.settings.MAX_FAILURE_RATIO if max_failure_ratio is None else max_failure_ratio
        size = sub_batch_size or self.settings.PARTIAL_FAILURE_SUB_BATCH
        max_failures = len(items) * ratio
        report = PartialFailureReport(total_items=len(items))

        for start in range(0, len(items), size):
            for index, item in enumerate(items[start:start + size], start=start):
                try:
                    result = await self.execute_with_retry(lambda item=item: fn(item), max_attempts=max_attempts)
                    report.successful.append(result)
                except ClassifiedError as e:
                    report.failed.append(ItemFailure(
                        index=index,
                        category=e.category,
                        error_type=type(e.original_exception or e).__name__,
                        error_message=str(e.original_exception or e.message),
                        attempts=e.attempts,
                    ))
                report.processed += 1

                if len(report.failed) > max_failures:
                    report.aborted = True
                    report.abort_reason = "max_failures_exceeded"
                    self._finish(report)
                    logger.error(
                        f"Partial-failure processing aborted: {len(report.failed)} failures "
                        f"out of {report.processed} processed ({len(items)} items)"
                    )
                    raise FailureThresholdExceeded(
                        "Failure ratio exceeded",
                        report=report,
                        context={"failures": len(report.failed), "processed": report.processed, "max_failure_ratio": ratio},
                    )

        self._finish(report)
        return report

    @staticmethod
    def _finish(report: PartialFailureReport):
        if report.processed:
            report.success_rate = round(len(report.successful) / report.processed * 100, 2)
            report.failure_rate = round(len(report.failed) / report.processed * 100, 2)

    def error_statistics(self) -> Dict[str, Any]:
        """Failure counts by category plus recommendations for the worst ones"""
        total = sum(self.category_counts.values())
        return {
            "total_failures": total,
            "by_category": dict(self.category_counts),
            "recoverable": sum(c for k, c in self.category_counts.items() if self.classifier.is_recoverable(k)),
            "fatal": sum(c for k, c in self.category_counts.items() if self.classifier.is_fatal(k)),
            "recommendations": {
                category: self.classifier.recommendations(category)
                for category, _ in self.category_counts.most_common(3)
            },
        }
