"""
Custom exceptions for the migration engine with structured error context.

This module provides the exception hierarchy used by decoders, the schema
analyzer, the retry controller, the checkpoint store and the rollback log.
Each exception carries context information for debugging and monitoring.

Exception Hierarchy:
    MigrationError (base)
    ├── SourceError
    │   ├── SourceUnreadable
    │   └── DecodeError
    ├── AnalysisError
    ├── ClassifiedError
    │   ├── ClassifiedRecoverable
    │   └── ClassifiedFatal
    ├── CheckpointError
    │   ├── CheckpointNotFound
    │   ├── CheckpointCorrupt
    │   └── CheckpointMismatch
    ├── RollbackError
    │   └── RollbackUnsafe
    ├── FailureThresholdExceeded
    ├── MigrationAborted
    └── RetryableError / NonRetryableError (mixins)
"""

from typing import Optional, Dict, Any
from datetime import datetime, timezone


class MigrationError(Exception):
    """
    Base exception for all migration-related errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (source, record, run, etc.)
        original_exception: The original exception that was caught (if any)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[BaseException] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.now(timezone.utc)

        # Add timestamp to context
        self.context["error_timestamp"] = self.timestamp.isoformat()

        # Chain original exception if provided
        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Source Errors
# ============================================================================

class SourceError(MigrationError):
    """Base exception for failures reading a migration source."""
    pass


class SourceUnreadable(SourceError):
    """
    Exception raised when a source cannot be opened.

    Context should include:
        - source: Path of the source
        - reason: missing, unreadable, oversized or unsupported
        - size_bytes / limit_bytes: For oversized sources
    """
    pass


class DecodeError(SourceError):
    """
    Exception raised when a record cannot be decoded.

    Context should include:
        - source: Path of the source
        - line_number / position: Where decoding failed (if known)
    """
    pass


# ============================================================================
# Analysis Errors
# ============================================================================

class AnalysisError(MigrationError):
    """Exception raised when schema analysis cannot proceed."""
    pass


# ============================================================================
# Classified Errors
# ============================================================================

class ClassifiedError(MigrationError):
    """
    An error that went through the error classifier.

    Attributes:
        category: Category name assigned by the classifier
        provenance: Where the offending record came from (if any)
        attempts: Number of attempts made before giving up
    """

    def __init__(
        self,
        message: str,
        category: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[BaseException] = None,
        provenance: Optional[Dict[str, Any]] = None,
        attempts: int = 1
    ):
        super().__init__(message, context, original_exception)
        self.category = category
        self.provenance = provenance or {}
        self.attempts = attempts
        self.context["category"] = category
        self.context["attempts"] = attempts
        if self.provenance:
            self.context["provenance"] = self.provenance


class ClassifiedRecoverable(ClassifiedError):
    """A recoverable error surfaced after retry attempts were exhausted."""
    pass


class ClassifiedFatal(ClassifiedError):
    """A fatal error; never retried."""
    pass


# ============================================================================
# Checkpoint Errors
# ============================================================================

class CheckpointError(MigrationError):
    """
    Exception raised when checkpoint management fails.

    Context should include:
        - run_id: Migration run identifier
        - checkpoint_id: The checkpoint involved
        - operation: Operation that failed (save, load, prune)
    """
    pass


class CheckpointNotFound(CheckpointError):
    """No checkpoint exists with the requested id."""
    pass


class CheckpointCorrupt(CheckpointError):
    """Stored checkpoint data could not be parsed or is incomplete."""
    pass


class CheckpointMismatch(CheckpointError):
    """The checkpoint belongs to a different run."""
    pass


# ============================================================================
# Rollback Errors
# ============================================================================

class RollbackError(MigrationError):
    """Base exception for rollback failures."""
    pass


class RollbackUnsafe(RollbackError):
    """
    Exception raised when an operation cannot be safely inverted.

    Context should include:
        - operation_id: The operation that lacks inversion data
        - operation_type: insert, update or delete
        - missing: What was missing (before_image, key)
    """
    pass


# ============================================================================
# Run-level Errors
# ============================================================================

class FailureThresholdExceeded(MigrationError):
    """
    Raised when the failure-ratio circuit breaker trips.

    Attributes:
        report: Partial results accumulated before the breaker tripped
    """

    def __init__(
        self,
        message: str,
        report: Any = None,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[BaseException] = None
    ):
        super().__init__(message, context, original_exception)
        self.report = report


class MigrationAborted(MigrationError):
    """
    Raised when a migration run stops before the source is exhausted.

    Attributes:
        last_checkpoint_id: Checkpoint to resume from (None if none was saved)
        result: MigrationResult snapshot at the time of abort
    """

    def __init__(
        self,
        message: str,
        last_checkpoint_id: Optional[str] = None,
        result: Any = None,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[BaseException] = None
    ):
        super().__init__(message, context, original_exception)
        self.last_checkpoint_id = last_checkpoint_id
        self.result = result
        self.context["last_checkpoint_id"] = last_checkpoint_id


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(MigrationError):
    """
    Mixin for errors that should trigger retry logic.

    Use this for transient errors like:
    - Connection timeouts
    - Rate limiting
    - Lock waits and deadlocks
    - Memory pressure on the destination
    """

    category = "unknown"

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[BaseException] = None,
        max_retries: int = 3,
        retry_delay: float = 1.0
    ):
        super().__init__(message, context, original_exception)
        self.max_retries = max_retries
        self.retry_delay = retry_delay


class NonRetryableError(MigrationError):
    """
    Mixin for errors that should NOT trigger retry logic.

    Use this for permanent errors like:
    - Authentication failures
    - Invalid data format
    - Missing permissions
    - Missing files or tables
    """

    category = "invalid_data_format"


# ============================================================================
# Specific Retryable Errors
# ============================================================================

class ConnectionTimeoutError(RetryableError):
    """Connection or statement timeouts."""
    category = "connection_timeout"


class MemoryPressureError(RetryableError):
    """Destination or worker ran out of memory."""
    category = "memory_limit"


class RateLimitError(RetryableError):
    """Rate limiting errors that should be retried with backoff."""

    category = "rate_limit"

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[BaseException] = None,
        retry_after: Optional[float] = None
    ):
        super().__init__(message, context, original_exception)
        self.retry_after = retry_after  # Seconds to wait before retry
        if retry_after:
            self.context["retry_after"] = retry_after


class NetworkError(RetryableError):
    """Network-related errors that should be retried."""
    category = "network_error"


class TemporaryLockError(RetryableError):
    """Lock wait timeouts and deadlocks."""
    category = "temporary_lock"


# ============================================================================
# Specific Non-Retryable Errors
# ============================================================================

class DataFormatError(NonRetryableError):
    """Data format errors that should not be retried."""
    category = "invalid_data_format"


class PermissionDeniedError(NonRetryableError):
    """Permission failures on the source or destination."""
    category = "permission_denied"


class SourceNotFoundError(NonRetryableError):
    """A file, table or resource that does not exist."""
    category = "file_not_found"


class AuthenticationError(NonRetryableError):
    """Authentication failures that should not be retried."""
    category = "authentication_failed"
