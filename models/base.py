from sqlalchemy import JSON
from sqlalchemy.orm import declarative_base
from sqlalchemy.dialects.postgresql import JSONB
import enum

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


# ============================================================================
# ENUMS
# ============================================================================

class SourceKind(str, enum.Enum):
    """Source formats understood by the decoders"""
    TABULAR = "tabular"
    MARKUP = "markup"
    RELATIONAL = "relational"
    UNKNOWN = "unknown"


class RunStatus(str, enum.Enum):
    """Migration run status"""
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ABORTED = "aborted"


class OperationType(str, enum.Enum):
    """Mutation kinds recorded in the rollback log"""
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class PressureLevel(str, enum.Enum):
    """Memory pressure bands"""
    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"
    EMERGENCY = "emergency"


class RollbackMode(str, enum.Enum):
    """Rollback replay modes"""
    TRANSACTIONAL = "transactional"
    MANUAL = "manual"
