from sqlalchemy.orm import declarative_base
import enum

Base = declarative_base()


# ============================================================================
# ENUMS
# ============================================================================

class SyncMode(str, enum.Enum):
    """How a sync run was started"""
    SCHEDULED = "scheduled"
    MANUAL = "manual"
    FULL = "full"


class SyncStatus(str, enum.Enum):
    """Sync run status"""
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
