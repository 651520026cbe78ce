"""
Pydantic schemas for sync runs, filters and statistics
"""

from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Dict, Any, Literal
from datetime import datetime, timezone
from models.base import SyncMode, SyncStatus
import uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncFilters(BaseModel):
    """Filters applied to remote record retrieval"""
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    updated_after: Optional[datetime] = None
    status: Optional[str] = None

    model_config = ConfigDict(extra="forbid")

    def to_query_params(self) -> Dict[str, str]:
        """Non-null filters as query parameters (dates in ISO-8601)"""
        params = {}
        for key, value in self.model_dump(exclude_none=True).items():
            params[key] = value.isoformat() if isinstance(value, datetime) else str(value)
        return params


class SortSpec(BaseModel):
    """Stable sort applied by the remote API"""
    field: str = "id"
    order: Literal["asc", "desc"] = "asc"


class SyncRun(BaseModel):
    """
    State of one sync run.

    Created when a run starts and mutated only by the orchestrator owning
    the run. Callers receive copies.
    """
    id: str = Field(default_factory=lambda: f"sync_{uuid.uuid4().hex[:12]}")
    mode: SyncMode
    filters: Dict[str, Any] = Field(default_factory=dict)
    status: SyncStatus = SyncStatus.RUNNING
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    records_fetched: int = 0
    records_written: int = 0
    records_failed: int = 0
    pages_fetched: int = 0
    pages_failed: int = 0
    batches_failed: int = 0
    permanent_failures: int = 0

    last_error: Optional[str] = None
    errors: List[Dict[str, Any]] = Field(default_factory=list)

    @property
    def duration_ms(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds() * 1000


class SyncStats(BaseModel):
    """Process-lifetime aggregate over finished runs"""
    total_syncs: int = 0
    successful_syncs: int = 0
    failed_syncs: int = 0
    total_records_processed: int = 0
    last_sync_duration_ms: float = 0.0
    average_sync_duration_ms: float = 0.0
