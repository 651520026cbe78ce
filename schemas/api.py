"""
Pydantic schemas for HTTP request/response bodies
"""

from pydantic import BaseModel, Field
from typing import Optional, Any
from schemas.sync import SyncFilters


class APIResponse(BaseModel):
    """Envelope used by every sync endpoint"""
    success: bool
    message: Optional[str] = None
    data: Any = None
    error: Optional[str] = None


class TriggerSyncRequest(BaseModel):
    full_sync: bool = False
    filters: SyncFilters = Field(default_factory=SyncFilters)


class ScheduleStartRequest(BaseModel):
    interval_minutes: Optional[int] = Field(None, ge=1, le=24 * 60)


class CleanupRequest(BaseModel):
    days_to_keep: Optional[int] = Field(None, ge=1)
