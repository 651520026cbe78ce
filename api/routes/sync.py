"""
Sync control endpoints: trigger, status, stats, schedule and cleanup
"""

from typing import Optional
from fastapi import APIRouter, Depends, Request
from api.dependencies import get_sync_service
from order_sync.service import SyncService
from schemas.api import APIResponse, CleanupRequest, ScheduleStartRequest, TriggerSyncRequest
from models.base import SyncStatus
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/sync", tags=["Sync"])


@router.post("/trigger", response_model=APIResponse)
async def trigger_sync(
    request: Request,
    body: Optional[TriggerSyncRequest] = None,
    service: SyncService = Depends(get_sync_service)
):
    """
    Run a sync now and return the finished run.

    409 when a sync is already running.
    """
    body = body or TriggerSyncRequest()
    request_id = getattr(request.state, "request_id", None)
    logger.info(f"[{request_id}] Manual sync triggered (full_sync={body.full_sync})")

    run = await service.trigger_sync(full_sync=body.full_sync, filters=body.filters)
    succeeded = run.status == SyncStatus.SUCCEEDED

    return APIResponse(
        success=succeeded,
        message="Sync completed" if succeeded else "Sync failed",
        data=run.model_dump(mode="json"),
        error=None if succeeded else run.last_error
    )


@router.get("/status", response_model=APIResponse)
async def get_sync_status(service: SyncService = Depends(get_sync_service)):
    return APIResponse(success=True, data=service.get_sync_status())


@router.get("/stats", response_model=APIResponse)
async def get_sync_stats(service: SyncService = Depends(get_sync_service)):
    """Run statistics merged with error statistics and recommendations"""
    return APIResponse(success=True, data=await service.get_detailed_stats())


@router.post("/schedule/start", response_model=APIResponse)
async def start_scheduled_sync(
    body: Optional[ScheduleStartRequest] = None,
    service: SyncService = Depends(get_sync_service)
):
    interval = body.interval_minutes if body else None
    data = service.start_scheduled_sync(interval)
    return APIResponse(success=True, message="Scheduled sync started", data=data)


@router.post("/schedule/stop", response_model=APIResponse)
async def stop_scheduled_sync(service: SyncService = Depends(get_sync_service)):
    data = service.stop_scheduled_sync()
    return APIResponse(success=True, message="Scheduled sync stopped", data=data)


@router.post("/cleanup", response_model=APIResponse)
async def cleanup_old_records(
    body: Optional[CleanupRequest] = None,
    service: SyncService = Depends(get_sync_service)
):
    """Delete orders older than ``days_to_keep`` days. 409 when a cleanup is running."""
    days_to_keep = body.days_to_keep if body else None
    result = await service.cleanup_old_records(days_to_keep)
    return APIResponse(
        success=True,
        message=f"Deleted {result['deleted_count']} records",
        data=result
    )
