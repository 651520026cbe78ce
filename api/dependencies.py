"""
FastAPI dependencies
"""

from fastapi import HTTPException, Request
from order_sync.service import SyncService


def get_sync_service(request: Request) -> SyncService:
    """Sync service created at startup"""
    service = getattr(request.app.state, "sync_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Sync service not initialized")
    return service
