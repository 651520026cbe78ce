"""
Health check endpoint probing the remote API and the order store
"""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from api.dependencies import get_sync_service
from order_sync.service import SyncService
from datetime import datetime, timezone
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health")
async def health_check(service: SyncService = Depends(get_sync_service)):
    """
    Health check endpoint.

    Returns:
    - Remote API and store connectivity (classified error on failure)
    - Whether a sync is running
    """
    connections = await service.test_connections()
    status = service.get_sync_status()

    body = {
        "status": "healthy" if connections["success"] else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "source": connections["source"],
        "store": connections["store"],
        "is_running": status["is_running"],
        "last_sync_time": status["last_sync_time"],
    }

    if not connections["success"]:
        logger.warning("Health check degraded")
        return JSONResponse(status_code=503, content=body)
    return body
