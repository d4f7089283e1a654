"""Sync API: sweep now, queue status, connectivity signal, cleanup."""
from fastapi import APIRouter, Depends
from typing import Optional
from pydantic import BaseModel, Field

from ..services.offline_sync import OfflineSyncService
from .deps import get_sync_service

router = APIRouter(prefix="/sync", tags=["sync"])


class ConnectivityRequest(BaseModel):
    online: bool


class CleanupRequest(BaseModel):
    retention_days: Optional[int] = Field(default=None, ge=0)


@router.post("")
async def sync_now(service: OfflineSyncService = Depends(get_sync_service)):
    """Run a sweep now. Returns immediately with skipped=true if one is running."""
    return await service.sync_all()


@router.get("/status")
async def sync_status(service: OfflineSyncService = Depends(get_sync_service)):
    return await service.status()


@router.post("/connectivity")
async def set_connectivity(
    payload: ConnectivityRequest,
    service: OfflineSyncService = Depends(get_sync_service),
):
    sweep = service.set_online(payload.online)
    return {"online": service.online, "sweep_started": sweep is not None}


@router.post("/cleanup")
async def cleanup(
    payload: CleanupRequest,
    service: OfflineSyncService = Depends(get_sync_service),
):
    removed = await service.cleanup_synced(payload.retention_days)
    return {"removed": removed}
