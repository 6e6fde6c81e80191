from typing import Optional

from fastapi import APIRouter, Depends, Query

from upload_pipeline.routers.common import unwrap
from upload_pipeline.service.coordinator import UploadCoordinator, get_coordinator

router = APIRouter(prefix="/maintenance")


@router.get("/orphans")
async def list_orphans(coordinator: UploadCoordinator = Depends(get_coordinator)):
    """Artifacts whose entity no longer exists, grouped by entity kind."""
    return unwrap(await coordinator.find_orphans())


@router.post("/orphans/cleanup")
async def cleanup_orphans(coordinator: UploadCoordinator = Depends(get_coordinator)):
    """
    Delete orphaned registry rows

    Returns the storage paths to remove from the bucket; blobs are not deleted here.
    """
    return unwrap(await coordinator.cleanup_orphans())


@router.post("/sessions/sweep")
async def sweep_sessions(coordinator: UploadCoordinator = Depends(get_coordinator)):
    return unwrap(await coordinator.sweep_expired_sessions())


@router.get("/abandoned")
async def abandoned_uploads(
    threshold_hours: Optional[int] = Query(None, ge=0, description="Hours in draft/uploading before an upload counts as abandoned"),
    coordinator: UploadCoordinator = Depends(get_coordinator),
):
    return unwrap(await coordinator.find_abandoned_uploads(threshold_hours))
