from typing import Optional

from fastapi import APIRouter, Depends, Path
from pydantic import BaseModel

from upload_pipeline.db.models import EntityKind, FileKind
from upload_pipeline.routers.common import unwrap
from upload_pipeline.service.coordinator import UploadCoordinator, get_coordinator

router = APIRouter()


class CreateSessionRequest(BaseModel):
    entity_kind: EntityKind
    entity_id: str
    file_kind: FileKind
    file_name: str
    total_size: int
    chunk_size: Optional[int] = None
    final_path: Optional[str] = None
    mime_type: Optional[str] = None
    is_required: bool = True


class FailRequest(BaseModel):
    reason: Optional[str] = None


@router.post("/sessions", status_code=201)
async def create_session(
    payload: CreateSessionRequest,
    coordinator: UploadCoordinator = Depends(get_coordinator),
):
    """
    Open a chunked upload session

    This endpoint:
    1. Registers the artifact at the session's final path
    2. Moves a draft or failed entity to uploading
    3. Returns the session id, chunk count and expiry
    """
    return unwrap(await coordinator.create_session(
        payload.entity_kind,
        payload.entity_id,
        payload.file_kind,
        payload.file_name,
        payload.total_size,
        chunk_size=payload.chunk_size,
        final_path=payload.final_path,
        mime_type=payload.mime_type,
        is_required=payload.is_required,
    ))


@router.post("/sessions/{session_id}/chunks/{chunk_index}")
async def acknowledge_chunk(
    session_id: str,
    chunk_index: int = Path(..., description="Zero-based chunk index"),
    coordinator: UploadCoordinator = Depends(get_coordinator),
):
    """Acknowledge one uploaded chunk; repeating an acknowledgement is harmless."""
    return unwrap(await coordinator.mark_chunk_completed(session_id, chunk_index))


@router.get("/sessions/{session_id}")
async def session_status(session_id: str, coordinator: UploadCoordinator = Depends(get_coordinator)):
    return unwrap(await coordinator.get_session_status(session_id))


@router.post("/sessions/{session_id}/fail")
async def fail_session(
    session_id: str,
    payload: Optional[FailRequest] = None,
    coordinator: UploadCoordinator = Depends(get_coordinator),
):
    return unwrap(await coordinator.fail_session(session_id, payload.reason if payload else None))
