from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from upload_pipeline.db.models import EntityKind, FileKind
from upload_pipeline.routers.common import unwrap
from upload_pipeline.service.coordinator import UploadCoordinator, get_coordinator

router = APIRouter()


# Pydantic models for request validation
class RegisterArtifactRequest(BaseModel):
    entity_kind: EntityKind
    entity_id: str
    file_kind: FileKind
    path: Optional[str] = None
    is_required: bool = True
    mime_type: Optional[str] = None
    timestamp: Optional[int] = None
    extension: Optional[str] = None


class CompleteArtifactRequest(BaseModel):
    size: int
    mime_type: Optional[str] = None


class FailRequest(BaseModel):
    reason: Optional[str] = None


# Artifacts
@router.post("/artifacts", status_code=201)
async def register_artifact(payload: RegisterArtifactRequest, coordinator: UploadCoordinator = Depends(get_coordinator)):
    """
    Register a file slot for an entity

    This endpoint:
    1. Resolves the canonical storage path when none is given
    2. Rejects a path that is already registered
    3. Moves a draft or failed entity to uploading
    """
    return unwrap(await coordinator.register_artifact(
        payload.entity_kind,
        payload.entity_id,
        payload.file_kind,
        path=payload.path,
        is_required=payload.is_required,
        mime_type=payload.mime_type,
        timestamp=payload.timestamp,
        extension=payload.extension,
    ))


@router.post("/artifacts/{artifact_id}/complete")
async def complete_artifact(
    artifact_id: str,
    payload: CompleteArtifactRequest,
    coordinator: UploadCoordinator = Depends(get_coordinator),
):
    return unwrap(await coordinator.mark_artifact_completed(artifact_id, payload.size, payload.mime_type))


@router.post("/artifacts/{artifact_id}/fail")
async def fail_artifact(
    artifact_id: str,
    payload: Optional[FailRequest] = None,
    coordinator: UploadCoordinator = Depends(get_coordinator),
):
    return unwrap(await coordinator.mark_artifact_failed(artifact_id, payload.reason if payload else None))


# Entity lifecycle
@router.get("/entities/{entity_kind}/{entity_id}/artifacts")
async def list_artifacts(
    entity_kind: EntityKind,
    entity_id: str,
    coordinator: UploadCoordinator = Depends(get_coordinator),
):
    return unwrap(await coordinator.list_artifacts(entity_kind, entity_id))


@router.post("/entities/{entity_kind}/{entity_id}/finalize")
async def finalize_entity(
    entity_kind: EntityKind,
    entity_id: str,
    coordinator: UploadCoordinator = Depends(get_coordinator),
):
    """
    Verify every required file and mark the entity completed

    Responds 409 with the missing count when required files are not completed.
    """
    return unwrap(await coordinator.finalize(entity_kind, entity_id))


@router.post("/entities/{entity_kind}/{entity_id}/reset")
async def reset_entity(
    entity_kind: EntityKind,
    entity_id: str,
    coordinator: UploadCoordinator = Depends(get_coordinator),
):
    """
    Reset a completed entity to draft for re-upload

    The response lists the storage paths and folders the caller should remove.
    """
    return unwrap(await coordinator.reset_entity(entity_kind, entity_id))


@router.post("/entities/{entity_kind}/{entity_id}/fail")
async def fail_entity(
    entity_kind: EntityKind,
    entity_id: str,
    payload: Optional[FailRequest] = None,
    coordinator: UploadCoordinator = Depends(get_coordinator),
):
    return unwrap(await coordinator.mark_entity_failed(entity_kind, entity_id, payload.reason if payload else None))


@router.post("/entities/{entity_kind}/{entity_id}/cleanup-incomplete")
async def cleanup_incomplete(
    entity_kind: EntityKind,
    entity_id: str,
    coordinator: UploadCoordinator = Depends(get_coordinator),
):
    return unwrap(await coordinator.cleanup_incomplete_uploads(entity_kind, entity_id))
