import logging

from sqlalchemy.ext.asyncio import AsyncSession

from upload_pipeline.core.exceptions import IncompleteRequiredFiles
from upload_pipeline.db.entity_store import EntityStore
from upload_pipeline.db.models import ArtifactStatus, EntityKind, UploadStatus
from upload_pipeline.service.artifact_registry import FileArtifactRegistry
from upload_pipeline.service.entity_kinds import spec_for
from upload_pipeline.service.lifecycle import LifecycleStateMachine, ensure_edge

logger = logging.getLogger(__name__)


def _completion_order(artifact):
    return (artifact.uploaded_at or artifact.created_at, artifact.created_at)


def count_missing(spec, artifacts) -> tuple[int, int]:
    """
    Return (missing, required) for an entity's artifacts.

    Every artifact flagged required must be completed. A file kind the entity
    kind always requires counts as one more missing slot when nothing of that
    kind is completed and no required slot was registered for it.
    """
    required = [artifact for artifact in artifacts if artifact.is_required]
    completed_required = [artifact for artifact in required if artifact.status is ArtifactStatus.completed]
    missing = len(required) - len(completed_required)
    total_required = len(required)

    completed_kinds = {artifact.file_kind for artifact in artifacts if artifact.status is ArtifactStatus.completed}
    registered_required_kinds = {artifact.file_kind for artifact in required}
    for file_kind in spec.required_file_kinds:
        if file_kind not in completed_kinds and file_kind not in registered_required_kinds:
            missing += 1
            total_required += 1
    return missing, total_required


def artifact_summary(artifact) -> dict:
    return {
        "artifact_id": str(artifact.id),
        "file_kind": artifact.file_kind.value,
        "path": artifact.storage_path,
        "size": artifact.size,
        "mime_type": artifact.mime_type,
        "is_required": artifact.is_required,
        "uploaded_at": artifact.uploaded_at.isoformat() if artifact.uploaded_at else None,
    }


class FinalizationService:
    def __init__(
        self,
        entity_store: EntityStore | None = None,
        registry: FileArtifactRegistry | None = None,
        state_machine: LifecycleStateMachine | None = None,
    ):
        self.entity_store = entity_store or EntityStore()
        self.registry = registry or FileArtifactRegistry()
        self.state_machine = state_machine or LifecycleStateMachine(self.entity_store)

    async def finalize(self, db: AsyncSession, entity_kind: EntityKind, entity_id) -> dict:
        spec = spec_for(entity_kind)
        entity = await self.entity_store.get_or_404(db, spec.kind, entity_id)

        # Reject re-finalization (and draft/failed entities) before looking at files
        ensure_edge(spec, entity.upload_status, UploadStatus.completed)

        artifacts = await self.registry.list_by_entity(db, spec.kind, entity.id)
        missing, required = count_missing(spec, artifacts)
        if missing:
            logger.info(
                "Finalize %s %s refused: %d of %d required files missing",
                spec.kind.value, entity.id, missing, required,
            )
            raise IncompleteRequiredFiles(
                missing=missing,
                required=required,
                entity_kind=spec.kind.value,
                entity_id=str(entity.id),
            )

        completed = sorted(
            (artifact for artifact in artifacts if artifact.status is ArtifactStatus.completed),
            key=_completion_order,
        )
        url_values = {}
        for artifact in completed:
            field_name = spec.url_fields.get(artifact.file_kind)
            if field_name:
                # Later completions overwrite earlier ones: the newest artifact wins
                url_values[field_name] = artifact.storage_path

        entity = await self.state_machine.transition(db, entity, UploadStatus.completed, url_values)
        await self.registry.mark_verified(db, completed, entity.completed_at)

        logger.info("Finalized %s %s with %d files", spec.kind.value, entity.id, len(completed))
        return {
            "entity_kind": spec.kind.value,
            "entity_id": str(entity.id),
            "status": UploadStatus(entity.upload_status).value,
            "urls": spec.url_values(entity),
            "files": [artifact_summary(artifact) for artifact in completed],
            "completed_at": entity.completed_at.isoformat(),
        }
