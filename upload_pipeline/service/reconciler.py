"""
Reset-for-reupload and orphan reconciliation.

Registry rows reference entities weakly, so deleting an entity leaves its
artifacts and sessions behind. The reconciler finds those rows, deletes them
and hands back the storage paths; removing the blobs is the blob store's job.
"""
import logging
from datetime import timedelta

from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from upload_pipeline.core.config import ABANDONED_UPLOAD_THRESHOLD_HOURS
from upload_pipeline.core.exceptions import InvalidRequest, InvalidTransition
from upload_pipeline.db.database import utcnow
from upload_pipeline.db.entity_store import EntityStore
from upload_pipeline.db.models import ArtifactStatus, EntityKind, FileArtifact, UploadSession, UploadStatus
from upload_pipeline.service.artifact_registry import FileArtifactRegistry
from upload_pipeline.service.entity_kinds import ENTITY_KINDS, spec_for
from upload_pipeline.service.lifecycle import LifecycleStateMachine
from upload_pipeline.service.storage_paths import entity_folder_paths
from upload_pipeline.service.upload_sessions import UploadSessionManager

logger = logging.getLogger(__name__)


def _orphaned(table):
    """Rows of ``table`` whose (entity_kind, entity_id) no longer names an entity."""
    return or_(
        *(
            and_(
                table.entity_kind == spec.kind,
                ~select(spec.model.id).where(spec.model.id == table.entity_id).exists(),
            )
            for spec in ENTITY_KINDS.values()
        )
    )


def _orphan_item(artifact: FileArtifact) -> dict:
    return {
        "artifact_id": str(artifact.id),
        "entity_kind": artifact.entity_kind.value,
        "entity_id": str(artifact.entity_id),
        "file_kind": artifact.file_kind.value,
        "path": artifact.storage_path,
        "created_at": artifact.created_at.isoformat() if artifact.created_at else None,
    }


class OrphanReconciler:
    def __init__(
        self,
        entity_store: EntityStore | None = None,
        registry: FileArtifactRegistry | None = None,
        sessions: UploadSessionManager | None = None,
        state_machine: LifecycleStateMachine | None = None,
        clock=utcnow,
    ):
        self.entity_store = entity_store or EntityStore()
        self.registry = registry or FileArtifactRegistry()
        self.sessions = sessions or UploadSessionManager()
        self.state_machine = state_machine or LifecycleStateMachine(self.entity_store)
        self.clock = clock

    async def reset_entity(self, db: AsyncSession, entity_kind: EntityKind, entity_id) -> dict:
        """
        Return a completed entity to draft so its files can be uploaded again.

        Must run inside one unit of work: the artifact and session deletes, the
        URL clear and the status change commit or roll back together.
        """
        spec = spec_for(entity_kind)
        entity = await self.entity_store.get_or_404(db, spec.kind, entity_id)

        status = UploadStatus(entity.upload_status)
        if status is not UploadStatus.completed:
            raise InvalidTransition(
                f"Only completed entities can be reset, {spec.kind.value} {entity.id} is {status.value}",
                entity_kind=spec.kind.value,
                entity_id=str(entity.id),
                current=status.value,
                requested=UploadStatus.draft.value,
            )

        chain = await self.entity_store.build_chain(db, spec.kind, entity)
        folder_paths = entity_folder_paths(spec.kind, chain) if chain else []

        deleted = await self.registry.delete_for_entity(db, spec.kind, entity.id)
        deleted_sessions = await self.sessions.delete_for_entity(db, spec.kind, entity.id)
        await self.state_machine.transition(
            db,
            entity,
            UploadStatus.draft,
            {name: None for name in spec.all_url_fields},
        )

        logger.info(
            "Reset %s %s: %d artifacts, %d sessions removed",
            spec.kind.value, entity.id, len(deleted), deleted_sessions,
        )
        return {
            "entity_kind": spec.kind.value,
            "entity_id": str(entity.id),
            "deleted_artifact_count": len(deleted),
            "storage_paths_to_delete": [artifact.storage_path for artifact in deleted],
            "storage_folder_paths": folder_paths,
            "deleted_session_count": deleted_sessions,
        }

    async def _orphaned_artifacts(self, db: AsyncSession) -> list[FileArtifact]:
        result = await db.execute(
            select(FileArtifact)
            .where(_orphaned(FileArtifact))
            .order_by(FileArtifact.entity_kind, FileArtifact.created_at, FileArtifact.storage_path)
        )
        return list(result.scalars().all())

    async def find_orphans(self, db: AsyncSession) -> dict[str, list[dict]]:
        grouped = {kind.value: [] for kind in EntityKind}
        for artifact in await self._orphaned_artifacts(db):
            grouped[artifact.entity_kind.value].append(_orphan_item(artifact))
        return grouped

    async def cleanup_orphans(self, db: AsyncSession) -> dict:
        """
        Delete orphaned artifact and session rows.

        The read and the delete are separate statements without row locks; an
        artifact registered for a just-deleted entity between the two is picked
        up by the next pass.
        """
        orphans = await self._orphaned_artifacts(db)
        if orphans:
            await db.execute(delete(FileArtifact).where(FileArtifact.id.in_([artifact.id for artifact in orphans])))

        orphan_sessions = await db.execute(select(UploadSession.id).where(_orphaned(UploadSession)))
        deleted_sessions = await self.sessions.delete_ids(db, list(orphan_sessions.scalars().all()))

        logger.info("Orphan cleanup: %d artifacts, %d sessions removed", len(orphans), deleted_sessions)
        return {
            "deleted_count": len(orphans),
            "storage_paths_to_delete": [artifact.storage_path for artifact in orphans],
            "deleted_session_count": deleted_sessions,
        }

    async def find_abandoned_uploads(self, db: AsyncSession, threshold_hours: int | None = None) -> list[dict]:
        """Entities stuck in draft or uploading for longer than ``threshold_hours``."""
        if threshold_hours is None:
            threshold_hours = ABANDONED_UPLOAD_THRESHOLD_HOURS
        if threshold_hours < 0:
            raise InvalidRequest(f"threshold_hours must be >= 0, got: {threshold_hours}")

        now = self.clock()
        cutoff = now - timedelta(hours=threshold_hours)
        abandoned = []
        for spec in ENTITY_KINDS.values():
            model = spec.model
            completed_files = (
                select(func.count(FileArtifact.id))
                .where(
                    FileArtifact.entity_kind == spec.kind,
                    FileArtifact.entity_id == model.id,
                    FileArtifact.status == ArtifactStatus.completed,
                )
                .scalar_subquery()
            )
            total_files = (
                select(func.count(FileArtifact.id))
                .where(FileArtifact.entity_kind == spec.kind, FileArtifact.entity_id == model.id)
                .scalar_subquery()
            )
            rows = await db.execute(
                select(model.id, model.upload_status, model.created_at, completed_files, total_files)
                .where(
                    model.upload_status.in_([UploadStatus.draft, UploadStatus.uploading]),
                    model.created_at < cutoff,
                )
                .order_by(model.created_at)
            )
            for entity_id, status, created_at, completed, total in rows.all():
                abandoned.append({
                    "entity_kind": spec.kind.value,
                    "entity_id": str(entity_id),
                    "upload_status": UploadStatus(status).value,
                    "created_at": created_at.isoformat(),
                    "hours_old": round((now - created_at).total_seconds() / 3600, 2),
                    "completed_files": completed,
                    "total_files": total,
                })
        return abandoned

    async def cleanup_incomplete_uploads(self, db: AsyncSession, entity_kind: EntityKind, entity_id) -> dict:
        """Drop an entity's uploading/failed artifacts before a fresh attempt."""
        spec = spec_for(entity_kind)
        entity = await self.entity_store.get_or_404(db, spec.kind, entity_id)
        deleted = await self.registry.delete_incomplete(db, spec.kind, entity.id)
        logger.info("Removed %d incomplete artifacts of %s %s", len(deleted), spec.kind.value, entity.id)
        return {
            "entity_kind": spec.kind.value,
            "entity_id": str(entity.id),
            "deleted_count": len(deleted),
            "storage_paths_to_delete": [artifact.storage_path for artifact in deleted],
        }

    async def find_unregistered_keys(self, db: AsyncSession, prefix: str, keys) -> list[str]:
        """Object keys under ``prefix`` that no artifact row accounts for."""
        registered = await self.registry.paths_with_prefix(db, prefix)
        return sorted(key for key in keys if key.startswith(prefix) and key not in registered)
