import logging

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from upload_pipeline.core.exceptions import InvalidRequest, NotFound, PathConflict
from upload_pipeline.db.database import utcnow
from upload_pipeline.db.entity_store import as_uuid
from upload_pipeline.db.models import ArtifactStatus, EntityKind, FileArtifact, FileKind

logger = logging.getLogger(__name__)


class FileArtifactRegistry:
    """
    One row per logical file slot bound to an entity.

    Entities are referenced by (kind, id) only. The registry never reads or
    writes entity status; callers decide what an artifact change means for
    the entity.
    """

    async def register_artifact(
        self,
        db: AsyncSession,
        entity_kind: EntityKind,
        entity_id,
        file_kind: FileKind,
        path: str,
        is_required: bool = True,
        mime_type: str | None = None,
    ) -> FileArtifact:
        if not path or not path.strip():
            raise InvalidRequest("Storage path must be non-empty")

        existing = await self.get_by_path(db, path)
        if existing is not None:
            raise PathConflict(
                f"Storage path already registered: {path}",
                path=path,
                artifact_id=str(existing.id),
            )

        # A concurrent registration racing past this check fails on the unique
        # constraint at flush; that IntegrityError is left for the caller to retry.
        artifact = FileArtifact(
            entity_kind=EntityKind(entity_kind),
            entity_id=as_uuid(entity_id),
            file_kind=FileKind(file_kind),
            storage_path=path,
            is_required=is_required,
            mime_type=mime_type,
            status=ArtifactStatus.uploading,
        )
        db.add(artifact)
        await db.flush()
        logger.info(
            "Registered %s artifact %s for %s %s at %s",
            artifact.file_kind.value, artifact.id, artifact.entity_kind.value, artifact.entity_id, path,
        )
        return artifact

    async def get(self, db: AsyncSession, artifact_id) -> FileArtifact | None:
        result = await db.execute(select(FileArtifact).where(FileArtifact.id == as_uuid(artifact_id)))
        return result.scalar_one_or_none()

    async def get_or_404(self, db: AsyncSession, artifact_id) -> FileArtifact:
        artifact = await self.get(db, artifact_id)
        if artifact is None:
            raise NotFound(f"Artifact not found: {artifact_id}", artifact_id=str(artifact_id))
        return artifact

    async def get_by_path(self, db: AsyncSession, path: str) -> FileArtifact | None:
        result = await db.execute(select(FileArtifact).where(FileArtifact.storage_path == path))
        return result.scalar_one_or_none()

    async def mark_completed(self, db: AsyncSession, artifact_id, size: int, mime_type: str | None = None) -> FileArtifact:
        """Record that the blob store confirmed the transfer."""
        if size is None or size < 0:
            raise InvalidRequest(f"size must be >= 0, got: {size}")

        artifact = await self.get_or_404(db, artifact_id)
        artifact.status = ArtifactStatus.completed
        artifact.size = size
        if mime_type:
            artifact.mime_type = mime_type
        artifact.error_message = None
        artifact.uploaded_at = utcnow()
        await db.flush()
        logger.info("Artifact %s completed (%s bytes)", artifact.id, size)
        return artifact

    async def mark_failed(self, db: AsyncSession, artifact_id, reason: str | None = None) -> FileArtifact:
        artifact = await self.get_or_404(db, artifact_id)
        artifact.status = ArtifactStatus.failed
        artifact.error_message = reason
        await db.flush()
        logger.warning("Artifact %s failed: %s", artifact.id, reason)
        return artifact

    async def mark_verified(self, db: AsyncSession, artifacts, verified_at) -> None:
        for artifact in artifacts:
            artifact.verified_at = verified_at
        await db.flush()

    async def list_by_entity(self, db: AsyncSession, entity_kind: EntityKind, entity_id) -> list[FileArtifact]:
        result = await db.execute(
            select(FileArtifact)
            .where(
                FileArtifact.entity_kind == EntityKind(entity_kind),
                FileArtifact.entity_id == as_uuid(entity_id),
            )
            .order_by(FileArtifact.created_at, FileArtifact.storage_path)
        )
        return list(result.scalars().all())

    async def delete_for_entity(self, db: AsyncSession, entity_kind: EntityKind, entity_id) -> list[FileArtifact]:
        """Delete every artifact of the entity and return the deleted rows."""
        artifacts = await self.list_by_entity(db, entity_kind, entity_id)
        if artifacts:
            await db.execute(
                delete(FileArtifact).where(FileArtifact.id.in_([artifact.id for artifact in artifacts]))
            )
        return artifacts

    async def delete_incomplete(self, db: AsyncSession, entity_kind: EntityKind, entity_id) -> list[FileArtifact]:
        """Drop uploading/failed rows so stale slots stop blocking finalization."""
        artifacts = [
            artifact
            for artifact in await self.list_by_entity(db, entity_kind, entity_id)
            if artifact.status is not ArtifactStatus.completed
        ]
        if artifacts:
            await db.execute(
                delete(FileArtifact).where(FileArtifact.id.in_([artifact.id for artifact in artifacts]))
            )
        return artifacts

    async def paths_with_prefix(self, db: AsyncSession, prefix: str) -> set[str]:
        result = await db.execute(
            select(FileArtifact.storage_path).where(FileArtifact.storage_path.startswith(prefix, autoescape=True))
        )
        return set(result.scalars().all())
