"""
Caller-facing write path.

Each public coroutine runs as one unit of work and returns an OperationResult;
pipeline errors are reported in the result instead of being raised. SQLAlchemy
errors such as an IntegrityError from a racing insert are not pipeline errors
and still propagate.
"""
import logging
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field

from upload_pipeline.core.exceptions import InvalidRequest, InvalidTransition, PathConflict, UploadPipelineError
from upload_pipeline.db.database import AsyncSessionLocal, unit_of_work, utcnow
from upload_pipeline.db.entity_store import EntityStore
from upload_pipeline.db.models import ArtifactStatus, EntityKind, FileKind, UploadStatus
from upload_pipeline.service.artifact_registry import FileArtifactRegistry
from upload_pipeline.service.entity_kinds import spec_for
from upload_pipeline.service.finalization import FinalizationService
from upload_pipeline.service.lifecycle import LifecycleStateMachine
from upload_pipeline.service.reconciler import OrphanReconciler
from upload_pipeline.service.storage_paths import resolve_path
from upload_pipeline.service.upload_sessions import UploadSessionManager

logger = logging.getLogger(__name__)


class ErrorInfo(BaseModel):
    code: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class OperationResult(BaseModel):
    success: bool
    data: Any = None
    error: Optional[ErrorInfo] = None

    @classmethod
    def ok(cls, data=None) -> "OperationResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: UploadPipelineError) -> "OperationResult":
        return cls(success=False, error=ErrorInfo(**error.to_dict()))


def artifact_dict(artifact) -> dict:
    return {
        "artifact_id": str(artifact.id),
        "entity_kind": artifact.entity_kind.value,
        "entity_id": str(artifact.entity_id),
        "file_kind": artifact.file_kind.value,
        "path": artifact.storage_path,
        "size": artifact.size,
        "mime_type": artifact.mime_type,
        "is_required": artifact.is_required,
        "status": artifact.status.value,
        "error_message": artifact.error_message,
        "uploaded_at": artifact.uploaded_at.isoformat() if artifact.uploaded_at else None,
        "verified_at": artifact.verified_at.isoformat() if artifact.verified_at else None,
    }


def entity_status_dict(kind: EntityKind, entity) -> dict:
    return {
        "entity_kind": EntityKind(kind).value,
        "entity_id": str(entity.id),
        "status": UploadStatus(entity.upload_status).value,
        "upload_error": entity.upload_error,
        "upload_retry_count": entity.upload_retry_count,
    }


class UploadCoordinator:
    def __init__(
        self,
        session_factory=AsyncSessionLocal,
        entity_store: EntityStore | None = None,
        registry: FileArtifactRegistry | None = None,
        sessions: UploadSessionManager | None = None,
        clock=utcnow,
    ):
        self.session_factory = session_factory
        self.clock = clock
        self.entity_store = entity_store or EntityStore()
        self.registry = registry or FileArtifactRegistry()
        self.sessions = sessions or UploadSessionManager(clock=clock)
        self.state_machine = LifecycleStateMachine(self.entity_store)
        self.finalizer = FinalizationService(self.entity_store, self.registry, self.state_machine)
        self.reconciler = OrphanReconciler(
            self.entity_store, self.registry, self.sessions, self.state_machine, clock=clock
        )

    async def _run(self, operation: str, work) -> OperationResult:
        try:
            async with unit_of_work(self.session_factory) as db:
                data = await work(db)
        except UploadPipelineError as e:
            logger.info("%s rejected [%s]: %s", operation, e.code, e.message)
            return OperationResult.fail(e)
        return OperationResult.ok(data)

    async def _resolve(self, db, spec, entity, file_kind: FileKind, timestamp=None, extension=None) -> str:
        chain = await self.entity_store.build_chain(db, spec.kind, entity)
        if chain is None:
            raise InvalidRequest(
                f"Parent project of {spec.kind.value} {entity.id} not found",
                entity_kind=spec.kind.value,
                entity_id=str(entity.id),
            )
        try:
            return resolve_path(chain, file_kind, timestamp if timestamp is not None else self.clock(), extension)
        except ValueError as e:
            raise InvalidRequest(str(e), entity_kind=spec.kind.value, file_kind=file_kind.value) from None

    async def _load_for_upload(self, db, entity_kind, entity_id, file_kind):
        spec = spec_for(entity_kind)
        file_kind = _file_kind(file_kind)
        spec.url_field_for(file_kind)
        entity = await self.entity_store.get_or_404(db, spec.kind, entity_id)
        return spec, entity, file_kind

    async def _ensure_artifact_mutable(self, db, artifact) -> None:
        """Files behind a completed entity only change through reset_entity."""
        entity = await self.entity_store.get(db, artifact.entity_kind, artifact.entity_id)
        if entity is not None and entity.upload_status is UploadStatus.completed:
            raise InvalidTransition(
                f"Cannot change files of completed {artifact.entity_kind.value} {artifact.entity_id}; reset it first",
                entity_kind=artifact.entity_kind.value,
                entity_id=str(artifact.entity_id),
                artifact_id=str(artifact.id),
            )

    # ------------------------------------------------------------------
    # Chunked sessions
    # ------------------------------------------------------------------

    async def create_session(
        self,
        entity_kind,
        entity_id,
        file_kind,
        file_name: str,
        total_size: int,
        chunk_size: int | None = None,
        final_path: str | None = None,
        mime_type: str | None = None,
        is_required: bool = True,
    ) -> OperationResult:
        """
        Open a chunked upload for one file of an entity.

        The artifact at ``final_path`` is registered (or reused when it already
        belongs to this entity) and a draft or failed entity moves to uploading.
        Without ``final_path`` the canonical storage path is resolved.
        """
        async def work(db):
            spec, entity, kind = await self._load_for_upload(db, entity_kind, entity_id, file_kind)
            path = final_path
            if not path:
                path = await self._resolve(db, spec, entity, kind, extension=Path(file_name or "").suffix or None)

            await self.state_machine.begin_upload(db, entity)

            artifact = await self.registry.get_by_path(db, path)
            if artifact is None:
                artifact = await self.registry.register_artifact(
                    db, spec.kind, entity.id, kind, path, is_required=is_required, mime_type=mime_type
                )
            elif artifact.entity_kind is not spec.kind or artifact.entity_id != entity.id:
                raise PathConflict(
                    f"Storage path already registered to another entity: {path}",
                    path=path,
                    artifact_id=str(artifact.id),
                )
            elif artifact.file_kind is not kind:
                raise PathConflict(
                    f"Storage path already registered as {artifact.file_kind.value}: {path}",
                    path=path,
                    artifact_id=str(artifact.id),
                    file_kind=kind.value,
                )

            session = await self.sessions.create_session(
                db, spec.kind, entity.id, file_name, total_size, chunk_size, path, kind, mime_type
            )
            status = await self.sessions.get_status(db, session.id)
            status["artifact_id"] = str(artifact.id)
            return status

        return await self._run("create_session", work)

    async def mark_chunk_completed(self, session_id, chunk_index: int) -> OperationResult:
        async def work(db):
            progress = await self.sessions.mark_chunk_completed(db, session_id, chunk_index)
            if progress["just_completed"]:
                session = await self.sessions.get(db, session_id)
                artifact = await self.registry.get_by_path(db, session.final_path)
                if artifact is not None and artifact.status is not ArtifactStatus.completed:
                    await self._ensure_artifact_mutable(db, artifact)
                    await self.registry.mark_completed(db, artifact.id, session.total_size, session.mime_type)
                    progress["artifact_id"] = str(artifact.id)
            return progress

        return await self._run("mark_chunk_completed", work)

    async def get_session_status(self, session_id) -> OperationResult:
        async def work(db):
            return await self.sessions.get_status(db, session_id)

        return await self._run("get_session_status", work)

    async def fail_session(self, session_id, reason: str | None = None) -> OperationResult:
        async def work(db):
            session = await self.sessions.fail_session(db, session_id, reason)
            artifact = await self.registry.get_by_path(db, session.final_path)
            if artifact is not None and artifact.status is not ArtifactStatus.completed:
                await self._ensure_artifact_mutable(db, artifact)
                await self.registry.mark_failed(db, artifact.id, reason)
            return {"session_id": str(session.id), "session_status": session.session_status.value}

        return await self._run("fail_session", work)

    # ------------------------------------------------------------------
    # Artifacts
    # ------------------------------------------------------------------

    async def register_artifact(
        self,
        entity_kind,
        entity_id,
        file_kind,
        path: str | None = None,
        is_required: bool = True,
        mime_type: str | None = None,
        timestamp=None,
        extension: str | None = None,
    ) -> OperationResult:
        async def work(db):
            spec, entity, kind = await self._load_for_upload(db, entity_kind, entity_id, file_kind)
            storage_path = path or await self._resolve(db, spec, entity, kind, timestamp, extension)
            await self.state_machine.begin_upload(db, entity)
            artifact = await self.registry.register_artifact(
                db, spec.kind, entity.id, kind, storage_path, is_required=is_required, mime_type=mime_type
            )
            return artifact_dict(artifact)

        return await self._run("register_artifact", work)

    async def mark_artifact_completed(self, artifact_id, size: int, mime_type: str | None = None) -> OperationResult:
        async def work(db):
            await self._ensure_artifact_mutable(db, await self.registry.get_or_404(db, artifact_id))
            return artifact_dict(await self.registry.mark_completed(db, artifact_id, size, mime_type))

        return await self._run("mark_artifact_completed", work)

    async def mark_artifact_failed(self, artifact_id, reason: str | None = None) -> OperationResult:
        async def work(db):
            await self._ensure_artifact_mutable(db, await self.registry.get_or_404(db, artifact_id))
            return artifact_dict(await self.registry.mark_failed(db, artifact_id, reason))

        return await self._run("mark_artifact_failed", work)

    async def list_artifacts(self, entity_kind, entity_id) -> OperationResult:
        async def work(db):
            spec = spec_for(entity_kind)
            artifacts = await self.registry.list_by_entity(db, spec.kind, entity_id)
            return [artifact_dict(artifact) for artifact in artifacts]

        return await self._run("list_artifacts", work)

    # ------------------------------------------------------------------
    # Entity lifecycle
    # ------------------------------------------------------------------

    async def mark_entity_failed(self, entity_kind, entity_id, error: str | None = None) -> OperationResult:
        async def work(db):
            spec = spec_for(entity_kind)
            entity = await self.entity_store.get_or_404(db, spec.kind, entity_id)
            entity = await self.state_machine.transition(db, entity, UploadStatus.failed, error=error)
            return entity_status_dict(spec.kind, entity)

        return await self._run("mark_entity_failed", work)

    async def finalize(self, entity_kind, entity_id) -> OperationResult:
        async def work(db):
            return await self.finalizer.finalize(db, entity_kind, entity_id)

        return await self._run("finalize", work)

    async def reset_entity(self, entity_kind, entity_id) -> OperationResult:
        async def work(db):
            return await self.reconciler.reset_entity(db, entity_kind, entity_id)

        return await self._run("reset_entity", work)

    async def resolve_storage_path(
        self, entity_kind, entity_id, file_kind, timestamp=None, extension: str | None = None
    ) -> OperationResult:
        async def work(db):
            spec, entity, kind = await self._load_for_upload(db, entity_kind, entity_id, file_kind)
            return {"path": await self._resolve(db, spec, entity, kind, timestamp, extension)}

        return await self._run("resolve_storage_path", work)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def find_orphans(self) -> OperationResult:
        return await self._run("find_orphans", self.reconciler.find_orphans)

    async def cleanup_orphans(self) -> OperationResult:
        return await self._run("cleanup_orphans", self.reconciler.cleanup_orphans)

    async def cleanup_incomplete_uploads(self, entity_kind, entity_id) -> OperationResult:
        async def work(db):
            return await self.reconciler.cleanup_incomplete_uploads(db, entity_kind, entity_id)

        return await self._run("cleanup_incomplete_uploads", work)

    async def find_abandoned_uploads(self, threshold_hours: int | None = None) -> OperationResult:
        async def work(db):
            return await self.reconciler.find_abandoned_uploads(db, threshold_hours)

        return await self._run("find_abandoned_uploads", work)

    async def sweep_expired_sessions(self) -> OperationResult:
        return await self._run("sweep_expired_sessions", self.sessions.sweep_expired)

    async def find_unregistered_keys(self, prefix: str, keys) -> OperationResult:
        async def work(db):
            return await self.reconciler.find_unregistered_keys(db, prefix, keys)

        return await self._run("find_unregistered_keys", work)


def _file_kind(value) -> FileKind:
    try:
        return FileKind(value)
    except ValueError:
        raise InvalidRequest(f"Unknown file kind: {value}", file_kind=str(value)) from None


_coordinator = UploadCoordinator()


def get_coordinator() -> UploadCoordinator:
    """FastAPI dependency; tests override it with a coordinator bound to their engine."""
    return _coordinator
