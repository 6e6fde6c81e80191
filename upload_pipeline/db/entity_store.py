import logging
import uuid

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from upload_pipeline.core.exceptions import InvalidRequest, NotFound
from upload_pipeline.db.database import utcnow
from upload_pipeline.db.models import EntityKind, Project
from upload_pipeline.service.entity_kinds import spec_for
from upload_pipeline.service.storage_paths import EntityChain

logger = logging.getLogger(__name__)

# Columns owned by the lifecycle core; plain field updates must not touch them
_LIFECYCLE_FIELDS = {"id", "upload_status", "completed_at", "upload_error", "upload_retry_count"}


def as_uuid(value) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        raise InvalidRequest(f"Invalid identifier: {value!r}") from None


class EntityStore:
    """Persistence for projects, options and records, dispatched on EntityKind."""

    async def get(self, db: AsyncSession, kind, entity_id):
        model = spec_for(kind).model
        result = await db.execute(select(model).where(model.id == as_uuid(entity_id)))
        return result.scalar_one_or_none()

    async def get_or_404(self, db: AsyncSession, kind, entity_id):
        entity = await self.get(db, kind, entity_id)
        if entity is None:
            raise NotFound(
                f"{EntityKind(kind).value} not found: {entity_id}",
                entity_kind=EntityKind(kind).value,
                entity_id=str(entity_id),
            )
        return entity

    async def exists(self, db: AsyncSession, kind, entity_id) -> bool:
        model = spec_for(kind).model
        result = await db.execute(select(model.id).where(model.id == as_uuid(entity_id)))
        return result.first() is not None

    async def create(self, db: AsyncSession, kind, **fields):
        spec = spec_for(kind)
        forbidden = (_LIFECYCLE_FIELDS - {"id"}) | set(spec.all_url_fields)
        if forbidden & fields.keys():
            raise InvalidRequest(
                "Lifecycle fields cannot be set on create",
                fields=sorted(forbidden & fields.keys()),
            )
        entity = spec.model(**fields)
        db.add(entity)
        await db.flush()
        await db.refresh(entity)
        logger.info("Created %s %s", spec.kind.value, entity.id)
        return entity

    async def update_fields(self, db: AsyncSession, kind, entity_id, **fields):
        """Plain descriptive update; status and final URLs go through the state machine."""
        spec = spec_for(kind)
        protected = (_LIFECYCLE_FIELDS | set(spec.all_url_fields)) & fields.keys()
        if protected:
            raise InvalidRequest(
                "Status and final URL fields are managed by the upload lifecycle",
                fields=sorted(protected),
            )
        entity = await self.get_or_404(db, kind, entity_id)
        for name, value in fields.items():
            setattr(entity, name, value)
        entity.updated_at = utcnow()
        await db.flush()
        return entity

    async def delete(self, db: AsyncSession, kind, entity_id) -> bool:
        model = spec_for(kind).model
        result = await db.execute(delete(model).where(model.id == as_uuid(entity_id)))
        return result.rowcount > 0

    async def build_chain(self, db: AsyncSession, kind, entity) -> EntityChain | None:
        """Resolve the project/option/scenario chain used for storage paths."""
        kind = EntityKind(kind)
        if kind is EntityKind.project:
            return EntityChain(project_name=entity.name, project_id=str(entity.id))

        project = (await db.execute(select(Project).where(Project.id == entity.project_id))).scalar_one_or_none()
        if project is None:
            return None
        if kind is EntityKind.option:
            return EntityChain(project_name=project.name, project_id=str(project.id), option_id=str(entity.id))
        return EntityChain(
            project_name=project.name,
            project_id=str(project.id),
            option_id=str(entity.option_id),
            scenario_id=str(entity.scenario_id),
        )

    async def compare_and_set_status(self, db: AsyncSession, kind, entity_id, observed_status, **values) -> int:
        """
        Compare-and-swap write of lifecycle columns.

        Only the lifecycle state machine calls this. Returns the number of rows
        updated: 0 means the status changed since it was observed.
        """
        model = spec_for(kind).model
        values["updated_at"] = utcnow()
        result = await db.execute(
            update(model)
            .where(model.id == as_uuid(entity_id), model.upload_status == observed_status)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

