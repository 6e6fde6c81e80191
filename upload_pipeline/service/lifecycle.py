"""
Upload status state machine for projects, options and records.

    draft ──► uploading ──► completed
      │           │             │
      ▼           ▼             │ (explicit reset: every final URL cleared)
    failed ◄──────┘             ▼
      │ └──────► uploading    draft
      └────────► draft

A status and its kind-specific final URL fields are always written together
in one compare-and-swap UPDATE, so ``completed`` and "required URLs present"
can never disagree.
"""
from __future__ import annotations

import logging
from typing import Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from upload_pipeline.core.exceptions import InvalidTransition
from upload_pipeline.db.database import utcnow
from upload_pipeline.db.entity_store import EntityStore
from upload_pipeline.db.models import UploadStatus
from upload_pipeline.service.entity_kinds import EntityKindSpec, kind_of, spec_for

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[UploadStatus, frozenset[UploadStatus]] = {
    UploadStatus.draft: frozenset({UploadStatus.uploading, UploadStatus.failed}),
    UploadStatus.uploading: frozenset({UploadStatus.completed, UploadStatus.failed}),
    UploadStatus.failed: frozenset({UploadStatus.uploading, UploadStatus.draft}),
    UploadStatus.completed: frozenset({UploadStatus.draft}),
}


def ensure_edge(spec: EntityKindSpec, current: UploadStatus, requested: UploadStatus) -> None:
    """Raise InvalidTransition unless current -> requested is an edge of the status graph."""
    current = UploadStatus(current)
    requested = UploadStatus(requested)
    if requested in ALLOWED_TRANSITIONS[current]:
        return

    message = f"Invalid transition from {current.value} to {requested.value}"
    if current is UploadStatus.completed:
        message = (
            f"Cannot change status from completed to {requested.value}. "
            "Completed entities are immutable; reset the entity to allow re-upload."
        )
    raise InvalidTransition(message, entity_kind=spec.kind.value, current=current.value, requested=requested.value)


def check_transition(
    spec: EntityKindSpec,
    current: UploadStatus,
    requested: UploadStatus,
    url_values: Optional[Mapping[str, Optional[str]]] = None,
) -> dict[str, Optional[str]]:
    """
    Validate one status change for an entity kind without touching the store.

    Returns the URL column values to write alongside the status. Raises
    InvalidTransition when the edge is not in the graph or the URL fields in
    the mutation would break the completed/URL invariant.
    """
    current = UploadStatus(current)
    requested = UploadStatus(requested)
    url_values = dict(url_values or {})
    kind = spec.kind.value

    unknown = set(url_values) - set(spec.all_url_fields)
    if unknown:
        raise InvalidTransition(
            f"{kind} has no URL fields {sorted(unknown)}",
            entity_kind=kind,
            fields=sorted(unknown),
        )

    ensure_edge(spec, current, requested)

    if current is UploadStatus.completed:
        # completed -> draft is only an explicit reset: every URL field cleared in the same write
        not_cleared = [name for name in spec.all_url_fields if name not in url_values or url_values[name]]
        if not_cleared:
            raise InvalidTransition(
                f"Cannot reset completed {kind} to draft unless {', '.join(not_cleared)} are cleared",
                entity_kind=kind,
                current=current.value,
                requested=requested.value,
                fields=not_cleared,
            )
        return {name: None for name in spec.all_url_fields}

    if requested is UploadStatus.completed:
        missing = [name for name in spec.required_url_fields if not url_values.get(name)]
        if missing:
            raise InvalidTransition(
                f"Cannot mark {kind} as completed: {', '.join(missing)} required",
                entity_kind=kind,
                current=current.value,
                requested=requested.value,
                fields=missing,
            )
        return {name: url_values.get(name) or None for name in spec.all_url_fields}

    populated = [name for name, value in url_values.items() if value]
    if populated:
        raise InvalidTransition(
            f"Final URLs may only be written when completing a {kind}",
            entity_kind=kind,
            requested=requested.value,
            fields=populated,
        )
    return {}


class LifecycleStateMachine:
    def __init__(self, entity_store: EntityStore | None = None):
        self.entity_store = entity_store or EntityStore()

    async def transition(
        self,
        db: AsyncSession,
        entity,
        requested: UploadStatus,
        url_values: Optional[Mapping[str, Optional[str]]] = None,
        *,
        error: str | None = None,
    ):
        """
        Move ``entity`` to ``requested`` with a compare-and-swap on its observed status.

        ``error`` is stored when entering ``failed``. Returns the refreshed entity.
        """
        spec = spec_for(kind_of(entity))
        observed = UploadStatus(entity.upload_status)
        requested = UploadStatus(requested)
        values = check_transition(spec, observed, requested, url_values)

        values["upload_status"] = requested
        if requested is UploadStatus.completed:
            values["completed_at"] = utcnow()
        elif observed is UploadStatus.completed:
            values["completed_at"] = None

        if requested is UploadStatus.failed:
            values["upload_error"] = error
        elif observed is UploadStatus.failed:
            values["upload_error"] = None
            if requested is UploadStatus.uploading:
                values["upload_retry_count"] = (entity.upload_retry_count or 0) + 1

        updated = await self.entity_store.compare_and_set_status(db, spec.kind, entity.id, observed, **values)
        if updated != 1:
            raise InvalidTransition(
                f"{spec.kind.value} {entity.id} changed status concurrently; expected {observed.value}",
                entity_kind=spec.kind.value,
                entity_id=str(entity.id),
                current=observed.value,
                requested=requested.value,
            )

        await db.refresh(entity)
        logger.info(
            "%s %s: %s -> %s", spec.kind.value, entity.id, observed.value, requested.value
        )
        return entity

    async def begin_upload(self, db: AsyncSession, entity):
        """Move a draft or failed entity to uploading; already uploading is a no-op."""
        status = UploadStatus(entity.upload_status)
        if status is UploadStatus.uploading:
            return entity
        return await self.transition(db, entity, UploadStatus.uploading)
