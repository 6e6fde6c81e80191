"""
Chunked, resumable upload sessions.

Chunk acknowledgements are stored one row per index under a
``(session_id, chunk_index)`` primary key, so a retried or out-of-order ack is
an idempotent set insert and can never inflate the uploaded count.
"""
import logging
import math
from datetime import timedelta

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from upload_pipeline.core.config import DEFAULT_CHUNK_SIZE, UPLOAD_SESSION_RETENTION_DAYS, UPLOAD_SESSION_TTL_HOURS
from upload_pipeline.core.exceptions import DuplicateSession, InvalidRequest, NotFound, SessionExpired
from upload_pipeline.db.database import utcnow
from upload_pipeline.db.entity_store import as_uuid
from upload_pipeline.db.models import EntityKind, FileKind, SessionStatus, UploadSession, UploadSessionChunk

logger = logging.getLogger(__name__)

_ON_CONFLICT_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


def session_query(session_id, lock: bool = False):
    query = select(UploadSession).where(UploadSession.id == as_uuid(session_id))
    if lock:
        # Serializes acks of one session so the completing count sees every chunk
        query = query.with_for_update()
    return query


def progress_pct(uploaded: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return round(uploaded / total * 100, 2)


class UploadSessionManager:
    def __init__(
        self,
        ttl: timedelta = timedelta(hours=UPLOAD_SESSION_TTL_HOURS),
        retention: timedelta = timedelta(days=UPLOAD_SESSION_RETENTION_DAYS),
        clock=utcnow,
    ):
        self.ttl = ttl
        self.retention = retention
        self.clock = clock

    async def create_session(
        self,
        db: AsyncSession,
        entity_kind: EntityKind,
        entity_id,
        file_name: str,
        total_size: int,
        chunk_size: int | None,
        final_path: str,
        file_kind: FileKind,
        mime_type: str | None = None,
    ) -> UploadSession:
        chunk_size = DEFAULT_CHUNK_SIZE if chunk_size is None else chunk_size
        if total_size is None or total_size <= 0:
            raise InvalidRequest(f"total_size must be > 0, got: {total_size}")
        if chunk_size <= 0:
            raise InvalidRequest(f"chunk_size must be > 0, got: {chunk_size}")
        if not file_name or not file_name.strip():
            raise InvalidRequest("file_name must be non-empty")

        entity_kind = EntityKind(entity_kind)
        entity_id = as_uuid(entity_id)

        active = await db.execute(
            select(UploadSession).where(
                UploadSession.entity_kind == entity_kind,
                UploadSession.entity_id == entity_id,
                UploadSession.file_name == file_name,
                UploadSession.session_status == SessionStatus.active,
            )
        )
        for existing in active.scalars().all():
            if existing.expires_at > self.clock():
                raise DuplicateSession(
                    f"Active upload session already exists for {file_name}",
                    session_id=str(existing.id),
                    file_name=file_name,
                )
            # Past its TTL but never read since: retire it so the slot frees up
            existing.session_status = SessionStatus.expired
        await db.flush()

        now = self.clock()
        session = UploadSession(
            entity_kind=entity_kind,
            entity_id=entity_id,
            file_name=file_name,
            file_kind=FileKind(file_kind),
            mime_type=mime_type,
            total_size=total_size,
            chunk_size=chunk_size,
            total_chunks=math.ceil(total_size / chunk_size),
            final_path=final_path,
            session_status=SessionStatus.active,
            created_at=now,
            expires_at=now + self.ttl,
        )
        db.add(session)
        await db.flush()
        logger.info(
            "Opened upload session %s for %s %s (%s, %d chunks)",
            session.id, entity_kind.value, entity_id, file_name, session.total_chunks,
        )
        return session

    async def get(self, db: AsyncSession, session_id, lock: bool = False) -> UploadSession | None:
        result = await db.execute(session_query(session_id, lock))
        return result.scalar_one_or_none()

    async def _load_live(self, db: AsyncSession, session_id, lock: bool = False) -> UploadSession:
        """Load a session, applying lazy expiry; an expired read raises SessionExpired."""
        session = await self.get(db, session_id, lock)
        if session is None:
            raise NotFound(f"Upload session not found: {session_id}", session_id=str(session_id))

        if session.session_status is SessionStatus.active and session.expires_at < self.clock():
            session.session_status = SessionStatus.expired
            # Persist the expiry even though the caller's unit of work is about to roll back
            await db.commit()
            logger.info("Upload session %s expired on read", session.id)

        if session.session_status is SessionStatus.expired:
            raise SessionExpired(
                f"Upload session expired: {session.id}",
                session_id=str(session.id),
                expires_at=session.expires_at.isoformat(),
            )
        return session

    async def _acknowledged(self, db: AsyncSession, session_id) -> list[int]:
        result = await db.execute(
            select(UploadSessionChunk.chunk_index)
            .where(UploadSessionChunk.session_id == session_id)
            .order_by(UploadSessionChunk.chunk_index)
        )
        return list(result.scalars().all())

    async def _insert_chunk(self, db: AsyncSession, session_id, chunk_index: int) -> None:
        dialect = db.get_bind().dialect.name
        insert_factory = _ON_CONFLICT_INSERTS.get(dialect)
        if insert_factory is not None:
            await db.execute(
                insert_factory(UploadSessionChunk)
                .values(session_id=session_id, chunk_index=chunk_index, acknowledged_at=self.clock())
                .on_conflict_do_nothing(index_elements=["session_id", "chunk_index"])
            )
            return

        present = await db.execute(
            select(UploadSessionChunk.chunk_index).where(
                UploadSessionChunk.session_id == session_id,
                UploadSessionChunk.chunk_index == chunk_index,
            )
        )
        if present.first() is None:
            db.add(UploadSessionChunk(session_id=session_id, chunk_index=chunk_index, acknowledged_at=self.clock()))
            await db.flush()

    async def mark_chunk_completed(self, db: AsyncSession, session_id, chunk_index: int) -> dict:
        session = await self._load_live(db, session_id, lock=True)

        if isinstance(chunk_index, bool) or not isinstance(chunk_index, int) or not 0 <= chunk_index < session.total_chunks:
            raise InvalidRequest(
                f"chunk_index must be in [0, {session.total_chunks}), got: {chunk_index}",
                session_id=str(session.id),
                chunk_index=chunk_index,
            )
        if session.session_status is SessionStatus.failed:
            raise InvalidRequest(f"Upload session {session.id} has failed", session_id=str(session.id))

        await self._insert_chunk(db, session.id, chunk_index)

        uploaded_count = (
            await db.execute(
                select(func.count()).select_from(UploadSessionChunk).where(UploadSessionChunk.session_id == session.id)
            )
        ).scalar_one()
        is_complete = uploaded_count >= session.total_chunks

        just_completed = False
        if is_complete and session.session_status is SessionStatus.active:
            completed_at = self.clock()
            flipped = await db.execute(
                update(UploadSession)
                .where(UploadSession.id == session.id, UploadSession.session_status == SessionStatus.active)
                .values(session_status=SessionStatus.completed, completed_at=completed_at, updated_at=completed_at)
                .execution_options(synchronize_session=False)
            )
            just_completed = flipped.rowcount == 1
            await db.refresh(session)
            if just_completed:
                logger.info("Upload session %s completed (%d chunks)", session.id, session.total_chunks)

        return {
            "session_id": str(session.id),
            "chunk_index": chunk_index,
            "uploaded_count": uploaded_count,
            "total_chunks": session.total_chunks,
            "is_complete": is_complete,
            "just_completed": just_completed,
            "progress_pct": progress_pct(uploaded_count, session.total_chunks),
            "session_status": session.session_status.value,
        }

    async def get_status(self, db: AsyncSession, session_id) -> dict:
        session = await self._load_live(db, session_id)
        uploaded = await self._acknowledged(db, session.id)
        present = set(uploaded)
        missing = [index for index in range(session.total_chunks) if index not in present]

        return {
            "session_id": str(session.id),
            "entity_kind": session.entity_kind.value,
            "entity_id": str(session.entity_id),
            "file_name": session.file_name,
            "file_kind": session.file_kind.value,
            "total_size": session.total_size,
            "chunk_size": session.chunk_size,
            "total_chunks": session.total_chunks,
            "uploaded_chunks": uploaded,
            "uploaded_count": len(uploaded),
            "missing_chunks": missing,
            "progress_pct": progress_pct(len(uploaded), session.total_chunks),
            "session_status": session.session_status.value,
            "final_path": session.final_path,
            "expires_at": session.expires_at.isoformat(),
            "created_at": session.created_at.isoformat(),
            "completed_at": session.completed_at.isoformat() if session.completed_at else None,
        }

    async def fail_session(self, db: AsyncSession, session_id, reason: str | None = None) -> UploadSession:
        session = await self._load_live(db, session_id)
        if session.session_status is SessionStatus.completed:
            raise InvalidRequest(f"Upload session {session.id} already completed", session_id=str(session.id))
        session.session_status = SessionStatus.failed
        session.error_message = reason
        await db.flush()
        logger.warning("Upload session %s failed: %s", session.id, reason)
        return session

    async def delete_for_entity(self, db: AsyncSession, entity_kind: EntityKind, entity_id) -> int:
        result = await db.execute(
            select(UploadSession.id).where(
                UploadSession.entity_kind == EntityKind(entity_kind),
                UploadSession.entity_id == as_uuid(entity_id),
            )
        )
        return await self.delete_ids(db, list(result.scalars().all()))

    async def delete_ids(self, db: AsyncSession, session_ids) -> int:
        if not session_ids:
            return 0
        await db.execute(delete(UploadSessionChunk).where(UploadSessionChunk.session_id.in_(session_ids)))
        await db.execute(delete(UploadSession).where(UploadSession.id.in_(session_ids)))
        return len(session_ids)

    async def sweep_expired(self, db: AsyncSession) -> dict:
        """
        Periodic counterpart of lazy expiry: mark overdue active sessions expired,
        then hard-delete sessions that expired longer ago than the retention window.
        """
        now = self.clock()
        marked = await db.execute(
            update(UploadSession)
            .where(UploadSession.session_status == SessionStatus.active, UploadSession.expires_at < now)
            .values(session_status=SessionStatus.expired, updated_at=now)
            .execution_options(synchronize_session=False)
        )

        stale = await db.execute(
            select(UploadSession.id).where(
                UploadSession.session_status == SessionStatus.expired,
                UploadSession.expires_at < now - self.retention,
            )
        )
        deleted = await self.delete_ids(db, list(stale.scalars().all()))

        logger.info("Session sweep: %d expired, %d deleted", marked.rowcount, deleted)
        return {"expired_sessions": marked.rowcount, "deleted_sessions": deleted}
