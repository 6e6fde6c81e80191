# upload_pipeline/db/models.py

import enum
import uuid

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    PrimaryKeyConstraint,
    String,
    Text,
    Uuid,
    text,
)

from .database import Base, utcnow


class EntityKind(str, enum.Enum):
    project = "project"
    option = "option"
    record = "record"


class FileKind(str, enum.Enum):
    model = "model"
    processed_recording = "processed_recording"
    raw_recording = "raw_recording"
    context = "context"
    heatmap = "heatmap"
    thumbnail = "thumbnail"


class UploadStatus(str, enum.Enum):
    draft = "draft"
    uploading = "uploading"
    completed = "completed"
    failed = "failed"


class ArtifactStatus(str, enum.Enum):
    uploading = "uploading"
    completed = "completed"
    failed = "failed"


class SessionStatus(str, enum.Enum):
    active = "active"
    completed = "completed"
    failed = "failed"
    expired = "expired"


# ---------------------------------------------------------------------------
# Upload-bearing entities
# ---------------------------------------------------------------------------

class UploadEntityMixin:
    upload_status = Column(Enum(UploadStatus, name="upload_status"), nullable=False, default=UploadStatus.draft)
    upload_error = Column(Text, nullable=True)
    upload_retry_count = Column(Integer, nullable=False, default=0)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=True, onupdate=utcnow)


class Project(UploadEntityMixin, Base):
    __tablename__ = "projects"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    context_url = Column(Text, nullable=True)
    heatmap_url = Column(Text, nullable=True)


class ProjectOption(UploadEntityMixin, Base):
    __tablename__ = "project_options"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    project_id = Column(Uuid(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    model_url = Column(Text, nullable=True)


class Record(UploadEntityMixin, Base):
    __tablename__ = "records"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    project_id = Column(Uuid(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    option_id = Column(Uuid(as_uuid=True), ForeignKey("project_options.id", ondelete="CASCADE"), nullable=False)
    scenario_id = Column(Uuid(as_uuid=True), nullable=False)
    device_type = Column(String(20), nullable=True)
    length_ms = Column(Integer, nullable=True)
    record_url = Column(Text, nullable=True)
    raw_url = Column(Text, nullable=True)
    thumbnail_url = Column(Text, nullable=True)


# ---------------------------------------------------------------------------
# File artifact registry
# ---------------------------------------------------------------------------

class FileArtifact(Base):
    __tablename__ = "upload_files"
    __table_args__ = (
        Index("idx_upload_files_entity", "entity_kind", "entity_id"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    # Polymorphic weak reference: no foreign key, the row outlives its entity
    entity_kind = Column(Enum(EntityKind, name="entity_kind"), nullable=False)
    entity_id = Column(Uuid(as_uuid=True), nullable=False)
    file_kind = Column(Enum(FileKind, name="file_kind"), nullable=False)
    storage_path = Column(Text, nullable=False, unique=True)
    size = Column(BigInteger, nullable=True)
    mime_type = Column(String(255), nullable=True)
    is_required = Column(Boolean, nullable=False, default=True)
    status = Column(Enum(ArtifactStatus, name="artifact_status"), nullable=False, default=ArtifactStatus.uploading)
    error_message = Column(Text, nullable=True)
    uploaded_at = Column(DateTime, nullable=True)
    verified_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=True, onupdate=utcnow)


# ---------------------------------------------------------------------------
# Chunked upload sessions
# ---------------------------------------------------------------------------

class UploadSession(Base):
    __tablename__ = "upload_sessions"
    __table_args__ = (
        Index("idx_upload_sessions_entity", "entity_kind", "entity_id"),
        Index("idx_upload_sessions_expires", "expires_at"),
        # One active session per file slot; finished sessions may repeat the name
        Index(
            "uq_upload_sessions_active_slot",
            "entity_kind",
            "entity_id",
            "file_name",
            unique=True,
            postgresql_where=text("session_status = 'active'"),
            sqlite_where=text("session_status = 'active'"),
        ),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    entity_kind = Column(Enum(EntityKind, name="entity_kind"), nullable=False)
    entity_id = Column(Uuid(as_uuid=True), nullable=False)
    file_name = Column(String(255), nullable=False)
    file_kind = Column(Enum(FileKind, name="file_kind"), nullable=False)
    mime_type = Column(String(255), nullable=True)
    total_size = Column(BigInteger, nullable=False)
    chunk_size = Column(Integer, nullable=False)
    total_chunks = Column(Integer, nullable=False)
    final_path = Column(Text, nullable=False)
    session_status = Column(Enum(SessionStatus, name="session_status"), nullable=False, default=SessionStatus.active)
    error_message = Column(Text, nullable=True)
    expires_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=True, onupdate=utcnow)


class UploadSessionChunk(Base):
    """One row per acknowledged chunk index; the primary key makes acks a set insert."""
    __tablename__ = "upload_session_chunks"
    __table_args__ = (
        PrimaryKeyConstraint("session_id", "chunk_index"),
    )

    session_id = Column(Uuid(as_uuid=True), ForeignKey("upload_sessions.id", ondelete="CASCADE"), nullable=False)
    chunk_index = Column(Integer, nullable=False)
    acknowledged_at = Column(DateTime, nullable=False, default=utcnow)
