"""
SQLAlchemy ORM Models — Files, Extraction Links & Job History

Column types are portable (sqlalchemy.Uuid, JSON with a JSONB variant) so
the same models run on PostgreSQL in production and SQLite in tests.

File state machine (status column):
    pending    — original stored, chain queued but not yet picked up
    processing — a stage is actively working on the file
    completed  — terminal stage finished, entities extracted
    failed     — a stage exhausted retries; error_message retained

Deduplication:
    UNIQUE(user_id, file_hash) WHERE status <> 'completed'
    Closes the concurrent-upload race for in-flight files while letting a
    completed file whose entities were deleted be uploaded again.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# BIGSERIAL on PostgreSQL, INTEGER PRIMARY KEY (rowid alias) on SQLite
PKType = BigInteger().with_variant(Integer, "sqlite")
JSONType = JSON().with_variant(JSONB, "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Declarative base: shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


class FileType:
    RECEIPT = "receipt"
    DOCUMENT = "document"

    ALL = (RECEIPT, DOCUMENT)


class FileStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# File: files
# ---------------------------------------------------------------------------

class File(Base):
    """Root record for one uploaded artifact."""

    __tablename__ = "files"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="files_status_check",
        ),
        CheckConstraint(
            "file_type IN ('receipt', 'document')",
            name="files_type_check",
        ),
        Index(
            "uq_files_user_hash_inflight",
            "user_id", "file_hash",
            unique=True,
            postgresql_where=text("status <> 'completed'"),
            sqlite_where=text("status <> 'completed'"),
        ),
        Index("idx_files_user_hash", "user_id", "file_hash"),
        Index("idx_files_status", "status", "updated_at"),
    )

    id: Mapped[int] = mapped_column(PKType, primary_key=True, autoincrement=True)
    guid: Mapped[uuid.UUID] = mapped_column(
        Uuid, nullable=False, unique=True, default=uuid.uuid4,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)

    file_type: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=FileStatus.PENDING, server_default=FileStatus.PENDING,
    )

    original_filename: Mapped[str] = mapped_column(Text, nullable=False)
    extension: Mapped[str] = mapped_column(String(16), nullable=False)
    mime_type: Mapped[str] = mapped_column(Text, nullable=False, default="application/octet-stream")
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # SHA-256 hex digest of the raw uploaded bytes
    file_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    # Blob store paths: {kind}s/{user_id}/{guid}/{variant}.{ext}
    s3_original_path:  Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    s3_processed_path: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    s3_archive_path:   Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    s3_image_path:     Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    file_metadata: Mapped[dict] = mapped_column(
        "metadata", JSONType, nullable=False, default=dict,
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    uploaded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now(),
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow,
        server_default=func.now(),
    )

    @property
    def has_original(self) -> bool:
        return bool(self.s3_original_path)

    def __repr__(self) -> str:
        return (
            f"<File id={self.id} guid={self.guid} type={self.file_type} "
            f"status={self.status} user={self.user_id}>"
        )


# ---------------------------------------------------------------------------
# ExtractionLink: file_extractions (File ↔ Structured Entity junction)
# ---------------------------------------------------------------------------

class ExtractionLink(Base):
    """Which entity is the primary extraction for a File, and when it happened."""

    __tablename__ = "file_extractions"
    __table_args__ = (
        Index("idx_file_extractions_file", "file_id"),
        Index("idx_file_extractions_entity", "entity_type", "entity_id"),
        Index("idx_file_extractions_job", "job_id"),
    )

    id: Mapped[int] = mapped_column(PKType, primary_key=True, autoincrement=True)
    file_id: Mapped[int] = mapped_column(
        ForeignKey("files.id", ondelete="CASCADE"), nullable=False,
    )
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    is_primary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    # Job that produced the extraction; a retried attempt reuses its own rows
    job_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    extracted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow,
    )

    deleted_reason: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


# ---------------------------------------------------------------------------
# JobHistory: job_history (append-only per stage attempt)
# ---------------------------------------------------------------------------

class JobHistory(Base):
    """
    One row per stage attempt, plus one parent row (order 0) per job.

    Retries add rows (attempt + 1); they never overwrite an earlier attempt.
    """

    __tablename__ = "job_history"
    __table_args__ = (
        UniqueConstraint("job_id", "order_in_chain", "attempt", name="uq_job_history_attempt"),
        Index("idx_job_history_job", "job_id"),
        Index("idx_job_history_status", "status", "created_at"),
    )

    id: Mapped[int] = mapped_column(PKType, primary_key=True, autoincrement=True)
    uuid: Mapped[str] = mapped_column(String(36), nullable=False, unique=True)
    job_id: Mapped[str] = mapped_column(String(36), nullable=False)
    parent_uuid: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    # Celery task id; shared by every retry of the same stage
    task_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    name: Mapped[str] = mapped_column(Text, nullable=False)
    queue: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    order_in_chain: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # Parent rows only: number of stages dispatched in the chain
    stage_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default=JobStatus.PENDING)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    file_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    exception: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow,
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def is_parent(self) -> bool:
        return self.parent_uuid is None

    def __repr__(self) -> str:
        return (
            f"<JobHistory job={self.job_id} name={self.name!r} "
            f"order={self.order_in_chain} attempt={self.attempt} status={self.status}>"
        )


# ---------------------------------------------------------------------------
# Merchants, tags, import sources
# ---------------------------------------------------------------------------

class Merchant(Base):
    __tablename__ = "merchants"
    __table_args__ = (
        UniqueConstraint("user_id", "normalized_name", name="uq_merchants_user_name"),
    )

    id: Mapped[int] = mapped_column(PKType, primary_key=True, autoincrement=True)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    normalized_name: Mapped[str] = mapped_column(Text, nullable=False)
    address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    vat_number: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow,
    )


class Tag(Base):
    __tablename__ = "tags"
    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_tags_user_name"),
    )

    id: Mapped[int] = mapped_column(PKType, primary_key=True, autoincrement=True)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)


class EntityTag(Base):
    """Polymorphic tag assignment: (tag, entity_type, entity_id)."""

    __tablename__ = "entity_tags"
    __table_args__ = (
        UniqueConstraint("tag_id", "entity_type", "entity_id", name="uq_entity_tags"),
    )

    id: Mapped[int] = mapped_column(PKType, primary_key=True, autoincrement=True)
    tag_id: Mapped[int] = mapped_column(ForeignKey("tags.id", ondelete="CASCADE"), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[int] = mapped_column(BigInteger, nullable=False)


class ImportSourceFile(Base):
    """A file pulled in from an external import source (e.g. a WebDAV folder)."""

    __tablename__ = "import_source_files"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="import_source_files_status_check",
        ),
    )

    id: Mapped[int] = mapped_column(PKType, primary_key=True, autoincrement=True)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    source: Mapped[str] = mapped_column(String(32), nullable=False, default="webdav")
    remote_path: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=FileStatus.PENDING)

    file_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    entity_type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    entity_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
