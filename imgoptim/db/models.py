from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

BULK_JOB_KEY = "bulk_process_job"
COMPRESSION_STATS_KEY = "compression_stats"
OPTIMIZED_MARKER_KEY = "optimized_at_timestamp"
UPLOAD_NOTICE_KEY = "upload_notice"


class Base(DeclarativeBase):
    pass


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class ItemOutcome(str, Enum):
    OPTIMIZED = "optimized"
    FAILED = "failed"
    SKIPPED = "skipped"


class LibraryImage(Base):
    __tablename__ = "library_images"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    relative_path: Mapped[str] = mapped_column(String(4096), nullable=False, unique=True)
    media_type: Mapped[str] = mapped_column(String(64), nullable=False)
    label: Mapped[str] = mapped_column(String(512), nullable=False)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (Index("ix_library_images_media_type_id", "media_type", "id"),)


class OptimizedMarker(Base):
    __tablename__ = "optimized_markers"

    item_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("library_images.id", ondelete="CASCADE"), primary_key=True
    )
    optimized_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    original_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    compressed_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    quality: Mapped[int] = mapped_column(Integer, nullable=False)


class CompressionStats(Base):
    __tablename__ = "compression_stats"

    key: Mapped[str] = mapped_column(String(64), primary_key=True, default=COMPRESSION_STATS_KEY)
    count: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    original_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    compressed_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )


class BulkJob(Base):
    __tablename__ = "bulk_jobs"

    key: Mapped[str] = mapped_column(String(64), primary_key=True, default=BULK_JOB_KEY)
    job_id: Mapped[str] = mapped_column(String(36), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    pending: Mapped[list[int]] = mapped_column(JSON(none_as_null=True), nullable=False, default=list)
    already_complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    current_item_label: Mapped[str | None] = mapped_column(String(512), nullable=True)
    last_error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    last_error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class ItemFailure(Base):
    __tablename__ = "item_failures"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String(36), nullable=False)
    item_id: Mapped[int] = mapped_column(Integer, nullable=False)
    outcome: Mapped[ItemOutcome] = mapped_column(
        SAEnum(ItemOutcome, native_enum=False, values_callable=_enum_values),
        nullable=False,
    )
    error_code: Mapped[str] = mapped_column(String(64), nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (Index("ix_item_failures_job_id", "job_id", "id"),)


class JobLock(Base):
    __tablename__ = "job_locks"

    lock_key: Mapped[str] = mapped_column(String(100), primary_key=True)
    owner_token: Mapped[str] = mapped_column(String(36), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("ix_job_locks_expires_at", "expires_at"),)


class TransientNotice(Base):
    __tablename__ = "transient_notices"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON(none_as_null=True), nullable=False, default=dict)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class SchemaMigration(Base):
    __tablename__ = "schema_migrations"

    version: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    applied_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
