"""Database models for the separation job service."""

import enum
from datetime import date, datetime
from typing import Optional

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stemflow.db.session import Base


class FileStatus(str, enum.Enum):
    """Lifecycle status of an uploaded file."""

    UPLOADED = "uploaded"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (FileStatus.PROCESSED, FileStatus.FAILED)


class EngineTaskStatus(str, enum.Enum):
    """Task status vocabulary reported by the separation engine."""

    SUBMITTED = "submitted"
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_ENGINE_STATUSES = {EngineTaskStatus.COMPLETED.value, EngineTaskStatus.FAILED.value}

# Legal UploadedFile transitions; terminal states have no outgoing edge.
FILE_TRANSITIONS: dict[FileStatus, set[FileStatus]] = {
    FileStatus.UPLOADED: {FileStatus.PROCESSING},
    FileStatus.PROCESSING: {FileStatus.PROCESSED, FileStatus.FAILED},
    FileStatus.PROCESSED: set(),
    FileStatus.FAILED: set(),
}


class UploadedFile(Base):
    """One audio file submitted by a user or an anonymous browser."""

    __tablename__ = "upload_files"
    __table_args__ = (
        CheckConstraint(
            "user_id IS NOT NULL OR fingerprint IS NOT NULL",
            name="ck_upload_files_owner",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    fingerprint: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    batch_id: Mapped[str] = mapped_column(String(64), index=True)
    tool_type: Mapped[str] = mapped_column(String(50))

    # Storage
    storage_key: Mapped[str] = mapped_column(Text)
    original_file_name: Mapped[str] = mapped_column(String(255))
    file_size: Mapped[int] = mapped_column(BigInteger)
    mime_type: Mapped[str] = mapped_column(String(100))

    status: Mapped[FileStatus] = mapped_column(
        Enum(FileStatus, values_callable=lambda e: [m.value for m in e]),
        default=FileStatus.UPLOADED,
        index=True,
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    # Relationships
    task: Mapped[Optional["ProcessingTask"]] = relationship(
        "ProcessingTask", back_populates="upload_file", uselist=False
    )
    results: Mapped[list["ResultDetail"]] = relationship(
        "ResultDetail", back_populates="upload_file", order_by="ResultDetail.id"
    )

    @property
    def identity(self) -> Optional[str]:
        """Usage identity of the owner; a user id wins over a fingerprint."""
        return self.user_id or self.fingerprint


class ProcessingTask(Base):
    """The single engine-side task attempt for an uploaded file."""

    __tablename__ = "processing_tasks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    upload_file_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("upload_files.id", ondelete="CASCADE"), unique=True, index=True
    )
    engine_task_id: Mapped[str] = mapped_column(String(100), index=True)
    task_status: Mapped[str] = mapped_column(String(20))
    task_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    progress: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    processing_time_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    upload_file: Mapped["UploadedFile"] = relationship("UploadedFile", back_populates="task")

    @property
    def is_terminal(self) -> bool:
        return self.task_status in TERMINAL_ENGINE_STATUSES


class ResultDetail(Base):
    """One stored output stem of a completed task."""

    __tablename__ = "processing_result_details"
    __table_args__ = (
        UniqueConstraint("upload_file_id", "result_type", name="uq_result_details_file_type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    upload_file_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("upload_files.id", ondelete="CASCADE"), index=True
    )
    result_type: Mapped[str] = mapped_column(String(255))  # e.g. "vocals.mp3"
    storage_key: Mapped[str] = mapped_column(Text)
    file_size: Mapped[int] = mapped_column(BigInteger)
    mime_type: Mapped[str] = mapped_column(String(100))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    upload_file: Mapped["UploadedFile"] = relationship("UploadedFile", back_populates="results")


class UsageCounter(Base):
    """Daily usage allotment for one (identity, tool) pair."""

    __tablename__ = "usage_counters"
    __table_args__ = (
        UniqueConstraint("identity", "tool_code", name="uq_usage_counters_identity_tool"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    identity: Mapped[str] = mapped_column(String(255))  # user id or fingerprint
    tool_code: Mapped[str] = mapped_column(String(50))
    daily_limit: Mapped[int] = mapped_column(Integer)
    used_count: Mapped[int] = mapped_column(Integer, default=0)
    reset_date: Mapped[date] = mapped_column(Date)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
