"""Pydantic schemas for request/response validation."""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from stemflow.db.models import FileStatus

SoundSource = Literal["all", "vocals", "drums", "bass", "piano", "guitar"]


def normalize_optional(value: str | None) -> str | None:
    """Treat blank strings from form posts as missing."""
    if value is None:
        return None
    value = value.strip()
    return value or None


# ============== File Schemas ==============


class UploadedFileResponse(BaseModel):
    """An uploaded file row."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: Optional[str] = None
    batch_id: str
    tool_type: str
    original_file_name: str
    file_size: int
    mime_type: str
    status: FileStatus
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class UploadResponse(BaseModel):
    """Response after uploading a batch of files."""

    batch_id: str
    files: list[UploadedFileResponse]


# ============== Processing Schemas ==============


class ProcessRequest(BaseModel):
    """Request to start processing one file or a whole batch."""

    file_id: Optional[int] = Field(None, description="Single file to process")
    batch_id: Optional[str] = Field(None, description="Process every file of this batch")
    tool_code: Optional[str] = Field(
        None, description="Tool selection; defaults to the tool the file was uploaded for"
    )
    sound_source: Optional[SoundSource] = Field(
        None, description="Stem to isolate (audio splitter only)"
    )

    @field_validator("tool_code", "sound_source", "batch_id", mode="before")
    @classmethod
    def blank_to_none(cls, v: str | None) -> str | None:
        return normalize_optional(v)

    @model_validator(mode="after")
    def require_target(self) -> "ProcessRequest":
        if self.file_id is None and self.batch_id is None:
            raise ValueError("Either file_id or batch_id is required")
        return self


class ProcessResponse(BaseModel):
    """Response after enqueueing files for processing."""

    status: str = "queued"
    batch_id: Optional[str] = None
    file_ids: list[int]


class TaskInfo(BaseModel):
    """Engine task attempt of a file."""

    model_config = ConfigDict(from_attributes=True)

    engine_task_id: str
    task_status: str
    task_message: Optional[str] = None
    progress: Optional[float] = None
    processing_time_ms: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ResultDetailResponse(BaseModel):
    """One stored output stem."""

    id: int
    result_type: str
    storage_key: str
    file_size: int
    mime_type: str
    created_at: Optional[datetime] = None
    download_url: str


# ============== Status Schemas ==============


class FileStatusResponse(BaseModel):
    """Status of one file."""

    file_id: int
    status: str
    error_message: Optional[str] = None
    original_file_name: Optional[str] = None


class BatchStatusResponse(BaseModel):
    """Status of every file in a batch plus the aggregate."""

    batch_id: str
    overall_status: str
    files: list[FileStatusResponse]
    total: int
    processed: int
    failed: int


class FileResultsResponse(BaseModel):
    """A file with its task and stored results."""

    file: UploadedFileResponse
    task: Optional[TaskInfo] = None
    results: list[ResultDetailResponse] = []


class BatchResultsResponse(BaseModel):
    """Results of every file in a batch."""

    batch_id: str
    overall_status: str
    files: list[FileResultsResponse]


class UserFilesResponse(BaseModel):
    """Paginated list of a user's files."""

    files: list[FileResultsResponse]
    total: int
    page: int
    page_size: int
    total_pages: int


# ============== Usage Schemas ==============


class UsageCheckRequest(BaseModel):
    """Request to check the remaining daily allotment."""

    tool_code: str = Field(..., min_length=1, max_length=50)
    fingerprint: Optional[str] = None
    user_id: Optional[str] = None

    @field_validator("fingerprint", "user_id", mode="before")
    @classmethod
    def blank_to_none(cls, v: str | None) -> str | None:
        return normalize_optional(v)


class UsageCheckResponse(BaseModel):
    """Remaining daily allotment."""

    allowed: bool
    remaining: int
    limit: int
    message: Optional[str] = None


# ============== Health & Misc Schemas ==============


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str
    redis: str
    storage: str
    engine: str


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str
    detail: Optional[str] = None
