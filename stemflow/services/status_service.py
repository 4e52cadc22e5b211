"""Status and result aggregation for files and batches."""

from typing import Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from stemflow.db.models import FileStatus, UploadedFile
from stemflow.schemas.schemas import (
    BatchResultsResponse,
    BatchStatusResponse,
    FileResultsResponse,
    FileStatusResponse,
    ResultDetailResponse,
    TaskInfo,
    UploadedFileResponse,
)
from stemflow.services.file_service import file_service
from stemflow.services.storage import StorageService
from stemflow.services.task_store import task_store


def aggregate_batch_status(statuses: Iterable[FileStatus]) -> FileStatus:
    """
    Reduce the statuses of a batch's files to one.

    All processed -> processed; otherwise any failed -> failed; otherwise any
    processing -> processing; otherwise uploaded.
    """
    statuses = [FileStatus(s) for s in statuses]
    if statuses and all(s == FileStatus.PROCESSED for s in statuses):
        return FileStatus.PROCESSED
    if any(s == FileStatus.FAILED for s in statuses):
        return FileStatus.FAILED
    if any(s == FileStatus.PROCESSING for s in statuses):
        return FileStatus.PROCESSING
    return FileStatus.UPLOADED


def file_status_response(uploaded: UploadedFile) -> FileStatusResponse:
    return FileStatusResponse(
        file_id=uploaded.id,
        status=uploaded.status.value,
        error_message=uploaded.error_message,
        original_file_name=uploaded.original_file_name,
    )


def result_response(detail, storage: StorageService) -> ResultDetailResponse:
    return ResultDetailResponse(
        id=detail.id,
        result_type=detail.result_type,
        storage_key=detail.storage_key,
        file_size=detail.file_size,
        mime_type=detail.mime_type,
        created_at=detail.created_at,
        download_url=storage.generate_presigned_url(detail.storage_key),
    )


def file_results_response(uploaded: UploadedFile, storage: StorageService) -> FileResultsResponse:
    """Build the results view of a file loaded with its task and results."""
    task = uploaded.task
    return FileResultsResponse(
        file=UploadedFileResponse.model_validate(uploaded),
        task=TaskInfo.model_validate(task) if task is not None else None,
        results=[result_response(d, storage) for d in uploaded.results],
    )


class StatusService:
    """Read-only views used by the UI's polling endpoints."""

    async def get_file_status(
        self, db: AsyncSession, file_id: int
    ) -> Optional[FileStatusResponse]:
        uploaded = await file_service.get_file(db, file_id)
        if uploaded is None:
            return None
        return file_status_response(uploaded)

    async def get_batch_status(
        self, db: AsyncSession, batch_id: str
    ) -> Optional[BatchStatusResponse]:
        files = await file_service.get_files_by_batch(db, batch_id)
        if not files:
            return None

        return BatchStatusResponse(
            batch_id=batch_id,
            overall_status=aggregate_batch_status(f.status for f in files).value,
            files=[file_status_response(f) for f in files],
            total=len(files),
            processed=sum(1 for f in files if f.status == FileStatus.PROCESSED),
            failed=sum(1 for f in files if f.status == FileStatus.FAILED),
        )

    async def get_file_results(
        self, db: AsyncSession, storage: StorageService, file_id: int
    ) -> Optional[FileResultsResponse]:
        uploaded = await file_service.get_file(db, file_id, include_details=True)
        if uploaded is None:
            return None
        return file_results_response(uploaded, storage)

    async def get_batch_results(
        self, db: AsyncSession, storage: StorageService, batch_id: str
    ) -> Optional[BatchResultsResponse]:
        files = await task_store.get_batch_overview(db, batch_id)
        if not files:
            return None
        return BatchResultsResponse(
            batch_id=batch_id,
            overall_status=aggregate_batch_status(f.status for f in files).value,
            files=[file_results_response(f, storage) for f in files],
        )


# Singleton instance
status_service = StatusService()
