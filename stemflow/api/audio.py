"""Audio upload, processing and status API routes."""

import logging
from typing import Callable, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession

from stemflow.config import get_settings
from stemflow.db.models import FileStatus, UploadedFile
from stemflow.db.session import get_db
from stemflow.middleware.rate_limit import rate_limit_general, rate_limit_uploads
from stemflow.schemas.schemas import (
    BatchResultsResponse,
    BatchStatusResponse,
    FileResultsResponse,
    FileStatusResponse,
    ProcessRequest,
    ProcessResponse,
    UploadedFileResponse,
    UploadResponse,
    UsageCheckRequest,
    UsageCheckResponse,
    UserFilesResponse,
    normalize_optional,
)
from stemflow.services.file_service import file_service
from stemflow.services.status_service import file_results_response, status_service
from stemflow.services.storage import StorageService, get_storage
from stemflow.services.usage_limiter import (
    Identity,
    MissingIdentity,
    UsageLimiter,
    get_usage_limiter,
)
from stemflow.worker import enqueue_processing

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/audio", tags=["Audio"])

settings = get_settings()

ALLOWED_EXTENSIONS = {"mp3", "wav", "flac"}


def get_dispatcher() -> Callable[..., str]:
    """Dependency returning the function that hands files to the worker."""
    return enqueue_processing


def _resolve_identity(user_id: Optional[str], fingerprint: Optional[str]) -> Identity:
    try:
        return Identity.resolve(user_id, fingerprint)
    except MissingIdentity as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


def _require_processing_tool(tool_code: str):
    if tool_code not in settings.processing_tools:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unsupported tool: {tool_code}",
        )


def _is_supported_audio(upload: UploadFile) -> bool:
    if upload.content_type in settings.allowed_upload_types:
        return True
    name = upload.filename or ""
    return "." in name and name.rsplit(".", 1)[-1].lower() in ALLOWED_EXTENSIONS


async def _check_owner_allowance(
    db: AsyncSession, limiter: UsageLimiter, files: list[UploadedFile]
):
    """Reject with 403 unless each owner can still afford their files."""
    requested: dict[tuple[Identity, str], list[UploadedFile]] = {}
    for f in files:
        key = (Identity.resolve(f.user_id, f.fingerprint), f.tool_type)
        requested.setdefault(key, []).append(f)

    for (identity, tool_type), owned in requested.items():
        in_flight = await file_service.count_in_flight(
            db, owned[0].user_id, owned[0].fingerprint, tool_type
        )
        usage = await limiter.check(db, identity, tool_type, pending=in_flight)
        await db.commit()
        if usage.remaining < len(owned):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={
                    "message": usage.message
                    or (
                        f"You can only process {usage.remaining} more file(s) today. "
                        f"You tried to process {len(owned)} file(s)."
                    ),
                    "remaining": usage.remaining,
                    "limit": usage.limit,
                    "requested": len(owned),
                },
            )


@router.post(
    "/upload",
    response_model=UploadResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Upload audio files",
    description="Upload up to three audio files as one batch.",
)
@rate_limit_uploads()
async def upload_files(
    request: Request,
    files: list[UploadFile] = File(..., description="Audio files (mp3, wav, flac)"),
    tool_type: str = Form(..., description="Processing tool, e.g. vocal_remover"),
    fingerprint: Optional[str] = Form(None),
    user_id: Optional[str] = Form(None),
    batch_id: Optional[str] = Form(None),
    db: AsyncSession = Depends(get_db),
    storage: StorageService = Depends(get_storage),
    limiter: UsageLimiter = Depends(get_usage_limiter),
):
    """
    Upload a batch of audio files.

    - **files**: 1 to 3 audio files, each at most 100 MB
    - **tool_type**: tool the files will be processed with
    - **fingerprint** / **user_id**: caller identity; user id wins when both are set
    - **batch_id**: optional existing batch to add the files to
    """
    fingerprint = normalize_optional(fingerprint)
    user_id = normalize_optional(user_id)
    identity = _resolve_identity(user_id, fingerprint)
    _require_processing_tool(tool_type)

    if not files:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No files provided")
    if len(files) > settings.max_files_per_batch:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Maximum {settings.max_files_per_batch} files allowed",
        )

    usage = await limiter.check(db, identity, tool_type)
    await db.commit()
    if not usage.allowed:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "message": usage.message or "Usage limit exceeded",
                "remaining": usage.remaining,
                "limit": usage.limit,
            },
        )
    if usage.remaining < len(files):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "message": (
                    f"You can only upload {usage.remaining} more file(s) today. "
                    f"You tried to upload {len(files)} file(s)."
                ),
                "remaining": usage.remaining,
                "limit": usage.limit,
                "requested": len(files),
            },
        )

    # Validate everything before storing anything
    payloads = []
    for upload in files:
        if not _is_supported_audio(upload):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"File {upload.filename} is not a supported audio format",
            )
        data = await upload.read()
        if len(data) > settings.max_upload_size_bytes:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"File {upload.filename} exceeds maximum size of "
                f"{settings.max_upload_size_bytes // (1024 * 1024)}MB",
            )
        if not data:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"File {upload.filename} is empty",
            )
        payloads.append((upload, data))

    uploaded_files = []
    for upload, data in payloads:
        uploaded = await file_service.create_uploaded_file(
            db,
            storage,
            data,
            original_file_name=upload.filename or "audio",
            mime_type=upload.content_type or "audio/mpeg",
            tool_type=tool_type,
            user_id=user_id,
            fingerprint=fingerprint,
            batch_id=batch_id,
        )
        batch_id = uploaded.batch_id
        uploaded_files.append(uploaded)
    await db.commit()

    logger.info(f"Uploaded {len(uploaded_files)} file(s) in batch {batch_id}")
    return UploadResponse(
        batch_id=batch_id,
        files=[UploadedFileResponse.model_validate(f) for f in uploaded_files],
    )


@router.post(
    "/process",
    response_model=ProcessResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start processing",
    description="Hand one file or a whole batch to the separation worker.",
)
@rate_limit_uploads()
async def process_files(
    request: Request,
    body: ProcessRequest,
    db: AsyncSession = Depends(get_db),
    dispatch: Callable[..., str] = Depends(get_dispatcher),
    limiter: UsageLimiter = Depends(get_usage_limiter),
):
    """
    Start processing uploaded files.

    Only files in `uploaded` status are accepted; a file that is processing
    or already finished is rejected with 409 instead of being run again.
    The owner's remaining allotment, less the files already in flight, must
    cover every file being started; otherwise the request is rejected with 403.
    """
    if body.tool_code:
        _require_processing_tool(body.tool_code)

    if body.file_id is not None:
        uploaded = await file_service.get_file(db, body.file_id)
        if uploaded is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found")
        files = [uploaded]
    else:
        files = await file_service.get_files_by_batch(db, body.batch_id)
        if not files:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Batch not found")

    not_ready = [f.id for f in files if f.status != FileStatus.UPLOADED]
    if not_ready:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Files already processing or finished: {not_ready}",
        )

    await _check_owner_allowance(db, limiter, files)

    file_ids = [f.id for f in files]
    dispatch(file_ids, body.tool_code, body.sound_source)

    return ProcessResponse(batch_id=files[0].batch_id, file_ids=file_ids)


@router.get(
    "/status",
    response_model=FileStatusResponse | BatchStatusResponse,
    summary="Get processing status",
    description="Status of one file, or of every file in a batch plus the aggregate.",
)
@rate_limit_general()
async def get_status(
    request: Request,
    file_id: Optional[int] = Query(None),
    batch_id: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    """Get file or batch status."""
    if file_id is None and not batch_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Either file_id or batch_id is required",
        )

    if file_id is not None:
        file_status = await status_service.get_file_status(db, file_id)
        if file_status is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found")
        return file_status

    batch_status = await status_service.get_batch_status(db, batch_id)
    if batch_status is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Batch not found")
    return batch_status


@router.get(
    "/results",
    response_model=FileResultsResponse | BatchResultsResponse,
    summary="Get processing results",
    description="Stored stems of one file or of every file in a batch.",
)
@rate_limit_general()
async def get_results(
    request: Request,
    file_id: Optional[int] = Query(None),
    batch_id: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
    storage: StorageService = Depends(get_storage),
):
    """Get file or batch results with download URLs."""
    if file_id is None and not batch_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Either file_id or batch_id is required",
        )

    if file_id is not None:
        results = await status_service.get_file_results(db, storage, file_id)
        if results is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found")
        return results

    batch_results = await status_service.get_batch_results(db, storage, batch_id)
    if batch_results is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Batch not found")
    return batch_results


@router.post(
    "/limits/check",
    response_model=UsageCheckResponse,
    summary="Check usage limit",
    description="Remaining daily allotment of the caller for a tool.",
)
async def check_limit(
    body: UsageCheckRequest,
    db: AsyncSession = Depends(get_db),
    limiter: UsageLimiter = Depends(get_usage_limiter),
):
    """Check the caller's daily usage limit."""
    identity = _resolve_identity(body.user_id, body.fingerprint)
    usage = await limiter.check(db, identity, body.tool_code)
    await db.commit()
    return UsageCheckResponse(
        allowed=usage.allowed,
        remaining=usage.remaining,
        limit=usage.limit,
        message=usage.message,
    )


@router.get(
    "/files",
    response_model=UserFilesResponse,
    summary="List a user's files",
    description="Files of a registered user with their task status and results.",
)
async def list_user_files(
    user_id: str = Query(..., min_length=1),
    tool_type: Optional[str] = Query(None),
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(20, ge=1, le=100, description="Items per page"),
    db: AsyncSession = Depends(get_db),
    storage: StorageService = Depends(get_storage),
):
    """List all files uploaded by a registered user."""
    files, total = await file_service.list_user_files(db, user_id, tool_type, page, page_size)
    total_pages = (total + page_size - 1) // page_size

    return UserFilesResponse(
        files=[file_results_response(f, storage) for f in files],
        total=total,
        page=page,
        page_size=page_size,
        total_pages=total_pages,
    )
