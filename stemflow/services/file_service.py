"""Uploaded file management service."""

import asyncio
import logging
from typing import Optional
from uuid import uuid4

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from stemflow.db.models import FILE_TRANSITIONS, FileStatus, UploadedFile
from stemflow.services.storage import StorageService

logger = logging.getLogger(__name__)


class InvalidTransition(Exception):
    """Raised when a file status update would move backwards."""


class FileService:
    """Service for uploaded file rows and their source blobs."""

    async def create_uploaded_file(
        self,
        db: AsyncSession,
        storage: StorageService,
        data: bytes,
        original_file_name: str,
        mime_type: str,
        tool_type: str,
        user_id: Optional[str] = None,
        fingerprint: Optional[str] = None,
        batch_id: Optional[str] = None,
    ) -> UploadedFile:
        """
        Store the source audio and create its row in `uploaded` status.

        Args:
            db: Database session
            storage: Blob storage the audio is written to
            data: Raw audio bytes
            original_file_name: Name as sent by the client
            mime_type: Content type of the upload
            tool_type: Processing tool selected by the client
            user_id: Registered owner, if any
            fingerprint: Anonymous browser fingerprint, if any
            batch_id: Existing batch to join; a new one is generated otherwise

        Returns:
            The flushed UploadedFile
        """
        if not user_id and not fingerprint:
            raise ValueError("Either user_id or fingerprint is required")

        key = storage.upload_key(tool_type, original_file_name, mime_type)
        await asyncio.to_thread(storage.put, key, data, mime_type)
        logger.info(f"File uploaded to storage: {key}")

        uploaded = UploadedFile(
            user_id=user_id,
            fingerprint=fingerprint,
            batch_id=batch_id or str(uuid4()),
            tool_type=tool_type,
            storage_key=key,
            original_file_name=original_file_name,
            file_size=len(data),
            mime_type=mime_type,
            status=FileStatus.UPLOADED,
        )
        db.add(uploaded)
        await db.flush()
        await db.refresh(uploaded)
        return uploaded

    async def get_file(
        self,
        db: AsyncSession,
        file_id: int,
        include_details: bool = False,
    ) -> Optional[UploadedFile]:
        """Get a file by id, optionally with its task and results."""
        query = select(UploadedFile).where(UploadedFile.id == file_id)
        if include_details:
            query = query.options(
                selectinload(UploadedFile.task), selectinload(UploadedFile.results)
            )
        result = await db.execute(query)
        return result.scalar_one_or_none()

    async def get_files_by_batch(
        self,
        db: AsyncSession,
        batch_id: str,
        include_details: bool = False,
    ) -> list[UploadedFile]:
        """Get all files of a batch in upload order."""
        query = (
            select(UploadedFile)
            .where(UploadedFile.batch_id == batch_id)
            .order_by(UploadedFile.created_at, UploadedFile.id)
        )
        if include_details:
            query = query.options(
                selectinload(UploadedFile.task), selectinload(UploadedFile.results)
            )
        result = await db.execute(query)
        return list(result.scalars().all())

    async def list_user_files(
        self,
        db: AsyncSession,
        user_id: str,
        tool_type: Optional[str] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[UploadedFile], int]:
        """
        List a registered user's files, newest first.

        Returns:
            Tuple of (files, total_count)
        """
        query = select(UploadedFile).where(UploadedFile.user_id == user_id)
        if tool_type:
            query = query.where(UploadedFile.tool_type == tool_type)

        count_query = select(func.count()).select_from(query.subquery())
        total = (await db.execute(count_query)).scalar() or 0

        query = (
            query.options(selectinload(UploadedFile.task), selectinload(UploadedFile.results))
            .order_by(UploadedFile.created_at.desc(), UploadedFile.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        result = await db.execute(query)
        return list(result.scalars().all()), total

    async def claim_for_processing(self, db: AsyncSession, file_id: int) -> bool:
        """
        Move a file from `uploaded` to `processing` in one conditional UPDATE.

        Returns False when the file is missing or not in `uploaded` status, so
        two concurrent callers can never both claim the same file.
        """
        result = await db.execute(
            update(UploadedFile)
            .where(UploadedFile.id == file_id, UploadedFile.status == FileStatus.UPLOADED)
            .values(status=FileStatus.PROCESSING, error_message=None)
        )
        return result.rowcount == 1

    async def count_in_flight(
        self,
        db: AsyncSession,
        user_id: Optional[str],
        fingerprint: Optional[str],
        tool_type: str,
        exclude_file_id: Optional[int] = None,
    ) -> int:
        """
        Count the owner's files of a tool that are currently processing.

        The owner is matched the way usage is charged: by user id when one is
        set, otherwise by fingerprint among files without a user id.
        """
        query = select(func.count()).select_from(UploadedFile).where(
            UploadedFile.tool_type == tool_type,
            UploadedFile.status == FileStatus.PROCESSING,
        )
        if user_id:
            query = query.where(UploadedFile.user_id == user_id)
        else:
            query = query.where(
                UploadedFile.user_id.is_(None), UploadedFile.fingerprint == fingerprint
            )
        if exclude_file_id is not None:
            query = query.where(UploadedFile.id != exclude_file_id)
        return (await db.execute(query)).scalar() or 0

    async def update_file_status(
        self,
        db: AsyncSession,
        file_id: int,
        status: FileStatus,
        error_message: Optional[str] = None,
    ):
        """
        Set a file's status, allowing forward transitions only.

        Raises:
            InvalidTransition: the stored status cannot move to `status`.
        """
        allowed_from = [s for s, targets in FILE_TRANSITIONS.items() if status in targets]
        result = await db.execute(
            update(UploadedFile)
            .where(UploadedFile.id == file_id, UploadedFile.status.in_(allowed_from))
            .values(status=status, error_message=error_message)
        )
        if result.rowcount != 1:
            raise InvalidTransition(f"File {file_id} cannot move to {status.value}")


# Singleton instance
file_service = FileService()
