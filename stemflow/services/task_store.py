"""Persistence for engine task attempts."""

from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from stemflow.db.models import TERMINAL_ENGINE_STATUSES, ProcessingTask, UploadedFile


class TaskStore:
    """Create, update and read ProcessingTask rows. No business rules live here."""

    async def create_task(
        self,
        db: AsyncSession,
        file_id: int,
        engine_task_id: str,
        task_status: str,
        task_message: Optional[str] = None,
    ) -> ProcessingTask:
        """Record the engine task created for a file."""
        task = ProcessingTask(
            upload_file_id=file_id,
            engine_task_id=engine_task_id,
            task_status=task_status,
            task_message=task_message,
        )
        db.add(task)
        await db.flush()
        await db.refresh(task)
        return task

    async def update_task(
        self,
        db: AsyncSession,
        file_id: int,
        task_status: str,
        task_message: Optional[str] = None,
        progress: Optional[float] = None,
        processing_time_ms: Optional[int] = None,
    ) -> bool:
        """
        Update a file's task in place.

        The engine task id is never touched, and a task whose stored status is
        already terminal is left as it is.

        Returns:
            True if a row was updated
        """
        update_data = {"task_status": task_status}

        if task_message is not None:
            update_data["task_message"] = task_message
        if progress is not None:
            update_data["progress"] = progress
        if processing_time_ms is not None:
            update_data["processing_time_ms"] = processing_time_ms

        result = await db.execute(
            update(ProcessingTask)
            .where(
                ProcessingTask.upload_file_id == file_id,
                ProcessingTask.task_status.not_in(TERMINAL_ENGINE_STATUSES),
            )
            .values(**update_data)
        )
        return result.rowcount == 1

    async def set_processing_time(self, db: AsyncSession, file_id: int, processing_time_ms: int):
        """Record the engine-side duration once the task has completed."""
        await db.execute(
            update(ProcessingTask)
            .where(ProcessingTask.upload_file_id == file_id)
            .values(processing_time_ms=processing_time_ms)
        )

    async def touch(self, db: AsyncSession, file_id: int):
        """Mark a file's task as still being worked on."""
        await db.execute(
            update(ProcessingTask)
            .where(ProcessingTask.upload_file_id == file_id)
            .values(updated_at=func.now())
        )

    async def get_task_by_file(self, db: AsyncSession, file_id: int) -> Optional[ProcessingTask]:
        """Get the task of a file."""
        result = await db.execute(
            select(ProcessingTask).where(ProcessingTask.upload_file_id == file_id)
        )
        return result.scalar_one_or_none()

    async def get_batch_overview(self, db: AsyncSession, batch_id: str) -> list[UploadedFile]:
        """Get every file of a batch with its task and results loaded."""
        result = await db.execute(
            select(UploadedFile)
            .where(UploadedFile.batch_id == batch_id)
            .options(selectinload(UploadedFile.task), selectinload(UploadedFile.results))
            .order_by(UploadedFile.created_at, UploadedFile.id)
        )
        return list(result.scalars().all())


# Singleton instance
task_store = TaskStore()
