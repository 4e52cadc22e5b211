"""Persistence for separated output stems."""

import asyncio
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from stemflow.db.models import ResultDetail
from stemflow.db.session import insert_ignoring_conflict
from stemflow.services.storage import StorageService

logger = logging.getLogger(__name__)


class ResultStore:
    """One blob plus one ResultDetail row per output file. Rows are never updated."""

    async def save_result(
        self,
        db: AsyncSession,
        storage: StorageService,
        file_id: int,
        result_type: str,
        data: bytes,
        mime_type: str,
    ) -> ResultDetail:
        """
        Upload an output blob and record it.

        A file has at most one row per result type. If the row already exists
        (another run of the same task stored it first), that row is returned
        and no second one is written; the blob key is the same either way.
        """
        key = storage.result_key(file_id, result_type)
        await asyncio.to_thread(storage.put, key, data, mime_type)
        logger.info(f"Processing result uploaded to storage: {key}")

        inserted = await db.execute(
            insert_ignoring_conflict(
                db,
                ResultDetail,
                ["upload_file_id", "result_type"],
                {
                    "upload_file_id": file_id,
                    "result_type": result_type,
                    "storage_key": key,
                    "file_size": len(data),
                    "mime_type": mime_type,
                },
            )
        )
        if inserted.rowcount != 1:
            logger.info(f"Result {result_type} of file {file_id} was already stored")

        result = await db.execute(
            select(ResultDetail)
            .where(
                ResultDetail.upload_file_id == file_id,
                ResultDetail.result_type == result_type,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    async def list_results(self, db: AsyncSession, file_id: int) -> list[ResultDetail]:
        """Get all results of a file in creation order."""
        result = await db.execute(
            select(ResultDetail)
            .where(ResultDetail.upload_file_id == file_id)
            .order_by(ResultDetail.created_at, ResultDetail.id)
        )
        return list(result.scalars().all())


# Singleton instance
result_store = ResultStore()
