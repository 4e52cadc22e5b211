"""Celery worker configuration and tasks."""

import asyncio
import logging
from typing import Optional

from celery import Celery

from stemflow.config import get_settings

settings = get_settings()

logger = logging.getLogger(__name__)

# The six-stem model produces the most outputs per job.
MAX_OUTPUTS_PER_JOB = 6

# A batch task must outlive the polling ceiling plus submission and downloads.
_job_budget_seconds = int(
    settings.max_poll_attempts * settings.poll_interval_seconds
    + settings.engine_submit_timeout
    + MAX_OUTPUTS_PER_JOB * settings.engine_fetch_timeout
)

# Create Celery app
celery_app = Celery(
    "stemflow_worker",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=_job_budget_seconds + 300,
    task_soft_time_limit=_job_budget_seconds,
    worker_prefetch_multiplier=1,  # Fetch one task at a time
    task_acks_late=True,  # Ack after task completes
    task_reject_on_worker_lost=False,  # Lost batches are recovered by reconciliation
    task_default_queue="default",
    task_queues={
        "default": {"exchange": "default", "routing_key": "default"},
        "separation": {"exchange": "separation", "routing_key": "separation"},
    },
    task_routes={
        "stemflow.worker.process_batch": {"queue": "separation"},
        "stemflow.worker.reconcile_processing_files": {"queue": "default"},
    },
    beat_schedule={
        "reconcile-processing-files": {
            "task": "stemflow.worker.reconcile_processing_files",
            "schedule": settings.reconcile_interval_seconds,
        },
    },
)


@celery_app.task(name="stemflow.worker.process_batch")
def process_batch(
    file_ids: list[int],
    tool_code: Optional[str] = None,
    sound_source: Optional[str] = None,
) -> list[dict]:
    """
    Run the separation jobs of one or more files.

    Files are driven concurrently inside one event loop and the task returns
    when all of them are processed or failed. Not retried: a failed file
    stays failed, and an interrupted one is picked up by reconciliation.
    """
    from stemflow.db.session import create_session_maker
    from stemflow.services.orchestrator import build_orchestrator

    async def run():
        orchestrator = build_orchestrator(create_session_maker())
        return await orchestrator.process_batch(file_ids, tool_code, sound_source)

    results = asyncio.run(run())
    for result in results:
        if result.is_partial:
            logger.warning(
                f"File {result.file_id} is missing {len(result.missing)} of "
                f"{result.expected_count} outputs: {', '.join(result.missing)}"
            )
    return [result.to_dict() for result in results]


@celery_app.task(name="stemflow.worker.reconcile_processing_files")
def reconcile_processing_files(stale_after: Optional[float] = None) -> list[dict]:
    """Periodic task resuming files stuck in processing."""
    from stemflow.db.session import create_session_maker
    from stemflow.services.orchestrator import build_orchestrator

    async def run():
        orchestrator = build_orchestrator(create_session_maker())
        return await orchestrator.reconcile(stale_after)

    results = asyncio.run(run())
    logger.info(f"Reconciled {len(results)} file(s)")
    return [result.to_dict() for result in results]


def enqueue_processing(
    file_ids: list[int],
    tool_code: Optional[str] = None,
    sound_source: Optional[str] = None,
) -> str:
    """
    Enqueue a batch of files for processing.

    Returns:
        Celery task id
    """
    async_result = process_batch.apply_async(
        args=[file_ids, tool_code, sound_source],
        queue="separation",
    )
    logger.info(f"Enqueued files {file_ids} as task {async_result.id}")
    return async_result.id
