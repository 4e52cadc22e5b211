"""Health check and system info routes."""

import asyncio
import logging

import redis
from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from stemflow.config import get_settings
from stemflow.db.session import get_db
from stemflow.schemas.schemas import HealthResponse
from stemflow.services.engine_client import EngineClient, get_engine_client
from stemflow.services.storage import StorageService, get_storage

logger = logging.getLogger(__name__)

router = APIRouter(tags=["System"])

settings = get_settings()

VERSION = "1.0.0"


def _ping_redis() -> bool:
    try:
        r = redis.from_url(settings.redis_url, socket_connect_timeout=2)
        return bool(r.ping())
    except redis.RedisError:
        return False


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check the health status of the service and its dependencies.",
)
async def health_check(
    db: AsyncSession = Depends(get_db),
    storage: StorageService = Depends(get_storage),
    engine: EngineClient = Depends(get_engine_client),
):
    """
    Health check endpoint.

    Returns the status of:
    - Database connection
    - Redis connection (Celery broker)
    - Object storage connection
    - Separation engine
    """
    db_status = "ok"
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.warning(f"Database health check failed: {e}")
        db_status = "error"

    redis_status = "ok" if await asyncio.to_thread(_ping_redis) else "error"
    storage_status = "ok" if await asyncio.to_thread(storage.health_check) else "error"
    engine_status = "ok" if await engine.health() else "error"

    overall_status = "healthy"
    if any(s == "error" for s in [db_status, redis_status, storage_status, engine_status]):
        overall_status = "degraded"

    return HealthResponse(
        status=overall_status,
        version=VERSION,
        database=db_status,
        redis=redis_status,
        storage=storage_status,
        engine=engine_status,
    )


@router.get(
    "/v1/info",
    summary="Service information",
    description="Get general information about the service.",
)
async def service_info():
    """Get service information."""
    return {
        "name": settings.app_name,
        "version": VERSION,
        "environment": settings.app_env,
        "supported_tools": sorted(settings.processing_tools),
        "max_files_per_batch": settings.max_files_per_batch,
        "daily_limits": {
            "anonymous": settings.anonymous_daily_limit,
            "registered": settings.registered_daily_limit,
        },
        "documentation": "/docs",
        "redoc": "/redoc",
    }
