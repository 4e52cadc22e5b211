"""Main FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from stemflow.api import audio, health
from stemflow.config import get_settings
from stemflow.db.session import engine, init_db
from stemflow.middleware.rate_limit import limiter
from stemflow.schemas.schemas import ErrorResponse
from stemflow.services.engine_client import engine_client

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables, report engine reachability, release the pool on exit."""
    logger.info(f"Starting Stemflow ({settings.app_env})...")

    try:
        await init_db()
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise
    logger.info("Database initialized")

    # Jobs are only dispatched by the worker, so an engine outage is not fatal here
    if await engine_client.health():
        logger.info(f"Separation engine reachable at {engine_client.base_url}")
    else:
        logger.warning(f"Separation engine at {engine_client.base_url} is not responding")

    logger.info(
        f"Polling every {settings.poll_interval_seconds:.0f}s, "
        f"at most {settings.max_poll_attempts} polls per job"
    )

    yield

    logger.info("Shutting down Stemflow...")
    await engine.dispose()


app = FastAPI(
    title="Stemflow",
    description="""
## Audio Separation Job API

Upload audio, run it through the separation engine and download the stems.

### Tools
- **vocal_remover**: vocals and accompaniment (2 stems)
- **audio_splitter**: 4 stems by default, or isolate one of
  vocals, drums, bass (2 stems), piano or guitar (6-stem model)

### Flow
1. `POST /v1/audio/upload` with up to 3 files
2. `POST /v1/audio/process` with the file or batch id
3. Poll `GET /v1/audio/status` until the file is `processed` or `failed`
4. `GET /v1/audio/results` for download URLs

### Usage Limits
Each identity (user id, or browser fingerprint for anonymous visitors) has a
daily allotment per tool. Only successfully processed files count against it.
    """,
    version=health.VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Turn anything a route did not handle into a JSON 500."""
    logger.exception(f"Unhandled exception on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error="Internal server error",
            detail=str(exc) if settings.debug else "An unexpected error occurred",
        ).model_dump(),
    )


app.include_router(health.router)
app.include_router(audio.router)


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with service info."""
    return {
        "service": "Stemflow",
        "version": health.VERSION,
        "api": audio.router.prefix,
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "stemflow.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )
