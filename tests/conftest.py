"""Pytest configuration and fixtures."""

import asyncio
from typing import AsyncGenerator, Awaitable, Callable, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from stemflow.api.audio import get_dispatcher
from stemflow.db import models  # noqa: F401
from stemflow.db.session import Base, get_db
from stemflow.main import app
from stemflow.middleware.rate_limit import limiter
from stemflow.services.engine_client import PollResult, SubmitResult, get_engine_client
from stemflow.services.file_service import file_service
from stemflow.services.orchestrator import Orchestrator
from stemflow.services.storage import StorageService, get_storage
from stemflow.services.usage_limiter import UsageLimiter, get_usage_limiter


class FakeStorage(StorageService):
    """In-memory blob storage."""

    def __init__(self):
        super().__init__()
        self.blobs: dict[str, bytes] = {}
        self.content_types: dict[str, str] = {}

    def put(self, key: str, data: bytes, mime_type: str) -> str:
        self.blobs[key] = data
        self.content_types[key] = mime_type
        return key

    def get(self, key: str) -> bytes:
        return self.blobs[key]

    def delete(self, key: str):
        self.blobs.pop(key, None)

    def generate_presigned_url(self, key: str, expires_in: int | None = None) -> str:
        return f"https://storage.test/{key}?expires={expires_in or 3600}"

    def health_check(self) -> bool:
        return True


class FakeEngine:
    """
    Scripted separation engine.

    `poll_steps` is consumed one entry per poll and the last entry repeats.
    Entries are PollResult instances or exceptions to raise. `outputs` maps
    an output filename to its bytes or to an exception to raise.
    `on_fetch`, when set, is awaited with each filename before it is served.
    """

    def __init__(self):
        self.submit_status = "queued"
        self.submit_message = "Task queued"
        self.submit_error: Optional[Exception] = None
        self.poll_steps: list = [completed(["vocals.mp3", "no_vocals.mp3"])]
        self.outputs: dict = {}
        self.healthy = True
        self.on_fetch: Optional[Callable[[str], Awaitable[None]]] = None

        self.submitted: list[dict] = []
        self.polls: list[str] = []
        self.fetches: list[tuple[str, str]] = []

    async def submit(self, file_bytes, filename, mime_type, model, stems, sound_source=None):
        self.submitted.append(
            {
                "file_bytes": file_bytes,
                "filename": filename,
                "mime_type": mime_type,
                "model": model,
                "stems": stems,
                "sound_source": sound_source,
            }
        )
        if self.submit_error is not None:
            raise self.submit_error
        return SubmitResult(
            engine_task_id=f"task-{len(self.submitted)}",
            status=self.submit_status,
            message=self.submit_message,
        )

    async def poll(self, engine_task_id):
        self.polls.append(engine_task_id)
        step = self.poll_steps.pop(0) if len(self.poll_steps) > 1 else self.poll_steps[0]
        if isinstance(step, Exception):
            raise step
        return step

    async def fetch_output(self, engine_task_id, filename):
        self.fetches.append((engine_task_id, filename))
        if self.on_fetch is not None:
            await self.on_fetch(filename)
        data = self.outputs.get(filename, f"stem:{filename}".encode())
        if isinstance(data, Exception):
            raise data
        return data

    async def health(self) -> bool:
        return self.healthy


def running(progress: float = 0.5) -> PollResult:
    return PollResult(status="running", message="Separating", progress=progress)


def completed(output_files: list[str]) -> PollResult:
    return PollResult(
        status="completed",
        message="Done",
        progress=1.0,
        output_files=output_files,
        created_at="2026-10-19T10:00:00Z",
        completed_at="2026-10-19T10:01:30.500000Z",
    )


async def no_sleep(seconds: float):
    await asyncio.sleep(0)


@pytest_asyncio.fixture
async def test_engine(tmp_path):
    """Create a test database engine on a throwaway SQLite file."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_maker(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture
def fake_storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def fake_engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def usage() -> UsageLimiter:
    return UsageLimiter(anonymous_limit=1, registered_limit=3)


@pytest.fixture
def orchestrator(session_maker, fake_engine, fake_storage, usage) -> Orchestrator:
    return Orchestrator(
        session_maker=session_maker,
        engine=fake_engine,
        storage=fake_storage,
        usage_limiter=usage,
        sleep=no_sleep,
        poll_interval=0,
        max_poll_attempts=5,
        max_consecutive_poll_failures=3,
    )


@pytest.fixture
def make_file(session_maker, fake_storage):
    """Factory creating an uploaded file row and its source blob."""

    async def _make_file(
        tool_type: str = "vocal_remover",
        fingerprint: Optional[str] = "fp-test",
        user_id: Optional[str] = None,
        batch_id: Optional[str] = None,
        name: str = "song.mp3",
    ):
        async with session_maker() as db:
            uploaded = await file_service.create_uploaded_file(
                db,
                fake_storage,
                b"ID3 fake audio",
                original_file_name=name,
                mime_type="audio/mpeg",
                tool_type=tool_type,
                user_id=user_id,
                fingerprint=fingerprint,
                batch_id=batch_id,
            )
            await db.commit()
        return uploaded

    return _make_file


@pytest.fixture
def dispatched() -> list[tuple]:
    """Calls made to the worker dispatcher."""
    return []


@pytest_asyncio.fixture
async def client(
    session_maker, fake_storage, fake_engine, usage, dispatched
) -> AsyncGenerator[AsyncClient, None]:
    """Create a test HTTP client."""

    async def override_get_db():
        async with session_maker() as session:
            yield session

    def dispatch(file_ids, tool_code=None, sound_source=None):
        dispatched.append((file_ids, tool_code, sound_source))
        return "celery-task-id"

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_storage] = lambda: fake_storage
    app.dependency_overrides[get_engine_client] = lambda: fake_engine
    app.dependency_overrides[get_usage_limiter] = lambda: usage
    app.dependency_overrides[get_dispatcher] = lambda: dispatch
    limiter.reset()

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
