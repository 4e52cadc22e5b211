"""Database engine and session management."""

from typing import AsyncGenerator

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from stemflow.config import get_settings

settings = get_settings()


class Base(DeclarativeBase):
    """Declarative base for all models."""


engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_pre_ping=True,
)

async_session_maker = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)


def create_session_maker(database_url: str | None = None) -> async_sessionmaker[AsyncSession]:
    """
    Create a session factory on its own engine.

    Worker tasks run each batch inside a fresh event loop, so they cannot
    share the pooled connections of the module-level engine.
    """
    worker_engine = create_async_engine(
        database_url or settings.database_url,
        poolclass=NullPool,
    )
    return async_sessionmaker(worker_engine, class_=AsyncSession, expire_on_commit=False)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a database session."""
    async with async_session_maker() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def init_db():
    """Create tables that do not exist yet."""
    from stemflow.db import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def insert_ignoring_conflict(db: AsyncSession, model, index_elements: list[str], values: dict):
    """INSERT that silently skips rows clashing with a unique constraint."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(model)
    elif dialect == "sqlite":
        stmt = sqlite.insert(model)
    else:
        raise RuntimeError(f"Unsupported database dialect: {dialect}")
    return stmt.values(**values).on_conflict_do_nothing(index_elements=index_elements)
