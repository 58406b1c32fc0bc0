"""Async SQLAlchemy engine and session creation.

Engines are built explicitly by whichever process owns them (API lifespan,
worker process, reporter run) and handed to components as a session factory.
"""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from atelier.db.base import Base


def create_db_engine(url: str) -> AsyncEngine:
    """Create an async SQLAlchemy engine."""
    engine_kwargs: dict = {"echo": False}
    # SQLite does not support pool_size / max_overflow
    if "sqlite" not in url:
        engine_kwargs.update(pool_size=10, max_overflow=20)
    return create_async_engine(url, **engine_kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create an async session factory."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_tables(engine: AsyncEngine) -> None:
    """Create all tables that do not exist yet."""
    import atelier.db.models  # noqa: F401  register all ORM models

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
