from typing import AsyncGenerator
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase

from mailrelay.core.config import settings


class Base(DeclarativeBase):
    pass


def build_engine(database_url: str = settings.database_url) -> AsyncEngine:
    return create_async_engine(
        database_url,
        echo=False,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_pre_ping=True,
        pool_recycle=3600
    )


def build_session_maker(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Confirm callbacks and sweeps read attributes after commit.
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


engine = build_engine()
async_session_maker = build_session_maker(engine)


async def init_models(bind: AsyncEngine) -> None:
    """Create any missing tables. Deployed schemas are managed by Alembic."""
    import mailrelay.models  # noqa: F401

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with async_session_maker() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
