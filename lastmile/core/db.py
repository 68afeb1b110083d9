from collections.abc import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from lastmile.core.config import settings


engine = create_async_engine(settings.database_url, pool_pre_ping=True)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def get_db() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as db:
        yield db


def make_session_factory(database_url: str | None = None):
    """
    Fresh engine + session factory for worker processes.
    Celery tasks run each job in its own event loop, so they cannot share `engine`.
    """
    worker_engine = create_async_engine(database_url or settings.database_url, pool_pre_ping=True)
    return worker_engine, async_sessionmaker(worker_engine, expire_on_commit=False, class_=AsyncSession)
