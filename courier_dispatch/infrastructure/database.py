from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from courier_dispatch.config import settings
from courier_dispatch.infrastructure.db_schema import metadata


def create_engine(url: str = settings.DATABASE_URL) -> AsyncEngine:
    return create_async_engine(url)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False)


async def init_models(engine: AsyncEngine) -> None:
    """Создаём таблицы, если их ещё нет"""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
