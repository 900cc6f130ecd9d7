from typing import Dict, Optional
from sqlalchemy import select, insert, update, delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from courier_dispatch.application.interfaces import KeyValueStore
from courier_dispatch.infrastructure.db_schema import job_stages_tbl


class InMemoryKeyValueStore(KeyValueStore):
    """Simple in-memory key/value store."""

    def __init__(self) -> None:
        self._store: Dict[str, str] = {}

    async def get(self, key: str) -> Optional[str]:
        return self._store.get(key)

    async def set(self, key: str, value: str) -> None:
        self._store[key] = value

    async def delete(self, key: str) -> None:
        self._store.pop(key, None)

    def __contains__(self, key: str) -> bool:
        return key in self._store

    def __len__(self) -> int:
        return len(self._store)


class SQLAlchemyKeyValueStore(KeyValueStore):
    """Долговременное хранилище: стадия доставки переживает перезапуск"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get(self, key: str) -> Optional[str]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(job_stages_tbl.c.value).where(job_stages_tbl.c.key == key)
            )
            row = result.fetchone()
            return row.value if row else None

    async def set(self, key: str, value: str) -> None:
        async with self._session_factory() as session:
            try:
                result = await session.execute(
                    update(job_stages_tbl)
                    .where(job_stages_tbl.c.key == key)
                    .values(value=value)
                )
                if result.rowcount == 0:
                    await session.execute(insert(job_stages_tbl).values(key=key, value=value))
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def delete(self, key: str) -> None:
        async with self._session_factory() as session:
            await session.execute(delete(job_stages_tbl).where(job_stages_tbl.c.key == key))
            await session.commit()
