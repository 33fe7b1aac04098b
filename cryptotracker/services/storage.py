"""Durable string key-value storage.

Every service persists JSON-encoded strings under versioned keys
(``pl_snapshot_data_v2``, ``local_transactions:<user>``, ...). Readers must
tolerate a missing key. Writers get a bool back instead of an exception so
callers can decide how to degrade.
"""

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cryptotracker.models import KeyValueEntry

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set(self, key: str, value: str) -> bool:
        ...

    @abstractmethod
    async def remove(self, key: str) -> bool:
        ...

    @abstractmethod
    async def keys(self) -> List[str]:
        ...

    async def get_json(self, key: str, default: Any = None) -> Any:
        """Decode the JSON stored under ``key``; ``default`` when absent or unreadable."""
        raw = await self.get(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except ValueError as e:
            logger.warning(f"Discarding undecodable value for {key}: {e}")
            return default

    async def set_json(self, key: str, value: Any) -> bool:
        return await self.set(key, json.dumps(value, default=str))


class MemoryKeyValueStore(KeyValueStore):
    """Process-local store, used for tests and ``storage_backend=memory``."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> bool:
        self._data[key] = value
        return True

    async def remove(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    async def keys(self) -> List[str]:
        return sorted(self._data)


class SQLKeyValueStore(KeyValueStore):
    """Store backed by the ``kv_store`` table through an async session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get(self, key: str) -> Optional[str]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(KeyValueEntry.value).where(KeyValueEntry.key == key)
                )
                return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(f"Failed to read key {key}: {e}")
            return None

    async def set(self, key: str, value: str) -> bool:
        try:
            async with self._session_factory() as session:
                await session.merge(KeyValueEntry(key=key, value=value))
                await session.commit()
            return True
        except SQLAlchemyError as e:
            logger.error(f"Failed to write key {key}: {e}")
            return False

    async def remove(self, key: str) -> bool:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    delete(KeyValueEntry).where(KeyValueEntry.key == key)
                )
                await session.commit()
                return (result.rowcount or 0) > 0
        except SQLAlchemyError as e:
            logger.error(f"Failed to remove key {key}: {e}")
            return False

    async def keys(self) -> List[str]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(KeyValueEntry.key).order_by(KeyValueEntry.key)
                )
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Failed to list keys: {e}")
            return []
