"""Durable key-value layer: one row per namespaced key, value stored as JSON text.

Every call opens its own session, so a write is committed before the call returns.
Writers notify subscribers with the key they touched; open views use this to refresh.
"""
import inspect
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import PersistenceError
from app.models.kv_entry import KVEntry, utc_now

logger = logging.getLogger(__name__)

Listener = Callable[[str], Awaitable[None] | None]


class KVStore:
    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self._session_maker = session_maker
        self._listeners: list[tuple[str, Listener]] = []

    async def get_raw(self, key: str) -> str | None:
        try:
            async with self._session_maker() as session:
                row = await session.get(KVEntry, key)
                return row.value if row else None
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to read {key}: {e}") from e

    async def get_json(self, key: str, default: Any = None) -> Any:
        """Decoded document, or ``default`` when missing, undecodable or of another type."""
        raw = await self.get_raw(key)
        if raw is None:
            return default
        try:
            value = json.loads(raw)
        except ValueError:
            logger.warning("Discarding corrupt value under %s", key)
            return default
        if value is None:
            return default
        if default is not None and not isinstance(value, type(default)):
            logger.warning("Discarding %s under %s (expected %s)", type(value).__name__, key, type(default).__name__)
            return default
        return value

    async def set_raw(self, key: str, raw: str) -> None:
        try:
            async with self._session_maker() as session:
                row = await session.get(KVEntry, key)
                if row is None:
                    row = KVEntry(key=key, value=raw)
                else:
                    row.value = raw
                    row.updated_at = utc_now()
                session.add(row)
                await session.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to write {key}: {e}") from e
        await self._notify(key)

    async def set_json(self, key: str, value: Any) -> None:
        await self.set_raw(key, json.dumps(value, separators=(",", ":")))

    async def delete(self, key: str) -> None:
        try:
            async with self._session_maker() as session:
                await session.execute(delete(KVEntry).where(KVEntry.key == key))
                await session.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to delete {key}: {e}") from e
        await self._notify(key)

    async def keys(self, prefix: str = "") -> list[str]:
        try:
            async with self._session_maker() as session:
                q = select(KVEntry.key).order_by(KVEntry.key)
                if prefix:
                    q = q.where(KVEntry.key.startswith(prefix))
                result = await session.execute(q)
                return [row[0] for row in result.all()]
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to list keys: {e}") from e

    def subscribe(self, listener: Listener, prefix: str = "") -> Callable[[], None]:
        """Call ``listener(key)`` after every write under ``prefix``. Returns an unsubscribe callable."""
        entry = (prefix, listener)
        self._listeners.append(entry)

        def unsubscribe() -> None:
            if entry in self._listeners:
                self._listeners.remove(entry)

        return unsubscribe

    async def _notify(self, key: str) -> None:
        for prefix, listener in list(self._listeners):
            if not key.startswith(prefix):
                continue
            try:
                result = listener(key)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.exception("KV listener failed for %s: %s", key, e)
