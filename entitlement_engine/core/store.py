"""
Persisted key/value store port and its implementations.

The engine keeps every record (billing state, payment config, breadcrumbs,
rate-limit counter) as a plain JSON value under an engine-owned key. The store
is the single source of truth shared by every SubscriptionManager instance,
so mutations go through update(), an atomic read-modify-write:

- InMemoryKeyValueStore: no suspension point between read and write.
- SqlKeyValueStore: compare-and-swap on a version column, retried.
- RedisKeyValueStore: WATCH/MULTI optimistic transaction, retried.

The mutator passed to update() may run more than once under contention and
must only depend on the value it is given.
"""
from __future__ import annotations

import asyncio
import json
import logging
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional, Protocol, Union

from sqlalchemy import select, insert, update as sql_update, delete
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from entitlement_engine.core.config import Settings, settings as default_settings
from entitlement_engine.core.database import build_engine, create_all_tables, engine_kv, get_db_session
from entitlement_engine.core.errors import StoreConflictError


logger = logging.getLogger("entitlements")

MAX_UPDATE_RETRIES = 20


class Sentinel(Enum):
    DELETE = "delete"
    KEEP = "keep"


DELETE = Sentinel.DELETE
KEEP = Sentinel.KEEP

Mutator = Callable[[Optional[Any]], Union[Any, Sentinel]]


class KeyValueStore(Protocol):
    async def get(self, keys: Iterable[str]) -> Dict[str, Any]:
        """Return the values present for keys; missing keys are omitted."""
        ...

    async def set(self, items: Dict[str, Any]) -> None:
        ...

    async def remove(self, keys: Iterable[str]) -> None:
        ...

    async def update(self, key: str, mutator: Mutator) -> Optional[Any]:
        """
        Atomically replace the value at key with mutator(current).

        mutator returns the new value, DELETE to remove the key, or KEEP to
        leave it untouched. Returns the value now stored (None if absent).
        """
        ...


def _encode(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), sort_keys=True)


def _decode(raw: Optional[str]) -> Optional[Any]:
    if raw is None:
        return None
    return json.loads(raw)


def _as_key_list(keys: Union[str, Iterable[str]]) -> list:
    if isinstance(keys, str):
        return [keys]
    return list(keys)


class InMemoryKeyValueStore:
    """Process-local store. Values are kept encoded so callers never share references."""

    def __init__(self, prefix: str = ""):
        self.prefix = prefix
        self._data: Dict[str, str] = {}

    def _k(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def get(self, keys):
        result = {}
        for key in _as_key_list(keys):
            raw = self._data.get(self._k(key))
            if raw is not None:
                result[key] = _decode(raw)
        return result

    async def set(self, items):
        for key, value in items.items():
            self._data[self._k(key)] = _encode(value)

    async def remove(self, keys):
        for key in _as_key_list(keys):
            self._data.pop(self._k(key), None)

    async def update(self, key, mutator):
        # No await between read and write: atomic with respect to other tasks.
        current = _decode(self._data.get(self._k(key)))
        new_value = mutator(current)
        if new_value is KEEP:
            return current
        if new_value is DELETE:
            self._data.pop(self._k(key), None)
            return None
        self._data[self._k(key)] = _encode(new_value)
        return _decode(self._data[self._k(key)])


class SqlKeyValueStore:
    """
    SQLAlchemy-backed store (SQLite file by default, any SQLAlchemy URL works).

    Statements run on worker threads via asyncio.to_thread so the event loop
    is never blocked by the driver.
    """

    def __init__(self, engine: Optional[Engine] = None, *, database_url: Optional[str] = None, prefix: str = "", create_tables: bool = True):
        self.engine = engine or build_engine(database_url)
        self.prefix = prefix
        if create_tables:
            create_all_tables(self.engine)

    def _k(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def _get_sync(self, keys: list) -> Dict[str, Any]:
        lookup = {self._k(key): key for key in keys}
        with get_db_session(self.engine) as session:
            rows = session.execute(
                select(engine_kv.c.key, engine_kv.c.value).where(engine_kv.c.key.in_(list(lookup)))
            ).fetchall()
        return {lookup[row.key]: _decode(row.value) for row in rows}

    def _set_sync(self, items: Dict[str, Any]) -> None:
        for key, value in items.items():
            self._update_sync(key, lambda _current, value=value: value)

    def _remove_sync(self, keys: list) -> None:
        with get_db_session(self.engine) as session:
            session.execute(delete(engine_kv).where(engine_kv.c.key.in_([self._k(k) for k in keys])))

    def _update_sync(self, key: str, mutator: Mutator) -> Optional[Any]:
        full_key = self._k(key)
        for _ in range(MAX_UPDATE_RETRIES):
            with get_db_session(self.engine) as session:
                row = session.execute(
                    select(engine_kv.c.value, engine_kv.c.version).where(engine_kv.c.key == full_key)
                ).first()
                current = _decode(row.value) if row else None
                new_value = mutator(current)

                if new_value is KEEP:
                    return current

                if new_value is DELETE:
                    if row is None:
                        return None
                    result = session.execute(
                        delete(engine_kv)
                        .where(engine_kv.c.key == full_key)
                        .where(engine_kv.c.version == row.version)
                    )
                    if result.rowcount == 1:
                        return None
                    continue

                encoded = _encode(new_value)
                if row is None:
                    try:
                        session.execute(insert(engine_kv).values(key=full_key, value=encoded, version=1))
                        session.commit()
                    except IntegrityError:
                        # Another writer created the row first.
                        session.rollback()
                        continue
                    return _decode(encoded)

                result = session.execute(
                    sql_update(engine_kv)
                    .where(engine_kv.c.key == full_key)
                    .where(engine_kv.c.version == row.version)
                    .values(value=encoded, version=row.version + 1)
                )
                if result.rowcount == 1:
                    return _decode(encoded)

        raise StoreConflictError(f"Concurrent updates to '{key}' did not settle")

    async def get(self, keys):
        return await asyncio.to_thread(self._get_sync, _as_key_list(keys))

    async def set(self, items):
        await asyncio.to_thread(self._set_sync, dict(items))

    async def remove(self, keys):
        await asyncio.to_thread(self._remove_sync, _as_key_list(keys))

    async def update(self, key, mutator):
        return await asyncio.to_thread(self._update_sync, key, mutator)


class RedisKeyValueStore:
    """Redis-backed store shared by every process pointing at the same server."""

    def __init__(self, client=None, *, url: Optional[str] = None, prefix: str = ""):
        if client is None:
            from redis.asyncio import Redis

            client = Redis.from_url(url or default_settings.REDIS_URL, decode_responses=True)
        self.client = client
        self.prefix = prefix

    def _k(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def get(self, keys):
        keys = _as_key_list(keys)
        if not keys:
            return {}
        raw_values = await self.client.mget([self._k(k) for k in keys])
        return {key: _decode(raw) for key, raw in zip(keys, raw_values) if raw is not None}

    async def set(self, items):
        if items:
            await self.client.mset({self._k(k): _encode(v) for k, v in items.items()})

    async def remove(self, keys):
        keys = _as_key_list(keys)
        if keys:
            await self.client.delete(*[self._k(k) for k in keys])

    async def update(self, key, mutator):
        from redis.exceptions import WatchError

        full_key = self._k(key)
        async with self.client.pipeline(transaction=True) as pipe:
            for _ in range(MAX_UPDATE_RETRIES):
                try:
                    await pipe.watch(full_key)
                    current = _decode(await pipe.get(full_key))
                    new_value = mutator(current)
                    if new_value is KEEP:
                        return current
                    pipe.multi()
                    if new_value is DELETE:
                        pipe.delete(full_key)
                    else:
                        pipe.set(full_key, _encode(new_value))
                    await pipe.execute()
                    return None if new_value is DELETE else _decode(_encode(new_value))
                except WatchError:
                    continue
        raise StoreConflictError(f"Concurrent updates to '{key}' did not settle")


def build_store(cfg: Optional[Settings] = None) -> KeyValueStore:
    """Select the store implementation named by STORE_BACKEND."""
    cfg = cfg or default_settings
    backend = (cfg.STORE_BACKEND or "sql").lower()
    if backend == "memory":
        return InMemoryKeyValueStore(prefix=cfg.STORE_KEY_PREFIX)
    if backend == "redis":
        return RedisKeyValueStore(url=cfg.REDIS_URL, prefix=cfg.STORE_KEY_PREFIX)
    if backend != "sql":
        logger.warning("[store] unknown STORE_BACKEND, falling back to sql", extra={"backend": backend})
    return SqlKeyValueStore(database_url=cfg.DATABASE_URL, prefix=cfg.STORE_KEY_PREFIX)
