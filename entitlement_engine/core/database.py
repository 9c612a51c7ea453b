"""
SQL persistence for the key/value store.

One table, engine_kv, holds every engine record as JSON text. The version
column is bumped on each write; SqlKeyValueStore uses it for
compare-and-swap so several processes can share one database.
"""
from contextlib import contextmanager
from typing import Dict, Optional
from weakref import WeakKeyDictionary

from sqlalchemy import Column, DateTime, Integer, MetaData, String, Table, Text, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.sql import func

from entitlement_engine.core.config import settings


metadata = MetaData()

# Pool sizing for server databases; SQLite uses the driver defaults.
SERVER_POOL = {
    "poolclass": QueuePool,
    "pool_size": 5,
    "max_overflow": 10,
    "pool_timeout": 30,
    "pool_recycle": 3600,  # seconds
    "pool_pre_ping": True,
}

engine_kv = Table(
    "engine_kv",
    metadata,
    Column("key", String(255), primary_key=True),
    Column("value", Text, nullable=False),
    Column("version", Integer, nullable=False, default=1),
    Column("updated_at", DateTime(timezone=True), server_default=func.now(), onupdate=func.now()),
)

_session_factories: "WeakKeyDictionary[Engine, sessionmaker]" = WeakKeyDictionary()


def _is_memory_sqlite(url: str) -> bool:
    return ":memory:" in url or url in ("sqlite://", "sqlite:///")


def build_engine(database_url: Optional[str] = None) -> Engine:
    """
    Create an engine for database_url, falling back to DATABASE_URL.

    SQLite connections are used from worker threads (the store runs
    statements via asyncio.to_thread), so same-thread checking is off.
    In-memory SQLite keeps a single shared connection.
    """
    url = database_url or settings.DATABASE_URL
    if not url:
        raise ValueError("DATABASE_URL is empty; set it in the environment or .env")

    if url.startswith("sqlite"):
        options: Dict[str, object] = {"connect_args": {"check_same_thread": False}}
        if _is_memory_sqlite(url):
            options["poolclass"] = StaticPool
        return create_engine(url, **options)

    return create_engine(url, **SERVER_POOL)


def create_all_tables(engine: Engine) -> None:
    metadata.create_all(engine)


@contextmanager
def get_db_session(engine: Engine):
    """
    Session bound to engine: committed on clean exit, rolled back on error.

        with get_db_session(engine) as session:
            session.execute(...)
    """
    factory = _session_factories.get(engine)
    if factory is None:
        factory = sessionmaker(bind=engine, autoflush=False)
        _session_factories[engine] = factory

    session: Session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
