from __future__ import annotations

import threading
from typing import Dict, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool


_ENGINES: Dict[str, Engine] = {}
_SESSIONMAKERS: Dict[str, sessionmaker] = {}
_CONNECTION_LOCKS: Dict[str, threading.Lock] = {}
_LOCK = threading.Lock()


def is_sqlite_memory(database_url: str) -> bool:
    return database_url in {"sqlite://", "sqlite:///:memory:"} or ":memory:" in database_url


def get_engine(database_url: str) -> Engine:
    with _LOCK:
        engine = _ENGINES.get(database_url)
        if engine is not None:
            return engine

        kwargs = {}
        if database_url.startswith("sqlite:"):
            # Store calls run on worker threads via asyncio.to_thread.
            kwargs["connect_args"] = {"check_same_thread": False}
            if is_sqlite_memory(database_url):
                # One shared connection, otherwise each thread sees an empty DB.
                # Callers must hold connection_lock() while using it.
                kwargs["poolclass"] = StaticPool
                _CONNECTION_LOCKS[database_url] = threading.Lock()

        engine = create_engine(
            database_url,
            future=True,
            echo=False,
            pool_pre_ping=True,
            **kwargs,
        )
        _ENGINES[database_url] = engine
        _SESSIONMAKERS[database_url] = sessionmaker(
            bind=engine, autoflush=False, expire_on_commit=False, future=True
        )
        return engine


def connection_lock(database_url: str) -> Optional[threading.Lock]:
    """Lock serializing use of a single shared connection, or None when pooled."""
    get_engine(database_url)
    return _CONNECTION_LOCKS.get(database_url)


def get_sessionmaker(database_url: str) -> sessionmaker:
    if database_url not in _SESSIONMAKERS:
        get_engine(database_url)
    return _SESSIONMAKERS[database_url]


def dispose_engine(database_url: str) -> None:
    with _LOCK:
        engine = _ENGINES.pop(database_url, None)
        _SESSIONMAKERS.pop(database_url, None)
        _CONNECTION_LOCKS.pop(database_url, None)
    if engine is not None:
        engine.dispose()
