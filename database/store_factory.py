"""
Store Factory: one process-wide dunning store, chosen by ``database.store_backend``.

    sql      SqlDunningStore on database.url (PostgreSQL, MySQL or SQLite)
    memory   InMemoryDunningStore, state lost on restart (development, tests)

The SQL backend is imported lazily so the memory backend works without a
database driver installed.
"""
from __future__ import annotations

import structlog
from typing import Callable, Optional

from database.store_base import BaseDunningStore

logger = structlog.get_logger()

_instance: Optional[BaseDunningStore] = None


def _sql() -> BaseDunningStore:
    from database.store import SqlDunningStore
    return SqlDunningStore()


def _memory() -> BaseDunningStore:
    from database.store_memory import InMemoryDunningStore
    return InMemoryDunningStore()


BACKENDS: dict[str, Callable[[], BaseDunningStore]] = {"sql": _sql, "memory": _memory}


def create_store(config: dict = None) -> BaseDunningStore:
    """
    Build the store for ``config["store_backend"]`` (default "memory").

    The first call wins: later calls return the same instance until
    ``reset_store()``.
    """
    global _instance
    if _instance is None:
        backend = (config or {}).get("store_backend", "memory")
        if backend not in BACKENDS:
            raise ValueError(f"unknown store_backend {backend!r} (expected one of {sorted(BACKENDS)})")
        _instance = BACKENDS[backend]()
        logger.info("store_created", backend=backend)
    return _instance


def get_store() -> BaseDunningStore:
    return _instance if _instance is not None else create_store()


def reset_store() -> None:
    global _instance
    _instance = None
