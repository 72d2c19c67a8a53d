"""
Pick the pipeline store backend named by ``database.store_backend``.

    memory  dicts guarded by an asyncio lock; state dies with the process
    sql     SqlPipelineStore on the engine built from ``database.url``

The chosen store is kept as a process singleton so the API, the workers
and the scripts all coordinate through the same instance.
"""
from __future__ import annotations

import structlog
from typing import Any, Mapping, Optional, Union

from config.settings import DatabaseConfig
from database.store_base import BasePipelineStore, PipelineError

logger = structlog.get_logger()

_BACKENDS = ("memory", "sql")

_store: Optional[BasePipelineStore] = None


def _backend_name(config: Union[DatabaseConfig, Mapping[str, Any], None]) -> str:
    if config is None:
        return "memory"
    if isinstance(config, DatabaseConfig):
        return config.store_backend
    return config.get("store_backend", "memory")


def create_store(config: Union[DatabaseConfig, Mapping[str, Any], None] = None) -> BasePipelineStore:
    """Build (once) and return the store for ``config``; later calls reuse it."""
    global _store
    if _store is not None:
        return _store

    backend = _backend_name(config)
    if backend not in _BACKENDS:
        raise PipelineError(f"Unknown store backend {backend!r}; expected one of {_BACKENDS}")

    if backend == "sql":
        from database.store import SqlPipelineStore
        _store = SqlPipelineStore()
    else:
        from database.store_memory import InMemoryPipelineStore
        _store = InMemoryPipelineStore()
    logger.info("store_created", backend=backend)
    return _store


def get_store() -> BasePipelineStore:
    return _store if _store is not None else create_store()


def reset_store() -> None:
    """Forget the singleton so the next create_store builds afresh."""
    global _store
    _store = None
