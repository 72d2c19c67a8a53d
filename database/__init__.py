"""
Persistence for the conversation pipeline.

Every coordination rule (sequence numbers, group claims, execution
leases, the once/active keys, the delivery ledger) lives behind
BasePipelineStore, so the in-memory and SQL backends stay
interchangeable:

    from database import create_store
    store = create_store(settings.database)
"""
from database.models import Base
from database.session import (
    close_db, create_session_factory, create_tables, get_engine, init_db, session_scope,
)
from database.store_base import BasePipelineStore, PipelineError, StoreConflictError
from database.store import SqlPipelineStore
from database.store_memory import InMemoryPipelineStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    "Base",
    "close_db", "create_session_factory", "create_tables", "get_engine", "init_db",
    "session_scope",
    "BasePipelineStore", "PipelineError", "StoreConflictError",
    "SqlPipelineStore", "InMemoryPipelineStore",
    "create_store", "get_store", "reset_store",
]
