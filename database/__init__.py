"""
Database layer — payments and signer reminder state.

Backends:
  - SQL (PostgreSQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store
  store = create_store(settings.database, make_session_factory(engine))
  payment_id = await store.persist_payment(item)
"""
from database.models import Base, TemplateRow, SubmitterRow, PaymentRecordRow
from database.session import (
    create_engine_for, make_session_factory, session_scope, init_db,
)
from database.store_base import PersistenceGateway, PersistenceError
from database.store import SqlStore
from database.store_memory import InMemoryStore
from database.store_factory import create_store

__all__ = [
    # ORM models
    "Base", "TemplateRow", "SubmitterRow", "PaymentRecordRow",
    # Session management
    "create_engine_for", "make_session_factory", "session_scope", "init_db",
    # Store interface
    "PersistenceGateway", "PersistenceError",
    # Store backends
    "SqlStore", "InMemoryStore",
    # Factory
    "create_store",
]
