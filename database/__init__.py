"""
Database layer — Queue persistence.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store, get_store
  store = create_store({"store_backend": "memory"})
  message = await store.get_message("3f2a...")
"""
from database.models import (
    Base, QueueMessageRow, FailedMessageRow,
    ContactRow, ConversationRow, InboundMessageRow,
)
from database.session import get_engine, get_session, init_db, close_db
from database.store_base import BaseQueueStore
from database.store import SqlQueueStore
from database.store_memory import InMemoryQueueStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "QueueMessageRow", "FailedMessageRow",
    "ContactRow", "ConversationRow", "InboundMessageRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db",
    # Store interface
    "BaseQueueStore", "SqlQueueStore", "InMemoryQueueStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
