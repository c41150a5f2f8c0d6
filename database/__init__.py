"""
Database layer — Multi-backend persistence for messages and dispatch events.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)
  - File (JSON files on disk, for small deployments)

Quick start:
  from database import create_store
  store = create_store({"store_backend": "memory"})
  msg = await store.get_message("m1")
"""
from database.models import (
    Base, ContactRow, ConversationRow, MessageRow, DispatchEventRow,
)
from database.session import get_engine, get_session, init_db, close_db
from database.store_base import BaseMessageStore
from database.store import SqlMessageStore
from database.store_memory import InMemoryMessageStore
from database.store_file import FileMessageStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "ContactRow", "ConversationRow", "MessageRow", "DispatchEventRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db",
    # Store interface
    "BaseMessageStore",
    # Store backends
    "SqlMessageStore", "InMemoryMessageStore", "FileMessageStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
