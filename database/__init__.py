"""
Database layer — Multi-backend persistence.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store
  store = create_store(settings.database)
  actor = await store.get_actor("a1")
"""
from database.models import (
    Base, ActorRow, SubscriptionRow, BlockRow, GroupMemberRow, ActorKeyRow,
    NotificationRow, GroupInboxRow, DeliveryKeyRow, QueueItemRow, DeadLetterRow,
)
from database.session import (
    create_engine_for, make_session_factory, create_tables,
    get_engine, get_session_factory,
)
from database.store_base import BaseSocialStore, TargetSnapshot
from database.store import SqlSocialStore
from database.store_memory import InMemorySocialStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "ActorRow", "SubscriptionRow", "BlockRow", "GroupMemberRow", "ActorKeyRow",
    "NotificationRow", "GroupInboxRow", "DeliveryKeyRow", "QueueItemRow", "DeadLetterRow",
    # Session management
    "create_engine_for", "make_session_factory", "create_tables",
    "get_engine", "get_session_factory",
    # Store interface
    "BaseSocialStore", "TargetSnapshot",
    # Store backends
    "SqlSocialStore", "InMemorySocialStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
