"""
Database layer — Durable queue state and the routing directory.

Backends:
  - SQL (PostgreSQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_work_item_store, create_target_directory
  jobs = create_work_item_store("webhook", {"store_backend": "memory"})
  item = await jobs.enqueue(target_ref=1, payload={"entry": []})
"""
from database.models import (
    Base, RoutingTargetRow, ReceivedWebhookRow, WebhookJobRow, ChatMessageRow,
)
from database.session import get_engine, get_session, init_db, close_db
from database.store_base import BaseWorkItemStore, BaseTargetDirectory
from database.store import SqlWorkItemStore, SqlTargetDirectory
from database.store_memory import InMemoryWorkItemStore, InMemoryTargetDirectory
from database.store_factory import (
    create_work_item_store, create_target_directory, reset_stores,
)

__all__ = [
    # ORM models
    "Base", "RoutingTargetRow", "ReceivedWebhookRow", "WebhookJobRow", "ChatMessageRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db",
    # Store interfaces
    "BaseWorkItemStore", "BaseTargetDirectory",
    # Store backends
    "SqlWorkItemStore", "SqlTargetDirectory",
    "InMemoryWorkItemStore", "InMemoryTargetDirectory",
    # Factory
    "create_work_item_store", "create_target_directory", "reset_stores",
]
