"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB — on PG the dialect maps
    JSON to jsonb automatically; on SQLite it serializes to TEXT.
  - Integer autoincrement primary keys. SQLite tables use AUTOINCREMENT so
    ids of deleted rows are never handed out again.
  - Both queue tables share their delivery columns through WorkItemColumns;
    the generic SqlWorkItemStore works against either one.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    Boolean, String, Integer, DateTime, Text, ForeignKey,
    Index, JSON,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Routing directory
# ──────────────────────────────────────────────────────────────

class RoutingTargetRow(Base):
    __tablename__ = "configured_webhooks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    verification_token: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_configured_webhooks_active", "is_active"),
        {"sqlite_autoincrement": True},
    )


class ReceivedWebhookRow(Base):
    __tablename__ = "received_webhooks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    payload: Mapped[Any] = mapped_column(JSON, nullable=False)

    __table_args__ = (
        Index("ix_received_webhooks_received", "received_at"),
        {"sqlite_autoincrement": True},
    )


# ──────────────────────────────────────────────────────────────
#  Work item queues
# ──────────────────────────────────────────────────────────────

class WorkItemColumns:
    """Delivery and scheduling columns shared by every queue table."""

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    payload: Mapped[Any] = mapped_column(JSON, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=_utcnow)
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class WebhookJobRow(WorkItemColumns, Base):
    __tablename__ = "webhook_jobs"

    target_ref: Mapped[Optional[int]] = mapped_column(
        "webhook_id", Integer,
        ForeignKey("configured_webhooks.id", ondelete="CASCADE"),
        nullable=True,
    )

    __table_args__ = (
        Index("ix_webhook_jobs_status_next", "status", "next_attempt_at"),
        Index("ix_webhook_jobs_webhook", "webhook_id"),
        {"sqlite_autoincrement": True},
    )


class ChatMessageRow(WorkItemColumns, Base):
    __tablename__ = "chatwoot_messages"

    target_ref: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        Index("ix_chatwoot_messages_status_next", "status", "next_attempt_at"),
        Index("ix_chatwoot_messages_created", "created_at"),
        {"sqlite_autoincrement": True},
    )


QUEUE_TABLES: dict[str, type[WorkItemColumns]] = {
    "webhook": WebhookJobRow,
    "message": ChatMessageRow,
}
