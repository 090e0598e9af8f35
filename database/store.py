"""
SQL stores — Portable SQLAlchemy queries for PostgreSQL and SQLite.

Every mutation is a single conditional UPDATE keyed by id, so a work item
row is read-and-updated atomically without holding locks across the
delivery attempt.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select, update, delete, func

from database.models import (
    QUEUE_TABLES, ReceivedWebhookRow, RoutingTargetRow, WorkItemColumns,
)
from database.session import get_session
from database.store_base import (
    BaseTargetDirectory, BaseWorkItemStore, Clock, empty_counts, utcnow,
)
from models.schemas import (
    LIVE_STATUSES, ReceivedWebhook, RoutingTarget, WorkItem, WorkItemStatus,
)

logger = structlog.get_logger()

_LIVE = [s.value for s in LIVE_STATUSES]


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything is stored as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SqlWorkItemStore(BaseWorkItemStore):
    """
    Persistent work item store backed by one of the queue tables
    (webhook_jobs or chatwoot_messages).
    """

    def __init__(self, queue: str = "webhook", clock: Clock = utcnow):
        super().__init__(clock)
        if queue not in QUEUE_TABLES:
            raise ValueError(f"Unknown queue table: {queue}")
        self.queue = queue
        self.row_cls: type[WorkItemColumns] = QUEUE_TABLES[queue]

    async def enqueue(self, target_ref: Optional[int], payload: Any) -> WorkItem:
        now = self.clock()
        async with get_session() as db:
            row = self.row_cls(
                target_ref=target_ref,
                payload=payload,
                status=WorkItemStatus.PENDING.value,
                attempt_count=0,
                next_attempt_at=now,
                created_at=now,
            )
            db.add(row)
            await db.flush()
            item = self._row_to_item(row)
        logger.debug("work_item_enqueued", queue=self.queue, item_id=item.id, target_ref=target_ref)
        return item

    async def fetch_due(self, limit: int = 10) -> list[WorkItem]:
        rc = self.row_cls
        async with get_session() as db:
            stmt = (
                select(rc)
                .where(rc.status.in_(_LIVE), rc.next_attempt_at <= self.clock())
                .order_by(rc.next_attempt_at.asc(), rc.id.asc())
                .limit(limit)
            )
            result = await db.execute(stmt)
            return [self._row_to_item(r) for r in result.scalars().all()]

    async def mark_processing(self, item_id: int) -> bool:
        rc = self.row_cls
        async with get_session() as db:
            result = await db.execute(
                update(rc)
                .where(rc.id == item_id, rc.status.in_(_LIVE))
                .values(status=WorkItemStatus.PROCESSING.value, last_attempt_at=self.clock())
            )
            return result.rowcount > 0

    async def update_status(
        self,
        item_id: int,
        status: WorkItemStatus,
        attempt_count: int,
        next_attempt_at: Optional[datetime],
        error_message: Optional[str],
    ) -> Optional[WorkItem]:
        rc = self.row_cls
        async with get_session() as db:
            result = await db.execute(
                update(rc)
                .where(rc.id == item_id, rc.status.in_(_LIVE))
                .values(
                    status=WorkItemStatus(status).value,
                    attempt_count=attempt_count,
                    next_attempt_at=next_attempt_at,
                    last_attempt_at=self.clock(),
                    error_message=error_message,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                logger.warning("work_item_update_skipped",
                               queue=self.queue, item_id=item_id,
                               reason="missing_or_terminal")
                return None
            row = await db.get(rc, item_id, populate_existing=True)
            return self._row_to_item(row) if row else None

    async def counts_by_status(self) -> dict[str, int]:
        rc = self.row_cls
        counts = empty_counts()
        async with get_session() as db:
            result = await db.execute(
                select(rc.status, func.count(rc.id)).group_by(rc.status)
            )
            for status, count in result.all():
                counts[status] = count
        return counts

    async def get(self, item_id: int) -> Optional[WorkItem]:
        async with get_session() as db:
            row = await db.get(self.row_cls, item_id)
            return self._row_to_item(row) if row else None

    async def list_recent(
        self, limit: int = 20, status: Optional[WorkItemStatus] = None,
    ) -> list[WorkItem]:
        rc = self.row_cls
        async with get_session() as db:
            stmt = select(rc)
            if status is not None:
                stmt = stmt.where(rc.status == WorkItemStatus(status).value)
            stmt = stmt.order_by(rc.created_at.desc(), rc.id.desc()).limit(limit)
            result = await db.execute(stmt)
            return [self._row_to_item(r) for r in result.scalars().all()]

    @staticmethod
    def _row_to_item(row: WorkItemColumns) -> WorkItem:
        return WorkItem(
            id=row.id,
            target_ref=row.target_ref,
            payload=row.payload,
            status=WorkItemStatus(row.status),
            attempt_count=row.attempt_count,
            next_attempt_at=_aware(row.next_attempt_at),
            last_attempt_at=_aware(row.last_attempt_at),
            error_message=row.error_message,
            created_at=_aware(row.created_at),
        )


class SqlTargetDirectory(BaseTargetDirectory):
    """Routing directory over configured_webhooks and received_webhooks."""

    async def list_targets(self) -> list[RoutingTarget]:
        async with get_session() as db:
            result = await db.execute(select(RoutingTargetRow).order_by(RoutingTargetRow.id.asc()))
            return [self._row_to_target(r) for r in result.scalars().all()]

    async def list_active_targets(self) -> list[RoutingTarget]:
        async with get_session() as db:
            stmt = (
                select(RoutingTargetRow)
                .where(RoutingTargetRow.is_active.is_(True))
                .order_by(RoutingTargetRow.id.asc())
            )
            result = await db.execute(stmt)
            return [self._row_to_target(r) for r in result.scalars().all()]

    async def get_target(self, target_id: int) -> Optional[RoutingTarget]:
        async with get_session() as db:
            row = await db.get(RoutingTargetRow, target_id)
            return self._row_to_target(row) if row else None

    async def create_target(
        self, name: str, endpoint: str, verification_secret: Optional[str] = None,
    ) -> RoutingTarget:
        async with get_session() as db:
            row = RoutingTargetRow(
                name=name,
                url=endpoint,
                is_active=True,
                verification_token=verification_secret or None,
            )
            db.add(row)
            await db.flush()
            target = self._row_to_target(row)
        logger.info("routing_target_created", target_id=target.id, name=name)
        return target

    async def update_target(
        self, target_id: int, name: str, endpoint: str, is_active: bool,
        verification_secret: Optional[str] = None,
    ) -> Optional[RoutingTarget]:
        async with get_session() as db:
            row = await db.get(RoutingTargetRow, target_id)
            if row is None:
                return None
            row.name = name
            row.url = endpoint
            row.is_active = is_active
            row.verification_token = verification_secret or None
            await db.flush()
            return self._row_to_target(row)

    async def delete_target(self, target_id: int) -> bool:
        async with get_session() as db:
            result = await db.execute(
                delete(RoutingTargetRow).where(RoutingTargetRow.id == target_id)
            )
            return result.rowcount > 0

    async def save_received_webhook(self, payload: Any) -> ReceivedWebhook:
        async with get_session() as db:
            row = ReceivedWebhookRow(payload=payload)
            db.add(row)
            await db.flush()
            return ReceivedWebhook(
                id=row.id, received_at=_aware(row.received_at), payload=row.payload,
            )

    async def recent_received_webhooks(self, limit: int = 10) -> list[ReceivedWebhook]:
        async with get_session() as db:
            stmt = (
                select(ReceivedWebhookRow)
                .order_by(ReceivedWebhookRow.received_at.desc(), ReceivedWebhookRow.id.desc())
                .limit(limit)
            )
            result = await db.execute(stmt)
            return [
                ReceivedWebhook(id=r.id, received_at=_aware(r.received_at), payload=r.payload)
                for r in result.scalars().all()
            ]

    @staticmethod
    def _row_to_target(row: RoutingTargetRow) -> RoutingTarget:
        return RoutingTarget(
            id=row.id,
            name=row.name,
            endpoint=row.url,
            is_active=bool(row.is_active),
            verification_secret=row.verification_token,
            created_at=_aware(row.created_at),
        )
