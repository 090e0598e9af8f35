"""
In-memory stores — Dict-backed stores for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with the SQL stores
  - Atomic per call via asyncio (no awaits inside a mutation)
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import copy
import itertools
import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from database.store_base import (
    BaseTargetDirectory, BaseWorkItemStore, Clock, empty_counts, utcnow,
)
from models.schemas import (
    LIVE_STATUSES, ReceivedWebhook, RoutingTarget, WorkItem, WorkItemStatus,
)

logger = structlog.get_logger()

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class InMemoryWorkItemStore(BaseWorkItemStore):
    """
    Work item store with the same semantics as SqlWorkItemStore.
    Returns copies so callers can never mutate stored state.
    """

    def __init__(self, queue: str = "webhook", clock: Clock = utcnow):
        super().__init__(clock)
        self.queue = queue
        self._items: dict[int, WorkItem] = {}
        self._ids = itertools.count(1)
        logger.info("inmemory_store_initialized", queue=queue)

    async def enqueue(self, target_ref: Optional[int], payload: Any) -> WorkItem:
        now = self.clock()
        item = WorkItem(
            id=next(self._ids),
            target_ref=target_ref,
            payload=copy.deepcopy(payload),
            status=WorkItemStatus.PENDING,
            attempt_count=0,
            next_attempt_at=now,
            created_at=now,
        )
        self._items[item.id] = item
        return item.model_copy(deep=True)

    async def fetch_due(self, limit: int = 10) -> list[WorkItem]:
        now = self.clock()
        due = [i for i in self._items.values() if i.is_due(now)]
        due.sort(key=lambda i: (i.next_attempt_at, i.id))
        return [i.model_copy(deep=True) for i in due[:limit]]

    async def mark_processing(self, item_id: int) -> bool:
        item = self._items.get(item_id)
        if item is None or item.status not in LIVE_STATUSES:
            return False
        self._items[item_id] = item.model_copy(update={
            "status": WorkItemStatus.PROCESSING,
            "last_attempt_at": self.clock(),
        })
        return True

    async def update_status(
        self,
        item_id: int,
        status: WorkItemStatus,
        attempt_count: int,
        next_attempt_at: Optional[datetime],
        error_message: Optional[str],
    ) -> Optional[WorkItem]:
        item = self._items.get(item_id)
        if item is None or item.status not in LIVE_STATUSES:
            logger.warning("work_item_update_skipped",
                           queue=self.queue, item_id=item_id,
                           reason="missing_or_terminal")
            return None
        updated = item.model_copy(update={
            "status": WorkItemStatus(status),
            "attempt_count": attempt_count,
            "next_attempt_at": next_attempt_at,
            "last_attempt_at": self.clock(),
            "error_message": error_message,
        })
        self._items[item_id] = updated
        return updated.model_copy(deep=True)

    async def counts_by_status(self) -> dict[str, int]:
        counts = empty_counts()
        for item in self._items.values():
            counts[item.status.value] += 1
        return counts

    async def get(self, item_id: int) -> Optional[WorkItem]:
        item = self._items.get(item_id)
        return item.model_copy(deep=True) if item else None

    async def list_recent(
        self, limit: int = 20, status: Optional[WorkItemStatus] = None,
    ) -> list[WorkItem]:
        items = [
            i for i in self._items.values()
            if status is None or i.status == WorkItemStatus(status)
        ]
        items.sort(key=lambda i: (i.created_at or _EPOCH, i.id), reverse=True)
        return [i.model_copy(deep=True) for i in items[:limit]]

    def delete(self, item_id: int) -> bool:
        """Drop a row outright, as a cascading target delete would."""
        return self._items.pop(item_id, None) is not None


class InMemoryTargetDirectory(BaseTargetDirectory):
    """Routing directory held in a dict; RoutingTarget is frozen, so no copies are needed."""

    def __init__(self):
        self._targets: dict[int, RoutingTarget] = {}
        self._received: list[ReceivedWebhook] = []
        self._target_ids = itertools.count(1)
        self._received_ids = itertools.count(1)

    async def list_targets(self) -> list[RoutingTarget]:
        return [self._targets[k] for k in sorted(self._targets)]

    async def list_active_targets(self) -> list[RoutingTarget]:
        return [t for t in await self.list_targets() if t.is_active]

    async def get_target(self, target_id: int) -> Optional[RoutingTarget]:
        return self._targets.get(target_id)

    async def create_target(
        self, name: str, endpoint: str, verification_secret: Optional[str] = None,
    ) -> RoutingTarget:
        target = RoutingTarget(
            id=next(self._target_ids),
            name=name,
            endpoint=endpoint,
            is_active=True,
            verification_secret=verification_secret or None,
        )
        self._targets[target.id] = target
        return target

    async def update_target(
        self, target_id: int, name: str, endpoint: str, is_active: bool,
        verification_secret: Optional[str] = None,
    ) -> Optional[RoutingTarget]:
        existing = self._targets.get(target_id)
        if existing is None:
            return None
        updated = existing.model_copy(update={
            "name": name,
            "endpoint": endpoint,
            "is_active": is_active,
            "verification_secret": verification_secret or None,
        })
        self._targets[target_id] = updated
        return updated

    async def delete_target(self, target_id: int) -> bool:
        return self._targets.pop(target_id, None) is not None

    async def save_received_webhook(self, payload: Any) -> ReceivedWebhook:
        record = ReceivedWebhook(id=next(self._received_ids), payload=copy.deepcopy(payload))
        self._received.append(record)
        return record.model_copy(deep=True)

    async def recent_received_webhooks(self, limit: int = 10) -> list[ReceivedWebhook]:
        return [r.model_copy(deep=True) for r in reversed(self._received)][:limit]
