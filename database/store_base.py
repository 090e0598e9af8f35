"""
Abstract stores — Interfaces for all storage backends.

Implementations:
  - SqlWorkItemStore / SqlTargetDirectory            (PostgreSQL / SQLite via SQLAlchemy)
  - InMemoryWorkItemStore / InMemoryTargetDirectory  (dict-based, single-process, no persistence)

The work item store is the durable half of a delivery queue: everything the
QueueWorker knows about an item lives here, so a restarted process resumes
exactly where the previous one stopped.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from models.schemas import ReceivedWebhook, RoutingTarget, WorkItem, WorkItemStatus

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def empty_counts() -> dict[str, int]:
    return {status.value: 0 for status in WorkItemStatus}


class BaseWorkItemStore(ABC):
    """Interface that all work item store backends must implement."""

    def __init__(self, clock: Clock = utcnow):
        self.clock = clock

    @abstractmethod
    async def enqueue(self, target_ref: Optional[int], payload: Any) -> WorkItem:
        """Insert a pending item due immediately."""
        ...

    @abstractmethod
    async def fetch_due(self, limit: int = 10) -> list[WorkItem]:
        """Live items whose next_attempt_at has passed, oldest-due first."""
        ...

    @abstractmethod
    async def mark_processing(self, item_id: int) -> bool:
        """Optimistically flag a live item as processing before an attempt."""
        ...

    @abstractmethod
    async def update_status(
        self,
        item_id: int,
        status: WorkItemStatus,
        attempt_count: int,
        next_attempt_at: Optional[datetime],
        error_message: Optional[str],
    ) -> Optional[WorkItem]:
        """
        Replace the mutable fields of a live item and stamp last_attempt_at.
        Returns None (never raises) when the row is gone or already terminal.
        """
        ...

    @abstractmethod
    async def counts_by_status(self) -> dict[str, int]:
        ...

    @abstractmethod
    async def get(self, item_id: int) -> Optional[WorkItem]:
        ...

    @abstractmethod
    async def list_recent(
        self, limit: int = 20, status: Optional[WorkItemStatus] = None,
    ) -> list[WorkItem]:
        ...


class BaseTargetDirectory(ABC):
    """Routing targets plus the audit log of received webhooks."""

    # ── Routing targets ───────────────────────────────────────

    @abstractmethod
    async def list_targets(self) -> list[RoutingTarget]:
        """Every target, active or not, ordered by id."""
        ...

    @abstractmethod
    async def list_active_targets(self) -> list[RoutingTarget]:
        ...

    @abstractmethod
    async def get_target(self, target_id: int) -> Optional[RoutingTarget]:
        ...

    @abstractmethod
    async def create_target(
        self, name: str, endpoint: str, verification_secret: Optional[str] = None,
    ) -> RoutingTarget:
        ...

    @abstractmethod
    async def update_target(
        self, target_id: int, name: str, endpoint: str, is_active: bool,
        verification_secret: Optional[str] = None,
    ) -> Optional[RoutingTarget]:
        ...

    @abstractmethod
    async def delete_target(self, target_id: int) -> bool:
        ...

    # ── Received webhooks ─────────────────────────────────────

    @abstractmethod
    async def save_received_webhook(self, payload: Any) -> ReceivedWebhook:
        ...

    @abstractmethod
    async def recent_received_webhooks(self, limit: int = 10) -> list[ReceivedWebhook]:
        ...
