"""
Core data models for the webhook relay.
These are the universal types shared across all modules.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class WorkItemStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"


# Live items are selectable by fetch_due; processing is included so an
# item left behind by a crash mid-attempt is picked up again.
LIVE_STATUSES = frozenset({WorkItemStatus.PENDING, WorkItemStatus.PROCESSING})
TERMINAL_STATUSES = frozenset({WorkItemStatus.SUCCESS, WorkItemStatus.FAILED})


class ChatMessageType(str, Enum):
    OUTGOING = "outgoing"
    NOTE = "note"


# ──────────────────────────────────────────────────────────────
#  Work items: one queued delivery each
# ──────────────────────────────────────────────────────────────

class WorkItem(BaseModel):
    """A unit of queued work with its delivery status and scheduling metadata."""
    id: int
    target_ref: Optional[int] = None          # routing directory entry; None for single-target queues
    payload: Any = None                       # delivered verbatim
    status: WorkItemStatus = WorkItemStatus.PENDING
    attempt_count: int = Field(default=0, ge=0)
    next_attempt_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_due(self, now: datetime) -> bool:
        return (
            self.status in LIVE_STATUSES
            and self.next_attempt_at is not None
            and self.next_attempt_at <= now
        )


# ──────────────────────────────────────────────────────────────
#  Routing targets: administratively managed destinations
# ──────────────────────────────────────────────────────────────

class RoutingTarget(BaseModel):
    """A delivery destination. Frozen so cache snapshots can be shared safely."""
    model_config = ConfigDict(frozen=True)

    id: int
    name: str = ""
    endpoint: str                             # URL
    is_active: bool = True
    verification_secret: Optional[str] = None  # sent as X-Webhook-Token
    created_at: datetime = Field(default_factory=_utcnow)


class ReceivedWebhook(BaseModel):
    """Raw inbound event, kept for audit."""
    id: int
    received_at: datetime = Field(default_factory=_utcnow)
    payload: Any = None


# ──────────────────────────────────────────────────────────────
#  Chat messages: payload of the outbound message queue
# ──────────────────────────────────────────────────────────────

class ChatMessagePayload(BaseModel):
    phone_number: str
    content: str
    message_type: ChatMessageType = ChatMessageType.OUTGOING
    contact_name: Optional[str] = None
    content_type: Optional[str] = None
    template_params: Optional[str] = None     # JSON-encoded
    processed_params: Optional[str] = None    # JSON-encoded

    @property
    def is_private(self) -> bool:
        return self.message_type == ChatMessageType.NOTE
