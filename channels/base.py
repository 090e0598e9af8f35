"""
Delivery Sinks — the outbound half of every queue.

Provides:
- ChannelError: structured error hierarchy
- DeliveryResult: success/failure outcome of one attempt
- DeliverySink: abstract base the QueueWorker calls for each attempt

A sink never decides about retries; it reports what happened and the
worker applies the retry schedule.
"""
from __future__ import annotations

import abc
import structlog
from dataclasses import dataclass
from typing import Optional

from models.schemas import RoutingTarget, WorkItem

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all channel operations."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


class DeliveryTimeoutError(ChannelError):
    def __init__(self, channel: str = "", timeout_s: float = 0.0):
        self.timeout_s = timeout_s
        super().__init__(f"Delivery timed out after {timeout_s:g}s", channel, retryable=True)


# ══════════════════════════════════════════════════════════════
#  RESULT
# ══════════════════════════════════════════════════════════════

@dataclass
class DeliveryResult:
    ok: bool
    error: Optional[str] = None
    status_code: Optional[int] = None

    @classmethod
    def succeeded(cls, status_code: Optional[int] = None) -> DeliveryResult:
        return cls(ok=True, status_code=status_code)

    @classmethod
    def failed(cls, error: str, status_code: Optional[int] = None) -> DeliveryResult:
        return cls(ok=False, error=error or "Unknown delivery error", status_code=status_code)


# ══════════════════════════════════════════════════════════════
#  SINK
# ══════════════════════════════════════════════════════════════

class DeliverySink(abc.ABC):
    """Performs the outbound call for one attempt of one work item."""

    name: str = "sink"

    @abc.abstractmethod
    async def deliver(self, item: WorkItem, target: RoutingTarget, attempt: int) -> DeliveryResult:
        """
        Deliver item.payload to target. `attempt` is the 1-indexed number of
        this attempt. Expected failures are returned, not raised; anything
        raised is treated by the worker as a failed attempt.
        """
        ...

    async def close(self) -> None:
        """Release network resources."""
