"""Test doubles and builders shared by the test modules."""
from datetime import datetime, timedelta, timezone
from typing import Optional

from channels.base import DeliveryResult, DeliverySink
from job_queue.directory_cache import RoutingDirectoryCache
from job_queue.worker import QueueWorker
from models.schemas import RoutingTarget, WorkItem


T0 = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock, injected into stores and workers."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class ScriptedSink(DeliverySink):
    """
    Sink that replays a list of outcomes. Each entry is True (success),
    a string (failure with that error), or an exception to raise.
    Once the script runs out the last entry repeats.
    """

    name = "scripted"

    def __init__(self, outcomes=None):
        self.outcomes = list(outcomes or [True])
        self.calls: list[tuple[int, int, int]] = []     # (item_id, target_id, attempt)
        self.closed = False

    async def deliver(self, item: WorkItem, target: RoutingTarget, attempt: int) -> DeliveryResult:
        self.calls.append((item.id, target.id, attempt))
        outcome = self.outcomes[min(len(self.calls), len(self.outcomes)) - 1]
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome is True:
            return DeliveryResult.succeeded(200)
        return DeliveryResult.failed(outcome)

    async def close(self) -> None:
        self.closed = True


def make_worker(
    store, directory, sink, schedule, clock, delivery_timeout_s: float = 10.0,
    batch_size: int = 10,
) -> QueueWorker:
    return QueueWorker(
        name="webhook",
        store=store,
        resolver=RoutingDirectoryCache(directory, refresh_interval_s=60),
        sink=sink,
        schedule=schedule,
        batch_size=batch_size,
        poll_interval_s=0.01,
        delivery_timeout_s=delivery_timeout_s,
        clock=clock,
    )


def target(
    target_id: int = 1, name: str = "crm", active: bool = True,
    secret: Optional[str] = None,
) -> RoutingTarget:
    return RoutingTarget(
        id=target_id,
        name=name,
        endpoint=f"https://{name}.example.com/hook",
        is_active=active,
        verification_secret=secret,
    )
