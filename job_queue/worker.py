"""
Queue Worker — the poll / dispatch / update loop shared by every queue.

Runs as one async task per queue inside the application process. Each
cycle pulls a batch of due items and processes them one at a time:

    fetch_due ──▶ resolve target ──▶ mark processing ──▶ sink.deliver
                       │                                     │
                 inactive/unknown                  success / failure
                       ▼                                     ▼
                    failed          success | pending (retry) | failed

An item caught mid-attempt by a crash is still `processing`, which
fetch_due treats as live, so it is attempted again on the next start.
Delivery is therefore at-least-once; receivers are expected to be
idempotent. Only one worker per queue may run against a store.
"""
from __future__ import annotations

import asyncio
import structlog
from collections import Counter
from typing import Optional

from channels.base import DeliveryResult, DeliverySink, DeliveryTimeoutError
from database.store_base import BaseWorkItemStore, Clock, utcnow
from job_queue.directory_cache import TargetResolver
from job_queue.retry import RetrySchedule
from models.schemas import WorkItem, WorkItemStatus

logger = structlog.get_logger()


class QueueWorker:
    """
    Polls one work item store and drives each due item towards a terminal state.

    Usage:
        worker = QueueWorker("webhook", store, cache, sink, schedule)
        await worker.start()        # first cache refresh, then loop in background
        await worker.run_cycle()    # or drive a single cycle (tests, scripts)
        await worker.stop()
    """

    def __init__(
        self,
        name: str,
        store: BaseWorkItemStore,
        resolver: TargetResolver,
        sink: DeliverySink,
        schedule: RetrySchedule,
        batch_size: int = 10,
        poll_interval_s: float = 5.0,
        delivery_timeout_s: float = 10.0,
        clock: Clock = utcnow,
    ):
        self.name = name
        self.store = store
        self.resolver = resolver
        self.sink = sink
        self.schedule = schedule
        self.batch_size = batch_size
        self.poll_interval_s = poll_interval_s
        self.delivery_timeout_s = delivery_timeout_s
        self.clock = clock
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    # ── Lifecycle ─────────────────────────────────────────

    async def start(self) -> asyncio.Task:
        """Populate the resolver (blocking), then start polling in a background task."""
        await self.resolver.start()
        self._running = True
        self._task = asyncio.create_task(self._run_loop(), name=f"{self.name}_worker")
        logger.info("queue_worker_started",
                    queue=self.name,
                    max_attempts=self.schedule.max_attempts,
                    interval_s=self.poll_interval_s)
        return self._task

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        await self.resolver.stop()
        logger.info("queue_worker_stopped", queue=self.name)

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.run_cycle()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("worker_cycle_error", queue=self.name, error=str(e), exc_info=True)
            await asyncio.sleep(self.poll_interval_s)

    # ── Cycle ─────────────────────────────────────────────

    async def run_cycle(self) -> dict[str, int]:
        """
        Single poll cycle. Store and resolver errors here abort the cycle
        (the loop logs them); errors for one item never reach past it.

        Returns counts: {"fetched": N, "success": N, "retried": N, "failed": N, "skipped": N}
        """
        stats: Counter = Counter(fetched=0, success=0, retried=0, failed=0, skipped=0)

        await self.resolver.ensure_ready()
        items = await self.store.fetch_due(self.batch_size)
        stats["fetched"] = len(items)
        if items:
            logger.info("worker_found_items", queue=self.name, count=len(items))

        # Sequential on purpose: bounds load on the receiver and keeps two
        # attempts of the same item from overlapping.
        for item in items:
            try:
                outcome = await self.process_item(item)
            except Exception as e:
                logger.error("work_item_processing_error",
                             queue=self.name, item_id=item.id, error=str(e), exc_info=True)
                outcome = "skipped"
            stats[outcome] += 1

        return dict(stats)

    async def process_item(self, item: WorkItem) -> str:
        """Attempt one item and persist the outcome. Returns the stats bucket."""
        target = self.resolver.resolve(item.target_ref)
        if target is None or not target.is_active:
            reason = ("Target is inactive." if target is not None
                      else "Target is missing from the routing directory.")
            logger.warning("work_item_target_unavailable",
                           queue=self.name, item_id=item.id, target_ref=item.target_ref)
            if not await self._persist(item, WorkItemStatus.FAILED, item.attempt_count, None, reason):
                return "skipped"
            return "failed"

        if not await self.store.mark_processing(item.id):
            logger.info("work_item_no_longer_live", queue=self.name, item_id=item.id)
            return "skipped"

        attempt = item.attempt_count + 1
        result = await self._attempt(item, target, attempt)

        if result.ok:
            if not await self._persist(item, WorkItemStatus.SUCCESS, attempt, None, None):
                return "skipped"
            logger.info("work_item_delivered",
                        queue=self.name, item_id=item.id, target=target.name, attempt=attempt)
            return "success"

        if not self.schedule.is_exhausted(attempt):
            next_at = self.schedule.next_attempt_at(attempt, self.clock())
            if not await self._persist(item, WorkItemStatus.PENDING, attempt, next_at, result.error):
                return "skipped"
            logger.warning("work_item_retry_scheduled",
                           queue=self.name, item_id=item.id, target=target.name,
                           attempt=attempt, error=result.error,
                           next_attempt_at=next_at.isoformat())
            return "retried"

        if not await self._persist(
            item, WorkItemStatus.FAILED, attempt,
            self.schedule.next_attempt_at(attempt, self.clock()), result.error,
        ):
            return "skipped"
        logger.error("work_item_failed_permanently",
                     queue=self.name, item_id=item.id, target=target.name,
                     attempts=attempt, error=result.error)
        return "failed"

    async def _attempt(self, item: WorkItem, target, attempt: int) -> DeliveryResult:
        try:
            return await asyncio.wait_for(
                self.sink.deliver(item, target, attempt),
                timeout=self.delivery_timeout_s,
            )
        except asyncio.TimeoutError:
            return DeliveryResult.failed(str(DeliveryTimeoutError(self.sink.name, self.delivery_timeout_s)))
        except Exception as e:
            return DeliveryResult.failed(str(e) or type(e).__name__)

    async def _persist(self, item: WorkItem, status, attempt_count, next_attempt_at, error_message) -> bool:
        """False when the outcome could not be written; the item then counts as skipped."""
        try:
            await self.store.update_status(item.id, status, attempt_count, next_attempt_at, error_message)
        except Exception as e:
            # Item stays processing and is picked up again next cycle
            logger.critical("work_item_update_failed",
                            queue=self.name, item_id=item.id,
                            status=WorkItemStatus(status).value, error=str(e))
            return False
        return True
