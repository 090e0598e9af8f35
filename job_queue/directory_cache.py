"""
Routing Directory Cache — in-memory snapshot of delivery targets.

The snapshot is an immutable mapping replaced wholesale on every refresh,
so a lookup always sees either the old or the new directory, never a mix.
A target deactivated in the store stays eligible here until the next
refresh; the refresh period is the staleness bound.
"""
from __future__ import annotations

import abc
import asyncio
import structlog
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Mapping, Optional

from tenacity import AsyncRetrying, retry_if_exception_type, wait_exponential

from database.store_base import BaseTargetDirectory
from models.schemas import RoutingTarget

logger = structlog.get_logger()


class TargetResolver(abc.ABC):
    """What the QueueWorker needs to turn a target_ref into a destination."""

    @property
    @abc.abstractmethod
    def populated(self) -> bool:
        ...

    @abc.abstractmethod
    def resolve(self, target_ref: Optional[int]) -> Optional[RoutingTarget]:
        ...

    async def ensure_ready(self) -> None:
        """Block until resolve() can be trusted."""

    async def start(self) -> None:
        """Called once when the owning worker starts."""

    async def stop(self) -> None:
        """Called when the owning worker stops."""


class RoutingDirectoryCache(TargetResolver):
    """
    Snapshot of every routing target (active and inactive), refreshed from
    the directory at startup and then on a fixed timer.

    Usage:
        cache = RoutingDirectoryCache(directory, refresh_interval_s=60)
        await cache.start()            # blocks until the first refresh succeeds
        target = cache.resolve(job.target_ref)
        await cache.stop()
    """

    def __init__(
        self,
        directory: BaseTargetDirectory,
        refresh_interval_s: float = 60.0,
        max_startup_backoff_s: float = 30.0,
    ):
        self.directory = directory
        self.refresh_interval_s = refresh_interval_s
        self.max_startup_backoff_s = max_startup_backoff_s
        self._snapshot: Mapping[int, RoutingTarget] = MappingProxyType({})
        self._populated = False
        self._task: Optional[asyncio.Task] = None
        self.last_refreshed_at: Optional[datetime] = None

    @property
    def populated(self) -> bool:
        return self._populated

    @property
    def snapshot(self) -> Mapping[int, RoutingTarget]:
        return self._snapshot

    def __len__(self) -> int:
        return len(self._snapshot)

    async def refresh(self) -> int:
        """Replace the snapshot with the directory's current contents."""
        targets = await self.directory.list_targets()
        self._snapshot = MappingProxyType({t.id: t for t in targets})
        self._populated = True
        self.last_refreshed_at = datetime.now(timezone.utc)
        logger.debug("directory_cache_refreshed",
                     targets=len(targets),
                     active=sum(1 for t in targets if t.is_active))
        return len(targets)

    def resolve(self, target_ref: Optional[int]) -> Optional[RoutingTarget]:
        if target_ref is None:
            return None
        return self._snapshot.get(target_ref)

    async def ensure_ready(self) -> None:
        if not self._populated:
            await self.refresh()

    async def refresh_until_ready(self) -> None:
        """Retry the first refresh with exponential backoff until it succeeds."""
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(Exception),
            wait=wait_exponential(multiplier=1, max=self.max_startup_backoff_s),
            before_sleep=self._log_startup_failure,
            reraise=True,
        ):
            with attempt:
                await self.refresh()

    async def start(self) -> None:
        await self.refresh_until_ready()
        self._task = asyncio.create_task(self._refresh_loop(), name="directory_cache_refresh")
        logger.info("directory_cache_started",
                    targets=len(self._snapshot),
                    interval_s=self.refresh_interval_s)

    async def stop(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

    async def _refresh_loop(self) -> None:
        while True:
            await asyncio.sleep(self.refresh_interval_s)
            try:
                await self.refresh()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Stale snapshot keeps serving until a refresh succeeds
                logger.error("directory_cache_refresh_failed", error=str(e))

    @staticmethod
    def _log_startup_failure(retry_state) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning("directory_cache_initial_refresh_failed",
                       attempt=retry_state.attempt_number,
                       error=str(exc))


class StaticTargetResolver(TargetResolver):
    """Single-target queues: every item goes to the same destination."""

    def __init__(self, target: RoutingTarget):
        self.target = target

    @property
    def populated(self) -> bool:
        return True

    def resolve(self, target_ref: Optional[int]) -> Optional[RoutingTarget]:
        return self.target
