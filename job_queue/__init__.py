"""
Job Queue — durable retry-queue delivery.

Work items live in a store (database/), a QueueWorker polls for due
items, delivers them through a DeliverySink (channels/) and reschedules
failures along a RetrySchedule until they succeed or run out of attempts.
"""
from job_queue.retry import FAR_FUTURE, PERMANENT, RetrySchedule
from job_queue.directory_cache import RoutingDirectoryCache, StaticTargetResolver, TargetResolver
from job_queue.worker import QueueWorker

__all__ = [
    "FAR_FUTURE", "PERMANENT", "RetrySchedule",
    "RoutingDirectoryCache", "StaticTargetResolver", "TargetResolver",
    "QueueWorker",
]
