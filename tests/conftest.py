"""Shared test fixtures for the webhook relay."""
import pytest

from database.store_memory import InMemoryTargetDirectory, InMemoryWorkItemStore
from helpers import FakeClock, ScriptedSink, make_worker
from job_queue.retry import RetrySchedule
from job_queue.worker import QueueWorker


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock) -> InMemoryWorkItemStore:
    return InMemoryWorkItemStore(queue="webhook", clock=clock)


@pytest.fixture
def directory() -> InMemoryTargetDirectory:
    return InMemoryTargetDirectory()


@pytest.fixture
def webhook_schedule() -> RetrySchedule:
    return RetrySchedule.from_seconds([0, 0, 0, 0, 600, 1800, 3600, 21600])


@pytest.fixture
def sink() -> ScriptedSink:
    return ScriptedSink()


@pytest.fixture
def worker(store, directory, sink, webhook_schedule, clock) -> QueueWorker:
    return make_worker(store, directory, sink, webhook_schedule, clock)
