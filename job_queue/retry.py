"""
Retry Scheduler — maps the attempt just completed to the delay before the next one.

The schedule is plain configuration data: an ordered list of delays whose
length is the maximum number of attempts. Attempt k (1-indexed) that fails
with k < max_attempts is retried after delays[k-1]; a failure of attempt
max_attempts is permanent.

    schedule = RetrySchedule.from_seconds([0, 0, 0, 0, 600, 1800, 3600, 21600])
    schedule.next_delay(5)      # timedelta(minutes=10)
    schedule.next_delay(8)      # PERMANENT
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Union

# Exhausted items are parked this far ahead so no clock skew can make them
# due again; status=failed is what actually keeps them out of fetch_due.
FAR_FUTURE = timedelta(days=100 * 365)


class _Permanent:
    """Sentinel returned by next_delay once the schedule is exhausted."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "PERMANENT"

    def __bool__(self) -> bool:
        return False


PERMANENT = _Permanent()


@dataclass(frozen=True)
class RetrySchedule:
    """Ordered backoff schedule; max_attempts = len(delays)."""

    delays: tuple[timedelta, ...]

    def __post_init__(self):
        delays = tuple(self.delays)
        if not delays:
            raise ValueError("Retry schedule needs at least one delay")
        if any(d < timedelta(0) for d in delays):
            raise ValueError("Retry delays cannot be negative")
        object.__setattr__(self, "delays", delays)

    @classmethod
    def from_seconds(cls, seconds: Iterable[float]) -> RetrySchedule:
        return cls(tuple(timedelta(seconds=s) for s in seconds))

    @classmethod
    def from_milliseconds(cls, millis: Iterable[float]) -> RetrySchedule:
        return cls(tuple(timedelta(milliseconds=ms) for ms in millis))

    @property
    def max_attempts(self) -> int:
        return len(self.delays)

    def is_exhausted(self, attempt_count: int) -> bool:
        return attempt_count >= self.max_attempts

    def next_delay(self, attempt_count: int) -> Union[timedelta, _Permanent]:
        """Delay before the attempt after `attempt_count`, or PERMANENT."""
        if attempt_count < 1:
            raise ValueError(f"attempt_count is 1-indexed, got {attempt_count}")
        if self.is_exhausted(attempt_count):
            return PERMANENT
        return self.delays[attempt_count - 1]

    def next_attempt_at(self, attempt_count: int, now: datetime) -> datetime:
        delay = self.next_delay(attempt_count)
        if delay is PERMANENT:
            return now + FAR_FUTURE
        return now + delay
