"""Tests for the retry schedule."""
import pytest
from datetime import timedelta

from job_queue.retry import FAR_FUTURE, PERMANENT, RetrySchedule
from helpers import T0


class TestRetrySchedule:
    def test_webhook_schedule_delays(self, webhook_schedule):
        assert webhook_schedule.max_attempts == 8
        for k in (1, 2, 3, 4):
            assert webhook_schedule.next_delay(k) == timedelta(0)
        assert webhook_schedule.next_delay(5) == timedelta(minutes=10)
        assert webhook_schedule.next_delay(6) == timedelta(minutes=30)
        assert webhook_schedule.next_delay(7) == timedelta(hours=1)

    def test_last_attempt_is_permanent(self, webhook_schedule):
        assert webhook_schedule.next_delay(8) is PERMANENT
        assert webhook_schedule.next_delay(9) is PERMANENT
        assert webhook_schedule.is_exhausted(8)
        assert not webhook_schedule.is_exhausted(7)

    def test_message_schedule(self):
        schedule = RetrySchedule.from_seconds([0, 5, 30, 120, 600, 1800, 3600, 21600])
        assert schedule.next_delay(1) == timedelta(0)
        assert schedule.next_delay(2) == timedelta(seconds=5)
        assert schedule.next_delay(4) == timedelta(minutes=2)
        assert schedule.next_delay(8) is PERMANENT

    def test_attempt_zero_rejected(self, webhook_schedule):
        with pytest.raises(ValueError):
            webhook_schedule.next_delay(0)

    def test_next_attempt_at(self, webhook_schedule):
        assert webhook_schedule.next_attempt_at(5, T0) == T0 + timedelta(minutes=10)
        assert webhook_schedule.next_attempt_at(1, T0) == T0

    def test_next_attempt_at_exhausted_is_far_future(self, webhook_schedule):
        when = webhook_schedule.next_attempt_at(8, T0)
        assert when == T0 + FAR_FUTURE
        assert when.year >= T0.year + 99

    def test_from_milliseconds(self):
        schedule = RetrySchedule.from_milliseconds([0, 250, 1000])
        assert schedule.next_delay(2) == timedelta(milliseconds=250)
        assert schedule.max_attempts == 3

    def test_single_delay_schedule(self):
        schedule = RetrySchedule.from_seconds([5])
        assert schedule.max_attempts == 1
        assert schedule.next_delay(1) is PERMANENT

    def test_permanent_is_falsy_singleton(self):
        assert not PERMANENT
        assert repr(PERMANENT) == "PERMANENT"
        assert type(PERMANENT)() is PERMANENT


class TestRetryScheduleValidation:
    def test_empty_rejected(self):
        with pytest.raises(ValueError):
            RetrySchedule.from_seconds([])

    def test_negative_rejected(self):
        with pytest.raises(ValueError):
            RetrySchedule.from_seconds([0, -1])

    def test_unordered_delays_accepted(self):
        schedule = RetrySchedule.from_seconds([60, 0, 30])
        assert schedule.max_attempts == 3
        assert schedule.next_delay(1) == timedelta(seconds=60)
        assert schedule.next_delay(2) == timedelta(0)
        assert schedule.next_delay(3) is PERMANENT

    def test_schedule_is_immutable(self, webhook_schedule):
        with pytest.raises(Exception):
            webhook_schedule.delays = ()
        assert isinstance(webhook_schedule.delays, tuple)
