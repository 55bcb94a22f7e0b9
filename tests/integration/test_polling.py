"""
Tests for deadline-bounded polling.

Every wait in a scenario goes through these helpers, so a probe that raises
must be retried and an expired deadline must surface as Timeout naming the
stage and the last observed value.
"""

import time

import pytest

from failover_harness.deadline import Deadline
from failover_harness.errors import Timeout
from failover_harness.polling import as_deadline, retry_with_delay, wait_until, wait_until_sync


class TestDeadline:
    def test_time_left_never_negative(self):
        deadline = Deadline.from_now(-5)
        assert deadline.time_left() == 0.0
        assert deadline.is_overdue()
        assert not deadline.has_time_left()

    def test_cap_bounds_by_time_left(self):
        deadline = Deadline.from_now(1.0)
        assert deadline.cap(10.0) <= 1.0
        assert deadline.cap(0.01) == 0.01
        assert deadline.cap(None) <= 1.0

    def test_never_expires(self):
        deadline = Deadline.never()
        assert deadline.has_time_left()
        assert deadline.cap(0.5) == 0.5

    def test_as_deadline_accepts_seconds_and_deadlines(self):
        deadline = Deadline.from_now(3.0)
        assert as_deadline(deadline) is deadline
        converted = as_deadline(2)
        assert isinstance(converted, Deadline)
        assert 0 < converted.time_left() <= 2.0


class TestWaitUntilSync:
    def test_returns_first_satisfying_value(self):
        calls = []

        def probe():
            calls.append(1)
            return len(calls)

        result = wait_until_sync(probe, deadline=5.0, interval=0.01, condition=lambda n: n >= 3)
        assert result == 3

    def test_check_exceptions_are_retried(self):
        attempts = []

        def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise ConnectionRefusedError("not yet")
            return "up"

        assert wait_until_sync(flaky, deadline=5.0, interval=0.01) == "up"
        assert len(attempts) == 3

    def test_timeout_names_stage_and_last_value(self):
        started = time.monotonic()
        with pytest.raises(Timeout) as exc_info:
            wait_until_sync(lambda: 7, deadline=0.3, interval=0.05,
                            description="ready markers", condition=lambda v: v > 10)
        elapsed = time.monotonic() - started

        error = exc_info.value
        assert error.stage == "ready markers"
        assert error.last_value == 7
        assert "ready markers" in str(error)
        assert isinstance(error, TimeoutError)
        assert elapsed < 2.0

    def test_timeout_keeps_last_check_error(self):
        def broken():
            raise OSError("unreachable")

        with pytest.raises(Timeout) as exc_info:
            wait_until_sync(broken, deadline=0.2, interval=0.05)
        assert isinstance(exc_info.value.last_value, OSError)

    def test_expired_deadline_still_checks_once(self):
        assert wait_until_sync(lambda: "done", deadline=Deadline.from_now(-1)) == "done"

    def test_retry_with_delay(self):
        values = iter([{"workers": 0}, {"workers": 1}, {"workers": 2}])
        overview = retry_with_delay(lambda: next(values),
                                    condition=lambda o: o["workers"] >= 2,
                                    delay=0.01, deadline=5.0)
        assert overview == {"workers": 2}


class TestWaitUntilAsync:
    @pytest.mark.asyncio
    async def test_sync_check(self):
        counter = {"n": 0}

        def probe():
            counter["n"] += 1
            return counter["n"] >= 2

        assert await wait_until(probe, deadline=5.0, interval=0.01) is True

    @pytest.mark.asyncio
    async def test_coroutine_check(self):
        async def probe():
            return "leader"

        assert await wait_until(probe, deadline=1.0, interval=0.01) == "leader"

    @pytest.mark.asyncio
    async def test_timeout(self):
        with pytest.raises(Timeout) as exc_info:
            await wait_until(lambda: None, deadline=0.2, interval=0.05, description="cluster overview")
        assert exc_info.value.stage == "cluster overview"
        assert exc_info.value.last_value is None
