"""Tests for RetryExecutor."""

from __future__ import annotations

import pytest
from hypothesis import given
from hypothesis import strategies as st

from platform_bootstrap.errors import RetryExhaustedError
from platform_bootstrap.retrying import RetryExecutor

from .fakes import RecordingSleep


def flaky(failures: int, result: str = "done"):
    """Operation that fails ``failures`` times, then returns ``result``."""
    calls = []

    def operation():
        calls.append(1)
        if len(calls) <= failures:
            raise RuntimeError(f"attempt {len(calls)} failed")
        return result

    operation.calls = calls
    return operation


class TestRetryExecutor:
    def test_first_attempt_success_does_not_sleep(self, sleep):
        op = flaky(0)

        outcome = RetryExecutor(sleep=sleep).run(op, max_attempts=3, initial_delay=2)

        assert outcome.ok
        assert outcome.attempts == 1
        assert outcome.result == "done"
        assert sleep.calls == []

    def test_delays_double_between_attempts(self, sleep):
        op = flaky(3)

        outcome = RetryExecutor(sleep=sleep).run(op, max_attempts=5, initial_delay=2)

        assert outcome.ok
        assert outcome.attempts == 4
        assert sleep.calls == [2, 4, 8]

    def test_exhaustion_keeps_last_error(self, sleep):
        op = flaky(10)

        outcome = RetryExecutor(sleep=sleep).run(op, max_attempts=3, initial_delay=1, description="create cluster")

        assert not outcome.ok
        assert outcome.attempts == 3
        assert str(outcome.last_error) == "attempt 3 failed"

    def test_unwrap_raises_with_last_error(self, sleep):
        outcome = RetryExecutor(sleep=sleep).run(flaky(10), max_attempts=2, initial_delay=1, description="apply")

        with pytest.raises(RetryExhaustedError) as exc_info:
            outcome.unwrap()
        assert exc_info.value.attempts == 2
        assert exc_info.value.last_error is outcome.last_error

    def test_unwrap_returns_result(self, sleep):
        assert RetryExecutor(sleep=sleep).run(flaky(1, "ok"), max_attempts=2, initial_delay=0).unwrap() == "ok"

    @pytest.mark.parametrize(("attempts", "delay"), [(0, 1), (-1, 1), (3, -1)])
    def test_rejects_invalid_arguments(self, sleep, attempts, delay):
        with pytest.raises(ValueError):
            RetryExecutor(sleep=sleep).run(flaky(0), max_attempts=attempts, initial_delay=delay)


class TestRetryExecutorProperties:
    @given(max_attempts=st.integers(min_value=1, max_value=8), delay=st.integers(min_value=0, max_value=10))
    def test_always_failing_runs_exactly_max_attempts(self, max_attempts, delay):
        sleep = RecordingSleep()
        op = flaky(max_attempts + 1)

        outcome = RetryExecutor(sleep=sleep).run(op, max_attempts=max_attempts, initial_delay=delay)

        assert not outcome.ok
        assert len(op.calls) == max_attempts == outcome.attempts
        assert sleep.calls == [delay * 2**k for k in range(max_attempts - 1)]
