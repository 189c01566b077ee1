"""Tests for ConditionWaiter."""

from __future__ import annotations

import logging

import pytest
from hypothesis import given
from hypothesis import strategies as st

from platform_bootstrap.errors import WaitTimeoutError
from platform_bootstrap.waiting import ConditionWaiter

from .fakes import RecordingSleep


class TestConditionWaiter:
    def test_immediate_success_has_zero_elapsed(self, sleep):
        result = ConditionWaiter(sleep=sleep).wait(lambda: True, timeout=30)

        assert result.ok
        assert result.elapsed == 0
        assert result.checks == 1
        assert sleep.calls == []

    def test_becomes_true_after_some_polls(self, sleep):
        answers = iter([False, False, True])
        result = ConditionWaiter(sleep=sleep).wait(lambda: next(answers), timeout=60, poll_interval=5)

        assert result.ok
        assert result.checks == 3
        assert result.elapsed == 10
        assert sleep.calls == [5, 5]

    def test_zero_timeout_checks_exactly_once(self, sleep):
        calls = []

        def predicate():
            calls.append(1)
            return False

        result = ConditionWaiter(sleep=sleep).wait(predicate, timeout=0)

        assert not result.ok
        assert len(calls) == 1
        assert sleep.calls == []

    def test_last_sleep_is_clipped_to_the_budget(self, sleep):
        result = ConditionWaiter(sleep=sleep).wait(lambda: False, timeout=12, poll_interval=5)

        assert sleep.calls == [5, 5, 2]
        assert result.elapsed == 12

    def test_raising_predicate_counts_as_not_ready(self, sleep):
        answers = iter([RuntimeError("api down"), True])

        def predicate():
            answer = next(answers)
            if isinstance(answer, Exception):
                raise answer
            return answer

        result = ConditionWaiter(sleep=sleep).wait(predicate, timeout=10, poll_interval=1)

        assert result.ok
        assert result.checks == 2

    def test_raise_for_timeout(self, sleep):
        result = ConditionWaiter(sleep=sleep).wait(lambda: False, timeout=3, poll_interval=1, description="nodes Ready")

        with pytest.raises(WaitTimeoutError, match="nodes Ready"):
            result.raise_for_timeout()

    def test_raise_for_timeout_is_silent_on_success(self, sleep):
        ConditionWaiter(sleep=sleep).wait(lambda: True, timeout=3).raise_for_timeout()

    @pytest.mark.parametrize(("timeout", "poll"), [(-1, 5), (10, 0), (10, -2)])
    def test_rejects_invalid_budget(self, sleep, timeout, poll):
        with pytest.raises(ValueError):
            ConditionWaiter(sleep=sleep).wait(lambda: True, timeout=timeout, poll_interval=poll)

    def test_progress_is_logged_every_interval(self, sleep, caplog):
        log = logging.getLogger("platform_bootstrap.test_waiting")
        caplog.set_level(logging.INFO, logger=log.name)

        ConditionWaiter(sleep=sleep, log=log, progress_interval=30).wait(lambda: False, timeout=90, poll_interval=5)

        progress = [r for r in caplog.records if r.getMessage().startswith("Still waiting")]
        assert len(progress) == 3


class TestConditionWaiterProperties:
    @given(timeout=st.integers(min_value=0, max_value=900), poll=st.integers(min_value=1, max_value=60))
    def test_always_false_elapsed_is_bounded(self, timeout, poll):
        sleep = RecordingSleep()

        result = ConditionWaiter(sleep=sleep).wait(lambda: False, timeout=timeout, poll_interval=poll)

        assert not result.ok
        assert timeout <= result.elapsed < timeout + poll
        assert sleep.total == result.elapsed
