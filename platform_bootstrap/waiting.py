# /*
# Copyright 2026 The Platform Bootstrap Authors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
# */

"""Condition polling with a bounded time budget."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from platform_bootstrap import logger as default_logger
from platform_bootstrap.constants import DEFAULT_POLL_INTERVAL_SECONDS, PROGRESS_LOG_INTERVAL_SECONDS
from platform_bootstrap.errors import WaitTimeoutError


@dataclass(frozen=True)
class WaitResult:
    """Outcome of a condition wait.

    Attributes:
        ok: True if the predicate became true within the budget.
        elapsed: Accumulated poll time in seconds when the wait ended.
        checks: Number of predicate evaluations performed.
        description: Human-readable name of the awaited condition.
        timeout: The budget the wait ran against.
    """

    ok: bool
    elapsed: float
    checks: int
    description: str
    timeout: float

    def raise_for_timeout(self) -> None:
        """Raise WaitTimeoutError if the condition was never met."""
        if not self.ok:
            raise WaitTimeoutError(self.description, self.elapsed, self.timeout)


class ConditionWaiter:
    """Polls a readiness predicate until it holds or the budget is spent.

    Elapsed time is accounted from the poll intervals actually slept, which
    keeps the result deterministic under an injected ``sleep``. The last
    sleep is clipped so ``elapsed`` never runs past ``timeout``.
    """

    def __init__(
        self,
        sleep: Callable[[float], None] = time.sleep,
        log: logging.Logger | None = None,
        progress_interval: float = PROGRESS_LOG_INTERVAL_SECONDS,
    ) -> None:
        self._sleep = sleep
        self._log = log or default_logger
        self._progress_interval = progress_interval

    def wait(
        self,
        predicate: Callable[[], bool],
        timeout: float,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        description: str = "condition",
    ) -> WaitResult:
        """Evaluate ``predicate`` until it returns True or ``timeout`` elapses.

        Args:
            predicate: Side-effect-free readiness check. An exception counts as not ready.
            timeout: Total budget in seconds. Zero means a single check.
            poll_interval: Delay between checks in seconds.
            description: Name of the condition, used in log lines.

        Returns:
            WaitResult with ``ok`` set according to the outcome. A timeout is
            a normal result, not an exception.

        Raises:
            ValueError: If ``timeout`` is negative or ``poll_interval`` is not positive.
        """
        if timeout < 0:
            raise ValueError("timeout must be >= 0")
        if poll_interval <= 0:
            raise ValueError("poll_interval must be > 0")

        self._log.info("Waiting for %s (timeout: %gs)", description, timeout)
        elapsed = 0.0
        checks = 0
        next_progress = self._progress_interval

        while True:
            checks += 1
            if self._check(predicate, description):
                self._log.info("%s met after %gs", description, elapsed)
                return WaitResult(True, elapsed, checks, description, timeout)
            if elapsed >= timeout:
                self._log.warning("Timeout waiting for %s after %gs", description, elapsed)
                return WaitResult(False, elapsed, checks, description, timeout)

            step = min(poll_interval, timeout - elapsed)
            self._sleep(step)
            elapsed += step

            if elapsed >= next_progress:
                self._log.info("Still waiting for %s... (%gs/%gs)", description, elapsed, timeout)
                while next_progress <= elapsed:
                    next_progress += self._progress_interval

    def _check(self, predicate: Callable[[], bool], description: str) -> bool:
        try:
            return bool(predicate())
        except Exception as exc:  # a failing probe is "not ready"
            self._log.debug("Check for %s raised %s: %s", description, type(exc).__name__, exc)
            return False
