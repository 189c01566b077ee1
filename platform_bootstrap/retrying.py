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

"""Bounded retry with pure exponential backoff, built on tenacity."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

from tenacity import RetryCallState, RetryError, Retrying, stop_after_attempt, wait_exponential

from platform_bootstrap import logger as default_logger
from platform_bootstrap.errors import RetryExhaustedError

T = TypeVar("T")


@dataclass(frozen=True)
class RetryOutcome(Generic[T]):
    """Result of a retried operation.

    Attributes:
        ok: True if some attempt succeeded.
        attempts: Number of attempts made (1..max_attempts).
        result: Value returned by the successful attempt, or None.
        last_error: Exception of the final failed attempt, or None on success.
        description: Name of the operation, used in error messages.
    """

    ok: bool
    attempts: int
    result: T | None = None
    last_error: BaseException | None = None
    description: str = "operation"

    def unwrap(self) -> T | None:
        """Return the result, or raise RetryExhaustedError if every attempt failed."""
        if not self.ok:
            raise RetryExhaustedError(self.description, self.attempts, self.last_error)
        return self.result


class RetryExecutor:
    """Re-invokes a fallible operation with doubling delays up to a bound.

    The operation must be safe to re-run; side effects of failed attempts
    are not deduplicated here.
    """

    def __init__(
        self,
        sleep: Callable[[float], None] = time.sleep,
        log: logging.Logger | None = None,
    ) -> None:
        self._sleep = sleep
        self._log = log or default_logger

    def run(
        self,
        operation: Callable[[], T],
        max_attempts: int,
        initial_delay: float,
        description: str = "operation",
    ) -> RetryOutcome[T]:
        """Run ``operation`` until it succeeds or ``max_attempts`` is reached.

        Args:
            operation: Idempotent callable; any Exception counts as a failed attempt.
            max_attempts: Total number of tries, at least 1.
            initial_delay: Delay in seconds before the second attempt; doubles afterwards.
            description: Name of the operation for log lines and errors.

        Returns:
            RetryOutcome carrying the result or the last observed error.

        Raises:
            ValueError: If ``max_attempts`` < 1 or ``initial_delay`` < 0.
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if initial_delay < 0:
            raise ValueError("initial_delay must be >= 0")

        attempts = 0

        def _attempt() -> T:
            nonlocal attempts
            attempts += 1
            self._log.debug("Attempt %d/%d: %s", attempts, max_attempts, description)
            return operation()

        def _before_sleep(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            delay = retry_state.next_action.sleep if retry_state.next_action else 0
            self._log.warning(
                "%s failed: %s. Retrying in %gs... (%d/%d)",
                description, error, delay, retry_state.attempt_number, max_attempts,
            )

        retrying = Retrying(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=initial_delay, exp_base=2, min=0),
            sleep=self._sleep,
            before_sleep=_before_sleep,
            reraise=False,
        )
        try:
            result = retrying(_attempt)
        except RetryError as err:
            last_error = err.last_attempt.exception()
            self._log.error("%s failed after %d attempts: %s", description, attempts, last_error)
            return RetryOutcome(False, attempts, last_error=last_error, description=description)
        return RetryOutcome(True, attempts, result=result, description=description)
