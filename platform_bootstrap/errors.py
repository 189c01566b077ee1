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

"""Error taxonomy shared by stages, primitives, and the CLI."""

from __future__ import annotations

from collections.abc import Iterable


class BootstrapError(RuntimeError):
    """Base class for every error raised by platform_bootstrap."""


class PreflightError(BootstrapError):
    """Required configuration, variables, commands, or files are missing.

    Always fatal. Carries the complete list of deficiencies so the caller
    can fix everything in one pass.

    Attributes:
        deficiencies: Every missing item found during the check.
    """

    def __init__(self, message: str, deficiencies: Iterable[str] = ()) -> None:
        self.deficiencies = list(deficiencies)
        detail = f": {', '.join(self.deficiencies)}" if self.deficiencies else ""
        super().__init__(f"{message}{detail}")


class WaitTimeoutError(BootstrapError):
    """A readiness condition did not become true within its budget."""

    def __init__(self, description: str, elapsed: float, timeout: float) -> None:
        self.description = description
        self.elapsed = elapsed
        self.timeout = timeout
        super().__init__(f"Timed out waiting for {description} after {elapsed:g}s (timeout {timeout:g}s)")


class RetryExhaustedError(BootstrapError):
    """A retried operation failed on every attempt.

    Attributes:
        attempts: Number of attempts made.
        last_error: The exception raised by the final attempt.
    """

    def __init__(self, description: str, attempts: int, last_error: BaseException | None) -> None:
        self.description = description
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{description} failed after {attempts} attempts: {last_error}")


class ProcessError(BootstrapError):
    """A supervised background process failed to start or died."""


class ExternalSystemError(BootstrapError):
    """An infrastructure call (kubectl, helm, docker, vault) reported failure."""
