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

"""Run summary model and JSON persistence."""

from __future__ import annotations

import json
import os
import tempfile
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict

from platform_bootstrap import logger
from platform_bootstrap.constants import SUMMARY_RUN

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


class StageStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class StageResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    status: StageStatus
    duration: float = 0.0
    note: str = ""


class RunSummary(BaseModel):
    """Persisted record of one orchestrator run, in stage declaration order."""

    model_config = ConfigDict(frozen=True)

    started_at: datetime
    completed_at: datetime
    dry_run: bool = False
    exit_code: int = 0
    stages: tuple[StageResult, ...] = ()

    def status_of(self, name: str) -> StageStatus | None:
        return next((s.status for s in self.stages if s.name == name), None)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def timestamp(moment: datetime | None = None) -> str:
    return (moment or utc_now()).strftime(TIMESTAMP_FORMAT)


def write_json_atomic(path: Path, data: Any) -> Path:
    """Write ``data`` as JSON via a sibling temp file and ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2, default=str)
            f.write("\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    return path


class RunSummaryRecorder:
    """Collects stage results during a run and writes the summary once at the end.

    Args:
        output_dir: Directory receiving ``run-summary.json`` and the phase summaries.
        dry_run: Recorded in the summary.
        clock: Source of timestamps.
    """

    def __init__(
        self,
        output_dir: Path,
        dry_run: bool = False,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._output_dir = output_dir
        self._dry_run = dry_run
        self._clock = clock
        self._started_at = clock()
        self._results: list[StageResult] = []
        self._summary: RunSummary | None = None

    @property
    def results(self) -> tuple[StageResult, ...]:
        return tuple(self._results)

    def path_for(self, name: str) -> Path:
        return self._output_dir / f"{name}.json"

    def record(self, result: StageResult) -> None:
        if self._summary is not None:
            raise RuntimeError("Run summary already finalized")
        self._results.append(result)

    def finalize(self, pending: Iterable[str] = (), exit_code: int = 0) -> RunSummary:
        """Close the run: mark unreached stages pending and persist the summary.

        Args:
            pending: Names of stages that never ran, in declaration order.
            exit_code: Process exit code the run will report.

        Returns:
            The immutable summary. Calling again returns the same summary.
        """
        if self._summary is not None:
            return self._summary

        stages = self._results + [StageResult(name=name, status=StageStatus.PENDING) for name in pending]
        self._summary = RunSummary(
            started_at=self._started_at,
            completed_at=self._clock(),
            dry_run=self._dry_run,
            exit_code=exit_code,
            stages=tuple(stages),
        )
        path = write_json_atomic(self.path_for(SUMMARY_RUN), self._summary.model_dump(mode="json"))
        logger.info("Run summary written to %s", path)
        return self._summary

    def write_phase_summary(self, name: str, payload: Mapping[str, Any]) -> Path:
        """Persist a per-phase summary (vault, bootstrap, network) with a timestamp."""
        data = {"timestamp": timestamp(self._clock()), **payload}
        path = write_json_atomic(self.path_for(name), data)
        logger.info("%s written to %s", name, path)
        return path


def load_summary(output_dir: Path, name: str) -> dict[str, Any] | None:
    """Read ``<name>.json`` from ``output_dir``; None if absent or unreadable."""
    path = output_dir / f"{name}.json"
    try:
        return json.loads(path.read_text())
    except FileNotFoundError:
        return None
    except json.JSONDecodeError as err:
        logger.warning("Ignoring unreadable summary %s: %s", path, err)
        return None
