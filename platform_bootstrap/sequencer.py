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

"""Ordered stage execution with abort policy and dry-run previews."""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass

from rich.table import Table

from platform_bootstrap import console, logger
from platform_bootstrap.errors import PreflightError
from platform_bootstrap.recorder import RunSummary, RunSummaryRecorder, StageResult, StageStatus

# Ctrl-C, and SIGTERM raised as SystemExit by ProcessSupervisor.session()
_INTERRUPTS = (KeyboardInterrupt, SystemExit)


@dataclass(frozen=True)
class Stage:
    """One provisioning step.

    Attributes:
        name: Unique stage name.
        action: Side-effecting callable; raising marks the stage failed.
        abort_on_failure: Whether a failure stops the run.
        dry_run_safe: Whether the stage mutates and so is previewed in a dry run.
            Read-only stages (pre-flight checks) run in both modes.
        preview: What the stage would do, shown in dry-run notes.
        enabled: False when a CLI flag switched the stage off.
    """

    name: str
    action: Callable[[], object]
    abort_on_failure: bool = True
    dry_run_safe: bool = True
    preview: str = ""
    enabled: bool = True


@dataclass(frozen=True)
class SequenceResult:
    results: tuple[StageResult, ...]
    aborted: bool
    summary: RunSummary | None = None

    @property
    def exit_code(self) -> int:
        return 1 if self.aborted else 0


class StageSequencer:
    """Runs stages strictly in declaration order, one at a time.

    A stage moves pending -> running -> succeeded/failed/skipped. A failed
    stage with ``abort_on_failure`` (or any PreflightError) stops the run and
    leaves later stages pending.
    """

    def __init__(
        self,
        stages: Sequence[Stage],
        recorder: RunSummaryRecorder | None = None,
        dry_run: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        names = [stage.name for stage in stages]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Duplicate stage names: {', '.join(duplicates)}")
        self._stages = list(stages)
        self._recorder = recorder
        self._dry_run = dry_run
        self._clock = clock
        self._status = {name: StageStatus.PENDING for name in names}
        self._ran = False
        self._fatal = False

    @property
    def statuses(self) -> dict[str, StageStatus]:
        return dict(self._status)

    def run(self) -> SequenceResult:
        """Execute every stage once.

        Returns:
            Results for the stages that were reached, whether the run aborted,
            and the persisted summary if a recorder is attached.

        Raises:
            RuntimeError: If called a second time.
            KeyboardInterrupt, SystemExit: Propagated after the summary is finalized.
        """
        if self._ran:
            raise RuntimeError("StageSequencer.run() may only be called once")
        self._ran = True

        results: list[StageResult] = []
        aborted = False
        total = len(self._stages)
        try:
            for index, stage in enumerate(self._stages, start=1):
                logger.info("Stage %d/%d: %s", index, total, stage.name)
                result = self._execute(stage)
                results.append(result)
                if self._recorder is not None:
                    self._recorder.record(result)
                if result.status is StageStatus.FAILED and self._aborts(stage, result):
                    console.print(f"[red]\u274c Stage '{stage.name}' failed; aborting run[/red]")
                    aborted = True
                    break
        except _INTERRUPTS:
            self._finalize(aborted=True)
            raise

        return SequenceResult(tuple(results), aborted, self._finalize(aborted))

    def _execute(self, stage: Stage) -> StageResult:
        if not stage.enabled:
            return self._settle(stage, StageStatus.SKIPPED, note="disabled by flag")
        if self._dry_run and stage.dry_run_safe:
            preview = stage.preview or f"run {stage.name}"
            console.print(f"[yellow]\u2139\ufe0f  (DRY RUN) Would {preview}[/yellow]")
            return self._settle(stage, StageStatus.SKIPPED, note=f"would {preview}")

        self._status[stage.name] = StageStatus.RUNNING
        started = self._clock()
        try:
            stage.action()
        except _INTERRUPTS:
            interrupted = self._settle(stage, StageStatus.FAILED, self._clock() - started, "interrupted")
            if self._recorder is not None:
                self._recorder.record(interrupted)
            raise
        except PreflightError as err:
            self._fatal = True
            return self._settle(stage, StageStatus.FAILED, self._clock() - started, str(err))
        except Exception as err:
            logger.error("Stage %s failed: %s", stage.name, err)
            return self._settle(stage, StageStatus.FAILED, self._clock() - started, str(err))
        return self._settle(stage, StageStatus.SUCCEEDED, self._clock() - started)

    def _aborts(self, stage: Stage, result: StageResult) -> bool:
        if self._fatal:
            return True
        if not stage.abort_on_failure:
            console.print(f"[yellow]\u26a0\ufe0f  Stage '{stage.name}' failed; continuing: {result.note}[/yellow]")
            return False
        return True

    def _settle(self, stage: Stage, status: StageStatus, duration: float = 0.0, note: str = "") -> StageResult:
        self._status[stage.name] = status
        return StageResult(name=stage.name, status=status, duration=round(duration, 3), note=note)

    def _finalize(self, aborted: bool) -> RunSummary | None:
        if self._recorder is None:
            return None
        pending = [name for name, status in self._status.items() if status is StageStatus.PENDING]
        return self._recorder.finalize(pending, exit_code=1 if aborted else 0)


_STATUS_STYLE = {
    StageStatus.SUCCEEDED: "green",
    StageStatus.FAILED: "red",
    StageStatus.SKIPPED: "yellow",
    StageStatus.PENDING: "dim",
    StageStatus.RUNNING: "cyan",
}


def render_stage_table(stages: Iterable[StageResult], title: str = "Run summary") -> Table:
    table = Table(title=title)
    table.add_column("Stage")
    table.add_column("Status")
    table.add_column("Duration", justify="right")
    table.add_column("Note", overflow="fold")
    for result in stages:
        style = _STATUS_STYLE[result.status]
        table.add_row(result.name, f"[{style}]{result.status.value}[/{style}]", f"{result.duration:.1f}s", result.note)
    return table
