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

"""Supervision of long-lived background helpers (tunnels, cloud-provider shims)."""

from __future__ import annotations

import json
import os
import signal
import subprocess
import threading
import time
from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

import sh

from platform_bootstrap import logger
from platform_bootstrap.constants import (
    PROCESS_GRACE_PERIOD_SECONDS,
    PROCESS_LOG_TAIL_LINES,
    PROCESS_STARTUP_GRACE_SECONDS,
)
from platform_bootstrap.errors import ProcessError
from platform_bootstrap.waiting import ConditionWaiter

_EXIT_POLL_INTERVAL_SECONDS = 0.1


@dataclass(frozen=True)
class ProcessHandle:
    """A process spawned by the supervisor.

    Attributes:
        name: Logical name; also names the PID and log files.
        pid: Operating system process id.
        command: Command line the process was started with.
        log_file: File receiving the process's stdout and stderr.
    """

    name: str
    pid: int
    command: tuple[str, ...]
    log_file: Path


@dataclass(frozen=True)
class PidRecord:
    """Contents of a ``<name>.pid`` file: the PID and the command it was started with."""

    pid: int
    command: tuple[str, ...] = ()


def pgrep(pattern: str) -> list[int]:
    """PIDs whose full command line matches ``pattern``."""
    try:
        output = sh.pgrep("-f", pattern)
    except sh.ErrorReturnCode_1:
        return []
    return [int(pid) for pid in str(output).split()]


def process_command_line(pid: int) -> tuple[str, ...] | None:
    """argv of a running process from /proc, or None when it cannot be read."""
    try:
        raw = Path(f"/proc/{pid}/cmdline").read_bytes()
    except OSError:
        return None
    if not raw:
        return None
    return tuple(arg.decode(errors="replace") for arg in raw.rstrip(b"\0").split(b"\0"))


def is_zombie(pid: int) -> bool:
    try:
        stat = Path(f"/proc/{pid}/stat").read_text()
    except OSError:
        return False
    return stat.rpartition(")")[2].split()[:1] == ["Z"]


def tail(path: Path, lines: int = PROCESS_LOG_TAIL_LINES) -> str:
    if not path.is_file():
        return ""
    return "\n".join(path.read_text(errors="replace").splitlines()[-lines:])


class ProcessSupervisor:
    """Owns the background processes of a run: spawn, de-duplicate, terminate.

    PIDs are persisted as ``<name>.pid`` under ``state_dir``, together with the
    command line, so that a later invocation (``down``) can find and stop what
    an earlier one started. A recorded PID is only signalled while it still
    runs that command; PIDs recycled after a crash or reboot are left alone.
    """

    def __init__(
        self,
        state_dir: Path,
        waiter: ConditionWaiter | None = None,
        find_pids: Callable[[str], list[int]] = pgrep,
        startup_grace: float = PROCESS_STARTUP_GRACE_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._state_dir = state_dir
        self._waiter = waiter or ConditionWaiter()
        self._find_pids = find_pids
        self._startup_grace = startup_grace
        self._sleep = sleep
        self._children: dict[int, subprocess.Popen] = {}
        self._session: list[ProcessHandle] | None = None

    # ------------------------------------------------------------------
    # PID files
    # ------------------------------------------------------------------

    def pid_file(self, name: str) -> Path:
        return self._state_dir / f"{name}.pid"

    def log_file(self, name: str) -> Path:
        return self._state_dir / f"{name}.log"

    def read_record(self, name: str) -> PidRecord | None:
        path = self.pid_file(name)
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return None
        except ValueError:
            logger.warning("Ignoring corrupt PID file %s", path)
            return None
        if isinstance(data, int):
            return PidRecord(data)
        try:
            return PidRecord(int(data["pid"]), tuple(str(arg) for arg in data.get("command", ())))
        except (TypeError, KeyError, ValueError):
            logger.warning("Ignoring corrupt PID file %s", path)
            return None

    def read_pid(self, name: str) -> int | None:
        record = self.read_record(name)
        return record.pid if record else None

    def write_record(self, name: str, pid: int, command: Sequence[str]) -> None:
        self._state_dir.mkdir(parents=True, exist_ok=True)
        self.pid_file(name).write_text(json.dumps({"pid": pid, "command": list(command)}) + "\n")

    def runs_recorded_command(self, record: PidRecord) -> bool:
        """Whether ``record.pid`` is still the process that was recorded."""
        if record.pid in self._children:
            return self.is_alive(record.pid)
        return bool(record.command) and process_command_line(record.pid) == record.command

    def _forget(self, name: str) -> None:
        self.pid_file(name).unlink(missing_ok=True)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def is_alive(self, pid: int) -> bool:
        popen = self._children.get(pid)
        if popen is not None:
            return popen.poll() is None
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return not is_zombie(pid)

    def spawn(
        self,
        name: str,
        command: Sequence[str],
        env: Mapping[str, str] | None = None,
    ) -> ProcessHandle:
        """Start ``command`` detached in its own session and record its PID.

        Args:
            name: Logical process name.
            command: Command line to execute.
            env: Extra environment variables for the process.

        Returns:
            Handle of the running process.

        Raises:
            ProcessError: If the command cannot be executed or exits during the start-up grace period.
        """
        self._state_dir.mkdir(parents=True, exist_ok=True)
        log_file = self.log_file(name)
        process_env = {**os.environ, **env} if env else None
        try:
            with open(log_file, "wb") as log:
                popen = subprocess.Popen(
                    list(command),
                    stdin=subprocess.DEVNULL,
                    stdout=log,
                    stderr=subprocess.STDOUT,
                    env=process_env,
                    start_new_session=True,
                )
        except OSError as err:
            raise ProcessError(f"Failed to start {name} ({command[0]}): {err}") from err

        self._children[popen.pid] = popen
        handle = ProcessHandle(name, popen.pid, tuple(command), log_file)
        self.write_record(name, popen.pid, command)
        if self._session is not None:
            self._session.append(handle)

        # no readiness signal exists for these helpers; a short fixed grace is all we can check
        if self._startup_grace > 0:
            self._sleep(self._startup_grace)
        if popen.poll() is not None:
            self._forget(name)
            raise ProcessError(
                f"{name} exited during start-up with code {popen.returncode}:\n{tail(log_file)}"
            )
        logger.info("Started %s (PID %d), logging to %s", name, popen.pid, log_file)
        return handle

    def ensure_singleton(
        self,
        name: str,
        command: Sequence[str],
        match_pattern: str,
        env: Mapping[str, str] | None = None,
    ) -> ProcessHandle:
        """Terminate every prior instance, then spawn exactly one.

        Prior instances are the processes matching ``match_pattern`` plus the
        PID recorded for ``name`` if it still runs the recorded command.
        """
        stale = set(self._find_pids(match_pattern))
        recorded = self._verified_pid(name, stale)
        if recorded is not None:
            stale.add(recorded)
        stale.discard(os.getpid())

        for pid in sorted(stale):
            logger.info("Terminating previous %s instance (PID %d)", name, pid)
            self.terminate(pid)
        self._forget(name)
        return self.spawn(name, command, env)

    def terminate(self, pid: int, grace_period: float = PROCESS_GRACE_PERIOD_SECONDS) -> bool:
        """SIGTERM, wait up to ``grace_period``, then SIGKILL.

        Returns:
            True once the process is gone; an already-exited process counts as success.
        """
        if not self.is_alive(pid):
            self._children.pop(pid, None)
            return True

        self._signal(pid, signal.SIGTERM)
        if self._await_exit(pid, grace_period):
            return True

        logger.warning("PID %d ignored SIGTERM for %gs; sending SIGKILL", pid, grace_period)
        self._signal(pid, signal.SIGKILL)
        return self._await_exit(pid, grace_period)

    def stop(self, name: str, match_pattern: str | None = None) -> list[int]:
        """Terminate the recorded process for ``name`` and any pattern matches; drop its PID file."""
        pids = set(self._find_pids(match_pattern)) if match_pattern else set()
        recorded = self._verified_pid(name, pids)
        if recorded is not None:
            pids.add(recorded)
        pids.discard(os.getpid())

        stopped = [pid for pid in sorted(pids) if self.terminate(pid)]
        self._forget(name)
        return stopped

    @contextmanager
    def session(self) -> Iterator[ProcessSupervisor]:
        """Scope in which any exception or interrupt tears down processes spawned inside it.

        On normal exit the processes keep running. SIGTERM is raised as
        SystemExit while the session is active.
        """
        previous_handler = None
        in_main_thread = threading.current_thread() is threading.main_thread()
        if in_main_thread:
            previous_handler = signal.signal(signal.SIGTERM, _raise_on_sigterm)
        self._session = []
        try:
            yield self
        except BaseException:
            for handle in reversed(self._session):
                logger.warning("Cleaning up %s (PID %d)", handle.name, handle.pid)
                self.terminate(handle.pid)
                self._forget(handle.name)
            raise
        finally:
            self._session = None
            if in_main_thread:
                signal.signal(signal.SIGTERM, previous_handler)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _verified_pid(self, name: str, matched: set[int]) -> int | None:
        """Recorded PID for ``name``, or None if it no longer runs the recorded command."""
        record = self.read_record(name)
        if record is None:
            return None
        if record.pid in matched or self.runs_recorded_command(record):
            return record.pid
        logger.warning("Ignoring stale PID file %s: PID %d is not %s", self.pid_file(name), record.pid, name)
        self._forget(name)
        return None

    def _await_exit(self, pid: int, timeout: float) -> bool:
        result = self._waiter.wait(
            lambda: not self.is_alive(pid),
            timeout=timeout,
            poll_interval=_EXIT_POLL_INTERVAL_SECONDS,
            description=f"PID {pid} to exit",
        )
        if result.ok:
            self._children.pop(pid, None)
        return result.ok

    def _signal(self, pid: int, sig: signal.Signals) -> None:
        try:
            os.kill(pid, sig)
        except ProcessLookupError:
            return
        except PermissionError:
            # root-owned helpers (sudo minikube tunnel)
            try:
                sh.sudo("kill", f"-{sig.name.removeprefix('SIG')}", str(pid))
            except sh.ErrorReturnCode as err:
                if self.is_alive(pid):
                    raise ProcessError(f"Could not signal PID {pid}: {err.stderr.decode().strip()}") from err


def _raise_on_sigterm(signum, frame) -> None:
    raise SystemExit(128 + signum)
