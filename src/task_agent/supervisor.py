"""Spawn, stream, time out and kill external agent processes."""
from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable
from typing import Mapping
from typing import Optional
from typing import Sequence

from .errors import ProcessFailure
from .errors import ProcessLaunchError
from .errors import TaskAgentError
from .errors import Timeout

logger = logging.getLogger(__name__)

LineCallback = Callable[[str], None]


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ProcessOutcome:
    kind: OutcomeKind
    exit_code: int | None
    duration: float
    error: TaskAgentError | None = None

    @property
    def ok(self) -> bool:
        return self.kind is OutcomeKind.SUCCESS

    @property
    def message(self) -> str:
        if self.error is not None:
            return str(self.error)
        if self.kind is OutcomeKind.CANCELLED:
            return "Agent process cancelled"
        return f"Agent exited with code {self.exit_code}"


class SupervisedProcess:
    """Handle for one running agent process; ``future`` resolves to a ProcessOutcome."""

    def __init__(self, key: str, process: subprocess.Popen, timeout: float | None) -> None:
        self.key = key
        self.process = process
        self.timeout = timeout
        self.started = time.monotonic()
        self.future: Future[ProcessOutcome] = Future()
        self.lock = threading.Lock()
        self.cancel_requested = False
        self.timed_out = False
        self.reader: threading.Thread | None = None

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> int | None:
        return self.process.poll()

    def is_running(self) -> bool:
        return self.process.poll() is None


class ProcessSupervisor:
    """One monitoring thread per process; outcomes are reported through futures."""

    def __init__(self, *, kill_grace_seconds: float = 5.0) -> None:
        self.kill_grace_seconds = kill_grace_seconds
        self._lock = threading.Lock()
        self._processes: dict[str, SupervisedProcess] = {}
        self._starting: set[str] = set()

    def start(
        self,
        key: str,
        command: Sequence[str],
        *,
        cwd: Path,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
        on_line: Optional[LineCallback] = None,
    ) -> SupervisedProcess:
        with self._lock:
            if key in self._processes or key in self._starting:
                raise ProcessLaunchError(f"A process is already running for {key}")
            self._starting.add(key)
        try:
            process = self._spawn(command, cwd, env)
        except BaseException:
            with self._lock:
                self._starting.discard(key)
            raise

        handle = SupervisedProcess(key, process, timeout)
        with self._lock:
            self._starting.discard(key)
            self._processes[key] = handle
        handle.reader = threading.Thread(
            target=self._pump_output,
            args=(handle, on_line),
            name=f"agent-output-{key[:8]}",
            daemon=True,
        )
        handle.reader.start()
        threading.Thread(
            target=self._monitor,
            args=(handle,),
            name=f"agent-monitor-{key[:8]}",
            daemon=True,
        ).start()
        logger.info("Started agent process %s for %s (timeout=%s)", process.pid, key, timeout)
        return handle

    def cancel(self, key: str) -> bool:
        """Request termination; returns False when nothing is running under ``key``."""

        handle = self.get(key)
        if handle is None:
            return False
        with handle.lock:
            if handle.cancel_requested:
                return True
            if not handle.is_running():
                return False
            handle.cancel_requested = True
        logger.info("Cancelling agent process %s for %s", handle.pid, key)
        threading.Thread(
            target=self._terminate,
            args=(handle,),
            name=f"agent-kill-{key[:8]}",
            daemon=True,
        ).start()
        return True

    def get(self, key: str) -> SupervisedProcess | None:
        with self._lock:
            return self._processes.get(key)

    def is_running(self, key: str) -> bool:
        handle = self.get(key)
        return handle is not None and handle.is_running()

    def running(self) -> list[str]:
        with self._lock:
            return [key for key, handle in self._processes.items() if handle.is_running()]

    def shutdown(self, *, wait: bool = True) -> None:
        with self._lock:
            handles = list(self._processes.values())
        for handle in handles:
            self.cancel(handle.key)
        if wait:
            for handle in handles:
                try:
                    handle.future.result(timeout=self.kill_grace_seconds * 2 + 1)
                except Exception:  # pragma: no cover - best effort during shutdown
                    logger.warning("Agent process %s did not stop cleanly", handle.pid)

    # ------------------------------------------------------------------
    def _spawn(self, command: Sequence[str], cwd: Path, env: Mapping[str, str] | None) -> subprocess.Popen:
        try:
            return subprocess.Popen(
                list(command),
                cwd=str(cwd),
                env={**os.environ, **(env or {})},
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            raise ProcessLaunchError(f"Agent executable not found: {command[0]}") from exc
        except OSError as exc:
            raise ProcessLaunchError(f"Failed to start agent process: {exc}") from exc

    def _pump_output(self, handle: SupervisedProcess, on_line: Optional[LineCallback]) -> None:
        stream = handle.process.stdout
        if stream is None:
            return
        for raw in stream:
            if on_line is None:
                continue
            try:
                on_line(raw.rstrip("\r\n"))
            except Exception:  # pragma: no cover - sink errors must not stop the pump
                logger.exception("Output callback failed for %s", handle.key)
        stream.close()

    def _monitor(self, handle: SupervisedProcess) -> None:
        try:
            try:
                exit_code = handle.process.wait(timeout=handle.timeout)
            except subprocess.TimeoutExpired:
                with handle.lock:
                    if not handle.cancel_requested:
                        handle.timed_out = True
                logger.warning("Agent process %s for %s exceeded %.0fs", handle.pid, handle.key, handle.timeout)
                self._terminate(handle)
                exit_code = handle.process.wait()
            if handle.reader is not None:
                handle.reader.join(timeout=self.kill_grace_seconds)
            outcome = self._classify(handle, exit_code)
        except Exception as exc:  # pragma: no cover - unexpected monitor failure
            logger.exception("Monitoring failed for %s", handle.key)
            self._forget(handle)
            handle.future.set_exception(exc)
            return
        self._forget(handle)
        logger.info("Agent process %s for %s finished: %s", handle.pid, handle.key, outcome.kind.value)
        handle.future.set_result(outcome)

    def _classify(self, handle: SupervisedProcess, exit_code: int) -> ProcessOutcome:
        duration = time.monotonic() - handle.started
        with handle.lock:
            cancelled = handle.cancel_requested
            timed_out = handle.timed_out
        if cancelled:
            return ProcessOutcome(OutcomeKind.CANCELLED, exit_code, duration)
        if timed_out:
            return ProcessOutcome(OutcomeKind.TIMEOUT, exit_code, duration, Timeout(handle.timeout or 0.0))
        if exit_code == 0:
            return ProcessOutcome(OutcomeKind.SUCCESS, exit_code, duration)
        detail = f"terminated by signal {-exit_code}" if exit_code < 0 else None
        return ProcessOutcome(OutcomeKind.FAILURE, exit_code, duration, ProcessFailure(exit_code, detail))

    def _terminate(self, handle: SupervisedProcess) -> None:
        if not handle.is_running():
            return
        self._signal_group(handle, signal.SIGTERM)
        try:
            handle.process.wait(timeout=self.kill_grace_seconds)
        except subprocess.TimeoutExpired:
            logger.warning("Agent process %s ignored SIGTERM, killing", handle.pid)
            self._signal_group(handle, signal.SIGKILL)

    @staticmethod
    def _signal_group(handle: SupervisedProcess, sig: int) -> None:
        try:
            if os.name == "posix":
                os.killpg(handle.pid, sig)
            elif sig == signal.SIGTERM:
                handle.process.terminate()
            else:
                handle.process.kill()
        except ProcessLookupError:
            pass

    def _forget(self, handle: SupervisedProcess) -> None:
        with self._lock:
            if self._processes.get(handle.key) is handle:
                del self._processes[handle.key]


__all__ = [
    "OutcomeKind",
    "ProcessOutcome",
    "ProcessSupervisor",
    "SupervisedProcess",
]
