"""Subprocess supervision with line streaming, timeouts and a shared PID registry."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

COMMAND_NOT_FOUND_EXIT_CODE = 127
DEFAULT_KILL_WAIT_SECONDS = 2.0


@dataclass(slots=True)
class ProcessResult:
    """Captured output and exit status of one supervised subprocess."""

    stdout: str
    stderr: str
    returncode: int
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    @property
    def combined_output(self) -> str:
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


class ProcessRegistry:
    """Thread-safe set of live child PIDs used for forced shutdown."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pids: set[int] = set()

    def register(self, pid: int) -> None:
        with self._lock:
            self._pids.add(pid)

    def unregister(self, pid: int) -> None:
        with self._lock:
            self._pids.discard(pid)

    def pids(self) -> frozenset[int]:
        with self._lock:
            return frozenset(self._pids)

    def kill_all(
        self,
        sig: signal.Signals = signal.SIGTERM,
        wait: float = DEFAULT_KILL_WAIT_SECONDS,
    ) -> None:
        """Signal every tracked process, wait, then SIGKILL survivors."""

        snapshot = sorted(self.pids())
        if not snapshot:
            return
        logger.warning("Sending %s to %d agent process(es)", sig.name, len(snapshot))
        for pid in snapshot:
            _send_signal(pid, sig)
        time.sleep(wait)
        for pid in snapshot:
            _send_signal(pid, signal.SIGKILL)


def _send_signal(pid: int, sig: signal.Signals) -> None:
    try:
        os.kill(pid, sig)
    except (ProcessLookupError, PermissionError):
        logger.debug("Process %d already gone before %s", pid, sig.name)


def run_process(  # noqa: PLR0913
    argv: Sequence[str],
    *,
    cwd: Path | str,
    on_line: Callable[[str], None] | None = None,
    timeout: float | None = None,
    registry: ProcessRegistry | None = None,
    env: dict[str, str] | None = None,
    kill_wait: float = DEFAULT_KILL_WAIT_SECONDS,
) -> ProcessResult:
    """Run ``argv`` in ``cwd``, streaming stdout lines to ``on_line``.

    A missing executable yields a failed result with exit code 127 instead of
    raising. On timeout the whole process group receives SIGTERM, then SIGKILL
    after ``kill_wait`` seconds, and stderr carries a ``Timed out`` message.
    """

    try:
        process = subprocess.Popen(  # noqa: S603
            list(argv),
            cwd=str(cwd),
            env=env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            bufsize=1,
            start_new_session=True,
        )
    except FileNotFoundError as error:
        return ProcessResult(stdout="", stderr=str(error), returncode=COMMAND_NOT_FOUND_EXIT_CODE)

    if registry is not None:
        registry.register(process.pid)
    try:
        stdout_lines: list[str] = []
        stderr_chunks: list[str] = []
        stdout_thread = threading.Thread(
            target=_pump_stdout,
            args=(process, stdout_lines, on_line),
            daemon=True,
        )
        stderr_thread = threading.Thread(
            target=_pump_stderr,
            args=(process, stderr_chunks),
            daemon=True,
        )
        stdout_thread.start()
        stderr_thread.start()

        try:
            returncode = process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.warning("Process %d exceeded %ss timeout, killing", process.pid, timeout)
            _kill_process_group(process, kill_wait=kill_wait)
            stdout_thread.join(timeout=kill_wait)
            stderr_thread.join(timeout=kill_wait)
            return ProcessResult(
                stdout="".join(stdout_lines),
                stderr=f"Timed out after {timeout:g}s",
                returncode=process.returncode if process.returncode is not None else -9,
                timed_out=True,
            )

        stdout_thread.join()
        stderr_thread.join()
        return ProcessResult(
            stdout="".join(stdout_lines),
            stderr="".join(stderr_chunks),
            returncode=returncode,
        )
    finally:
        if registry is not None:
            registry.unregister(process.pid)


def _pump_stdout(
    process: subprocess.Popen[str],
    sink: list[str],
    on_line: Callable[[str], None] | None,
) -> None:
    assert process.stdout is not None
    for line in process.stdout:
        sink.append(line)
        if on_line is None:
            continue
        try:
            on_line(line.rstrip("\r\n"))
        except Exception:  # noqa: BLE001
            logger.debug("Line callback failed", exc_info=True)
    process.stdout.close()


def _pump_stderr(process: subprocess.Popen[str], sink: list[str]) -> None:
    assert process.stderr is not None
    for chunk in process.stderr:
        sink.append(chunk)
    process.stderr.close()


def _kill_process_group(process: subprocess.Popen[str], *, kill_wait: float) -> None:
    for sig in (signal.SIGTERM, signal.SIGKILL):
        try:
            os.killpg(process.pid, sig)
        except (ProcessLookupError, PermissionError):
            return
        try:
            process.wait(timeout=kill_wait)
        except subprocess.TimeoutExpired:
            continue
        return
