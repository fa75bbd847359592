"""Job executor: spawns the job command, streams its output, enforces the deadline."""

from __future__ import annotations

import logging
import os
import selectors
import shlex
import shutil
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, tzinfo
from typing import IO, Iterable, Optional, Tuple

from .config import DEFAULT_MAX_LINE_BYTES
from .durations import format_duration
from .errors import CommandNotFoundError
from .log import stream_extra

logger = logging.getLogger(__name__)

STDOUT = "STDOUT"
STDERR = "STDERR"
# How long to wait for output readers after exit or after the group was killed.
READER_GRACE_SECONDS = 5.0
READ_CHUNK_BYTES = 64 * 1024
READ_POLL_SECONDS = 0.1
POSIX = os.name == "posix"


@dataclass(frozen=True)
class JobDefinition:
    command: str
    args: Tuple[str, ...]
    resolved_path: str
    timeout: timedelta

    def command_line(self) -> str:
        return " ".join([self.command, *(shlex.quote(arg) for arg in self.args)])


@dataclass(frozen=True)
class OutputLine:
    stream: str
    text: str
    received_at: datetime


@dataclass(frozen=True)
class Outcome:
    status: str  # success | failed | signaled | timed_out | spawn_error
    return_code: Optional[int] = None
    signal_number: Optional[int] = None
    error: Optional[str] = None
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.status == "success"

    def cause(self) -> str:
        if self.status == "failed":
            return f"exit status {self.return_code}"
        if self.status == "signaled":
            return f"signal: {_signal_description(self.signal_number)}"
        return self.error or self.status


@dataclass
class Execution:
    job: JobDefinition
    started_at: datetime
    deadline: datetime
    process: Optional[subprocess.Popen] = None
    outcome: Optional[Outcome] = None
    output_lines: int = 0
    # Set to make the readers give up on pipes a detached process still holds.
    release_streams: threading.Event = field(default_factory=threading.Event)


def resolve_command(command: str) -> str:
    """Locate ``command`` on PATH (or as a path) and return its absolute path."""
    found = shutil.which(command) if command else None
    if not found:
        raise CommandNotFoundError(command)
    return os.path.abspath(found)


class JobExecutor:
    """Runs one Execution at a time and reports its Outcome. Never raises for per-run failures."""

    def __init__(self, tz: Optional[tzinfo] = None, max_line_bytes: int = DEFAULT_MAX_LINE_BYTES) -> None:
        if max_line_bytes < 1:
            raise ValueError("max_line_bytes must be >= 1")
        self.tz = tz
        self.max_line_bytes = max_line_bytes
        self.last_execution: Optional[Execution] = None
        self._count_lock = threading.Lock()

    def run(self, job: JobDefinition) -> Outcome:
        logger.info("Executing: %s", job.command_line())
        started_at = datetime.now(tz=self.tz)
        execution = Execution(job=job, started_at=started_at, deadline=started_at + job.timeout)
        self.last_execution = execution

        outcome = self._execute(execution)
        execution.outcome = outcome
        execution.process = None
        self._log_outcome(job, outcome)
        return outcome

    def _execute(self, execution: Execution) -> Outcome:
        job = execution.job
        started = time.monotonic()
        deadline = started + job.timeout.total_seconds()

        try:
            process = subprocess.Popen(
                [job.resolved_path, *job.args],
                stdin=subprocess.DEVNULL,
                bufsize=0,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=POSIX,  # own process group, killed as a whole on timeout
            )
        except OSError as exc:
            return Outcome(status="spawn_error", error=str(exc), duration_seconds=time.monotonic() - started)
        execution.process = process

        readers = [
            self._start_reader(execution, process.stdout, STDOUT),
            self._start_reader(execution, process.stderr, STDERR),
        ]

        timed_out = False
        try:
            process.wait(timeout=max(deadline - time.monotonic(), 0))
        except subprocess.TimeoutExpired:
            timed_out = True
            self._kill_group(process)
            process.wait()

        # All output written before exit must be logged before the outcome.
        if timed_out:
            _join_all(readers, time.monotonic() + READER_GRACE_SECONDS)
        else:
            _join_all(readers, max(deadline, time.monotonic() + READER_GRACE_SECONDS))
            if any(reader.is_alive() for reader in readers):
                logger.warning("Output streams still open after exit; killing process group")
                self._kill_group(process)
                _join_all(readers, time.monotonic() + READER_GRACE_SECONDS)
        if any(reader.is_alive() for reader in readers):
            logger.warning("Output streams held open by a detached process; closing pipes")
            execution.release_streams.set()
            _join_all(readers, time.monotonic() + READER_GRACE_SECONDS)

        duration = time.monotonic() - started
        return_code = process.returncode
        if timed_out:
            return Outcome(status="timed_out", return_code=return_code, duration_seconds=duration)
        if return_code == 0:
            return Outcome(status="success", return_code=0, duration_seconds=duration)
        if return_code < 0:
            return Outcome(
                status="signaled",
                return_code=return_code,
                signal_number=-return_code,
                duration_seconds=duration,
            )
        return Outcome(status="failed", return_code=return_code, duration_seconds=duration)

    def _start_reader(self, execution: Execution, stream: IO[bytes], tag: str) -> threading.Thread:
        thread = threading.Thread(
            target=self._drain,
            args=(execution, stream, tag),
            daemon=True,
            name=f"cronrunner-{tag.lower()}",
        )
        thread.start()
        return thread

    def _drain(self, execution: Execution, stream: IO[bytes], tag: str) -> None:
        pending = bytearray()
        try:
            with stream, selectors.DefaultSelector() as selector:
                selector.register(stream, selectors.EVENT_READ)
                while not execution.release_streams.is_set():
                    if not selector.select(timeout=READ_POLL_SECONDS):
                        continue
                    chunk = stream.read(READ_CHUNK_BYTES)
                    if not chunk:
                        break
                    pending += chunk
                    self._emit_complete_lines(execution, tag, pending)
                if pending:
                    self._emit_line(execution, tag, bytes(pending))
        except (OSError, ValueError) as exc:
            logger.error("Error reading output: %s", exc)

    def _emit_complete_lines(self, execution: Execution, tag: str, pending: bytearray) -> None:
        """Emit every newline-terminated line in ``pending``; lines over the limit go out in chunks."""
        while True:
            newline = pending.find(b"\n", 0, self.max_line_bytes)
            if newline != -1:
                size = newline + 1
            elif len(pending) >= self.max_line_bytes:
                size = self.max_line_bytes
            else:
                return
            self._emit_line(execution, tag, bytes(pending[:size]))
            del pending[:size]

    def _emit_line(self, execution: Execution, tag: str, raw: bytes) -> None:
        self.emit(OutputLine(stream=tag, text=_decode_line(raw), received_at=datetime.now(tz=self.tz)))
        with self._count_lock:
            execution.output_lines += 1

    def emit(self, line: OutputLine) -> None:
        logger.info("%s", line.text, extra=stream_extra(line.stream))

    def _kill_group(self, process: subprocess.Popen) -> None:
        try:
            if POSIX:
                os.killpg(process.pid, signal.SIGKILL)
            else:  # pragma: no cover - non-posix
                process.kill()
        except ProcessLookupError:
            pass

    def _log_outcome(self, job: JobDefinition, outcome: Outcome) -> None:
        if outcome.status == "success":
            logger.info("Command finished successfully")
        elif outcome.status == "timed_out":
            logger.error("Command timed out after %s", format_duration(job.timeout))
        elif outcome.status == "spawn_error":
            logger.error("Command failed to start: %s", outcome.error)
        else:
            logger.error("Command finished with error: %s", outcome.cause())


def _decode_line(chunk: bytes) -> str:
    if chunk.endswith(b"\n"):
        chunk = chunk[:-1]
        if chunk.endswith(b"\r"):
            chunk = chunk[:-1]
    return chunk.decode("utf-8", errors="replace")


def _join_all(threads: Iterable[threading.Thread], until: float) -> None:
    for thread in threads:
        thread.join(timeout=max(until - time.monotonic(), 0))


def _signal_description(number: Optional[int]) -> str:
    if number is None:
        return "unknown"
    try:
        description = signal.strsignal(number)
    except ValueError:
        description = None
    return description.lower() if description else f"signal {number}"
