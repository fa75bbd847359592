from __future__ import annotations

import os
import queue
import re
import signal
import subprocess
import sys
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
LINE_RE = re.compile(r"^\[\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}\] [A-Z]+: ")


def _env(**overrides: str) -> Dict[str, str]:
    env = {key: value for key, value in os.environ.items() if not key.startswith("CRON_")}
    env.update(
        {
            "PYTHONPATH": str(REPO_ROOT),
            "PYTHONUNBUFFERED": "1",
            "PYTHONIOENCODING": "utf-8",
            "TZ": "UTC",
        }
    )
    env.update(overrides)
    return env


def run_cli(*args: str, timeout: float = 20, **env: str) -> subprocess.CompletedProcess:
    return subprocess.run(
        [sys.executable, "-m", "cronrunner", *args],
        capture_output=True,
        text=True,
        encoding="utf-8",
        env=_env(**env),
        timeout=timeout,
    )


class RunningCli:
    """A cronrunner process whose stdout lines are collected on a background thread."""

    def __init__(self, *args: str, **env: str) -> None:
        self.process = subprocess.Popen(
            [sys.executable, "-m", "cronrunner", *args],
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            encoding="utf-8",
            env=_env(**env),
        )
        self.lines: List[str] = []
        self._queue: "queue.Queue[Optional[str]]" = queue.Queue()
        self._reader = threading.Thread(target=self._read, daemon=True)
        self._reader.start()

    def _read(self) -> None:
        assert self.process.stdout is not None
        for line in self.process.stdout:
            self._queue.put(line.rstrip("\n"))
        self._queue.put(None)

    def wait_for(self, fragment: str, timeout: float = 10) -> str:
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise AssertionError(f"{fragment!r} not seen in {self.lines}")
            try:
                line = self._queue.get(timeout=remaining)
            except queue.Empty:
                continue
            if line is None:
                raise AssertionError(f"process exited before {fragment!r}: {self.lines}")
            self.lines.append(line)
            if fragment in line:
                return line

    def finish(self, timeout: float = 10) -> int:
        code = self.process.wait(timeout=timeout)
        self._reader.join(timeout=timeout)
        while True:
            line = self._queue.get_nowait() if not self._queue.empty() else None
            if line is None:
                break
            self.lines.append(line)
        return code

    def kill(self) -> None:
        if self.process.poll() is None:
            self.process.kill()
            self.process.wait()


@pytest.fixture
def cli_processes():
    started: List[RunningCli] = []

    def start(*args: str, **env: str) -> RunningCli:
        running = RunningCli(*args, **env)
        started.append(running)
        return running

    yield start
    for running in started:
        running.kill()


def test_once_run_logs_output_and_outcome() -> None:
    result = run_cli("@once", "sh", "-c", "echo hello; echo oops >&2")
    lines = result.stdout.splitlines()

    assert result.returncode == 0, result.stdout
    assert all(LINE_RE.match(line) for line in lines), lines
    assert lines[0].endswith("INFO: Cron scheduled: @once (TZ=UTC, timeout=1h0m0s, seconds=false)")
    assert lines[1].endswith("INFO: Command: sh -c 'echo hello; echo oops >&2'")
    assert any(line.endswith("STDOUT: hello") for line in lines)
    assert any(line.endswith("STDERR: oops") for line in lines)
    assert lines[-1].endswith("INFO: Command finished successfully")


def test_once_run_failure_sets_exit_code() -> None:
    result = run_cli("@once", "sh", "-c", "exit 4")
    assert result.returncode == 1
    assert "ERROR: Command finished with error: exit status 4" in result.stdout


def test_timeout_is_reported() -> None:
    result = run_cli("@once", "sh", "-c", "echo waiting; sleep 5", CRON_TIMEOUT="300ms")
    assert result.returncode == 1
    assert "timeout=300ms" in result.stdout
    assert "STDOUT: waiting" in result.stdout
    assert "ERROR: Command timed out after 300ms" in result.stdout


def test_invalid_timeout_env_warns_and_uses_default() -> None:
    result = run_cli("@once", "true", CRON_TIMEOUT="bogus")
    assert result.returncode == 0
    assert 'WARN: Invalid CRON_TIMEOUT="bogus", falling back to 1h' in result.stdout
    assert "timeout=1h0m0s" in result.stdout


def test_invalid_schedule_exits_before_scheduling() -> None:
    result = run_cli("61 * * * *", "true")
    assert result.returncode == 1
    assert "ERROR: Invalid schedule format:" in result.stdout
    assert "Cron scheduled" not in result.stdout


def test_date_that_never_occurs_exits_before_scheduling() -> None:
    result = run_cli("0 0 30 2 *", "true")
    assert result.returncode == 1
    assert "ERROR: Invalid schedule format:" in result.stdout
    assert "Cron scheduled" not in result.stdout


def test_seconds_mode_requires_six_fields() -> None:
    result = run_cli("*/5 * * * *", "true", CRON_WITH_SECONDS="true")
    assert result.returncode == 1
    assert "expected exactly 6 fields" in result.stdout


def test_unknown_command_exits_before_scheduling() -> None:
    result = run_cli("@hourly", "no-such-command-xyz")
    assert result.returncode == 1
    assert "ERROR: Command not found: no-such-command-xyz" in result.stdout


def test_missing_arguments_is_a_usage_error() -> None:
    result = run_cli()
    assert result.returncode == 1
    assert "usage:" in result.stderr

    result = run_cli("@hourly")
    assert result.returncode == 1
    assert "command" in result.stderr


def test_preview_prints_next_fire_times() -> None:
    result = run_cli("--preview", "3", "30 9 * * *")
    lines = result.stdout.splitlines()

    assert result.returncode == 0, result.stdout
    assert lines[0] == "Schedule: 30 9 * * * (UTC)"
    assert len(lines) == 4
    assert all(line.startswith("- ") and line.endswith("T09:30:00+00:00") for line in lines[1:])


def test_config_file_settings(tmp_path: Path) -> None:
    config = tmp_path / "cronrunner.yaml"
    config.write_text("timeout: 45s\nwith_seconds: true\n", encoding="utf-8")
    result = run_cli("--config", str(config), "@once", "true")
    assert result.returncode == 0, result.stdout
    assert "(TZ=UTC, timeout=45s, seconds=true)" in result.stdout


def test_broken_config_file_is_fatal(tmp_path: Path) -> None:
    config = tmp_path / "cronrunner.yaml"
    config.write_text("timeout: 45s\nretries: 2\n", encoding="utf-8")
    result = run_cli("--config", str(config), "@once", "true")
    assert result.returncode == 1
    assert "ERROR: Unknown keys" in result.stdout


def test_sigterm_while_idle_exits_cleanly(cli_processes) -> None:
    running = cli_processes("@every 1h", "true")
    running.wait_for("Command: true")
    running.process.send_signal(signal.SIGTERM)

    assert running.finish() == 0
    assert running.lines[-1].endswith("INFO: Shutting down scheduler…")


def test_sigint_waits_for_in_flight_run(cli_processes) -> None:
    running = cli_processes("@every 100ms", "sh", "-c", "echo begin; sleep 1; echo end")
    running.wait_for("STDOUT: begin")
    running.process.send_signal(signal.SIGINT)

    assert running.finish() == 0
    tail = running.lines[running.lines.index(next(line for line in running.lines if "STDOUT: begin" in line)):]
    assert any(line.endswith("INFO: Shutting down scheduler…") for line in tail)
    assert any(line.endswith("STDOUT: end") for line in tail)
    assert tail[-1].endswith("INFO: Command finished successfully")
    assert sum("Executing:" in line for line in running.lines) == 1
