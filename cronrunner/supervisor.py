"""Process supervisor: startup validation, the scheduling loop and graceful shutdown."""

from __future__ import annotations

import logging
import signal
import threading
from typing import Any, Dict, Optional, Sequence

from .config import Settings
from .executor import JobDefinition, JobExecutor, Outcome, resolve_command
from .schedule import ParsedSchedule, validate
from .trigger import TriggerEngine

logger = logging.getLogger(__name__)

SHUTDOWN_SIGNALS = ("SIGINT", "SIGTERM")
SHUTDOWN_POLL_SECONDS = 1.0


def prepare(
    expression: str,
    command: str,
    args: Sequence[str],
    settings: Settings,
) -> "Supervisor":
    """Validate everything up front; raises before anything is scheduled."""
    schedule = validate(expression, settings.with_seconds)
    resolved = resolve_command(command)
    job = JobDefinition(
        command=command,
        args=tuple(args),
        resolved_path=resolved,
        timeout=settings.timeout,
    )
    return Supervisor(job, schedule, settings)


class Supervisor:
    def __init__(
        self,
        job: JobDefinition,
        schedule: ParsedSchedule,
        settings: Settings,
        executor: Optional[JobExecutor] = None,
    ) -> None:
        self.job = job
        self.schedule = schedule
        self.settings = settings
        self.executor = executor or JobExecutor(settings.timezone, settings.max_line_bytes)
        self.engine: Optional[TriggerEngine] = None
        self.last_outcome: Optional[Outcome] = None
        self._shutdown = threading.Event()
        self._previous_handlers: Dict[int, Any] = {}

    def run(self) -> int:
        logger.info(
            "Cron scheduled: %s (TZ=%s, timeout=%s, seconds=%s)",
            self.schedule.expression,
            self.settings.timezone_name,
            self.settings.timeout_text,
            str(self.settings.with_seconds).lower(),
        )
        logger.info("Command: %s", self.job.command_line())

        self._install_signal_handlers()
        try:
            if self.schedule.kind == "once":
                self._fire()
                return 0 if self.last_outcome is not None and self.last_outcome.success else 1
            return self._run_scheduled()
        finally:
            self._restore_signal_handlers()

    def request_shutdown(self) -> None:
        self._shutdown.set()

    def _run_scheduled(self) -> int:
        self.engine = TriggerEngine(self.schedule, self.settings.timezone, self._fire)
        self.engine.start()
        while not self._shutdown.wait(SHUTDOWN_POLL_SECONDS):
            if not self.engine.is_alive():
                break
        if self.engine.error is not None:
            return 1

        logger.info("Shutting down scheduler…")
        self.engine.stop()
        # An in-flight run is never preempted here; only its own timeout can do that.
        self.engine.join()
        return 0

    def _fire(self) -> None:
        self.last_outcome = self.executor.run(self.job)

    def _handle_signal(self, signum: int, _frame: Any) -> None:
        self.request_shutdown()

    def _install_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return
        for sig_name in SHUTDOWN_SIGNALS:
            if hasattr(signal, sig_name):
                sig = getattr(signal, sig_name)
                self._previous_handlers[sig] = signal.signal(sig, self._handle_signal)

    def _restore_signal_handlers(self) -> None:
        for sig, handler in self._previous_handlers.items():
            signal.signal(sig, handler)
        self._previous_handlers.clear()


def run(job: JobDefinition, schedule: ParsedSchedule, settings: Settings) -> int:
    return Supervisor(job, schedule, settings).run()
