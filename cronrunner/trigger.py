"""Trigger engine: a dedicated thread that fires a callback on schedule."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, tzinfo
from typing import Callable, Optional

from .errors import ScheduleError
from .schedule import ParsedSchedule

logger = logging.getLogger(__name__)

# Upper bound on a single wait so wall-clock changes are noticed.
MAX_SLEEP_SECONDS = 30.0


class TriggerEngine:
    """Fires ``on_fire`` at each instant of ``schedule``, one call at a time.

    ``on_fire`` runs synchronously on the engine thread, so a run that
    overlaps its next slot delays that fire instead of running alongside it.
    """

    def __init__(
        self,
        schedule: ParsedSchedule,
        tz: tzinfo,
        on_fire: Callable[[], None],
    ) -> None:
        if schedule.kind not in {"cron", "interval"}:
            raise ValueError(f"TriggerEngine cannot drive a {schedule.kind} schedule")
        self.schedule = schedule
        self.tz = tz
        self.on_fire = on_fire
        self.fire_count = 0
        self.error: Optional[ScheduleError] = None
        self._lock = threading.Lock()
        self._stopped = False
        self._wake = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        with self._lock:
            if self._thread is not None:
                raise RuntimeError("TriggerEngine already started")
            self._thread = threading.Thread(target=self._run, daemon=True, name="cronrunner-trigger")
        self._thread.start()

    def stop(self) -> None:
        """Prevent further fires. A fire already in progress is left to finish."""
        with self._lock:
            self._stopped = True
        self._wake.set()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout=timeout)

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def stopped(self) -> bool:
        return self._stopped

    def _now(self) -> datetime:
        return datetime.now(tz=self.tz)

    def _run(self) -> None:
        try:
            next_fire = self.schedule.next_fire(self._now(), self.tz)
        except ScheduleError as exc:
            self._fail(exc)
            return
        while True:
            if not self._sleep_until(next_fire):
                return
            with self._lock:
                if self._stopped:
                    return
                self.fire_count += 1

            try:
                self.on_fire()
            except Exception as exc:
                logger.exception("Scheduled run raised: %s", exc)

            try:
                next_fire = self._following(next_fire)
            except ScheduleError as exc:
                self._fail(exc)
                return
            logger.debug("Next run at %s", next_fire.isoformat())

    def _fail(self, exc: ScheduleError) -> None:
        logger.error("Cannot compute next run: %s", exc)
        with self._lock:
            self.error = exc
            self._stopped = True

    def _following(self, scheduled: datetime) -> datetime:
        now = self._now()
        if self.schedule.kind == "interval":
            # Anchored on the scheduled instant so cadence does not drift.
            nxt = scheduled + self.schedule.interval
            return nxt if nxt > now else now
        return self.schedule.next_fire(max(now, scheduled), self.tz)

    def _sleep_until(self, when: datetime) -> bool:
        while True:
            remaining = (when - self._now()).total_seconds()
            if remaining <= 0:
                return not self._stopped
            if self._wake.wait(min(remaining, MAX_SLEEP_SECONDS)):
                return False
