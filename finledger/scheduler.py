from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import threading
import time
from typing import Any, Callable, Optional
from zoneinfo import ZoneInfo

import structlog

from finledger.schedules import validate_timezone

logger = structlog.get_logger(__name__)

MAX_RESULTS = 30
STATUS_RESULTS = 10


def parse_daily_time(value: str) -> tuple[int, int]:
    try:
        hour_text, minute_text = value.strip().split(":")
        hour, minute = int(hour_text), int(minute_text)
    except ValueError as exc:
        raise ValueError("Daily time must use HH:MM (24-hour) format.") from exc
    if not (0 <= hour < 24 and 0 <= minute < 60):
        raise ValueError("Daily time must use HH:MM (24-hour) format.")
    return hour, minute


def next_daily_run(now: datetime, daily_time: str, tz: ZoneInfo) -> datetime:
    """Next occurrence of ``daily_time`` in ``tz`` strictly after ``now``."""
    hour, minute = parse_daily_time(daily_time)
    local_now = now.astimezone(tz) if now.tzinfo else now.replace(tzinfo=tz)
    candidate = local_now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate <= local_now:
        next_day = local_now.date() + timedelta(days=1)
        candidate = datetime(next_day.year, next_day.month, next_day.day, hour, minute, tzinfo=tz)
    return candidate


@dataclass(frozen=True)
class JobResult:
    timestamp: datetime
    result: Any
    duration_ms: int
    error: Optional[str] = None


class DailyJob:
    """Runs ``action`` once a day at a wall-clock time in an IANA timezone.

    The job owns its thread, stop event and result history; nothing is kept
    at module level.
    """

    def __init__(
        self,
        name: str,
        action: Callable[[], Any],
        daily_time: str = "08:00",
        timezone: str = "Europe/Bucharest",
        enabled: bool = True,
    ) -> None:
        parse_daily_time(daily_time)
        self.name = name
        self._action = action
        self._daily_time = daily_time
        self._timezone = validate_timezone(timezone) or "UTC"
        self._enabled = enabled
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._run_lock = threading.Lock()
        self._results: list[JobResult] = []

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def enabled(self) -> bool:
        return self._enabled

    def start(self) -> None:
        if self.is_running:
            logger.info("daily_job_already_running", job=self.name)
            return
        if not self._enabled:
            logger.info("daily_job_disabled", job=self.name)
            return
        self._stop_event = threading.Event()
        self._thread = threading.Thread(target=self._loop, name=f"daily-{self.name}", daemon=True)
        self._thread.start()
        logger.info("daily_job_started", job=self.name, daily_time=self._daily_time, timezone=self._timezone)

    def stop(self, timeout: float = 5.0) -> None:
        if self._thread is None:
            return
        self._stop_event.set()
        self._thread.join(timeout)
        self._thread = None
        logger.info("daily_job_stopped", job=self.name)

    def next_run(self, now: Optional[datetime] = None) -> datetime:
        tz = ZoneInfo(self._timezone)
        return next_daily_run(now or datetime.now(tz), self._daily_time, tz)

    def trigger_manual_run(self) -> JobResult:
        logger.info("daily_job_manual_trigger", job=self.name)
        return self._run_once()

    def set_enabled(self, enabled: bool) -> None:
        self._enabled = enabled
        if enabled and not self.is_running:
            self.start()
        elif not enabled and self.is_running:
            self.stop()

    def update_config(
        self,
        daily_time: Optional[str] = None,
        timezone: Optional[str] = None,
        enabled: Optional[bool] = None,
    ) -> None:
        if daily_time is not None:
            parse_daily_time(daily_time)
        if timezone is not None:
            validate_timezone(timezone)
        was_running = self.is_running
        if was_running:
            self.stop()
        if daily_time is not None:
            self._daily_time = daily_time
        if timezone is not None:
            self._timezone = timezone
        if enabled is not None:
            self._enabled = enabled
        if was_running and self._enabled:
            self.start()
        logger.info("daily_job_reconfigured", job=self.name, daily_time=self._daily_time, timezone=self._timezone)

    def status(self) -> dict:
        return {
            "name": self.name,
            "is_running": self.is_running,
            "next_run": self.next_run().isoformat() if self.is_running else None,
            "config": {
                "daily_time": self._daily_time,
                "timezone": self._timezone,
                "enabled": self._enabled,
            },
            "last_results": list(self._results[-STATUS_RESULTS:]),
        }

    @property
    def results(self) -> list[JobResult]:
        return list(self._results)

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            tz = ZoneInfo(self._timezone)
            now = datetime.now(tz)
            wait_seconds = (self.next_run(now) - now).total_seconds()
            if self._stop_event.wait(max(wait_seconds, 0)):
                break
            self._run_once()

    def _run_once(self) -> JobResult:
        with self._run_lock:
            started = time.monotonic()
            timestamp = datetime.now(ZoneInfo(self._timezone))
            try:
                outcome = self._action()
                error = None
            except Exception as exc:
                # A failing run is recorded; the job keeps its schedule.
                logger.exception("daily_job_failed", job=self.name)
                outcome = None
                error = str(exc) or exc.__class__.__name__
            duration_ms = int((time.monotonic() - started) * 1000)
            job_result = JobResult(timestamp=timestamp, result=outcome, duration_ms=duration_ms, error=error)
            self._results.append(job_result)
            if len(self._results) > MAX_RESULTS:
                self._results = self._results[-MAX_RESULTS:]
            logger.info("daily_job_completed", job=self.name, duration_ms=duration_ms, error=error)
            return job_result
