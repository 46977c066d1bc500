"""Backup scheduling: a pure next-run calculation plus a background timer."""
from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Callable, Optional

from .config import BackupConfiguration
from .logs import BackupLogger

# Weekly runs fall on this ISO weekday (1 = Monday); monthly runs on day 1.
WEEKLY_WEEKDAY = 1


def local_now() -> datetime:
    """Timezone-aware wall-clock time of this device."""

    return datetime.now().astimezone()


def _at(day: datetime, hour: int, minute: int) -> datetime:
    return day.replace(hour=hour, minute=minute, second=0, microsecond=0)


def _first_of_next_month(moment: datetime) -> datetime:
    if moment.month == 12:
        return moment.replace(year=moment.year + 1, month=1, day=1)
    return moment.replace(month=moment.month + 1, day=1)


def next_run_at(now: datetime, config: BackupConfiguration) -> Optional[datetime]:
    """Return the first scheduled run strictly after *now*, or None when disabled.

    The schedule time is interpreted in the timezone of *now*.
    """

    if not config.enabled:
        return None
    hour, minute = config.schedule_time
    if config.frequency == "daily":
        candidate = _at(now, hour, minute)
        if candidate <= now:
            candidate = _at(now + timedelta(days=1), hour, minute)
        return candidate
    if config.frequency == "weekly":
        days_ahead = (WEEKLY_WEEKDAY - now.isoweekday()) % 7
        candidate = _at(now + timedelta(days=days_ahead), hour, minute)
        if candidate <= now:
            candidate = _at(now + timedelta(days=days_ahead + 7), hour, minute)
        return candidate
    candidate = _at(now.replace(day=1), hour, minute)
    if candidate <= now:
        candidate = _at(_first_of_next_month(now), hour, minute)
    return candidate


class BackupScheduler:
    """Background thread that fires the scheduled pipeline when it is due."""

    def __init__(
        self,
        *,
        config_provider: Callable[[], BackupConfiguration],
        run_backup: Callable[[], object],
        logger: BackupLogger,
        health_check: Optional[Callable[[], object]] = None,
        clock: Callable[[], datetime] = local_now,
        poll_s: float = 60.0,
        health_interval_s: float = 3600.0,
    ) -> None:
        self._config_provider = config_provider
        self._run_backup = run_backup
        self._health_check = health_check
        self._logger = logger
        self._clock = clock
        self._poll_s = max(float(poll_s), 0.05)
        self._health_interval_s = float(health_interval_s)
        self._last_health: Optional[datetime] = None
        self._due: Optional[datetime] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._lock = threading.Lock()

    @property
    def due(self) -> Optional[datetime]:
        return self._due

    # ------------------------------------------------------------------
    def start(self) -> None:
        with self._lock:
            if self._thread and self._thread.is_alive():
                return
            self._stop_event.clear()
            self._thread = threading.Thread(target=self._run_loop, name="backup-scheduler", daemon=True)
            self._thread.start()
        self._logger.event(event="scheduler_start", phase="schedule", ok=True)

    def stop(self) -> None:
        self._stop_event.set()
        with self._lock:
            thread = self._thread
        if thread:
            thread.join(timeout=5)
        with self._lock:
            self._thread = None
        self._logger.event(event="scheduler_stop", phase="schedule", ok=True)

    @property
    def running(self) -> bool:
        with self._lock:
            return bool(self._thread and self._thread.is_alive())

    # ------------------------------------------------------------------
    def tick(self, now: Optional[datetime] = None) -> bool:
        """Fire the pipeline if the pending run is due. Returns True when it ran."""

        moment = now or self._clock()
        config = self._config_provider()
        if not config.enabled:
            self._due = None
            return False
        if self._due is None:
            self._due = next_run_at(moment, config)
            return False
        if moment < self._due:
            # Recomputed every tick so schedule edits apply to the pending slot.
            self._due = next_run_at(moment, config)
            return False
        self._logger.info("scheduled_run", due=self._due.isoformat())
        try:
            self._run_backup()
        finally:
            self._due = next_run_at(moment, config)
        return True

    def _sleep_for(self) -> float:
        if self._due is None:
            return self._poll_s
        remaining = (self._due - self._clock()).total_seconds()
        return min(max(remaining, 0.0), self._poll_s)

    def _maybe_check_health(self) -> None:
        if self._health_check is None:
            return
        moment = self._clock()
        if self._last_health is not None and (moment - self._last_health).total_seconds() < self._health_interval_s:
            return
        self._last_health = moment
        self._health_check()

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
                self._maybe_check_health()
            except Exception as exc:  # keep the timer alive; runs record their own failures
                self._logger.failure("scheduler_error", exc)
            self._stop_event.wait(self._sleep_for())


__all__ = ["BackupScheduler", "WEEKLY_WEEKDAY", "local_now", "next_run_at"]
