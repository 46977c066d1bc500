import time
from datetime import datetime, timedelta, timezone

import pytest

from backup.config import BackupConfiguration
from backup.schedule import BackupScheduler, local_now, next_run_at


class StubLogger:
    def __init__(self) -> None:
        self.events = []

    def info(self, event: str, **extra):  # pragma: no cover - recorder
        self.events.append(("info", event, extra))

    def failure(self, event: str, err, **extra):  # pragma: no cover - recorder
        self.events.append(("failure", event, extra))

    def event(self, *, event: str, phase: str, ok: bool, **extra):  # pragma: no cover - recorder
        self.events.append(("event", event, phase, ok, extra))


def _utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "now, expected",
    [
        (_utc(2024, 3, 1, 1, 59), _utc(2024, 3, 1, 2, 0)),
        (_utc(2024, 3, 1, 2, 0), _utc(2024, 3, 2, 2, 0)),
        (_utc(2024, 12, 31, 23, 0), _utc(2025, 1, 1, 2, 0)),
    ],
)
def test_daily_schedule(now, expected):
    assert next_run_at(now, BackupConfiguration(frequency="daily", time="02:00")) == expected


def test_weekly_schedule_runs_on_monday():
    config = BackupConfiguration(frequency="weekly", time="03:30")

    # 2024-03-06 is a Wednesday.
    assert next_run_at(_utc(2024, 3, 6, 12, 0), config) == _utc(2024, 3, 11, 3, 30)
    assert next_run_at(_utc(2024, 3, 11, 3, 0), config) == _utc(2024, 3, 11, 3, 30)
    assert next_run_at(_utc(2024, 3, 11, 3, 30), config) == _utc(2024, 3, 18, 3, 30)


def test_monthly_schedule_runs_on_the_first():
    config = BackupConfiguration(frequency="monthly", time="00:15")

    assert next_run_at(_utc(2024, 3, 1, 0, 0), config) == _utc(2024, 3, 1, 0, 15)
    assert next_run_at(_utc(2024, 3, 15, 0, 0), config) == _utc(2024, 4, 1, 0, 15)
    assert next_run_at(_utc(2024, 12, 2, 0, 0), config) == _utc(2025, 1, 1, 0, 15)


def test_disabled_schedule_has_no_next_run():
    assert next_run_at(_utc(2024, 3, 1), BackupConfiguration(enabled=False)) is None


def test_tick_fires_once_when_due():
    runs = []
    config = BackupConfiguration(frequency="daily", time="02:00")
    scheduler = BackupScheduler(
        config_provider=lambda: config,
        run_backup=lambda: runs.append(True),
        logger=StubLogger(),
    )

    assert scheduler.tick(_utc(2024, 3, 1, 1, 0)) is False
    assert scheduler.due == _utc(2024, 3, 1, 2, 0)
    assert scheduler.tick(_utc(2024, 3, 1, 1, 59)) is False
    assert scheduler.tick(_utc(2024, 3, 1, 2, 0)) is True
    assert scheduler.due == _utc(2024, 3, 2, 2, 0)
    assert scheduler.tick(_utc(2024, 3, 1, 2, 1)) is False
    assert runs == [True]


def test_schedule_edit_applies_to_pending_slot():
    state = {"config": BackupConfiguration(frequency="daily", time="02:00")}
    scheduler = BackupScheduler(
        config_provider=lambda: state["config"],
        run_backup=lambda: None,
        logger=StubLogger(),
    )
    scheduler.tick(_utc(2024, 3, 1, 1, 0))

    state["config"] = BackupConfiguration(frequency="daily", time="01:30")
    scheduler.tick(_utc(2024, 3, 1, 1, 10))

    assert scheduler.due == _utc(2024, 3, 1, 1, 30)

    state["config"] = BackupConfiguration(enabled=False)
    assert scheduler.tick(_utc(2024, 3, 1, 1, 40)) is False
    assert scheduler.due is None


def test_failed_run_still_reschedules():
    config = BackupConfiguration(frequency="daily", time="02:00")

    def boom():
        raise RuntimeError("pipeline crashed")

    scheduler = BackupScheduler(config_provider=lambda: config, run_backup=boom, logger=StubLogger())
    scheduler.tick(_utc(2024, 3, 1, 1, 0))

    with pytest.raises(RuntimeError):
        scheduler.tick(_utc(2024, 3, 1, 2, 5))

    assert scheduler.due == _utc(2024, 3, 2, 2, 0)


def test_start_and_stop_thread():
    scheduler = BackupScheduler(
        config_provider=lambda: BackupConfiguration(enabled=False),
        run_backup=lambda: None,
        logger=StubLogger(),
        poll_s=0.05,
    )

    scheduler.start()
    assert scheduler.running
    scheduler.stop()
    assert not scheduler.running


def test_schedule_time_is_wall_clock_in_the_given_zone():
    eastern = timezone(timedelta(hours=-4))
    config = BackupConfiguration(frequency="daily", time="02:00")

    # 23:00 local is already 03:00 UTC on the next day.
    due = next_run_at(datetime(2024, 3, 20, 23, 0, tzinfo=eastern), config)

    assert due == datetime(2024, 3, 21, 2, 0, tzinfo=eastern)
    assert due.astimezone(timezone.utc) == _utc(2024, 3, 21, 6, 0)


@pytest.mark.skipif(not hasattr(time, "tzset"), reason="needs time.tzset")
def test_default_clock_follows_the_device_zone(monkeypatch):
    monkeypatch.setenv("TZ", "EST+5")
    time.tzset()
    try:
        assert local_now().utcoffset() == timedelta(hours=-5)

        scheduler = BackupScheduler(
            config_provider=lambda: BackupConfiguration(frequency="daily", time="02:00"),
            run_backup=lambda: None,
            logger=StubLogger(),
        )
        scheduler.tick()

        assert scheduler.due.utcoffset() == timedelta(hours=-5)
        assert (scheduler.due.hour, scheduler.due.minute) == (2, 0)
    finally:
        monkeypatch.undo()
        time.tzset()
