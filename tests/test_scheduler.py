from __future__ import annotations

import asyncio
import io
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

from rich.console import Console

from ibadah_cli import notify
from ibadah_cli.config import Settings
from ibadah_cli.models import HabitReminder, PrayerInstantSet, QuietHours, ReminderConfig
from ibadah_cli.notify import (
    DateTrigger,
    FileNotificationProvider,
    InMemoryNotificationProvider,
    ReminderScheduler,
    ScheduledNotification,
    SchedulingError,
    TagState,
    WeeklyTrigger,
    is_in_quiet_hours,
    plan_prayer_reminders,
)

DAY = date(2024, 3, 20)
PRAYER_TAGS = {
    "prayer_reminder:fajr",
    "prayer_reminder:dhuhr",
    "prayer_reminder:asr",
    "prayer_reminder:maghrib",
    "prayer_reminder:isha",
}


def _at(hour: int, minute: int = 0) -> datetime:
    return datetime(DAY.year, DAY.month, DAY.day, hour, minute, tzinfo=timezone.utc)


def _instants() -> PrayerInstantSet:
    return PrayerInstantSet(
        date=DAY,
        fajr=_at(5, 0),
        sunrise=_at(6, 30),
        dhuhr=_at(12, 15),
        asr=_at(15, 45),
        maghrib=_at(18, 20),
        isha=_at(19, 45),
    )


def _prayer_config(**overrides) -> ReminderConfig:
    return ReminderConfig("prayer", **{"enabled": True, "lead_minutes": 10, **overrides})


def _scheduler(provider, now: datetime | None = None, timeout: float = 1.0) -> ReminderScheduler:
    moment = now or _at(0, 0)
    return ReminderScheduler(provider, time_zone="UTC", clock=lambda: moment, timeout=timeout)


class FlakyProvider(InMemoryNotificationProvider):
    """Fails the first ``failures`` schedule calls for each tag in ``broken``."""

    def __init__(self, broken: set[str], failures: int) -> None:
        super().__init__()
        self.broken = broken
        self.failures = failures
        self.seen: dict[str, int] = {}

    async def schedule(self, notification: ScheduledNotification) -> None:
        if notification.tag in self.broken:
            self.seen[notification.tag] = self.seen.get(notification.tag, 0) + 1
            if self.seen[notification.tag] <= self.failures:
                self.calls.append(("schedule", notification.tag))
                raise SchedulingError("permission denied")
        await super().schedule(notification)


class HangingProvider(InMemoryNotificationProvider):
    async def schedule(self, notification: ScheduledNotification) -> None:
        self.calls.append(("schedule", notification.tag))
        await asyncio.sleep(10)


def test_plan_applies_lead_minutes() -> None:
    planned = plan_prayer_reminders(_instants(), _prayer_config(), _at(0, 0), "UTC")
    by_tag = {item.tag: item for item in planned}
    assert set(by_tag) == PRAYER_TAGS
    assert by_tag["prayer_reminder:dhuhr"].trigger == DateTrigger(at=_at(12, 5))
    assert by_tag["prayer_reminder:dhuhr"].payload["type"] == "prayer_reminder"


def test_rescheduling_keeps_one_pending_per_tag() -> None:
    provider = InMemoryNotificationProvider()
    scheduler = _scheduler(provider)

    async def run() -> None:
        await scheduler.schedule_prayer_reminders(_instants(), _prayer_config())
        await scheduler.schedule_prayer_reminders(_instants(), _prayer_config(lead_minutes=5))

    asyncio.run(run())
    assert set(provider.pending) == PRAYER_TAGS
    assert provider.pending["prayer_reminder:fajr"].trigger == DateTrigger(at=_at(4, 55))
    assert all(scheduler.state(tag) == TagState.PENDING for tag in PRAYER_TAGS)


def test_cancel_is_issued_before_each_schedule() -> None:
    provider = InMemoryNotificationProvider()
    asyncio.run(_scheduler(provider).schedule_prayer_reminders(_instants(), _prayer_config()))

    for tag in PRAYER_TAGS:
        tag_calls = [action for action, called in provider.calls if called == tag]
        assert tag_calls == ["cancel", "schedule"]


def test_quiet_hours_suppress_everything() -> None:
    provider = InMemoryNotificationProvider()
    config = _prayer_config(quiet_hours=QuietHours("00:00", "23:59"))
    planned = asyncio.run(_scheduler(provider).schedule_prayer_reminders(_instants(), config))
    assert planned == []
    assert provider.pending == {}


def test_quiet_hours_wrap_midnight() -> None:
    quiet = QuietHours("22:00", "06:00")
    assert is_in_quiet_hours(_at(23, 30), quiet, "UTC")
    assert is_in_quiet_hours(_at(4, 50), quiet, "UTC")
    assert is_in_quiet_hours(_at(6, 0), quiet, "UTC")
    assert not is_in_quiet_hours(_at(12, 0), quiet, "UTC")
    assert not is_in_quiet_hours(_at(12, 0), None, "UTC")


def test_quiet_hours_use_trigger_time() -> None:
    provider = InMemoryNotificationProvider()
    config = _prayer_config(quiet_hours=QuietHours("22:00", "06:00"))
    asyncio.run(_scheduler(provider, now=_at(23, 0) - timedelta(days=1)).schedule_prayer_reminders(_instants(), config))
    assert "prayer_reminder:fajr" not in provider.pending
    assert "prayer_reminder:dhuhr" in provider.pending


def test_stale_reminders_are_skipped() -> None:
    provider = InMemoryNotificationProvider()
    asyncio.run(_scheduler(provider, now=_at(13, 0)).schedule_prayer_reminders(_instants(), _prayer_config()))
    assert set(provider.pending) == {
        "prayer_reminder:asr",
        "prayer_reminder:maghrib",
        "prayer_reminder:isha",
    }


def test_disable_cancels_pending_reminders() -> None:
    provider = InMemoryNotificationProvider()
    scheduler = _scheduler(provider)

    async def run() -> None:
        await scheduler.schedule_prayer_reminders(_instants(), _prayer_config())
        await scheduler.disable_category("prayer")

    asyncio.run(run())
    assert provider.pending == {}
    assert scheduler.is_disabled("prayer")
    assert scheduler.state("prayer_reminder:asr") == TagState.CANCELED


def test_disable_during_scheduling_leaves_nothing_behind() -> None:
    provider = InMemoryNotificationProvider()
    scheduler = _scheduler(provider)

    async def run() -> None:
        await asyncio.gather(
            scheduler.schedule_prayer_reminders(_instants(), _prayer_config()),
            scheduler.disable_category("prayer"),
        )

    asyncio.run(run())
    assert provider.pending == {}


def test_failure_is_retried_once() -> None:
    provider = FlakyProvider({"prayer_reminder:asr"}, failures=1)
    asyncio.run(_scheduler(provider).schedule_prayer_reminders(_instants(), _prayer_config()))
    assert set(provider.pending) == PRAYER_TAGS
    assert provider.seen["prayer_reminder:asr"] == 2


def test_persistent_failure_does_not_abort_other_tags() -> None:
    provider = FlakyProvider({"prayer_reminder:asr"}, failures=10)
    scheduler = _scheduler(provider)
    planned = asyncio.run(scheduler.schedule_prayer_reminders(_instants(), _prayer_config()))

    assert set(provider.pending) == PRAYER_TAGS - {"prayer_reminder:asr"}
    assert provider.seen["prayer_reminder:asr"] == 2
    assert "prayer_reminder:asr" not in {item.tag for item in planned}
    assert scheduler.state("prayer_reminder:asr") == TagState.ABSENT


def test_hanging_provider_times_out() -> None:
    provider = HangingProvider()
    scheduler = _scheduler(provider, timeout=0.01)
    planned = asyncio.run(scheduler.schedule_prayer_reminders(_instants(), _prayer_config()))
    assert planned == []
    assert [call for call in provider.calls if call == ("schedule", "prayer_reminder:fajr")] == [
        ("schedule", "prayer_reminder:fajr"),
        ("schedule", "prayer_reminder:fajr"),
    ]


def test_weekly_digest_is_scheduled_once() -> None:
    provider = InMemoryNotificationProvider()
    scheduler = _scheduler(provider)
    config = ReminderConfig("digest", enabled=True)

    async def run() -> None:
        await scheduler.schedule_weekly_digest(config)
        await scheduler.schedule_weekly_digest(config)

    asyncio.run(run())
    assert list(provider.pending) == ["weekly_digest"]
    assert isinstance(provider.pending["weekly_digest"].trigger, WeeklyTrigger)
    assert provider.calls.count(("schedule", "weekly_digest")) == 1


def test_weekly_trigger_next_after_is_friday_morning() -> None:
    trigger = WeeklyTrigger(weekday=4, hour=9, minute=0, time_zone="UTC")
    upcoming = trigger.next_after(_at(12, 0))  # Wednesday
    assert upcoming == datetime(2024, 3, 22, 9, 0, tzinfo=timezone.utc)
    assert trigger.next_after(upcoming) == upcoming + timedelta(days=7)


def test_reflection_prompt_follows_isha() -> None:
    provider = InMemoryNotificationProvider()
    config = ReminderConfig("reflection", enabled=True, lead_minutes=-30)
    asyncio.run(_scheduler(provider).schedule_reflection_prompt(_instants(), config))
    assert provider.pending["reflection_prompt"].trigger == DateTrigger(at=_at(20, 15))


def test_habit_reminders_replace_stale_tags() -> None:
    provider = InMemoryNotificationProvider()
    scheduler = _scheduler(provider)
    config = ReminderConfig("habit", enabled=True)

    async def run() -> None:
        await scheduler.schedule_habit_reminders(
            [HabitReminder("duha", "09:00", "Duha"), HabitReminder("quran", "21:00", "Quran")], config
        )
        await scheduler.schedule_habit_reminders([HabitReminder("quran", "21:30", "Quran")], config)

    asyncio.run(run())
    assert list(provider.pending) == ["habit_reminder:quran"]
    assert provider.pending["habit_reminder:quran"].trigger == DateTrigger(at=_at(21, 30))


def test_reschedule_without_instants_pauses_prayer_reminders() -> None:
    provider = InMemoryNotificationProvider()
    scheduler = _scheduler(provider)
    settings = Settings()

    async def run() -> dict:
        await scheduler.reschedule_all(_instants(), settings)
        return await scheduler.reschedule_all(None, settings)

    summary = asyncio.run(run())
    assert summary["prayer"] == []
    assert not any(tag.startswith("prayer_reminder") for tag in provider.pending)
    assert "reflection_prompt" not in provider.pending
    assert "weekly_digest" in provider.pending


def test_send_now_is_immediately_due(tmp_path: Path) -> None:
    provider = FileNotificationProvider(tmp_path / "queue.json")
    scheduler = _scheduler(provider)
    assert asyncio.run(scheduler.send_now("streak_celebration:habit:duha:streak-threshold:7", {"title": "Hi"}))

    due = provider.pop_due(_at(0, 0))
    assert [item.tag for item in due] == ["streak_celebration:habit:duha:streak-threshold:7"]
    assert provider.pop_due(_at(0, 0)) == []


def test_file_provider_keeps_date_triggers_until_due(tmp_path: Path) -> None:
    provider = FileNotificationProvider(tmp_path / "queue.json")
    asyncio.run(_scheduler(provider).schedule_prayer_reminders(_instants(), _prayer_config()))

    assert asyncio.run(provider.pending_tags()) != []
    due = provider.pop_due(_at(12, 10))
    assert {item.tag for item in due} == {"prayer_reminder:fajr", "prayer_reminder:dhuhr"}
    assert set(asyncio.run(provider.pending_tags())) == {
        "prayer_reminder:asr",
        "prayer_reminder:maghrib",
        "prayer_reminder:isha",
    }


def test_file_provider_keeps_every_concurrently_scheduled_tag(tmp_path: Path) -> None:
    provider = FileNotificationProvider(tmp_path / "queue.json")
    scheduler = _scheduler(provider)
    reminders = [HabitReminder(f"habit{index}", "21:00", f"Habit {index}") for index in range(40)]

    planned = asyncio.run(scheduler.schedule_habit_reminders(reminders, ReminderConfig("habit", enabled=True)))

    assert len(planned) == 40
    assert set(asyncio.run(provider.pending_tags())) == {f"habit_reminder:habit{index}" for index in range(40)}


def test_file_provider_rescheduling_prayers_loses_nothing(tmp_path: Path) -> None:
    provider = FileNotificationProvider(tmp_path / "queue.json")
    scheduler = _scheduler(provider)

    async def run() -> None:
        for _ in range(10):
            await scheduler.schedule_prayer_reminders(_instants(), _prayer_config())

    asyncio.run(run())
    assert set(asyncio.run(provider.pending_tags())) == PRAYER_TAGS


def test_notify_daemon_delivers_queued_notifications(tmp_path: Path, monkeypatch) -> None:
    provider = FileNotificationProvider(tmp_path / "queue.json")
    asyncio.run(_scheduler(provider).send_now("streak_celebration:habit:duha:first-completion:1", {"title": "Hi"}))
    delivered: list[str] = []
    monkeypatch.setattr(notify, "send_system_notification", lambda title, body: delivered.append(title) or True)

    async def run() -> None:
        stop = asyncio.Event()
        daemon = asyncio.create_task(
            notify.run_notify_daemon(
                Console(file=io.StringIO()),
                provider=provider,
                stop=stop,
                settings_loader=Settings,
                poll_seconds=0.01,
            )
        )
        for _ in range(250):
            if delivered:
                break
            await asyncio.sleep(0.02)
        stop.set()
        await daemon

    asyncio.run(run())
    assert delivered == ["Hi"]
    assert "streak_celebration:habit:duha:first-completion:1" not in asyncio.run(provider.pending_tags())
