from __future__ import annotations

import asyncio
from datetime import date, datetime, timezone
from pathlib import Path

from ibadah_cli.models import Milestone, StreakState
from ibadah_cli.notify import InMemoryNotificationProvider, ReminderScheduler
from ibadah_cli.store import ALL_PRAYERS, ActivityLogStore, MilestoneStore
from ibadah_cli.streaks import (
    MilestoneNotifier,
    StreakEngine,
    celebration_payload,
    milestone_tag,
    milestone_title,
)

NOW = datetime(2024, 3, 20, 12, 0, tzinfo=timezone.utc)


def _notifier(tmp_path: Path) -> tuple[MilestoneNotifier, InMemoryNotificationProvider, MilestoneStore]:
    provider = InMemoryNotificationProvider()
    scheduler = ReminderScheduler(provider, time_zone="UTC", clock=lambda: NOW)
    store = MilestoneStore(tmp_path / "milestones.json")
    return MilestoneNotifier(store, scheduler, clock=lambda: NOW), provider, store


def _state(current: int, last: date | None = date(2024, 3, 20)) -> StreakState:
    return StreakState(current_streak=current, longest_streak=current, last_active_date=last)


def test_threshold_is_awarded_once(tmp_path: Path) -> None:
    notifier, provider, store = _notifier(tmp_path)

    async def run() -> list[Milestone | None]:
        first = await notifier.process("habit", "duha", _state(6), _state(7), "Duha")
        again = await notifier.process("habit", "duha", _state(6), _state(7), "Duha")
        return [first, again]

    first, again = asyncio.run(run())
    assert first is not None and first.value == 7
    assert again is None
    assert len(store.all()) == 1
    assert list(provider.pending) == ["streak_celebration:habit:duha:streak-threshold:7"]


def test_non_threshold_value_is_ignored(tmp_path: Path) -> None:
    notifier, provider, store = _notifier(tmp_path)
    assert asyncio.run(notifier.process("habit", "duha", _state(4), _state(5))) is None
    assert store.all() == []
    assert provider.pending == {}


def test_unchanged_streak_does_not_re_award(tmp_path: Path) -> None:
    notifier, _, _ = _notifier(tmp_path)
    assert notifier.evaluate("habit", "duha", _state(7), _state(7)) is None


def test_first_completion(tmp_path: Path) -> None:
    notifier, provider, _ = _notifier(tmp_path)
    milestone = asyncio.run(notifier.process("scripture", "khatm", StreakState(), _state(1), "Khatm"))
    assert milestone is not None
    assert milestone.type == "first-completion"
    payload = provider.pending[milestone_tag(milestone)].payload
    assert payload["title"] == "First step taken!"


def test_same_subject_in_other_domain_is_separate(tmp_path: Path) -> None:
    notifier, _, store = _notifier(tmp_path)

    async def run() -> None:
        await notifier.process("habit", "fajr", _state(2), _state(3))
        await notifier.process("prayer", "fajr", _state(2), _state(3))

    asyncio.run(run())
    assert {item.domain for item in store.all()} == {"habit", "prayer"}


def test_level_upgrade(tmp_path: Path) -> None:
    notifier, _, _ = _notifier(tmp_path)
    upgrade = notifier.evaluate_level("habit", "duha", "basic", "companion")
    assert upgrade is not None and upgrade.value == "companion"
    assert notifier.evaluate_level("habit", "duha", "prophetic", "basic") is None
    assert notifier.evaluate_level("habit", "duha", None, "basic") is None


def test_milestone_store_survives_corrupt_file(tmp_path: Path) -> None:
    path = tmp_path / "milestones.json"
    path.write_text("{not json", encoding="utf-8")
    store = MilestoneStore(path)
    assert store.all() == []
    assert store.upsert(Milestone("habit", "duha", "streak-threshold", 3, NOW))
    assert len(store.all()) == 1


def test_celebration_copy() -> None:
    assert milestone_title(7) == "One week strong!"
    assert milestone_title(200) == "200 days! Amazing dedication!"
    assert milestone_title(8) == "Keep going!"

    payload = celebration_payload(Milestone("prayer", "all", "streak-threshold", 40, NOW), "all five")
    assert payload["title"] == "40 days of excellence!"
    assert "40 days of all five prayers" in str(payload["body"])


def test_activity_log_feeds_prayer_streaks(tmp_path: Path) -> None:
    store = ActivityLogStore(tmp_path / "activity.json")
    today = date(2024, 3, 20)
    for prayer in ("fajr", "dhuhr", "asr", "maghrib", "isha"):
        store.log("prayer", prayer, today)
    store.log("prayer", "fajr", date(2024, 3, 19))

    engine = StreakEngine.for_domain("prayer")
    assert engine.calculate(store.records_for_streak("prayer", ALL_PRAYERS), today).current_streak == 1
    assert engine.calculate(store.records_for_streak("prayer", "fajr"), today).current_streak == 2
    assert store.subjects("prayer") == ["asr", "dhuhr", "fajr", "isha", "maghrib"]


def test_activity_log_latest_level(tmp_path: Path) -> None:
    store = ActivityLogStore(tmp_path / "activity.json")
    store.log("habit", "duha", date(2024, 3, 18), level="basic")
    store.log("habit", "duha", date(2024, 3, 19), level="companion")
    store.log("habit", "duha", date(2024, 3, 20))
    assert store.latest_level("habit", "duha") == "companion"
