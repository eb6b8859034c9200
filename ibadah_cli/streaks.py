"""
Consecutive-day streaks and one-shot milestone awards.

The same streak algorithm serves prayer completion, scripture reading sessions
and habit completion; each domain only supplies its own "is this day
complete" predicate.
"""
from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from typing import TYPE_CHECKING, Callable, Iterable, Protocol, Sequence

from .models import (
    HABIT_LEVELS,
    ActivityDomain,
    DailyRecord,
    HabitLevel,
    Milestone,
    StreakState,
)

if TYPE_CHECKING:
    from .notify import ReminderScheduler

logger = logging.getLogger(__name__)

DayPredicate = Callable[[DailyRecord], bool]

STREAK_THRESHOLDS: tuple[int, ...] = (3, 7, 14, 21, 30, 40, 50, 100, 365)
PRAYERS_PER_DAY = 5


def prayer_day_complete(record: DailyRecord) -> bool:
    if isinstance(record.completed, bool):
        return record.completed
    return record.completed >= PRAYERS_PER_DAY


def scripture_day_complete(record: DailyRecord) -> bool:
    return bool(record.completed) and int(record.completed) > 0


def habit_day_complete(record: DailyRecord) -> bool:
    return bool(record.completed)


DOMAIN_PREDICATES: dict[ActivityDomain, DayPredicate] = {
    "prayer": prayer_day_complete,
    "scripture": scripture_day_complete,
    "habit": habit_day_complete,
}


def _merge_by_date(records: Iterable[DailyRecord]) -> dict[date, DailyRecord]:
    """One record per date: booleans are OR-ed, counts are summed."""
    merged: dict[date, DailyRecord] = {}
    for record in records:
        previous = merged.get(record.date)
        if previous is None:
            merged[record.date] = record
            continue

        if isinstance(previous.completed, bool) and isinstance(record.completed, bool):
            value: bool | int = previous.completed or record.completed
        else:
            value = int(previous.completed) + int(record.completed)
        merged[record.date] = DailyRecord(date=record.date, completed=value, level=record.level or previous.level)
    return merged


class StreakEngine:
    """Computes StreakState from scratch on every call.

    A missing day always breaks a streak; there is no grace day. The current
    streak may start from yesterday so that a day not yet logged does not
    reset it.
    """

    def __init__(self, is_complete: DayPredicate = habit_day_complete) -> None:
        self.is_complete = is_complete

    @classmethod
    def for_domain(cls, domain: ActivityDomain) -> "StreakEngine":
        return cls(DOMAIN_PREDICATES[domain])

    def calculate(self, records: Iterable[DailyRecord], today: date | None = None) -> StreakState:
        today = today or date.today()
        merged = _merge_by_date(records)
        if not merged:
            return StreakState()

        complete_days = sorted((day for day, record in merged.items() if self.is_complete(record)), reverse=True)
        if not complete_days:
            return StreakState()

        return StreakState(
            current_streak=self._current_streak(set(complete_days), today),
            longest_streak=self._longest_streak(merged),
            last_active_date=complete_days[0],
        )

    def _current_streak(self, complete_days: set[date], today: date) -> int:
        if today in complete_days:
            cursor = today
        elif today - timedelta(days=1) in complete_days:
            cursor = today - timedelta(days=1)
        else:
            return 0

        streak = 0
        while cursor in complete_days:
            streak += 1
            cursor -= timedelta(days=1)
        return streak

    def _longest_streak(self, merged: dict[date, DailyRecord]) -> int:
        longest = 0
        running = 0
        previous: date | None = None
        for day in sorted(merged):
            if not self.is_complete(merged[day]):
                running = 0
                previous = None
                continue

            if previous is not None and day - previous == timedelta(days=1):
                running += 1
            else:
                running = 1
            previous = day
            longest = max(longest, running)
        return longest


class MilestoneRepository(Protocol):
    def upsert(self, milestone: Milestone) -> bool: ...


MILESTONE_TITLES: dict[int, str] = {
    3: "Great start!",
    7: "One week strong!",
    14: "Two weeks of dedication!",
    21: "21 days - Habit forming!",
    30: "One month achievement!",
    40: "40 days of excellence!",
    100: "Century milestone!",
    365: "ONE YEAR! Incredible!",
}


def milestone_title(days: int) -> str:
    if days in MILESTONE_TITLES:
        return MILESTONE_TITLES[days]
    if days and days % 100 == 0:
        return f"{days} days! Amazing dedication!"
    return "Keep going!"


def celebration_payload(milestone: Milestone, subject_label: str | None = None) -> dict[str, object]:
    name = subject_label or milestone.subject_id
    if milestone.type == "first-completion":
        title = "First step taken!"
        body = f"MashaAllah! You completed {name} for the first time."
    elif milestone.type == "level-upgrade":
        title = "Level up!"
        body = f'MashaAllah! "{name}" is now practiced at the {milestone.value} level.'
    else:
        days = int(milestone.value or 0)
        title = milestone_title(days)
        if milestone.domain == "prayer":
            body = f"MashaAllah! {days} days of {name} prayers on time. May Allah accept your efforts!"
        elif milestone.domain == "habit":
            body = f'MashaAllah! {days}-day streak for "{name}". Keep it up!'
        else:
            body = f"MashaAllah! {days} consecutive days of Quran reading. May it be a light for you!"

    return {
        "title": title,
        "body": body,
        "type": "streak_celebration",
        "domain": milestone.domain,
        "subject": milestone.subject_id,
        "milestone_type": milestone.type,
        "value": milestone.value,
    }


def milestone_tag(milestone: Milestone) -> str:
    return f"streak_celebration:{milestone.domain}:{milestone.subject_id}:{milestone.type}:{milestone.value}"


class MilestoneNotifier:
    """Turns streak transitions into at most one Milestone and a celebration notification."""

    def __init__(
        self,
        repository: MilestoneRepository,
        scheduler: "ReminderScheduler | None" = None,
        thresholds: Sequence[int] = STREAK_THRESHOLDS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.repository = repository
        self.scheduler = scheduler
        self.thresholds = tuple(sorted(thresholds))
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def evaluate(
        self,
        domain: ActivityDomain,
        subject_id: str,
        previous: StreakState,
        current: StreakState,
    ) -> Milestone | None:
        reached = current.current_streak
        if reached != previous.current_streak and reached in self.thresholds:
            return Milestone(domain, subject_id, "streak-threshold", reached, self.clock())
        if previous.last_active_date is None and current.last_active_date is not None:
            return Milestone(domain, subject_id, "first-completion", 1, self.clock())
        return None

    def evaluate_level(
        self,
        domain: ActivityDomain,
        subject_id: str,
        previous_level: HabitLevel | None,
        level: HabitLevel | None,
    ) -> Milestone | None:
        if previous_level is None or level is None:
            return None
        if HABIT_LEVELS.index(level) <= HABIT_LEVELS.index(previous_level):
            return None
        return Milestone(domain, subject_id, "level-upgrade", level, self.clock())

    async def award(self, milestone: Milestone | None, subject_label: str | None = None) -> bool:
        """Persist ``milestone`` and announce it once; an existing award is a no-op."""
        if milestone is None:
            return False

        created = self.repository.upsert(milestone)
        if not created:
            logger.debug("Milestone %s already awarded", milestone.key)
            return False

        logger.info("Milestone awarded: %s", milestone.key)
        if self.scheduler is not None:
            await self.scheduler.send_now(milestone_tag(milestone), celebration_payload(milestone, subject_label))
        return True

    async def process(
        self,
        domain: ActivityDomain,
        subject_id: str,
        previous: StreakState,
        current: StreakState,
        subject_label: str | None = None,
    ) -> Milestone | None:
        milestone = self.evaluate(domain, subject_id, previous, current)
        if await self.award(milestone, subject_label):
            return milestone
        return None
