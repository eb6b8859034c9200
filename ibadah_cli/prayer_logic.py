from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .astronomy import calculate_for_config
from .models import (
    PRAYER_NAMES,
    CalculationConfig,
    GeoCoordinate,
    InvalidInput,
    PrayerInstantSet,
    PrayerName,
)

logger = logging.getLogger(__name__)


@dataclass
class CurrentPrayerInfo:
    current_prayer: PrayerName
    next_prayer: PrayerName
    next_instant: datetime
    time_until_next_ms: int
    is_after_isha: bool
    approximated: bool = False

    @property
    def time_remaining(self) -> timedelta:
        return timedelta(milliseconds=self.time_until_next_ms)


def resolve_zone(time_zone: str | None) -> tzinfo:
    if not time_zone:
        local = datetime.now().astimezone().tzinfo
        return local or timezone.utc
    if time_zone.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(time_zone)


def is_valid_time_zone(time_zone: str | None) -> bool:
    if not time_zone or time_zone.upper() == "UTC":
        return True
    try:
        ZoneInfo(time_zone)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def get_time_zone_now(time_zone: str | None) -> datetime:
    return datetime.now(resolve_zone(time_zone))


def local_date(moment: datetime, time_zone: str | None) -> date:
    return moment.astimezone(resolve_zone(time_zone)).date()


def get_current_prayer_info(
    today: PrayerInstantSet,
    now: datetime,
    tomorrow: PrayerInstantSet | None = None,
) -> CurrentPrayerInfo:
    """Resolve the active and the upcoming prayer for ``now``.

    The active prayer is the latest of today's five instants at or before
    ``now``; before today's Fajr it is the previous night's Isha. The next
    prayer is the earliest instant after ``now``. Once all five have passed,
    the next prayer is the first of ``tomorrow``'s instants after ``now``,
    normally its Fajr; without one, today's Fajr plus 24 hours is used and
    the result is marked as approximated.
    """
    prayers = [(name, today.get(name)) for name in PRAYER_NAMES]

    passed = [(instant, name) for name, instant in prayers if instant <= now]
    upcoming = [(instant, name) for name, instant in prayers if instant > now]

    current_prayer: PrayerName = max(passed)[1] if passed else "isha"

    if upcoming:
        next_instant, next_prayer = min(upcoming)
        return _build_info(current_prayer, next_prayer, next_instant, now, is_after_isha=False)

    if tomorrow is not None:
        later = [(tomorrow.get(name), name) for name in PRAYER_NAMES if tomorrow.get(name) > now]
        if later:
            next_instant, next_prayer = min(later)
            return _build_info(current_prayer, next_prayer, next_instant, now, is_after_isha=True)

    logger.warning("Tomorrow's prayer times unavailable; approximating Fajr from today's")
    next_instant = today.fajr + timedelta(days=1)
    while next_instant <= now:
        next_instant += timedelta(days=1)

    return _build_info(
        current_prayer,
        "fajr",
        next_instant,
        now,
        is_after_isha=True,
        approximated=True,
    )


def _build_info(
    current_prayer: PrayerName,
    next_prayer: PrayerName,
    next_instant: datetime,
    now: datetime,
    is_after_isha: bool,
    approximated: bool = False,
) -> CurrentPrayerInfo:
    time_until_next = next_instant - now
    return CurrentPrayerInfo(
        current_prayer=current_prayer,
        next_prayer=next_prayer,
        next_instant=next_instant,
        time_until_next_ms=max(1, int(time_until_next.total_seconds() * 1000)),
        is_after_isha=is_after_isha,
        approximated=approximated,
    )


class NextPrayerResolver:
    """Recomputes today's and tomorrow's instants for each query; holds no state between calls."""

    def __init__(self, coordinate: GeoCoordinate, config: CalculationConfig) -> None:
        self.coordinate = coordinate
        self.config = config

    def instants_for(self, day: date) -> PrayerInstantSet | InvalidInput:
        return calculate_for_config(self.coordinate, day, self.config)

    def resolve(self, now: datetime | None = None) -> CurrentPrayerInfo | InvalidInput:
        if not is_valid_time_zone(self.config.time_zone):
            return InvalidInput(f"unknown time zone: {self.config.time_zone}")
        now = now or datetime.now(timezone.utc)
        today_date = local_date(now, self.config.time_zone)

        today = self.instants_for(today_date)
        if isinstance(today, InvalidInput):
            return today

        tomorrow: PrayerInstantSet | None = None
        if all(today.get(name) <= now for name in PRAYER_NAMES):
            computed = self.instants_for(today_date + timedelta(days=1))
            tomorrow = computed if isinstance(computed, PrayerInstantSet) else None
        return get_current_prayer_info(today, now, tomorrow)


class CountdownRefresher:
    """Calls ``callback`` every ``interval`` seconds on a daemon thread until stopped."""

    def __init__(self, callback: Callable[[], None], interval: float = 60.0) -> None:
        self.callback = callback
        self.interval = interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="countdown-refresher", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)
        self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.callback()
            except Exception:  # noqa: BLE001
                logger.exception("Countdown refresh failed")

    def __enter__(self) -> "CountdownRefresher":
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()


def format_countdown(ms: int) -> str:
    if ms <= 0:
        return "00:00:00"

    total_seconds = ms // 1000
    hours = total_seconds // 3600
    minutes = (total_seconds % 3600) // 60
    seconds = total_seconds % 60
    return f"{hours:02}:{minutes:02}:{seconds:02}"


def format_time_remaining(ms: int) -> str:
    total_minutes = max(0, ms) // 60_000
    hours, minutes = divmod(total_minutes, 60)
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"
