from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, cast

from .astronomy import CALCULATION_METHODS, DEFAULT_METHOD
from .models import (
    OFFSET_NAMES,
    REMINDER_CATEGORIES,
    CalculationConfig,
    HabitReminder,
    HighLatitudeRule,
    Location,
    Madhab,
    QuietHours,
    ReminderCategory,
    ReminderConfig,
    TimeFormat,
)
from .prayer_logic import is_valid_time_zone

logger = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".config" / "ibadah"
CONFIG_PATH = CONFIG_DIR / "config.json"

HHMM_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")

DEFAULT_LEAD_MINUTES: dict[ReminderCategory, int] = {
    "prayer": 10,
    "habit": 0,
    "reflection": -30,
    "digest": 0,
}


def default_reminders() -> dict[ReminderCategory, ReminderConfig]:
    return {
        category: ReminderConfig(category, enabled=True, lead_minutes=DEFAULT_LEAD_MINUTES[category])
        for category in REMINDER_CATEGORIES
    }


@dataclass
class Settings:
    location: Location | None = None
    calculation: CalculationConfig = field(default_factory=CalculationConfig)
    time_format: TimeFormat = "24h"
    quiet_hours: QuietHours | None = None
    reminders: dict[ReminderCategory, ReminderConfig] = field(default_factory=default_reminders)
    habit_reminders: list[HabitReminder] = field(default_factory=list)

    def reminder(self, category: ReminderCategory) -> ReminderConfig:
        """The category's config with the global quiet hours attached."""
        config = self.reminders.get(category) or ReminderConfig(category)
        return replace(config, quiet_hours=self.quiet_hours)

    def to_dict(self) -> dict[str, Any]:
        return {
            "location": self.location.to_dict() if self.location else None,
            "calculation": self.calculation.to_dict(),
            "time_format": self.time_format,
            "quiet_hours": self.quiet_hours.to_dict() if self.quiet_hours else None,
            "reminders": {category: self.reminders[category].to_dict() for category in self.reminders},
            "habit_reminders": [item.to_dict() for item in self.habit_reminders],
        }


def is_valid_hhmm(value: Any) -> bool:
    return isinstance(value, str) and bool(HHMM_PATTERN.match(value))


def _sanitize_time_format(value: str | None) -> TimeFormat:
    if value in ("12h", "24h"):
        return cast(TimeFormat, value)
    return "24h"


def _sanitize_method(value: Any) -> str:
    return value if value in CALCULATION_METHODS else DEFAULT_METHOD


def _sanitize_madhab(value: Any) -> Madhab:
    if value in ("shafi", "hanafi"):
        return cast(Madhab, value)
    return "shafi"


def _sanitize_high_latitude_rule(value: Any) -> HighLatitudeRule:
    if value in ("middle_of_the_night", "seventh_of_the_night", "twilight_angle"):
        return cast(HighLatitudeRule, value)
    return "middle_of_the_night"


def _sanitize_offsets(value: Any) -> dict[str, int]:
    if not isinstance(value, dict):
        return {}
    offsets: dict[str, int] = {}
    for name in OFFSET_NAMES:
        try:
            offsets[name] = int(value.get(name, 0))
        except (TypeError, ValueError):
            offsets[name] = 0
    return offsets


def _sanitize_location(value: Any) -> Location | None:
    if not isinstance(value, dict):
        return None
    try:
        location = Location.from_dict(value)
    except (KeyError, TypeError, ValueError):
        return None
    if location.coordinate.validate() is not None:
        logger.warning("Ignoring configured location with invalid coordinates")
        return None
    return location


def _sanitize_time_zone(value: Any) -> str | None:
    if not isinstance(value, str) or not value:
        return None
    if not is_valid_time_zone(value):
        logger.warning("Ignoring unknown time zone %r; using the local zone", value)
        return None
    return value


def _sanitize_calculation(value: Any) -> CalculationConfig:
    if not isinstance(value, dict):
        return CalculationConfig()
    return CalculationConfig(
        method=_sanitize_method(value.get("method")),
        madhab=_sanitize_madhab(value.get("madhab")),
        high_latitude_rule=_sanitize_high_latitude_rule(value.get("high_latitude_rule")),
        time_zone=_sanitize_time_zone(value.get("time_zone")),
        offsets=_sanitize_offsets(value.get("offsets")),
    )


def _sanitize_quiet_hours(value: Any) -> QuietHours | None:
    if not isinstance(value, dict):
        return None
    start, end = value.get("start"), value.get("end")
    if not (is_valid_hhmm(start) and is_valid_hhmm(end)):
        return None
    return QuietHours(start=start, end=end)


def _sanitize_reminders(value: Any) -> dict[ReminderCategory, ReminderConfig]:
    reminders = default_reminders()
    if not isinstance(value, dict):
        return reminders

    for category in REMINDER_CATEGORIES:
        raw = value.get(category)
        if not isinstance(raw, dict):
            continue
        try:
            lead_minutes = int(raw.get("lead_minutes", DEFAULT_LEAD_MINUTES[category]))
        except (TypeError, ValueError):
            lead_minutes = DEFAULT_LEAD_MINUTES[category]
        reminders[category] = ReminderConfig(
            category,
            enabled=bool(raw.get("enabled", True)),
            lead_minutes=lead_minutes,
        )
    return reminders


def _sanitize_habit_reminders(value: Any) -> list[HabitReminder]:
    if not isinstance(value, list):
        return []
    reminders: list[HabitReminder] = []
    for raw in value:
        try:
            reminder = HabitReminder.from_dict(raw)
        except (KeyError, TypeError):
            continue
        if is_valid_hhmm(reminder.time):
            reminders.append(reminder)
    return reminders


def parse_quiet_hours(value: str) -> QuietHours:
    """Parse ``"22:00-06:00"``."""
    start, _, end = value.partition("-")
    start, end = start.strip(), end.strip()
    if not (is_valid_hhmm(start) and is_valid_hhmm(end)):
        raise ValueError("quiet hours must look like HH:MM-HH:MM")
    return QuietHours(start=start, end=end)


def settings_from_dict(data: dict[str, Any]) -> Settings:
    return Settings(
        location=_sanitize_location(data.get("location")),
        calculation=_sanitize_calculation(data.get("calculation")),
        time_format=_sanitize_time_format(data.get("time_format")),
        quiet_hours=_sanitize_quiet_hours(data.get("quiet_hours")),
        reminders=_sanitize_reminders(data.get("reminders")),
        habit_reminders=_sanitize_habit_reminders(data.get("habit_reminders")),
    )


def default_config() -> Settings:
    return Settings()


def load_config() -> Settings:
    if not CONFIG_PATH.exists():
        config = default_config()
        save_config(config)
        return config

    try:
        data = json.loads(CONFIG_PATH.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        logger.warning("Config at %s is unreadable; restoring defaults", CONFIG_PATH)
        config = default_config()
        save_config(config)
        return config

    if not isinstance(data, dict):
        return default_config()
    return settings_from_dict(data)


def save_config(config: Settings) -> None:
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    CONFIG_PATH.write_text(json.dumps(config.to_dict(), indent=2) + "\n", encoding="utf-8")
