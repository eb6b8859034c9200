from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import Any, Literal

PrayerName = Literal["fajr", "sunrise", "dhuhr", "asr", "maghrib", "isha"]
Madhab = Literal["shafi", "hanafi"]
HighLatitudeRule = Literal["middle_of_the_night", "seventh_of_the_night", "twilight_angle"]
TimeFormat = Literal["12h", "24h"]
ReminderCategory = Literal["prayer", "habit", "reflection", "digest"]
ActivityDomain = Literal["prayer", "habit", "scripture"]
MilestoneType = Literal["first-completion", "streak-threshold", "level-upgrade"]
HabitLevel = Literal["basic", "companion", "prophetic"]

INSTANT_NAMES: tuple[PrayerName, ...] = (
    "fajr",
    "sunrise",
    "dhuhr",
    "asr",
    "maghrib",
    "isha",
)
PRAYER_NAMES: tuple[PrayerName, ...] = ("fajr", "dhuhr", "asr", "maghrib", "isha")
OFFSET_NAMES: tuple[PrayerName, ...] = INSTANT_NAMES
REMINDER_CATEGORIES: tuple[ReminderCategory, ...] = ("prayer", "habit", "reflection", "digest")
ACTIVITY_DOMAINS: tuple[ActivityDomain, ...] = ("prayer", "habit", "scripture")
HABIT_LEVELS: tuple[HabitLevel, ...] = ("basic", "companion", "prophetic")

PRAYER_LABELS: dict[PrayerName, str] = {
    "fajr": "Fajr",
    "sunrise": "Sunrise",
    "dhuhr": "Dhuhr",
    "asr": "Asr",
    "maghrib": "Maghrib",
    "isha": "Isha",
}


@dataclass(frozen=True)
class InvalidInput:
    """Returned instead of a result when a calculator is handed bad input."""

    reason: str


@dataclass(frozen=True)
class GeoCoordinate:
    latitude: float
    longitude: float

    def validate(self) -> InvalidInput | None:
        if not isinstance(self.latitude, (int, float)) or not isinstance(self.longitude, (int, float)):
            return InvalidInput("coordinates must be numeric")
        if not (math.isfinite(self.latitude) and math.isfinite(self.longitude)):
            return InvalidInput("coordinates must be finite")
        if not (-90.0 <= self.latitude <= 90.0):
            return InvalidInput("latitude must be between -90 and 90")
        if not (-180.0 <= self.longitude <= 180.0):
            return InvalidInput("longitude must be between -180 and 180")
        return None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GeoCoordinate":
        return cls(latitude=float(data["latitude"]), longitude=float(data["longitude"]))

    def to_dict(self) -> dict[str, float]:
        return {"latitude": self.latitude, "longitude": self.longitude}


@dataclass
class Location:
    coordinate: GeoCoordinate
    label: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Location":
        return cls(
            coordinate=GeoCoordinate.from_dict(data),
            label=data.get("label"),
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = self.coordinate.to_dict()
        if self.label:
            payload["label"] = self.label
        return payload


@dataclass(frozen=True)
class CalculationConfig:
    method: str = "MuslimWorldLeague"
    madhab: Madhab = "shafi"
    high_latitude_rule: HighLatitudeRule = "middle_of_the_night"
    time_zone: str | None = None
    offsets: dict[str, int] = field(default_factory=dict)

    def offset_for(self, name: PrayerName) -> int:
        return int(self.offsets.get(name, 0))

    def to_dict(self) -> dict[str, Any]:
        return {
            "method": self.method,
            "madhab": self.madhab,
            "high_latitude_rule": self.high_latitude_rule,
            "time_zone": self.time_zone,
            "offsets": {name: self.offset_for(name) for name in OFFSET_NAMES},
        }


@dataclass(frozen=True)
class PrayerInstantSet:
    """Six UTC instants for one calendar date at one location."""

    date: date
    fajr: datetime
    sunrise: datetime
    dhuhr: datetime
    asr: datetime
    maghrib: datetime
    isha: datetime
    adjusted: tuple[PrayerName, ...] = ()

    def get(self, name: PrayerName) -> datetime:
        return getattr(self, name)

    def items(self) -> list[tuple[PrayerName, datetime]]:
        return [(name, self.get(name)) for name in INSTANT_NAMES]

    def shifted(self, **changes: datetime) -> "PrayerInstantSet":
        return replace(self, **changes)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PrayerInstantSet":
        return cls(
            date=date.fromisoformat(str(data["date"])),
            fajr=datetime.fromisoformat(str(data["fajr"])),
            sunrise=datetime.fromisoformat(str(data["sunrise"])),
            dhuhr=datetime.fromisoformat(str(data["dhuhr"])),
            asr=datetime.fromisoformat(str(data["asr"])),
            maghrib=datetime.fromisoformat(str(data["maghrib"])),
            isha=datetime.fromisoformat(str(data["isha"])),
            adjusted=tuple(data.get("adjusted", ())),
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"date": self.date.isoformat()}
        for name, instant in self.items():
            payload[name] = instant.isoformat()
        payload["adjusted"] = list(self.adjusted)
        return payload


@dataclass(frozen=True)
class QuietHours:
    start: str
    end: str

    def contains(self, hhmm: str) -> bool:
        """Inclusive on both ends; start > end means the window wraps midnight."""
        if self.start > self.end:
            return hhmm >= self.start or hhmm <= self.end
        return self.start <= hhmm <= self.end

    def to_dict(self) -> dict[str, str]:
        return {"start": self.start, "end": self.end}


@dataclass(frozen=True)
class ReminderConfig:
    category: ReminderCategory
    enabled: bool = False
    lead_minutes: int = 0
    quiet_hours: QuietHours | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"enabled": self.enabled, "lead_minutes": self.lead_minutes}


@dataclass(frozen=True)
class HabitReminder:
    habit_id: str
    time: str
    title: str
    body: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HabitReminder":
        return cls(
            habit_id=str(data["habit_id"]),
            time=str(data["time"]),
            title=str(data["title"]),
            body=str(data.get("body", "")),
        )

    def to_dict(self) -> dict[str, str]:
        return {"habit_id": self.habit_id, "time": self.time, "title": self.title, "body": self.body}


@dataclass(frozen=True)
class DailyRecord:
    date: date
    completed: bool | int
    level: HabitLevel | None = None


@dataclass(frozen=True)
class StreakState:
    current_streak: int = 0
    longest_streak: int = 0
    last_active_date: date | None = None


@dataclass(frozen=True)
class Milestone:
    domain: ActivityDomain
    subject_id: str
    type: MilestoneType
    value: int | str | None
    achieved_at: datetime

    @property
    def key(self) -> tuple[str, str, str, str]:
        return (self.domain, self.subject_id, self.type, str(self.value))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Milestone":
        return cls(
            domain=data["domain"],
            subject_id=str(data["subject_id"]),
            type=data["type"],
            value=data.get("value"),
            achieved_at=datetime.fromisoformat(str(data["achieved_at"])),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "domain": self.domain,
            "subject_id": self.subject_id,
            "type": self.type,
            "value": self.value,
            "achieved_at": self.achieved_at.isoformat(),
        }
