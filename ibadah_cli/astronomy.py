"""
Prayer time calculation from solar position.

Times are computed in decimal hours relative to 00:00 UTC of the requested
calendar date and are never wrapped into 0..24, so locations far from
Greenwich get instants on the neighbouring UTC day where that is correct.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Callable

from .models import (
    CalculationConfig,
    GeoCoordinate,
    HighLatitudeRule,
    InvalidInput,
    Madhab,
    PrayerInstantSet,
    PrayerName,
)

logger = logging.getLogger(__name__)

RISE_SET_ANGLE = 0.833
NEAREST_LATITUDE = 65.0
ITERATIONS = 2
DEFAULT_METHOD = "MuslimWorldLeague"


@dataclass(frozen=True)
class MethodParameters:
    label: str
    fajr_angle: float
    isha_angle: float = 0.0
    isha_interval: int | None = None
    maghrib_angle: float | None = None
    adjustments: dict[str, int] = field(default_factory=dict)


CALCULATION_METHODS: dict[str, MethodParameters] = {
    "MuslimWorldLeague": MethodParameters("Muslim World League", 18, 17, adjustments={"dhuhr": 1}),
    "Egyptian": MethodParameters("Egyptian General Authority", 19.5, 17.5, adjustments={"dhuhr": 1}),
    "Karachi": MethodParameters("University of Islamic Sciences, Karachi", 18, 18, adjustments={"dhuhr": 1}),
    "UmmAlQura": MethodParameters("Umm al-Qura University, Makkah", 18.5, isha_interval=90),
    "Dubai": MethodParameters(
        "Dubai (unofficial)",
        18.2,
        18.2,
        adjustments={"sunrise": -3, "dhuhr": 3, "asr": 3, "maghrib": 3},
    ),
    "Qatar": MethodParameters("Qatar", 18, isha_interval=90),
    "Kuwait": MethodParameters("Kuwait", 18, 17.5),
    "MoonsightingCommittee": MethodParameters(
        "Moonsighting Committee", 18, 18, adjustments={"dhuhr": 5, "maghrib": 3}
    ),
    "Singapore": MethodParameters("Singapore", 20, 18, adjustments={"dhuhr": 1}),
    "NorthAmerica": MethodParameters("Islamic Society of North America", 15, 15, adjustments={"dhuhr": 1}),
    "Turkey": MethodParameters(
        "Turkey",
        18,
        17,
        adjustments={"sunrise": -7, "dhuhr": 5, "asr": 4, "maghrib": 7},
    ),
    "Tehran": MethodParameters("Institute of Geophysics, Tehran", 17.7, 14, maghrib_angle=4.5),
}

ASR_SHADOW_FACTORS: dict[Madhab, int] = {"shafi": 1, "hanafi": 2}


def get_method_parameters(method: str | None) -> MethodParameters:
    if method in CALCULATION_METHODS:
        return CALCULATION_METHODS[method]  # type: ignore[index]
    return CALCULATION_METHODS[DEFAULT_METHOD]


def _sin(d: float) -> float:
    return math.sin(math.radians(d))


def _cos(d: float) -> float:
    return math.cos(math.radians(d))


def _tan(d: float) -> float:
    return math.tan(math.radians(d))


def _fix(value: float, mode: float) -> float:
    value = value - mode * math.floor(value / mode)
    return value + mode if value < 0 else value


def julian_day(day: date) -> float:
    year, month = day.year, day.month
    if month <= 2:
        year -= 1
        month += 12
    a = year // 100
    b = 2 - a + a // 4
    return math.floor(365.25 * (year + 4716)) + math.floor(30.6001 * (month + 1)) + day.day + b - 1524.5


def sun_position(jd: float) -> tuple[float, float]:
    """Return (declination in degrees, equation of time in hours)."""
    d = jd - 2451545.0
    g = _fix(357.529 + 0.98560028 * d, 360.0)
    q = _fix(280.459 + 0.98564736 * d, 360.0)
    ecliptic_longitude = _fix(q + 1.915 * _sin(g) + 0.020 * _sin(2 * g), 360.0)
    obliquity = 23.439 - 0.00000036 * d

    right_ascension = math.degrees(
        math.atan2(_cos(obliquity) * _sin(ecliptic_longitude), _cos(ecliptic_longitude))
    ) / 15
    equation = q / 15 - _fix(right_ascension, 24.0)
    declination = math.degrees(math.asin(_sin(obliquity) * _sin(ecliptic_longitude)))
    return declination, equation


class _SolarDay:
    """Hour-angle helpers bound to one date and latitude."""

    def __init__(self, day: date, latitude: float, longitude: float) -> None:
        self.latitude = latitude
        self.jd = julian_day(day) - longitude / (15 * 24)

    def mid_day(self, guess: float) -> float:
        _, equation = sun_position(self.jd + guess / 24)
        return _fix(12 - equation, 24.0)

    def sun_angle_time(self, angle: float, guess: float, before_noon: bool) -> float | None:
        declination, _ = sun_position(self.jd + guess / 24)
        noon = self.mid_day(guess)
        cosine = (-_sin(angle) - _sin(declination) * _sin(self.latitude)) / (
            _cos(declination) * _cos(self.latitude)
        )
        if cosine < -1 or cosine > 1:
            return None
        hours = math.degrees(math.acos(cosine)) / 15
        return noon - hours if before_noon else noon + hours

    def asr_time(self, factor: int, guess: float) -> float | None:
        declination, _ = sun_position(self.jd + guess / 24)
        angle = -math.degrees(math.atan(1 / (factor + _tan(abs(self.latitude - declination)))))
        return self.sun_angle_time(angle, guess, before_noon=False)


def _night_portion(rule: HighLatitudeRule, angle: float) -> float:
    if rule == "seventh_of_the_night":
        return 1 / 7
    if rule == "twilight_angle":
        return angle / 60
    return 1 / 2


class PrayerTimeCalculator:
    """Computes one day's PrayerInstantSet from a coordinate.

    The calculator only holds its configuration, so one instance can be shared
    freely; ``calculate`` is a pure function of its arguments.

    When Fajr or Isha is undefined (the sun never gets that far below the
    horizon) or lies further from sunrise/sunset than the configured
    high-latitude rule allows, it is clamped to ``sunrise - portion * night``
    or ``sunset + portion * night``. When the sun does not rise or set at all,
    the whole day is recomputed at latitude +/-65. Either case is logged and
    the affected names are listed in ``PrayerInstantSet.adjusted``.
    """

    def __init__(self, config: CalculationConfig | None = None) -> None:
        self.config = config or CalculationConfig()
        self.parameters = get_method_parameters(self.config.method)
        self.asr_factor = ASR_SHADOW_FACTORS.get(self.config.madhab, 1)

    def calculate(self, coordinate: GeoCoordinate, day: date) -> PrayerInstantSet | InvalidInput:
        error = coordinate.validate()
        if error:
            return error
        if not isinstance(day, date) or isinstance(day, datetime):
            return InvalidInput("date must be a calendar date")

        hours = self._compute_hours(coordinate.latitude, coordinate.longitude, day)
        adjusted: list[PrayerName] = []

        if hours["sunrise"] is None or hours["sunset"] is None:
            clamped = math.copysign(NEAREST_LATITUDE, coordinate.latitude)
            logger.warning(
                "No sunrise/sunset at latitude %.4f on %s; using latitude %.1f",
                coordinate.latitude,
                day.isoformat(),
                clamped,
            )
            hours = self._compute_hours(clamped, coordinate.longitude, day)
            adjusted.extend(("fajr", "sunrise", "dhuhr", "asr", "maghrib", "isha"))

        adjusted.extend(name for name in self._adjust_high_latitudes(hours) if name not in adjusted)
        if hours["asr"] is None:
            # Asr always has a solution once sunset exists; guard against rounding at the poles.
            hours["asr"] = (hours["dhuhr"] + hours["sunset"]) / 2  # type: ignore[operator]
            adjusted.append("asr")

        if adjusted:
            logger.warning("High-latitude fallback applied on %s for %s", day.isoformat(), ", ".join(adjusted))

        midnight = datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
        adjustments = self.parameters.adjustments

        def instant(name: str, value: float) -> datetime:
            minutes = value * 60 + adjustments.get(name, 0)
            return midnight + timedelta(minutes=math.floor(minutes + 0.5))

        return PrayerInstantSet(
            date=day,
            fajr=instant("fajr", hours["fajr"]),  # type: ignore[arg-type]
            sunrise=instant("sunrise", hours["sunrise"]),  # type: ignore[arg-type]
            dhuhr=instant("dhuhr", hours["dhuhr"]),  # type: ignore[arg-type]
            asr=instant("asr", hours["asr"]),  # type: ignore[arg-type]
            maghrib=instant("maghrib", hours["maghrib"]),  # type: ignore[arg-type]
            isha=instant("isha", hours["isha"]),  # type: ignore[arg-type]
            adjusted=tuple(adjusted),
        )

    def _compute_hours(self, latitude: float, longitude: float, day: date) -> dict[str, float | None]:
        params = self.parameters
        solar = _SolarDay(day, latitude, longitude)
        maghrib_angle = params.maghrib_angle if params.maghrib_angle is not None else RISE_SET_ANGLE

        guesses = {"fajr": 5.0, "sunrise": 6.0, "dhuhr": 12.0, "asr": 13.0, "sunset": 18.0, "maghrib": 18.0, "isha": 18.0}
        steps: dict[str, Callable[[float], float | None]] = {
            "fajr": lambda t: solar.sun_angle_time(params.fajr_angle, t, before_noon=True),
            "sunrise": lambda t: solar.sun_angle_time(RISE_SET_ANGLE, t, before_noon=True),
            "dhuhr": solar.mid_day,
            "asr": lambda t: solar.asr_time(self.asr_factor, t),
            "sunset": lambda t: solar.sun_angle_time(RISE_SET_ANGLE, t, before_noon=False),
            "maghrib": lambda t: solar.sun_angle_time(maghrib_angle, t, before_noon=False),
            "isha": lambda t: solar.sun_angle_time(params.isha_angle, t, before_noon=False),
        }

        hours: dict[str, float | None] = dict(guesses)
        for _ in range(ITERATIONS):
            hours = {
                name: step(hours[name] if hours[name] is not None else guesses[name])  # type: ignore[arg-type]
                for name, step in steps.items()
            }

        zone_shift = -longitude / 15
        shifted: dict[str, float | None] = {
            name: (value + zone_shift if value is not None else None) for name, value in hours.items()
        }

        if shifted["sunset"] is not None and params.maghrib_angle is None:
            shifted["maghrib"] = shifted["sunset"]
        if params.isha_interval is not None and shifted["maghrib"] is not None:
            shifted["isha"] = shifted["maghrib"] + params.isha_interval / 60
        return shifted

    def _adjust_high_latitudes(self, hours: dict[str, float | None]) -> list[PrayerName]:
        sunrise = hours["sunrise"]
        sunset = hours["sunset"]
        assert sunrise is not None and sunset is not None
        night = 24 - (sunset - sunrise)
        rule = self.config.high_latitude_rule
        params = self.parameters
        adjusted: list[PrayerName] = []

        fajr_limit = _night_portion(rule, params.fajr_angle) * night
        fajr = hours["fajr"]
        if fajr is None or sunrise - fajr > fajr_limit:
            hours["fajr"] = sunrise - fajr_limit
            adjusted.append("fajr")

        if params.isha_interval is None:
            isha_limit = _night_portion(rule, params.isha_angle) * night
            isha = hours["isha"]
            if isha is None or isha - sunset > isha_limit:
                hours["isha"] = sunset + isha_limit
                adjusted.append("isha")

        if params.maghrib_angle is not None:
            maghrib_limit = _night_portion(rule, params.maghrib_angle) * night
            maghrib = hours["maghrib"]
            if maghrib is None or maghrib - sunset > maghrib_limit:
                hours["maghrib"] = sunset + maghrib_limit
                adjusted.append("maghrib")
        return adjusted


def apply_offsets(instants: PrayerInstantSet, offsets: dict[str, int] | None) -> PrayerInstantSet:
    """Shift each instant by its configured minute offset.

    The result is not re-checked against prayer ordering.
    """
    if not offsets:
        return instants

    changes = {
        name: instant + timedelta(minutes=int(offsets.get(name, 0)))
        for name, instant in instants.items()
        if offsets.get(name)
    }
    return instants.shifted(**changes)


def calculate_for_config(
    coordinate: GeoCoordinate,
    day: date,
    config: CalculationConfig,
) -> PrayerInstantSet | InvalidInput:
    result = PrayerTimeCalculator(config).calculate(coordinate, day)
    if isinstance(result, InvalidInput):
        return result
    return apply_offsets(result, config.offsets)
