"""
Display cache for computed prayer instants.

The calculator stays the source of truth: entries are keyed by everything
that feeds the calculation, so any settings change simply misses the cache.
"""
from __future__ import annotations

from datetime import date
from pathlib import Path
from typing import Any

from .astronomy import calculate_for_config
from .models import CalculationConfig, GeoCoordinate, InvalidInput, PrayerInstantSet
from .store import safe_read_json, safe_write_json

CACHE_DIR = Path.home() / ".cache" / "ibadah"
CACHE_PATH = CACHE_DIR / "prayer_cache.json"
MAX_ENTRIES = 14


def _cache_key(coordinate: GeoCoordinate, config: CalculationConfig, day: date) -> str:
    offsets = ",".join(f"{name}{config.offsets[name]:+d}" for name in sorted(config.offsets) if config.offsets[name])
    return (
        f"{coordinate.latitude:.5f}-{coordinate.longitude:.5f}-{config.method}-{config.madhab}"
        f"-{config.high_latitude_rule}-{offsets}-{day.isoformat()}"
    )


def _parse_cached_entry(entry: Any) -> PrayerInstantSet | None:
    if not isinstance(entry, dict):
        return None

    try:
        return PrayerInstantSet.from_dict(entry)
    except (KeyError, TypeError, ValueError):
        return None


def get_cached_instants(
    coordinate: GeoCoordinate,
    config: CalculationConfig,
    day: date,
) -> PrayerInstantSet | None:
    data = safe_read_json(CACHE_PATH, {})
    return _parse_cached_entry(data.get(_cache_key(coordinate, config, day)))


def set_cached_instants(
    coordinate: GeoCoordinate,
    config: CalculationConfig,
    instants: PrayerInstantSet,
) -> None:
    data = safe_read_json(CACHE_PATH, {})
    data[_cache_key(coordinate, config, instants.date)] = instants.to_dict()

    if len(data) > MAX_ENTRIES:
        oldest = sorted(data, key=lambda key: str(data[key].get("date", "")) if isinstance(data[key], dict) else "")
        for key in oldest[: len(data) - MAX_ENTRIES]:
            data.pop(key)

    safe_write_json(CACHE_PATH, data)


def get_display_instants(
    coordinate: GeoCoordinate,
    config: CalculationConfig,
    day: date,
) -> PrayerInstantSet | InvalidInput:
    cached = get_cached_instants(coordinate, config, day)
    if cached:
        return cached

    result = calculate_for_config(coordinate, day, config)
    if isinstance(result, PrayerInstantSet):
        set_cached_instants(coordinate, config, result)
    return result
