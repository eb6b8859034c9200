"""
JSON-file stores standing in for the hosted activity log and milestone tables.
"""
from __future__ import annotations

import json
import logging
from collections import defaultdict
from datetime import date
from pathlib import Path
from typing import Any

from .models import ActivityDomain, DailyRecord, HabitLevel, Milestone

logger = logging.getLogger(__name__)

DATA_DIR = Path.home() / ".local" / "share" / "ibadah"
ACTIVITY_PATH = DATA_DIR / "activity.json"
MILESTONES_PATH = DATA_DIR / "milestones.json"
ALL_PRAYERS = "all"


def safe_read_json(path: Path, default: Any) -> Any:
    if not path.exists():
        return default

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        logger.warning("Ignoring unreadable store file %s", path)
        return default
    return data if isinstance(data, type(default)) else default


def safe_write_json(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2) + "\n", encoding="utf-8")


class ActivityLogStore:
    """Per-day activity values keyed by domain, subject and ISO date.

    Layout: ``{domain: {subject: {"2024-03-20": {"value": ..., "level": ...}}}}``.
    """

    def __init__(self, path: Path | None = None) -> None:
        self.path = path or ACTIVITY_PATH

    def _load(self) -> dict[str, Any]:
        return safe_read_json(self.path, {})

    def log(
        self,
        domain: ActivityDomain,
        subject: str,
        day: date,
        value: bool | int = True,
        level: HabitLevel | None = None,
    ) -> None:
        data = self._load()
        entries = data.setdefault(domain, {}).setdefault(subject, {})
        entry: dict[str, Any] = {"value": value}
        if level:
            entry["level"] = level
        entries[day.isoformat()] = entry
        safe_write_json(self.path, data)

    def subjects(self, domain: ActivityDomain) -> list[str]:
        return sorted(self._load().get(domain, {}))

    def records(self, domain: ActivityDomain, subject: str) -> list[DailyRecord]:
        entries = self._load().get(domain, {}).get(subject, {})
        records: list[DailyRecord] = []
        for day, entry in entries.items():
            try:
                records.append(
                    DailyRecord(
                        date=date.fromisoformat(day),
                        completed=entry["value"],
                        level=entry.get("level"),
                    )
                )
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping malformed %s record for %s on %s", domain, subject, day)
        return records

    def daily_counts(self, domain: ActivityDomain) -> list[DailyRecord]:
        """Collapse every subject in a domain into one record per day holding the count of completed subjects."""
        counts: dict[date, int] = defaultdict(int)
        for subject in self.subjects(domain):
            for record in self.records(domain, subject):
                if record.completed:
                    counts[record.date] += 1
        return [DailyRecord(date=day, completed=count) for day, count in counts.items()]

    def records_for_streak(self, domain: ActivityDomain, subject: str) -> list[DailyRecord]:
        if domain == "prayer" and subject == ALL_PRAYERS:
            return self.daily_counts("prayer")
        return self.records(domain, subject)

    def latest_level(self, domain: ActivityDomain, subject: str) -> HabitLevel | None:
        leveled = [record for record in self.records(domain, subject) if record.level]
        return max(leveled, key=lambda record: record.date).level if leveled else None


class MilestoneStore:
    """Idempotent milestone persistence keyed by (domain, subject, type, value)."""

    def __init__(self, path: Path | None = None) -> None:
        self.path = path or MILESTONES_PATH

    def all(self) -> list[Milestone]:
        milestones: list[Milestone] = []
        for entry in safe_read_json(self.path, []):
            try:
                milestones.append(Milestone.from_dict(entry))
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping malformed milestone entry: %r", entry)
        return milestones

    def upsert(self, milestone: Milestone) -> bool:
        """Store ``milestone`` unless its key exists; returns True only when newly created."""
        existing = self.all()
        if any(item.key == milestone.key for item in existing):
            return False

        existing.append(milestone)
        safe_write_json(self.path, [item.to_dict() for item in existing])
        return True
