from __future__ import annotations

import asyncio
import json
import logging
import platform
import shutil
import subprocess
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Protocol, Union

from rich.console import Console

from .astronomy import calculate_for_config
from .config import Settings, load_config
from .models import (
    PRAYER_LABELS,
    PRAYER_NAMES,
    HabitReminder,
    InvalidInput,
    PrayerInstantSet,
    QuietHours,
    ReminderCategory,
    ReminderConfig,
)
from .prayer_logic import local_date, resolve_zone
from .store import DATA_DIR, safe_read_json, safe_write_json

logger = logging.getLogger(__name__)

QUEUE_PATH = DATA_DIR / "notifications.json"
PROVIDER_TIMEOUT_SEC = 10.0
MAX_ATTEMPTS = 2
DAEMON_POLL_SEC = 30.0

CATEGORY_NAMESPACES: dict[ReminderCategory, str] = {
    "prayer": "prayer_reminder",
    "habit": "habit_reminder",
    "reflection": "reflection_prompt",
    "digest": "weekly_digest",
}
DIGEST_WEEKDAY = 4  # Friday
DIGEST_HOUR = 9
DIGEST_MINUTE = 0


class SchedulingError(RuntimeError):
    pass


class TagState(str, Enum):
    ABSENT = "absent"
    PENDING = "pending"
    FIRED = "fired"
    CANCELED = "canceled"


@dataclass(frozen=True)
class DateTrigger:
    at: datetime


@dataclass(frozen=True)
class WeeklyTrigger:
    weekday: int
    hour: int
    minute: int
    time_zone: str | None = None

    def next_after(self, moment: datetime) -> datetime:
        local = moment.astimezone(resolve_zone(self.time_zone))
        candidate = local.replace(hour=self.hour, minute=self.minute, second=0, microsecond=0)
        candidate += timedelta(days=(self.weekday - local.weekday()) % 7)
        if candidate <= local:
            candidate += timedelta(days=7)
        return candidate


@dataclass(frozen=True)
class ImmediateTrigger:
    pass


Trigger = Union[DateTrigger, WeeklyTrigger, ImmediateTrigger]


@dataclass
class ScheduledNotification:
    tag: str
    trigger: Trigger
    payload: dict[str, Any] = field(default_factory=dict)


def trigger_to_dict(trigger: Trigger) -> dict[str, Any]:
    if isinstance(trigger, DateTrigger):
        return {"type": "date", "at": trigger.at.isoformat()}
    if isinstance(trigger, WeeklyTrigger):
        return {
            "type": "weekly",
            "weekday": trigger.weekday,
            "hour": trigger.hour,
            "minute": trigger.minute,
            "time_zone": trigger.time_zone,
        }
    return {"type": "immediate"}


def trigger_from_dict(data: dict[str, Any]) -> Trigger:
    kind = data.get("type")
    if kind == "date":
        return DateTrigger(at=datetime.fromisoformat(str(data["at"])))
    if kind == "weekly":
        return WeeklyTrigger(
            weekday=int(data["weekday"]),
            hour=int(data["hour"]),
            minute=int(data["minute"]),
            time_zone=data.get("time_zone"),
        )
    return ImmediateTrigger()


def in_namespace(tag: str, namespace: str) -> bool:
    return tag == namespace or tag.startswith(namespace + ":")


class NotificationProvider(Protocol):
    async def schedule(self, notification: ScheduledNotification) -> None: ...

    async def cancel(self, tag: str) -> None: ...

    async def pending_tags(self) -> list[str]: ...


class InMemoryNotificationProvider:
    """Keeps pending notifications in a dict; records every call in ``calls``."""

    def __init__(self) -> None:
        self.pending: dict[str, ScheduledNotification] = {}
        self.calls: list[tuple[str, str]] = []

    async def schedule(self, notification: ScheduledNotification) -> None:
        self.calls.append(("schedule", notification.tag))
        if notification.tag in self.pending:
            raise SchedulingError(f"Duplicate pending notification for {notification.tag}")
        self.pending[notification.tag] = notification

    async def cancel(self, tag: str) -> None:
        self.calls.append(("cancel", tag))
        self.pending.pop(tag, None)

    async def pending_tags(self) -> list[str]:
        return list(self.pending)


class FileNotificationProvider:
    """Pending-notification queue persisted as JSON and drained by the notify daemon."""

    def __init__(self, path: Path | None = None) -> None:
        self.path = path or QUEUE_PATH
        self._lock = threading.Lock()

    def _load(self) -> dict[str, Any]:
        return safe_read_json(self.path, {})

    def _schedule_sync(self, notification: ScheduledNotification) -> None:
        with self._lock:
            data = self._load()
            data[notification.tag] = {
                "trigger": trigger_to_dict(notification.trigger),
                "payload": notification.payload,
                "scheduled_at": datetime.now(timezone.utc).isoformat(),
                "last_fired": None,
            }
            self._write(data)

    def _cancel_sync(self, tag: str) -> None:
        with self._lock:
            data = self._load()
            if data.pop(tag, None) is not None:
                self._write(data)

    def _write(self, data: dict[str, Any]) -> None:
        try:
            safe_write_json(self.path, data)
        except OSError as exc:
            raise SchedulingError(f"Could not write notification queue: {exc}") from exc

    async def schedule(self, notification: ScheduledNotification) -> None:
        await asyncio.to_thread(self._schedule_sync, notification)

    async def cancel(self, tag: str) -> None:
        await asyncio.to_thread(self._cancel_sync, tag)

    def _pending_sync(self) -> list[str]:
        with self._lock:
            return list(self._load())

    async def pending_tags(self) -> list[str]:
        return await asyncio.to_thread(self._pending_sync)

    def pop_due(self, now: datetime) -> list[ScheduledNotification]:
        """Return notifications due at ``now``; one-shot ones leave the queue, weekly ones stay."""
        with self._lock:
            return self._pop_due_locked(now)

    def _pop_due_locked(self, now: datetime) -> list[ScheduledNotification]:
        data = self._load()
        due: list[ScheduledNotification] = []
        changed = False

        for tag, entry in list(data.items()):
            try:
                trigger = trigger_from_dict(entry["trigger"])
            except (KeyError, TypeError, ValueError):
                logger.warning("Dropping malformed queued notification %s", tag)
                data.pop(tag)
                changed = True
                continue

            notification = ScheduledNotification(tag=tag, trigger=trigger, payload=entry.get("payload") or {})
            if isinstance(trigger, WeeklyTrigger):
                reference = datetime.fromisoformat(entry.get("last_fired") or entry["scheduled_at"])
                if trigger.next_after(reference) <= now:
                    entry["last_fired"] = now.isoformat()
                    due.append(notification)
                    changed = True
                continue

            if isinstance(trigger, ImmediateTrigger) or trigger.at <= now:
                data.pop(tag)
                due.append(notification)
                changed = True

        if changed:
            self._write(data)
        return due


def is_in_quiet_hours(moment: datetime, quiet_hours: QuietHours | None, time_zone: str | None) -> bool:
    if quiet_hours is None or not quiet_hours.start or not quiet_hours.end:
        return False
    local = moment.astimezone(resolve_zone(time_zone))
    return quiet_hours.contains(local.strftime("%H:%M"))


def _plan_at(
    tag: str,
    governing: datetime,
    config: ReminderConfig,
    now: datetime,
    time_zone: str | None,
    payload: dict[str, Any],
) -> ScheduledNotification | None:
    trigger_at = governing - timedelta(minutes=config.lead_minutes)
    if trigger_at < now:
        logger.debug("Skipping %s: trigger %s already passed", tag, trigger_at.isoformat())
        return None
    if is_in_quiet_hours(trigger_at, config.quiet_hours, time_zone):
        logger.debug("Skipping %s: trigger %s falls in quiet hours", tag, trigger_at.isoformat())
        return None
    payload = {"tag": tag, "type": tag.split(":", 1)[0], **payload}
    return ScheduledNotification(tag=tag, trigger=DateTrigger(at=trigger_at), payload=payload)


def plan_prayer_reminders(
    instants: PrayerInstantSet,
    config: ReminderConfig,
    now: datetime,
    time_zone: str | None = None,
) -> list[ScheduledNotification]:
    planned: list[ScheduledNotification] = []
    for name in PRAYER_NAMES:
        label = PRAYER_LABELS[name]
        if config.lead_minutes > 0:
            body = f"{config.lead_minutes} minutes until {label} prayer time"
        else:
            body = f"It's time for {label}"
        notification = _plan_at(
            f"{CATEGORY_NAMESPACES['prayer']}:{name}",
            instants.get(name),
            config,
            now,
            time_zone,
            {"title": f"{label} Prayer", "body": body, "prayer": name},
        )
        if notification:
            planned.append(notification)
    return planned


def plan_reflection_prompt(
    instants: PrayerInstantSet,
    config: ReminderConfig,
    now: datetime,
    time_zone: str | None = None,
) -> list[ScheduledNotification]:
    notification = _plan_at(
        CATEGORY_NAMESPACES["reflection"],
        instants.isha,
        config,
        now,
        time_zone,
        {
            "title": "Daily Reflection",
            "body": "How was your khushu today? Take a moment to reflect on your prayers.",
        },
    )
    return [notification] if notification else []


def plan_habit_reminders(
    reminders: list[HabitReminder],
    config: ReminderConfig,
    now: datetime,
    time_zone: str | None = None,
    day: date | None = None,
) -> list[ScheduledNotification]:
    zone = resolve_zone(time_zone)
    day = day or local_date(now, time_zone)
    planned: list[ScheduledNotification] = []

    for reminder in reminders:
        try:
            hours, minutes = [int(part) for part in reminder.time.split(":")[:2]]
            governing = datetime(day.year, day.month, day.day, hours, minutes, tzinfo=zone)
        except ValueError:
            logger.warning("Ignoring habit reminder %s with bad time %r", reminder.habit_id, reminder.time)
            continue

        notification = _plan_at(
            f"{CATEGORY_NAMESPACES['habit']}:{reminder.habit_id}",
            governing,
            config,
            now,
            time_zone,
            {"title": reminder.title, "body": reminder.body, "habit_id": reminder.habit_id},
        )
        if notification:
            planned.append(notification)
    return planned


def plan_weekly_digest(config: ReminderConfig, time_zone: str | None = None) -> list[ScheduledNotification]:
    hhmm = f"{DIGEST_HOUR:02}:{DIGEST_MINUTE:02}"
    if config.quiet_hours is not None and config.quiet_hours.contains(hhmm):
        logger.debug("Skipping weekly digest: %s falls in quiet hours", hhmm)
        return []

    tag = CATEGORY_NAMESPACES["digest"]
    return [
        ScheduledNotification(
            tag=tag,
            trigger=WeeklyTrigger(DIGEST_WEEKDAY, DIGEST_HOUR, DIGEST_MINUTE, time_zone),
            payload={
                "tag": tag,
                "type": tag,
                "title": "Weekly Spiritual Progress",
                "body": "View your achievements from this week and set goals for the next.",
            },
        )
    ]


class ReminderScheduler:
    """Keeps the provider's pending set in line with the latest reminder configuration.

    Every tag moves through absent -> pending -> fired/canceled. Work on one
    tag is serialized by a per-tag lock so a cancel can never land after the
    schedule that replaced it; independent tags run concurrently. Each
    provider call gets one retry and a timeout, and a failure only drops that
    single notification.
    """

    def __init__(
        self,
        provider: NotificationProvider,
        time_zone: str | None = None,
        clock: Callable[[], datetime] | None = None,
        timeout: float = PROVIDER_TIMEOUT_SEC,
    ) -> None:
        self.provider = provider
        self.time_zone = time_zone
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.timeout = timeout
        self._states: dict[str, TagState] = {}
        self._tag_locks: dict[str, asyncio.Lock] = {}
        self._category_locks: dict[str, asyncio.Lock] = {}
        self._disabled: set[ReminderCategory] = set()

    def state(self, tag: str) -> TagState:
        return self._states.get(tag, TagState.ABSENT)

    def is_disabled(self, category: ReminderCategory) -> bool:
        return category in self._disabled

    def mark_fired(self, tag: str) -> None:
        if self.state(tag) == TagState.PENDING:
            self._states[tag] = TagState.FIRED

    def _tag_lock(self, tag: str) -> asyncio.Lock:
        return self._tag_locks.setdefault(tag, asyncio.Lock())

    def _category_lock(self, category: ReminderCategory) -> asyncio.Lock:
        return self._category_locks.setdefault(category, asyncio.Lock())

    async def _attempt(self, action: str, tag: str, call: Callable[[], Awaitable[None]]) -> bool:
        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                await asyncio.wait_for(call(), timeout=self.timeout)
                return True
            except (SchedulingError, asyncio.TimeoutError) as exc:
                reason = str(exc) or exc.__class__.__name__
                if attempt < MAX_ATTEMPTS:
                    logger.warning("Failed to %s %s (%s); retrying", action, tag, reason)
                else:
                    logger.error("Failed to %s %s (%s); skipping", action, tag, reason)
        return False

    async def _cancel(self, tag: str) -> bool:
        async with self._tag_lock(tag):
            if not await self._attempt("cancel", tag, lambda: self.provider.cancel(tag)):
                return False
            if self.state(tag) == TagState.PENDING:
                self._states[tag] = TagState.CANCELED
            return True

    async def _replace(self, notification: ScheduledNotification) -> bool:
        tag = notification.tag
        async with self._tag_lock(tag):
            if not await self._attempt("cancel", tag, lambda: self.provider.cancel(tag)):
                return False
            if self.state(tag) == TagState.PENDING:
                self._states[tag] = TagState.CANCELED

            if not await self._attempt("schedule", tag, lambda: self.provider.schedule(notification)):
                return False
            self._states[tag] = TagState.PENDING
            logger.debug("Scheduled %s", tag)
            return True

    async def _pending_in_namespace(self, namespace: str) -> set[str]:
        tags = {tag for tag, state in self._states.items() if state == TagState.PENDING and in_namespace(tag, namespace)}
        try:
            provider_tags = await asyncio.wait_for(self.provider.pending_tags(), timeout=self.timeout)
        except (SchedulingError, asyncio.TimeoutError) as exc:
            logger.warning("Could not list pending notifications (%s); using local state", exc)
            return tags
        return tags | {tag for tag in provider_tags if in_namespace(tag, namespace)}

    async def _cancel_namespace(self, namespace: str, keep: set[str] | None = None) -> None:
        keep = keep or set()
        stale = sorted(tag for tag in await self._pending_in_namespace(namespace) if tag not in keep)
        await asyncio.gather(*(self._cancel(tag) for tag in stale))

    async def sync_category(
        self,
        category: ReminderCategory,
        config: ReminderConfig,
        planned: list[ScheduledNotification],
    ) -> list[ScheduledNotification]:
        """Make ``planned`` the exact pending set for ``category``."""
        if not config.enabled:
            await self.disable_category(category)
            return []

        self._disabled.discard(category)
        namespace = CATEGORY_NAMESPACES[category]
        async with self._category_lock(category):
            await self._cancel_namespace(namespace, keep={item.tag for item in planned})
            results = await asyncio.gather(*(self._replace(item) for item in planned))
        return [item for item, ok in zip(planned, results) if ok]

    async def disable_category(self, category: ReminderCategory) -> None:
        """Cancel everything under the category once any in-flight scheduling has finished."""
        self._disabled.add(category)
        async with self._category_lock(category):
            await self._cancel_namespace(CATEGORY_NAMESPACES[category])
        logger.info("Reminders disabled for %s", category)

    async def schedule_prayer_reminders(
        self,
        instants: PrayerInstantSet,
        config: ReminderConfig,
    ) -> list[ScheduledNotification]:
        planned = plan_prayer_reminders(instants, config, self.clock(), self.time_zone) if config.enabled else []
        return await self.sync_category("prayer", config, planned)

    async def schedule_reflection_prompt(
        self,
        instants: PrayerInstantSet,
        config: ReminderConfig,
    ) -> list[ScheduledNotification]:
        planned = plan_reflection_prompt(instants, config, self.clock(), self.time_zone) if config.enabled else []
        return await self.sync_category("reflection", config, planned)

    async def schedule_habit_reminders(
        self,
        reminders: list[HabitReminder],
        config: ReminderConfig,
    ) -> list[ScheduledNotification]:
        planned = plan_habit_reminders(reminders, config, self.clock(), self.time_zone) if config.enabled else []
        return await self.sync_category("habit", config, planned)

    async def schedule_weekly_digest(self, config: ReminderConfig) -> list[ScheduledNotification]:
        """Recurring rule: left alone while already pending, so it is set up once rather than daily."""
        tag = CATEGORY_NAMESPACES["digest"]
        planned = plan_weekly_digest(config, self.time_zone) if config.enabled else []
        if planned and tag in await self._pending_in_namespace(tag):
            self._disabled.discard("digest")
            self._states[tag] = TagState.PENDING
            return []
        return await self.sync_category("digest", config, planned)

    async def send_now(self, tag: str, payload: dict[str, Any]) -> bool:
        payload = {"tag": tag, **payload}
        return await self._replace(ScheduledNotification(tag=tag, trigger=ImmediateTrigger(), payload=payload))

    async def reschedule_all(
        self,
        instants: PrayerInstantSet | None,
        settings: Settings,
    ) -> dict[ReminderCategory, list[ScheduledNotification]]:
        """Bring every category in line with ``settings``; without instants the prayer-bound ones are paused."""
        if instants is None:
            logger.warning("Prayer times unavailable; prayer reminders paused")
            prayer_job = self.sync_category("prayer", ReminderConfig("prayer", enabled=False), [])
            reflection_job = self.sync_category("reflection", ReminderConfig("reflection", enabled=False), [])
        else:
            prayer_job = self.schedule_prayer_reminders(instants, settings.reminder("prayer"))
            reflection_job = self.schedule_reflection_prompt(instants, settings.reminder("reflection"))

        prayer, reflection, habit, digest = await asyncio.gather(
            prayer_job,
            reflection_job,
            self.schedule_habit_reminders(settings.habit_reminders, settings.reminder("habit")),
            self.schedule_weekly_digest(settings.reminder("digest")),
        )
        return {"prayer": prayer, "reflection": reflection, "habit": habit, "digest": digest}


def instants_for_settings(settings: Settings, day: date) -> PrayerInstantSet | None:
    if settings.location is None:
        return None
    result = calculate_for_config(settings.location.coordinate, day, settings.calculation)
    if isinstance(result, InvalidInput):
        logger.warning("Cannot calculate prayer times: %s", result.reason)
        return None
    return result


def send_system_notification(title: str, message: str) -> bool:
    system = platform.system()

    if system == "Darwin":
        script = (
            f"display notification {json.dumps(message)} "
            f"with title {json.dumps(title)}"
        )
        command = ["osascript", "-e", script]
    elif system == "Linux" and shutil.which("notify-send"):
        command = ["notify-send", title, message]
    else:
        return False

    result = subprocess.run(
        command,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        check=False,
    )
    return result.returncode == 0


async def run_notify_daemon(
    console: Console,
    provider: FileNotificationProvider | None = None,
    stop: asyncio.Event | None = None,
    settings_loader: Callable[[], Settings] = load_config,
    poll_seconds: float = DAEMON_POLL_SEC,
) -> None:
    """Reschedule on every local day rollover or settings change, and deliver due notifications."""
    provider = provider or FileNotificationProvider()
    stop = stop or asyncio.Event()
    console.print("[bold green]Notification daemon started.[/bold green] Press Ctrl+C to stop.")

    scheduled_for: tuple[date, str] | None = None
    scheduler: ReminderScheduler | None = None

    while not stop.is_set():
        settings = settings_loader()
        time_zone = settings.calculation.time_zone
        now = datetime.now(timezone.utc)
        today = local_date(now, time_zone)
        fingerprint = json.dumps(settings.to_dict(), sort_keys=True)

        if scheduled_for != (today, fingerprint):
            scheduler = ReminderScheduler(provider, time_zone=time_zone)
            instants = instants_for_settings(settings, today)
            if instants is None:
                console.print("[yellow]Prayer times unavailable; prayer reminders paused.[/yellow]")
            summary = await scheduler.reschedule_all(instants, settings)
            total = sum(len(items) for items in summary.values())
            console.print(f"Scheduled {total} reminder(s) for {today.isoformat()}.")
            scheduled_for = (today, fingerprint)

        try:
            due = await asyncio.to_thread(provider.pop_due, datetime.now(timezone.utc))
        except SchedulingError as exc:
            logger.error("Could not drain notification queue: %s", exc)
            due = []
        for notification in due:
            title = str(notification.payload.get("title") or "Ibadah")
            body = str(notification.payload.get("body") or "")
            if not send_system_notification(title, body):
                console.print(f"[yellow]{title}[/yellow] {body}")
            if scheduler is not None:
                scheduler.mark_fired(notification.tag)

        try:
            await asyncio.wait_for(stop.wait(), timeout=poll_seconds)
        except asyncio.TimeoutError:
            continue
