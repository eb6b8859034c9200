from __future__ import annotations

import asyncio
import json
import logging
import time
from datetime import date, datetime, timezone
from typing import Optional

import typer
from rich.console import Console
from rich.live import Live
from rich.logging import RichHandler
from rich.table import Table

from . import __version__
from .astronomy import CALCULATION_METHODS
from .cache import get_display_instants
from .config import CONFIG_PATH, Settings, load_config, parse_quiet_hours, save_config
from .location import LocationUnavailable, detect_location_from_ip, search_locations
from .models import (
    ACTIVITY_DOMAINS,
    HABIT_LEVELS,
    OFFSET_NAMES,
    PRAYER_NAMES,
    ActivityDomain,
    CalculationConfig,
    GeoCoordinate,
    HabitLevel,
    InvalidInput,
    Location,
    Milestone,
    PrayerInstantSet,
    ReminderCategory,
    ReminderConfig,
    StreakState,
)
from .notify import FileNotificationProvider, ReminderScheduler, instants_for_settings, run_notify_daemon
from .output import build_next_panel, build_qibla_panel, build_streak_table, render_today
from .prayer_logic import (
    CountdownRefresher,
    CurrentPrayerInfo,
    NextPrayerResolver,
    get_current_prayer_info,
    is_valid_time_zone,
    local_date,
)
from .qibla import calculate_qibla
from .store import ALL_PRAYERS, ActivityLogStore, MilestoneStore
from .streaks import MilestoneNotifier, StreakEngine

app = typer.Typer(
    help="Ibadah CLI",
    no_args_is_help=False,
    invoke_without_command=True,
    add_completion=True,
)
console = Console()
logger = logging.getLogger(__name__)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=False)],
        force=True,
    )


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"ibadah-cli {__version__}")
        raise typer.Exit()


def _validate_choice(value: str, choices: tuple[str, ...], label: str) -> str:
    if value not in choices:
        raise typer.BadParameter(f"{label} must be one of: {', '.join(choices)}")
    return value


def _validate_coordinates(lat: float, lon: float) -> GeoCoordinate:
    coordinate = GeoCoordinate(latitude=lat, longitude=lon)
    error = coordinate.validate()
    if error:
        raise typer.BadParameter(error.reason)
    return coordinate


def _require_location(settings: Settings) -> Location:
    if settings.location is None:
        console.print(
            "[red]Prayer times unavailable:[/red] no location configured. "
            "Run [bold]ibadah config --auto-location[/bold] or set --lat/--lon."
        )
        raise typer.Exit(code=1)
    return settings.location


def _today_instants(settings: Settings, location: Location, now: datetime) -> PrayerInstantSet:
    today = local_date(now, settings.calculation.time_zone)
    result = get_display_instants(location.coordinate, settings.calculation, today)
    if isinstance(result, InvalidInput):
        console.print(f"[red]Prayer times unavailable:[/red] {result.reason}")
        raise typer.Exit(code=1)
    return result


def _resolve(settings: Settings, location: Location, now: datetime) -> tuple[PrayerInstantSet, CurrentPrayerInfo]:
    instants = _today_instants(settings, location, now)
    info = NextPrayerResolver(location.coordinate, settings.calculation).resolve(now)
    if isinstance(info, InvalidInput):
        info = get_current_prayer_info(instants, now)
    return instants, info


def _print_config(config: Settings) -> None:
    console.print_json(json.dumps(config.to_dict(), ensure_ascii=False, indent=2))
    console.print(f"[dim]Config path:[/dim] {CONFIG_PATH}")


def _show_today() -> None:
    settings = load_config()
    location = _require_location(settings)
    now = datetime.now(timezone.utc)
    instants, info = _resolve(settings, location, now)

    render_today(
        console=console,
        location=location,
        instants=instants,
        info=info,
        time_format=settings.time_format,
        calculation=settings.calculation,
        now=now,
    )


@app.callback(invoke_without_command=True)
def root(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Show today's prayer times."""
    _ = version
    _configure_logging(verbose)
    if ctx.invoked_subcommand is None:
        _show_today()


@app.command("next")
def next_command(
    once: bool = typer.Option(False, "--once", help="Show next prayer once and exit."),
    interval: float = typer.Option(1.0, "--interval", min=0.1, help="Refresh interval in seconds."),
) -> None:
    """Show next prayer and a live countdown."""
    settings = load_config()
    location = _require_location(settings)
    resolver = NextPrayerResolver(location.coordinate, settings.calculation)

    def _current_panel():
        info = resolver.resolve(datetime.now(timezone.utc))
        if isinstance(info, InvalidInput):
            console.print(f"[red]Prayer times unavailable:[/red] {info.reason}")
            raise typer.Exit(code=1)
        return build_next_panel(
            location=location,
            info=info,
            time_format=settings.time_format,
            time_zone=settings.calculation.time_zone,
        )

    if once:
        console.print(_current_panel())
        return

    try:
        with Live(_current_panel(), console=console, refresh_per_second=4) as live:
            with CountdownRefresher(lambda: live.update(_current_panel()), interval=interval) as refresher:
                while refresher.running:
                    time.sleep(1)
    except KeyboardInterrupt:
        console.print("\n[dim]Stopped.[/dim]")


@app.command("qibla")
def qibla_command() -> None:
    """Show the Qibla bearing and distance from the configured location."""
    settings = load_config()
    location = _require_location(settings)
    result = calculate_qibla(location.coordinate)
    if isinstance(result, InvalidInput):
        console.print(f"[red]{result.reason}[/red]")
        raise typer.Exit(code=1)
    console.print(build_qibla_panel(location, result))


def _parse_offsets(values: list[str]) -> dict[str, int]:
    offsets: dict[str, int] = {}
    for value in values:
        name, _, minutes = value.partition("=")
        name = name.strip().lower()
        _validate_choice(name, OFFSET_NAMES, "offset prayer")
        try:
            offsets[name] = int(minutes)
        except ValueError as exc:
            raise typer.BadParameter(f"offset for {name} must be an integer number of minutes") from exc
    return offsets


def _update_reminder(
    settings: Settings,
    category: ReminderCategory,
    enabled: Optional[bool],
    lead_minutes: Optional[int] = None,
) -> None:
    current = settings.reminders.get(category) or ReminderConfig(category)
    settings.reminders[category] = ReminderConfig(
        category,
        enabled=current.enabled if enabled is None else enabled,
        lead_minutes=current.lead_minutes if lead_minutes is None else lead_minutes,
    )


@app.command("config")
def config_command(
    show: bool = typer.Option(False, "--show", help="Print current configuration."),
    auto_location: bool = typer.Option(False, "--auto-location", help="Detect location from IP."),
    search: Optional[str] = typer.Option(None, "--search", help="Search a location using OpenStreetMap Nominatim."),
    search_index: int = typer.Option(1, "--search-index", min=1, help="Result index used with --search (1-based)."),
    lat: Optional[float] = typer.Option(None, "--lat"),
    lon: Optional[float] = typer.Option(None, "--lon"),
    label: Optional[str] = typer.Option(None, "--label"),
    method: Optional[str] = typer.Option(None, "--method", help="Calculation method, e.g. MuslimWorldLeague."),
    madhab: Optional[str] = typer.Option(None, "--madhab", help="Asr convention: shafi or hanafi."),
    high_latitude_rule: Optional[str] = typer.Option(None, "--high-latitude-rule"),
    time_zone: Optional[str] = typer.Option(None, "--time-zone", help="IANA timezone, e.g. Asia/Riyadh."),
    offset: list[str] = typer.Option([], "--offset", help="Per-prayer minute offset, e.g. fajr=-2."),
    time_format: Optional[str] = typer.Option(None, "--time-format", help="Display format: 12h or 24h."),
    quiet_hours: Optional[str] = typer.Option(None, "--quiet-hours", help="HH:MM-HH:MM, or 'off'."),
    prayer_reminders: Optional[bool] = typer.Option(None, "--prayer-reminders/--no-prayer-reminders"),
    lead_minutes: Optional[int] = typer.Option(None, "--lead-minutes", help="Minutes before each prayer."),
    habit_reminders: Optional[bool] = typer.Option(None, "--habit-reminders/--no-habit-reminders"),
    reflection: Optional[bool] = typer.Option(None, "--reflection/--no-reflection"),
    digest: Optional[bool] = typer.Option(None, "--digest/--no-digest"),
) -> None:
    """Set location, calculation method, reminders and display options."""
    settings = load_config()

    has_update_flags = any(
        value is not None
        for value in (
            search,
            lat,
            lon,
            label,
            method,
            madhab,
            high_latitude_rule,
            time_zone,
            time_format,
            quiet_hours,
            prayer_reminders,
            lead_minutes,
            habit_reminders,
            reflection,
            digest,
        )
    ) or auto_location or bool(offset)

    if show or not has_update_flags:
        _print_config(settings)
        return

    if auto_location:
        try:
            settings.location = detect_location_from_ip()
        except LocationUnavailable as exc:
            console.print(f"[red]Failed to detect location:[/red] {exc}")
            raise typer.Exit(code=1)

    if search is not None:
        try:
            results = search_locations(search, limit=5)
        except LocationUnavailable as exc:
            console.print(f"[red]{exc}[/red]")
            raise typer.Exit(code=1)
        if not results:
            console.print("[red]No search results.[/red]")
            raise typer.Exit(code=1)
        if search_index > len(results):
            console.print(f"[red]search-index out of range. Pick 1..{len(results)}[/red]")
            raise typer.Exit(code=1)
        settings.location = results[search_index - 1]

    if lat is not None or lon is not None:
        if lat is None or lon is None:
            console.print("[red]Manual location requires both --lat and --lon.[/red]")
            raise typer.Exit(code=1)
        settings.location = Location(coordinate=_validate_coordinates(lat, lon), label=label)
    elif label is not None and settings.location is not None:
        settings.location.label = label

    if time_zone is not None and not is_valid_time_zone(time_zone):
        raise typer.BadParameter(f"unknown time zone: {time_zone}")

    calculation = settings.calculation
    offsets = {**calculation.offsets, **_parse_offsets(offset)}
    settings.calculation = CalculationConfig(
        method=_validate_choice(method, tuple(CALCULATION_METHODS), "method") if method else calculation.method,
        madhab=_validate_choice(madhab, ("shafi", "hanafi"), "madhab") if madhab else calculation.madhab,  # type: ignore[arg-type]
        high_latitude_rule=(
            _validate_choice(  # type: ignore[arg-type]
                high_latitude_rule,
                ("middle_of_the_night", "seventh_of_the_night", "twilight_angle"),
                "high-latitude rule",
            )
            if high_latitude_rule
            else calculation.high_latitude_rule
        ),
        time_zone=time_zone or calculation.time_zone,
        offsets=offsets,
    )

    if time_format is not None:
        settings.time_format = _validate_choice(time_format, ("12h", "24h"), "time format")  # type: ignore[assignment]

    if quiet_hours is not None:
        if quiet_hours.lower() == "off":
            settings.quiet_hours = None
        else:
            try:
                settings.quiet_hours = parse_quiet_hours(quiet_hours)
            except ValueError as exc:
                raise typer.BadParameter(str(exc)) from exc

    _update_reminder(settings, "prayer", prayer_reminders, lead_minutes)
    _update_reminder(settings, "habit", habit_reminders)
    _update_reminder(settings, "reflection", reflection)
    _update_reminder(settings, "digest", digest)

    save_config(settings)
    console.print("[green]Configuration saved.[/green]")
    _print_config(settings)


def _streak(store: ActivityLogStore, domain: ActivityDomain, subject: str, today: date) -> StreakState:
    return StreakEngine.for_domain(domain).calculate(store.records_for_streak(domain, subject), today)


@app.command("log")
def log_command(
    domain: str = typer.Argument(..., help="prayer, habit or scripture."),
    subject: str = typer.Argument(..., help="Prayer name, habit id, or reading plan id."),
    on: Optional[str] = typer.Option(None, "--date", help="ISO date to log (defaults to today)."),
    count: Optional[int] = typer.Option(None, "--count", min=0, help="Amount, e.g. pages read."),
    level: Optional[str] = typer.Option(None, "--level", help="Habit level: basic, companion or prophetic."),
) -> None:
    """Record an activity and celebrate any milestone it reaches."""
    domain_name: ActivityDomain = _validate_choice(domain, ACTIVITY_DOMAINS, "domain")  # type: ignore[assignment]
    if domain_name == "prayer":
        _validate_choice(subject, PRAYER_NAMES, "prayer")
    habit_level: HabitLevel | None = (
        _validate_choice(level, HABIT_LEVELS, "level") if level else None  # type: ignore[assignment]
    )

    settings = load_config()
    today = local_date(datetime.now(timezone.utc), settings.calculation.time_zone)
    try:
        day = date.fromisoformat(on) if on else today
    except ValueError as exc:
        raise typer.BadParameter("date must be YYYY-MM-DD") from exc

    store = ActivityLogStore()
    subjects = [subject, ALL_PRAYERS] if domain_name == "prayer" else [subject]
    before = {name: _streak(store, domain_name, name, today) for name in subjects}
    previous_level = store.latest_level(domain_name, subject)

    store.log(domain_name, subject, day, value=count if count is not None else True, level=habit_level)
    after = {name: _streak(store, domain_name, name, today) for name in subjects}

    scheduler = ReminderScheduler(FileNotificationProvider(), time_zone=settings.calculation.time_zone)
    notifier = MilestoneNotifier(MilestoneStore(), scheduler)

    async def _award() -> list[Milestone]:
        awarded: list[Milestone] = []
        for name in subjects:
            label = "all five" if name == ALL_PRAYERS else name.capitalize()
            milestone = await notifier.process(domain_name, name, before[name], after[name], label)
            if milestone:
                awarded.append(milestone)
        upgrade = notifier.evaluate_level(domain_name, subject, previous_level, habit_level)
        if await notifier.award(upgrade, subject):
            awarded.append(upgrade)  # type: ignore[arg-type]
        return awarded

    awarded = asyncio.run(_award())
    state = after[subject]
    console.print(
        f"[green]Logged[/green] {domain_name}/{subject} for {day.isoformat()}. "
        f"Current streak: [bold]{state.current_streak}[/bold] (longest {state.longest_streak})."
    )
    for milestone in awarded:
        console.print(f"[bold yellow]Milestone:[/bold yellow] {milestone.subject_id} {milestone.type} {milestone.value}")


@app.command("streak")
def streak_command() -> None:
    """Show current and longest streaks for every logged subject."""
    settings = load_config()
    today = local_date(datetime.now(timezone.utc), settings.calculation.time_zone)
    store = ActivityLogStore()

    rows: list[tuple[ActivityDomain, str, StreakState]] = []
    for domain in ACTIVITY_DOMAINS:
        subjects = store.subjects(domain)
        if domain == "prayer" and subjects:
            subjects = [ALL_PRAYERS, *subjects]
        rows.extend((domain, subject, _streak(store, domain, subject, today)) for subject in subjects)

    if not rows:
        console.print("[dim]Nothing logged yet.[/dim]")
        return
    console.print(build_streak_table(rows))


@app.command("schedule")
def schedule_command() -> None:
    """Reschedule every reminder from the current settings."""
    settings = load_config()
    now = datetime.now(timezone.utc)
    instants = instants_for_settings(settings, local_date(now, settings.calculation.time_zone))
    if instants is None:
        console.print("[yellow]Prayer times unavailable; prayer reminders paused.[/yellow]")

    scheduler = ReminderScheduler(FileNotificationProvider(), time_zone=settings.calculation.time_zone)
    summary = asyncio.run(scheduler.reschedule_all(instants, settings))

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Tag", style="bold")
    table.add_column("Trigger")
    for notifications in summary.values():
        for notification in notifications:
            trigger = getattr(notification.trigger, "at", None)
            table.add_row(notification.tag, trigger.isoformat() if trigger else type(notification.trigger).__name__)
    console.print(table)


@app.command("notify")
def notify_command() -> None:
    """Daemon mode: keep reminders scheduled and deliver them as system notifications."""
    try:
        asyncio.run(run_notify_daemon(console))
    except KeyboardInterrupt:
        console.print("\n[dim]Notification daemon stopped.[/dim]")


if __name__ == "__main__":
    app()
