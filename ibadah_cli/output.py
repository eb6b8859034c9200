from __future__ import annotations

from datetime import datetime

from rich.console import Console, Group
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .astronomy import get_method_parameters
from .models import (
    INSTANT_NAMES,
    PRAYER_LABELS,
    ActivityDomain,
    CalculationConfig,
    Location,
    PrayerInstantSet,
    PrayerName,
    StreakState,
    TimeFormat,
)
from .prayer_logic import CurrentPrayerInfo, format_countdown, format_time_remaining, resolve_zone
from .qibla import QiblaDirection, format_distance


def format_time_for_display(instant: datetime, time_format: TimeFormat, time_zone: str | None) -> str:
    local = instant.astimezone(resolve_zone(time_zone))
    if time_format == "24h":
        return local.strftime("%H:%M")

    rendered = local.strftime("%I:%M %p")
    return rendered[1:] if rendered.startswith("0") else rendered


def _location_title(location: Location) -> str:
    if location.label:
        return location.label
    return f"{location.coordinate.latitude:.4f}, {location.coordinate.longitude:.4f}"


def _row_style(name: PrayerName, instant: datetime, now: datetime, info: CurrentPrayerInfo) -> str | None:
    if name == info.next_prayer and instant > now:
        return "bold green"
    if instant <= now:
        return "dim"
    return None


def build_prayer_table(
    instants: PrayerInstantSet,
    info: CurrentPrayerInfo,
    time_format: TimeFormat,
    time_zone: str | None,
    now: datetime,
) -> Table:
    table = Table(show_header=True, header_style="bold cyan", expand=False)
    table.add_column("Prayer", style="bold")
    table.add_column("Time", justify="right")

    for name in INSTANT_NAMES:
        instant = instants.get(name)
        label = PRAYER_LABELS[name]
        if name in instants.adjusted:
            label += " *"
        table.add_row(label, format_time_for_display(instant, time_format, time_zone), style=_row_style(name, instant, now, info))

    if info.is_after_isha:
        table.add_row(
            f"{PRAYER_LABELS[info.next_prayer]} (tomorrow)",
            format_time_for_display(info.next_instant, time_format, time_zone),
            style="bold green",
        )
    return table


def render_today(
    console: Console,
    location: Location,
    instants: PrayerInstantSet,
    info: CurrentPrayerInfo,
    time_format: TimeFormat,
    calculation: CalculationConfig,
    now: datetime,
) -> None:
    title = Text(_location_title(location), style="bold")
    method = get_method_parameters(calculation.method)
    subtitle = f"Method: {method.label} | Asr: {calculation.madhab.capitalize()}"

    local_now = now.astimezone(resolve_zone(calculation.time_zone))
    zone_label = calculation.time_zone or "local"
    subtitle += f" | Timezone: {zone_label} | Now: {local_now.strftime('%H:%M:%S')}"

    table = build_prayer_table(instants, info, time_format, calculation.time_zone, now)
    parts: list = [title, subtitle, table]
    if instants.adjusted:
        parts.append(Text("* adjusted by the high-latitude rule", style="dim"))
    console.print(Panel(Group(*parts), title="Ibadah", border_style="blue"))


def build_next_panel(
    location: Location,
    info: CurrentPrayerInfo,
    time_format: TimeFormat,
    time_zone: str | None,
) -> Panel:
    next_time = format_time_for_display(info.next_instant, time_format, time_zone)
    countdown = format_countdown(info.time_until_next_ms)
    when = f"{next_time} (tomorrow)" if info.is_after_isha else next_time
    if info.approximated:
        when += " ~"

    body = Group(
        Text(f"Location: {_location_title(location)}", style="cyan"),
        Text(f"Current: {PRAYER_LABELS[info.current_prayer]}", style="white"),
        Text(f"Next Prayer: {PRAYER_LABELS[info.next_prayer]}", style="bold green"),
        Text(f"At: {when}", style="bold"),
        Text(f"Countdown: {countdown} ({format_time_remaining(info.time_until_next_ms)})", style="bold yellow"),
    )
    return Panel(body, title="Ibadah Next", border_style="green")


def build_qibla_panel(location: Location, qibla: QiblaDirection) -> Panel:
    body = Group(
        Text(f"From: {_location_title(location)}", style="cyan"),
        Text(f"Bearing: {qibla.bearing_degrees:.1f}° ({qibla.cardinal}, {qibla.description})", style="bold green"),
        Text(f"Distance to the Kaaba: {format_distance(qibla.distance_km)}", style="bold"),
    )
    return Panel(body, title="Qibla", border_style="magenta")


def build_streak_table(rows: list[tuple[ActivityDomain, str, StreakState]]) -> Table:
    table = Table(show_header=True, header_style="bold cyan", expand=False)
    table.add_column("Domain", style="bold")
    table.add_column("Subject")
    table.add_column("Current", justify="right")
    table.add_column("Longest", justify="right")
    table.add_column("Last active", justify="right")

    for domain, subject, state in rows:
        last_active = state.last_active_date.isoformat() if state.last_active_date else "-"
        style = "bold green" if state.current_streak and state.current_streak == state.longest_streak else None
        table.add_row(
            domain,
            subject,
            str(state.current_streak),
            str(state.longest_streak),
            last_active,
            style=style,
        )
    return table
