"""Next-run calculation for recurring project scans.

All day/hour arithmetic happens on the wall clock of the project's timezone
and is converted to an absolute UTC instant only at the end, so DST changes
never shift the local hour. Local times that fall into a spring-forward gap
resolve to the same instant the pre-transition offset gives, which lands
after the gap.
"""

from __future__ import annotations

from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from scan_orchestrator.orchestrator.models import ScheduleConfig, ScheduleFrequency

DEFAULT_DAY_OF_WEEK = 1  # Monday, with 0 = Sunday
DEFAULT_DAY_OF_MONTH = 1
MAX_SAFE_DAY_OF_MONTH = 28

_DAY_NAMES = ("Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday")


def next_run(config: ScheduleConfig, timezone: str, now: datetime) -> datetime:
    """Return the first scheduled instant strictly after `now`, in UTC."""

    validate_schedule(config)
    zone = _zone(timezone)
    now_utc = _as_utc(now)
    local_today = now_utc.astimezone(zone).date()

    if config.frequency is ScheduleFrequency.DAILY:
        candidate = _wall_clock_to_utc(local_today, config.hour, zone)
        if candidate > now_utc:
            return candidate
        return _wall_clock_to_utc(local_today + timedelta(days=1), config.hour, zone)

    if config.frequency is ScheduleFrequency.WEEKLY:
        target_dow = (
            config.day_of_week if config.day_of_week is not None else DEFAULT_DAY_OF_WEEK
        )
        days_until = (target_dow - _sunday_based_weekday(local_today)) % 7
        candidate = _wall_clock_to_utc(
            local_today + timedelta(days=days_until),
            config.hour,
            zone,
        )
        if candidate > now_utc:
            return candidate
        return _wall_clock_to_utc(
            local_today + timedelta(days=days_until + 7),
            config.hour,
            zone,
        )

    day = safe_day_of_month(config.day_of_month)
    candidate = _wall_clock_to_utc(local_today.replace(day=day), config.hour, zone)
    if candidate > now_utc:
        return candidate
    return _wall_clock_to_utc(_add_month(local_today.replace(day=day)), config.hour, zone)


def safe_day_of_month(day_of_month: int | None) -> int:
    """Clamp to a day that exists in every month."""

    value = day_of_month if day_of_month is not None else DEFAULT_DAY_OF_MONTH
    return max(1, min(value, MAX_SAFE_DAY_OF_MONTH))


def validate_schedule(config: ScheduleConfig) -> None:
    if not 0 <= config.hour <= 23:  # noqa: PLR2004
        raise ValueError(f"Schedule hour must be within 0..23, got {config.hour}")
    if config.day_of_week is not None and not 0 <= config.day_of_week <= 6:  # noqa: PLR2004
        raise ValueError(f"Schedule day_of_week must be within 0..6, got {config.day_of_week}")
    if config.day_of_month is not None and not 1 <= config.day_of_month <= 31:  # noqa: PLR2004
        raise ValueError(
            f"Schedule day_of_month must be within 1..31, got {config.day_of_month}",
        )


def is_valid_timezone(name: str) -> bool:
    """True when `name` is a known IANA timezone."""

    try:
        _zone(name)
    except ValueError:
        return False
    return True


def describe_schedule(config: ScheduleConfig) -> str:
    """Human-readable schedule, e.g. ``Every Monday at 8:00 AM``."""

    hour_label = format_hour(config.hour)
    if config.frequency is ScheduleFrequency.DAILY:
        return f"Daily at {hour_label}"
    if config.frequency is ScheduleFrequency.WEEKLY:
        dow = config.day_of_week if config.day_of_week is not None else DEFAULT_DAY_OF_WEEK
        day_name = _DAY_NAMES[dow] if 0 <= dow < len(_DAY_NAMES) else _DAY_NAMES[1]
        return f"Every {day_name} at {hour_label}"
    day = config.day_of_month if config.day_of_month is not None else DEFAULT_DAY_OF_MONTH
    return f"{day}{ordinal_suffix(day)} of every month at {hour_label}"


def format_next_run(value: datetime, timezone: str) -> str:
    """Format an instant for display, e.g. ``Monday, Feb 09, 2026 at 6:00 AM``."""

    local = _as_utc(value).astimezone(_zone(timezone))
    return f"{local:%A, %b %d, %Y} at {format_hour(local.hour, local.minute)}"


def format_hour(hour: int, minute: int = 0) -> str:
    display = hour % 12 or 12
    suffix = "AM" if hour < 12 else "PM"  # noqa: PLR2004
    return f"{display}:{minute:02d} {suffix}"


def ordinal_suffix(day: int) -> str:
    if 11 <= day % 100 <= 13:  # noqa: PLR2004
        return "th"
    return {1: "st", 2: "nd", 3: "rd"}.get(day % 10, "th")


def _wall_clock_to_utc(local_day: date, hour: int, zone: ZoneInfo) -> datetime:
    local = datetime.combine(local_day, time(hour=hour), tzinfo=zone)
    return local.astimezone(UTC)


def _add_month(value: date) -> date:
    if value.month == 12:  # noqa: PLR2004
        return value.replace(year=value.year + 1, month=1)
    return value.replace(month=value.month + 1)


def _sunday_based_weekday(value: date) -> int:
    return (value.weekday() + 1) % 7


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _zone(name: str) -> ZoneInfo:
    if not name or not name.strip():
        raise ValueError("Timezone name must not be empty.")
    try:
        return ZoneInfo(name.strip())
    except (ZoneInfoNotFoundError, ValueError, OSError) as error:
        raise ValueError(f"Unknown timezone: {name!r}") from error
