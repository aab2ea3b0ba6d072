# cadence/core/scheduler/calculator.py
from __future__ import annotations
import calendar
from datetime import date, datetime, timedelta, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo
from cadence.core.models.schedule import (
    DailyRecurrence,
    MonthlyRecurrence,
    RecurrencePattern,
    WeeklyRecurrence,
    build_recurrence,
)


def calculate_next_fire(
    pattern: RecurrencePattern, after: datetime, tz_str: str = 'UTC'
) -> datetime:
    """
    Calculate the next fire time for a recurrence pattern.

    The result is always strictly after `after`: a schedule whose slot equals
    `after` exactly moves on to its following slot.

    Args:
        pattern: Recurrence pattern (daily, weekly, monthly)
        after: Reference instant (must be timezone-aware)
        tz_str: Zone the pattern's time-of-day is evaluated in

    Returns:
        Next fire time as UTC-aware datetime

    Raises:
        ValueError: If `after` is naive or the timezone is invalid
    """
    if after.tzinfo is None:
        raise ValueError('after must be timezone-aware')

    try:
        tz = ZoneInfo(tz_str)
    except Exception as e:
        raise ValueError(f"Invalid timezone '{tz_str}': {e}")

    local_time = after.astimezone(tz)

    match pattern:
        case DailyRecurrence():
            next_fire = _calculate_daily(pattern, local_time, tz)
        case WeeklyRecurrence():
            next_fire = _calculate_weekly(pattern, local_time, tz)
        case MonthlyRecurrence():
            next_fire = _calculate_monthly(pattern, local_time, tz)

    return next_fire.astimezone(timezone.utc)


def recurrence_for(schedule: Any) -> RecurrencePattern:
    """Build the pattern from anything carrying the stored recurrence fields."""
    return build_recurrence(
        schedule.frequency,
        schedule.time,
        schedule.day_of_week,
        schedule.day_of_month,
    )


def next_fire_for(schedule: Any, after: datetime, tz_str: str = 'UTC') -> datetime:
    """Shortcut for calculate_next_fire(recurrence_for(schedule), ...)."""
    return calculate_next_fire(recurrence_for(schedule), after, tz_str)


def _calculate_daily(
    pattern: DailyRecurrence, local_time: datetime, tz: ZoneInfo
) -> datetime:
    """Today at `time` if still ahead, else the next day with a real local time."""
    for day_offset in range(0, 8):
        candidate_date = (local_time + timedelta(days=day_offset)).date()
        candidate = _resolve_local_datetime(
            date_value=candidate_date,
            hour=pattern.time.hour,
            minute=pattern.time.minute,
            tz=tz,
        )
        if candidate is None or candidate <= local_time:
            continue
        return candidate

    raise RuntimeError('Could not calculate next daily fire within 7 days')


def _calculate_weekly(
    pattern: WeeklyRecurrence, local_time: datetime, tz: ZoneInfo
) -> datetime:
    """Next matching weekday strictly after local_time, skipping nonexistent local times."""
    # day_of_week counts from Sunday; date.weekday() counts from Monday
    target_weekday = (pattern.day_of_week - 1) % 7
    for day_offset in range(0, 15):
        candidate_date = (local_time + timedelta(days=day_offset)).date()
        if candidate_date.weekday() != target_weekday:
            continue

        candidate = _resolve_local_datetime(
            date_value=candidate_date,
            hour=pattern.time.hour,
            minute=pattern.time.minute,
            tz=tz,
        )
        if candidate is None or candidate <= local_time:
            continue
        return candidate

    raise RuntimeError('Could not calculate next weekly fire within 2 weeks')


def _calculate_monthly(
    pattern: MonthlyRecurrence, local_time: datetime, tz: ZoneInfo
) -> datetime:
    """Next day_of_month slot, clamped to the last day of shorter months."""
    for month_offset in range(0, 25):
        year, month = _add_months(local_time.year, local_time.month, month_offset)
        last_day = calendar.monthrange(year, month)[1]

        candidate = _resolve_local_datetime(
            date_value=date(year, month, min(pattern.day_of_month, last_day)),
            hour=pattern.time.hour,
            minute=pattern.time.minute,
            tz=tz,
        )
        if candidate is None or candidate <= local_time:
            continue
        return candidate

    raise RuntimeError('Could not calculate next monthly fire within 24 months')


def _add_months(year: int, month: int, month_offset: int) -> tuple[int, int]:
    base = (year * 12) + (month - 1) + month_offset
    return (base // 12, (base % 12) + 1)


def _resolve_local_datetime(
    date_value: date,
    hour: int,
    minute: int,
    tz: ZoneInfo,
) -> Optional[datetime]:
    """
    Resolve local wall-clock date/time into a real zoned datetime.

    Returns None for nonexistent local times (spring-forward gaps).
    For ambiguous local times (fall-back), returns the earliest instant.
    """
    naive = datetime(
        year=date_value.year,
        month=date_value.month,
        day=date_value.day,
        hour=hour,
        minute=minute,
    )
    valid: list[datetime] = []
    for fold in (0, 1):
        candidate = naive.replace(tzinfo=tz, fold=fold)
        roundtrip = candidate.astimezone(timezone.utc).astimezone(tz)
        if roundtrip.replace(tzinfo=None) == naive:
            valid.append(candidate)

    if not valid:
        return None

    valid.sort(key=lambda dt: dt.astimezone(timezone.utc))
    return valid[0]
