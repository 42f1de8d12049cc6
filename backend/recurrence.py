from __future__ import annotations

from dataclasses import dataclass, replace
from calendar import monthrange
from datetime import date, timedelta
from typing import Optional

WEEKLY_DAYS = 7
MONTHS_PER_YEAR = 12
MAX_INTERVAL = 365
SUPPORTED_FREQUENCIES = {"daily", "weekly", "monthly", "yearly"}

# Anchors each frequency understands; anything else is rejected at validation.
FREQUENCY_ANCHORS = {
    "daily": set(),
    "weekly": {"day_of_week"},
    "monthly": {"day_of_month"},
    "yearly": {"month_of_year", "day_of_month"},
}


@dataclass(frozen=True)
class Schedule:
    frequency: str
    interval_value: int = 1
    day_of_week: Optional[int] = None
    day_of_month: Optional[int] = None
    month_of_year: Optional[int] = None


def next_occurrence(schedule: Schedule, base_date: date, reference_date: date) -> date:
    """Return the first occurrence strictly after ``reference_date``.

    ``base_date`` is the rule's start date on the first computation and its
    current cursor afterwards. A base date already after the reference is
    returned unchanged. Day-of-month overflow clamps to the last day of the
    month and the anchor day is kept for later months.
    """
    if base_date > reference_date:
        return base_date

    frequency = _validate_frequency(schedule.frequency)
    interval = schedule.interval_value or 1
    if interval <= 0:
        raise ValueError("interval_value must be greater than zero.")

    if frequency == "daily":
        return _step_days(base_date, reference_date, interval)
    if frequency == "weekly":
        snapped = _snap_to_weekday(base_date, schedule.day_of_week)
        return _step_days(snapped, reference_date, WEEKLY_DAYS * interval)
    if frequency == "monthly":
        anchor_day = schedule.day_of_month or base_date.day
        return _step_months(base_date, reference_date, interval, anchor_day)

    month = schedule.month_of_year or base_date.month
    anchor_day = schedule.day_of_month or base_date.day
    anchored = _clamped_date(base_date.year, month, anchor_day)
    return _step_months(anchored, reference_date, interval * MONTHS_PER_YEAR, anchor_day)


def first_occurrence(schedule: Schedule, start_date: date, today: date) -> date:
    """Seed a new cursor: the first occurrence on or after ``today``."""
    return next_occurrence(schedule, start_date, today - timedelta(days=1))


def validate_schedule(schedule: Schedule) -> Schedule:
    frequency = _validate_frequency(schedule.frequency)
    interval = schedule.interval_value
    if interval is None:
        interval = 1
    if interval < 1 or interval > MAX_INTERVAL:
        raise ValueError(f"interval_value must be between 1 and {MAX_INTERVAL}.")
    if schedule.day_of_week is not None and not 0 <= schedule.day_of_week <= 6:
        raise ValueError("day_of_week must be between 0 (Sunday) and 6 (Saturday).")
    if schedule.day_of_month is not None and not 1 <= schedule.day_of_month <= 31:
        raise ValueError("day_of_month must be between 1 and 31.")
    if schedule.month_of_year is not None and not 1 <= schedule.month_of_year <= 12:
        raise ValueError("month_of_year must be between 1 and 12.")

    allowed = FREQUENCY_ANCHORS[frequency]
    for anchor in ("day_of_week", "day_of_month", "month_of_year"):
        if getattr(schedule, anchor) is not None and anchor not in allowed:
            raise ValueError(f"{anchor} is not valid for {frequency} schedules.")
    return replace(schedule, frequency=frequency, interval_value=interval)


def default_anchors(schedule: Schedule, start_date: date) -> Schedule:
    """Fill the anchors implied by the start date for month-based schedules."""
    if schedule.frequency == "monthly" and schedule.day_of_month is None:
        return replace(schedule, day_of_month=start_date.day)
    if schedule.frequency == "yearly":
        return replace(
            schedule,
            month_of_year=schedule.month_of_year or start_date.month,
            day_of_month=schedule.day_of_month or start_date.day,
        )
    return schedule


def _validate_frequency(frequency: str) -> str:
    normalized = _normalize_frequency(frequency)
    if normalized not in SUPPORTED_FREQUENCIES:
        raise ValueError("Only daily, weekly, monthly, or yearly schedules are supported.")
    return normalized


def _normalize_frequency(value: str) -> str:
    return "".join(ch for ch in value.strip().lower() if ch.isalnum())


def _step_days(base_date: date, reference_date: date, interval_days: int) -> date:
    if base_date > reference_date:
        return base_date
    days_between = (reference_date - base_date).days
    intervals = days_between // interval_days + 1
    return base_date + timedelta(days=interval_days * intervals)


def _snap_to_weekday(value: date, day_of_week: Optional[int]) -> date:
    if day_of_week is None:
        return value
    # date.weekday() is Monday=0; stored anchors are Sunday=0.
    current = (value.weekday() + 1) % WEEKLY_DAYS
    return value + timedelta(days=(day_of_week - current) % WEEKLY_DAYS)


def _step_months(
    base_date: date, reference_date: date, interval_months: int, anchor_day: int
) -> date:
    months_between = (reference_date.year - base_date.year) * MONTHS_PER_YEAR + (
        reference_date.month - base_date.month
    )
    month_offset = max(months_between, 0) // interval_months * interval_months
    candidate = _add_months(base_date, month_offset, anchor_day)
    while candidate <= reference_date:
        month_offset += interval_months
        candidate = _add_months(base_date, month_offset, anchor_day)
    return candidate


def _add_months(start_date: date, months: int, anchor_day: int) -> date:
    total_month = start_date.month - 1 + months
    year = start_date.year + total_month // MONTHS_PER_YEAR
    month = total_month % MONTHS_PER_YEAR + 1
    return _clamped_date(year, month, anchor_day)


def _clamped_date(year: int, month: int, day: int) -> date:
    last_day = monthrange(year, month)[1]
    return date(year, month, min(day, last_day))
