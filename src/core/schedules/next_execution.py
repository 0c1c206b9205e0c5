"""
Next-execution calendar arithmetic for auto-invest schedules.

All functions are pure: the only notion of "now" is the ``reference`` argument.
Returned instants are timezone-aware and normalised to UTC.
"""

import calendar
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from src.core.common.errors import DomainValidationError
from src.core.schedules.models import ScheduleFrequency, ScheduleRecurrence

_TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")
_MONTH_STEPS = {"monthly": 1, "quarterly": 3}
_WEEK_STEPS = {"weekly": 1, "biweekly": 2}


@dataclass(frozen=True)
class DayOfMonthRule:
    day_of_month: int
    at: time
    months_step: int


@dataclass(frozen=True)
class DayOfWeekRule:
    # 0=Sunday .. 6=Saturday
    day_of_week: int
    at: time
    weeks_step: int


RecurrenceRule = Union[DayOfMonthRule, DayOfWeekRule]


def parse_local_time(value: str) -> time:
    match = _TIME_PATTERN.match(value or "")
    if match is None:
        raise DomainValidationError("schedule.time", "time must use HH:MM 24h format")
    return time(hour=int(match.group(1)), minute=int(match.group(2)))


def resolve_timezone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise DomainValidationError("timezone", f"unknown timezone '{name}'") from exc


def build_recurrence_rule(
    frequency: ScheduleFrequency, recurrence: ScheduleRecurrence
) -> RecurrenceRule:
    """Validate the frequency/recurrence pair once and return the tagged rule."""
    at = parse_local_time(recurrence.time)

    if frequency in _MONTH_STEPS:
        if recurrence.day_of_week is not None:
            raise DomainValidationError(
                "schedule.day_of_week", f"day_of_week is not allowed for {frequency} schedules"
            )
        if recurrence.day_of_month is None:
            raise DomainValidationError(
                "schedule.day_of_month", f"day_of_month is required for {frequency} schedules"
            )
        if not 1 <= recurrence.day_of_month <= 31:
            raise DomainValidationError(
                "schedule.day_of_month", "day_of_month must be between 1 and 31"
            )
        return DayOfMonthRule(
            day_of_month=recurrence.day_of_month,
            at=at,
            months_step=_MONTH_STEPS[frequency],
        )

    if frequency in _WEEK_STEPS:
        if recurrence.day_of_month is not None:
            raise DomainValidationError(
                "schedule.day_of_month", f"day_of_month is not allowed for {frequency} schedules"
            )
        if recurrence.day_of_week is None:
            raise DomainValidationError(
                "schedule.day_of_week", f"day_of_week is required for {frequency} schedules"
            )
        if not 0 <= recurrence.day_of_week <= 6:
            raise DomainValidationError(
                "schedule.day_of_week", "day_of_week must be between 0 and 6"
            )
        return DayOfWeekRule(
            day_of_week=recurrence.day_of_week,
            at=at,
            weeks_step=_WEEK_STEPS[frequency],
        )

    raise DomainValidationError("frequency", f"unsupported frequency '{frequency}'")


def next_run(
    *,
    rule: RecurrenceRule,
    start_date: date,
    reference: datetime,
    tz: ZoneInfo,
) -> datetime:
    """Earliest occurrence strictly after ``reference`` and never before ``start_date``."""
    if reference.tzinfo is None:
        raise ValueError("reference must be timezone-aware")
    if isinstance(rule, DayOfMonthRule):
        return _next_day_of_month(rule=rule, start_date=start_date, reference=reference, tz=tz)
    return _next_day_of_week(rule=rule, start_date=start_date, reference=reference, tz=tz)


def first_run(*, rule: RecurrenceRule, start_date: date, tz: ZoneInfo) -> datetime:
    """Earliest occurrence on or after the start of ``start_date`` in ``tz``."""
    start_of_day = datetime.combine(start_date, time.min, tzinfo=tz)
    return next_run(
        rule=rule,
        start_date=start_date,
        reference=start_of_day - timedelta(microseconds=1),
        tz=tz,
    )


def local_today(now: datetime, tz: ZoneInfo) -> date:
    return now.astimezone(tz).date()


def _to_utc(day: date, at: time, tz: ZoneInfo) -> datetime:
    return datetime.combine(day, at, tzinfo=tz).astimezone(timezone.utc)


def _clamped_day(year: int, month: int, day_of_month: int) -> date:
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day_of_month, last_day))


def _add_months(year: int, month: int, months: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + months
    return index // 12, index % 12 + 1


def _next_day_of_month(
    *,
    rule: DayOfMonthRule,
    start_date: date,
    reference: datetime,
    tz: ZoneInfo,
) -> datetime:
    local_reference = reference.astimezone(tz).date()
    floor_date = max(local_reference, start_date)

    # months are anchored at the start_date month so quarterly keeps its cadence
    offset = (floor_date.year - start_date.year) * 12 + (floor_date.month - start_date.month)
    offset -= offset % rule.months_step
    year, month = _add_months(start_date.year, start_date.month, offset)

    candidate: Optional[datetime] = None
    while candidate is None:
        day = _clamped_day(year, month, rule.day_of_month)
        instant = _to_utc(day, rule.at, tz)
        if day >= start_date and instant > reference:
            candidate = instant
        else:
            year, month = _add_months(year, month, rule.months_step)
    return candidate


def _first_matching_weekday(on_or_after: date, day_of_week: int) -> date:
    # isoweekday: Monday=1 .. Sunday=7, so `% 7` maps Sunday to 0
    delta = (day_of_week - on_or_after.isoweekday() % 7) % 7
    return on_or_after + timedelta(days=delta)


def _next_day_of_week(
    *,
    rule: DayOfWeekRule,
    start_date: date,
    reference: datetime,
    tz: ZoneInfo,
) -> datetime:
    anchor = _first_matching_weekday(start_date, rule.day_of_week)
    stride_days = 7 * rule.weeks_step
    local_reference = reference.astimezone(tz).date()

    k = 0
    if local_reference > anchor:
        k = -(-(local_reference - anchor).days // stride_days)
        # the occurrence one stride earlier may still be later the same day
        k = max(0, k - 1)

    while True:
        day = anchor + timedelta(days=k * stride_days)
        instant = _to_utc(day, rule.at, tz)
        if instant > reference:
            return instant
        k += 1
