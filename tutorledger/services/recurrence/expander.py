"""Expansion of recurrence rules into concrete occurrence instants.

Everything here is pure: the same rule and window always produce the same
list, so callers re-expand on every query instead of caching. Rules are
expanded with ``dateutil.rrule`` over naive wall-clock times in the rule's
own timezone and only the final instants are converted to UTC, which keeps
the local time stable across DST transitions.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Protocol
from zoneinfo import ZoneInfo

from dateutil.rrule import FR, MO, MONTHLY, SA, SU, TH, TU, WE, WEEKLY, rrule

from tutorledger.core.datetime_utils import ensure_utc, load_zone, local_datetime_to_utc
from tutorledger.core.errors import RecurrenceValidationError
from tutorledger.domain.enums import RecurrenceFrequency, Weekday

_RRULE_WEEKDAYS = (MO, TU, WE, TH, FR, SA, SU)


class RuleLike(Protocol):
    frequency: str
    interval: int
    weekdays: list[str]
    start_at: datetime
    until_at: datetime | None
    timezone: str


def validate_rule(rule: RuleLike) -> None:
    try:
        frequency = RecurrenceFrequency(rule.frequency)
    except ValueError as exc:
        msg = f"Unsupported recurrence frequency: {rule.frequency}"
        raise RecurrenceValidationError(msg) from exc
    if rule.interval is None or rule.interval < 1:
        msg = f"Recurrence interval must be at least 1, got {rule.interval}"
        raise RecurrenceValidationError(msg)
    try:
        tz = load_zone(rule.timezone)
    except ValueError as exc:
        raise RecurrenceValidationError(str(exc)) from exc
    if rule.until_at is not None and ensure_utc(rule.until_at) < ensure_utc(rule.start_at):
        msg = "Recurrence cannot end before it starts"
        raise RecurrenceValidationError(msg)

    explicit = _parse_weekdays(rule.weekdays)
    if frequency is RecurrenceFrequency.MONTHLY_BY_DOW and explicit:
        start_weekday = Weekday.from_number(ensure_utc(rule.start_at).astimezone(tz).weekday())
        if len(explicit) > 1:
            msg = "Monthly recurrence supports a single weekday"
            raise RecurrenceValidationError(msg)
        if explicit[0] is not start_weekday:
            msg = f"Monthly recurrence weekday {explicit[0]} does not match the first lesson ({start_weekday})"
            raise RecurrenceValidationError(msg)


def resolve_weekdays(rule: RuleLike) -> list[Weekday]:
    tz = load_zone(rule.timezone)
    start_weekday = Weekday.from_number(ensure_utc(rule.start_at).astimezone(tz).weekday())
    if rule.frequency == RecurrenceFrequency.MONTHLY_BY_DOW.value:
        return [start_weekday]
    explicit = _parse_weekdays(rule.weekdays)
    return explicit or [start_weekday]


def weekday_ordinal(day: date) -> int:
    return (day.day - 1) // 7 + 1


def expand_rule(rule: RuleLike, window_start: datetime, window_end: datetime) -> list[datetime]:
    """Candidate occurrence starts of ``rule`` inside ``[window_start, window_end)``.

    Exceptions are not applied here. The result is sorted, deduplicated and
    never contains instants before the rule start or after ``until_at``.
    """
    start = ensure_utc(window_start)
    end = ensure_utc(window_end)
    rule_start = ensure_utc(rule.start_at)
    until = ensure_utc(rule.until_at) if rule.until_at is not None else None
    if end <= start or end <= rule_start:
        return []
    if until is not None and until < start:
        return []

    tz = load_zone(rule.timezone)
    recurrence = build_rrule(rule, tz)
    # Local bounds are padded by a day; exact bounds are checked on UTC instants.
    lower = _naive_local(max(start, rule_start), tz) - timedelta(days=1)
    upper = _naive_local(end, tz) + timedelta(days=1)
    found = {
        local_datetime_to_utc(item.date(), item.time(), tz)
        for item in recurrence.between(lower, upper, inc=True)
    }
    return sorted(
        item
        for item in found
        if start <= item < end and item >= rule_start and (until is None or item <= until)
    )


def build_rrule(rule: RuleLike, tz: ZoneInfo) -> rrule:
    """Rule over naive wall-clock times in ``tz``, so DST shifts keep the local hour."""
    local_start = _naive_local(ensure_utc(rule.start_at), tz)
    local_until = _naive_local(ensure_utc(rule.until_at), tz) if rule.until_at is not None else None
    interval = max(1, rule.interval)

    if rule.frequency == RecurrenceFrequency.MONTHLY_BY_DOW.value:
        # Months without the Nth weekday produce nothing.
        nth = _RRULE_WEEKDAYS[local_start.weekday()](+weekday_ordinal(local_start.date()))
        return rrule(MONTHLY, interval=interval, byweekday=nth, dtstart=local_start, until=local_until)

    if rule.frequency == RecurrenceFrequency.BIWEEKLY.value:
        interval *= 2
    return rrule(
        WEEKLY,
        interval=interval,
        byweekday=[_RRULE_WEEKDAYS[day.number] for day in resolve_weekdays(rule)],
        wkst=MO,
        dtstart=local_start,
        until=local_until,
    )


def _naive_local(instant: datetime, tz: ZoneInfo) -> datetime:
    return instant.astimezone(tz).replace(tzinfo=None)


def _parse_weekdays(raw: list[str] | None) -> list[Weekday]:
    if not raw:
        return []
    parsed: set[Weekday] = set()
    for item in raw:
        try:
            parsed.add(Weekday(str(item).upper()))
        except ValueError as exc:
            msg = f"Unsupported weekday: {item}"
            raise RecurrenceValidationError(msg) from exc
    return sorted(parsed, key=lambda day: day.number)
