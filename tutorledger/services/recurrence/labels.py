from __future__ import annotations

from tutorledger.core.datetime_utils import ensure_utc, load_zone
from tutorledger.domain.enums import RecurrenceFrequency, Weekday
from tutorledger.services.recurrence.expander import RuleLike, resolve_weekdays, weekday_ordinal

_SHORT_WEEKDAYS = {
    Weekday.MO: "Пн",
    Weekday.TU: "Вт",
    Weekday.WE: "Ср",
    Weekday.TH: "Чт",
    Weekday.FR: "Пт",
    Weekday.SA: "Сб",
    Weekday.SU: "Вс",
}

_ORDINALS = {1: "первую", 2: "вторую", 3: "третью", 4: "четвертую", 5: "пятую"}


def format_rule_label(rule: RuleLike) -> str:
    interval = max(1, rule.interval)
    days = ", ".join(_SHORT_WEEKDAYS[day] for day in resolve_weekdays(rule))

    if rule.frequency == RecurrenceFrequency.MONTHLY_BY_DOW.value:
        local_start = ensure_utc(rule.start_at).astimezone(load_zone(rule.timezone))
        ordinal = _ORDINALS[weekday_ordinal(local_start.date())]
        if interval == 1:
            return f"каждую {ordinal} {days}"
        return f"каждые {interval} {plural_months(interval)} в {ordinal} {days}"

    if rule.frequency == RecurrenceFrequency.BIWEEKLY.value:
        interval *= 2
    if interval == 1:
        return f"каждую {days}"
    return f"каждые {interval} {plural_weeks(interval)} по {days}"


def plural_weeks(value: int) -> str:
    if value % 100 in range(11, 15):
        return "недель"
    if value % 10 in (2, 3, 4):
        return "недели"
    return "недель"


def plural_months(value: int) -> str:
    if value % 100 in range(11, 15):
        return "месяцев"
    if value % 10 == 1:
        return "месяц"
    if value % 10 in (2, 3, 4):
        return "месяца"
    return "месяцев"
