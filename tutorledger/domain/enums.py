from __future__ import annotations

from enum import StrEnum


class PaymentStatus(StrEnum):
    UNPAID = "unpaid"
    DUE = "due"
    PAID = "paid"
    CANCELLED = "cancelled"


class LessonStatus(StrEnum):
    PLANNED = "planned"
    DONE = "done"
    CANCELED = "canceled"


class RecurrenceFrequency(StrEnum):
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY_BY_DOW = "monthly_by_dow"


class RecurrenceExceptionKind(StrEnum):
    CANCELLED = "cancelled"
    OVERRIDDEN = "overridden"


class Weekday(StrEnum):
    MO = "MO"
    TU = "TU"
    WE = "WE"
    TH = "TH"
    FR = "FR"
    SA = "SA"
    SU = "SU"

    @property
    def number(self) -> int:
        return _WEEKDAY_ORDER.index(self)

    @classmethod
    def from_number(cls, value: int) -> Weekday:
        return _WEEKDAY_ORDER[value]


_WEEKDAY_ORDER = (
    Weekday.MO,
    Weekday.TU,
    Weekday.WE,
    Weekday.TH,
    Weekday.FR,
    Weekday.SA,
    Weekday.SU,
)


class PaymentMethod(StrEnum):
    PREPAYMENT = "prepayment"
    MANUAL = "manual"
