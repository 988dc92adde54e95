from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, field_validator, model_validator

from tutorledger.core.datetime_utils import ensure_utc, is_valid_timezone, zoned_to_utc
from tutorledger.domain.enums import PaymentMethod, PaymentStatus, RecurrenceFrequency, Weekday


class RecurrenceInput(BaseModel):
    frequency: RecurrenceFrequency
    interval: int = Field(default=1, ge=1)
    weekdays: list[Weekday] = Field(default_factory=list)
    until: datetime | None = None
    timezone: str = "UTC"

    @field_validator("weekdays")
    @classmethod
    def dedupe_weekdays(cls, value: list[Weekday]) -> list[Weekday]:
        return sorted(set(value), key=lambda day: day.number)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        if not is_valid_timezone(value):
            msg = f"Unknown timezone: {value}"
            raise ValueError(msg)
        return value

    @model_validator(mode="after")
    def localize_until(self) -> RecurrenceInput:
        if self.until is not None:
            self.until = zoned_to_utc(self.until, self.timezone)
        return self


class CreateLessonCommand(BaseModel):
    student_id: int
    subject_id: int | None = None
    title: str | None = None
    start_at: datetime
    end_at: datetime
    price_cents: int = Field(default=0, ge=0)
    note: str | None = None
    recurrence: RecurrenceInput | None = None

    @model_validator(mode="after")
    def validate_range(self) -> CreateLessonCommand:
        # Naive times are local to the series timezone, UTC for one-off lessons.
        zone = self.recurrence.timezone if self.recurrence is not None else "UTC"
        self.start_at = zoned_to_utc(self.start_at, zone)
        self.end_at = zoned_to_utc(self.end_at, zone)
        if self.end_at <= self.start_at:
            msg = "Lesson must end after it starts"
            raise ValueError(msg)
        if self.recurrence is not None and self.recurrence.until is not None:
            if self.recurrence.until < self.start_at:
                msg = "Recurrence cannot end before the first lesson"
                raise ValueError(msg)
        return self


class OccurrenceOverride(BaseModel):
    start_at: datetime | None = None
    duration_minutes: int | None = Field(default=None, gt=0)
    note: str | None = None
    price_cents: int | None = Field(default=None, ge=0)

    @field_validator("start_at")
    @classmethod
    def normalize_start(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value) if value is not None else None

    @model_validator(mode="after")
    def validate_not_empty(self) -> OccurrenceOverride:
        if (
            self.start_at is None
            and self.duration_minutes is None
            and self.note is None
            and self.price_cents is None
        ):
            msg = "Override must change at least one field"
            raise ValueError(msg)
        return self


class RecordPaymentCommand(BaseModel):
    student_id: int
    lesson_id: int | None = None
    amount_cents: int = Field(gt=0)
    method: str = PaymentMethod.MANUAL.value
    status: PaymentStatus = PaymentStatus.PAID
    note: str | None = None
    paid_at: datetime | None = None

    @field_validator("method")
    @classmethod
    def reject_reserved_method(cls, value: str) -> str:
        if value == PaymentMethod.PREPAYMENT.value:
            msg = "Prepayment allocations are created by the allocator only"
            raise ValueError(msg)
        return value

    @field_validator("paid_at")
    @classmethod
    def normalize_paid_at(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value) if value is not None else None
