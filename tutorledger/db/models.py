from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import (
    JSON,
    Boolean,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from tutorledger.core.datetime_utils import utc_now
from tutorledger.db.base import Base
from tutorledger.db.types import UTCDateTime
from tutorledger.domain.enums import LessonStatus, PaymentMethod, PaymentStatus


class Student(Base):
    __tablename__ = "students"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), index=True)
    phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, onupdate=utc_now)


class Lesson(Base):
    __tablename__ = "lessons"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    student_id: Mapped[int] = mapped_column(ForeignKey("students.id", ondelete="CASCADE"), index=True)
    subject_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    start_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    end_at: Mapped[datetime] = mapped_column(UTCDateTime)
    price_cents: Mapped[int] = mapped_column(Integer, default=0)
    paid_cents: Mapped[int] = mapped_column(Integer, default=0)
    payment_status: Mapped[str] = mapped_column(String(16), default=PaymentStatus.UNPAID.value, index=True)
    status: Mapped[str] = mapped_column(String(16), default=LessonStatus.PLANNED.value)
    marked_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    canceled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Plain column: the store never cascades from rules to lessons.
    series_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    is_instance: Mapped[bool] = mapped_column(Boolean, default=False)
    original_start_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, onupdate=utc_now)

    @property
    def duration(self) -> timedelta:
        return self.end_at - self.start_at

    @property
    def is_cancelled(self) -> bool:
        return (
            self.status == LessonStatus.CANCELED.value
            or self.payment_status == PaymentStatus.CANCELLED.value
        )


class RecurrenceRule(Base):
    __tablename__ = "recurrence_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    base_lesson_id: Mapped[int] = mapped_column(ForeignKey("lessons.id", ondelete="CASCADE"), index=True)
    frequency: Mapped[str] = mapped_column(String(32))
    interval: Mapped[int] = mapped_column(Integer, default=1)
    weekdays: Mapped[list[str]] = mapped_column(JSON, default=list)
    start_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    until_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    timezone: Mapped[str] = mapped_column(String(64), default="UTC")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)


class RecurrenceException(Base):
    __tablename__ = "recurrence_exceptions"
    __table_args__ = (
        UniqueConstraint("series_id", "original_start_at", name="uq_recurrence_exception_slot"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    series_id: Mapped[int] = mapped_column(ForeignKey("recurrence_rules.id", ondelete="CASCADE"), index=True)
    original_start_at: Mapped[datetime] = mapped_column(UTCDateTime)
    kind: Mapped[str] = mapped_column(String(16))
    override_start_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    override_duration_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    override_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    override_price_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, onupdate=utc_now)


class Payment(Base):
    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    lesson_id: Mapped[int | None] = mapped_column(
        ForeignKey("lessons.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    student_id: Mapped[int] = mapped_column(ForeignKey("students.id", ondelete="CASCADE"), index=True)
    amount_cents: Mapped[int] = mapped_column(Integer, default=0)
    method: Mapped[str] = mapped_column(String(32), default=PaymentMethod.MANUAL.value)
    status: Mapped[str] = mapped_column(String(16), default=PaymentStatus.PAID.value)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    paid_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, index=True)

    @property
    def is_auto_allocation(self) -> bool:
        return self.method == PaymentMethod.PREPAYMENT.value


Index("ix_lessons_student_start", Lesson.student_id, Lesson.start_at)
Index("ix_lessons_series_original", Lesson.series_id, Lesson.original_start_at)
Index("ix_payments_student_lesson", Payment.student_id, Payment.lesson_id)
