"""Read model for resolved calendar occurrences.

An occurrence is either a persisted lesson row or a virtual instance computed
from a recurrence rule. Virtual instances carry a negative synthetic id that
is stable for a given (series, original start) but must never be used as a
storage key; only ``MaterializedOccurrence.lesson.id`` is durable.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Literal, TypeAlias

from tutorledger.core.datetime_utils import epoch_millis
from tutorledger.db.models import Lesson

_MAX_LONG = (1 << 63) - 1


def synthetic_occurrence_id(series_id: int, original_start_at: datetime) -> int:
    combined = (series_id << 1) ^ epoch_millis(original_start_at)
    return -((combined & _MAX_LONG) + 1)


@dataclass(frozen=True, slots=True)
class MaterializedOccurrence:
    lesson: Lesson
    label: str | None = None
    exception_applied: bool = False

    kind: Literal["materialized"] = "materialized"

    @property
    def start_at(self) -> datetime:
        return self.lesson.start_at

    @property
    def end_at(self) -> datetime:
        return self.lesson.end_at

    @property
    def series_id(self) -> int | None:
        return self.lesson.series_id

    @property
    def original_start_at(self) -> datetime | None:
        return self.lesson.original_start_at

    @property
    def student_id(self) -> int:
        return self.lesson.student_id

    @property
    def price_cents(self) -> int:
        return self.lesson.price_cents

    @property
    def note(self) -> str | None:
        return self.lesson.note

    @property
    def lesson_id(self) -> int | None:
        return self.lesson.id

    @property
    def display_id(self) -> int:
        return self.lesson.id


@dataclass(frozen=True, slots=True)
class VirtualOccurrence:
    series_id: int
    base_lesson_id: int
    original_start_at: datetime
    start_at: datetime
    end_at: datetime
    student_id: int
    subject_id: int | None
    title: str | None
    price_cents: int
    note: str | None
    label: str | None = None
    exception_applied: bool = False

    kind: Literal["virtual"] = "virtual"

    @property
    def lesson_id(self) -> int | None:
        return None

    @property
    def display_id(self) -> int:
        return synthetic_occurrence_id(self.series_id, self.original_start_at)


Occurrence: TypeAlias = MaterializedOccurrence | VirtualOccurrence


def occurrence_sort_key(item: Occurrence) -> tuple[datetime, int, int]:
    if isinstance(item, MaterializedOccurrence):
        return (item.start_at, 0, item.lesson.id)
    return (item.start_at, 1, -item.display_id)


def overlaps(item: Occurrence, start_at: datetime, end_at: datetime) -> bool:
    return item.start_at < end_at and item.end_at > start_at
