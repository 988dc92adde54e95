from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from datetime import datetime, timedelta

import structlog

from tutorledger.core.datetime_utils import ensure_utc
from tutorledger.db.models import Lesson, RecurrenceException, RecurrenceRule
from tutorledger.domain.enums import RecurrenceExceptionKind
from tutorledger.domain.occurrences import (
    MaterializedOccurrence,
    Occurrence,
    VirtualOccurrence,
    occurrence_sort_key,
)
from tutorledger.services.recurrence.expander import expand_rule
from tutorledger.services.recurrence.labels import format_rule_label

logger = structlog.get_logger(__name__)

Slot = tuple[int, datetime]


def resolve_occurrences(
    window_start: datetime,
    window_end: datetime,
    *,
    rules: Sequence[RecurrenceRule],
    base_lessons: Mapping[int, Lesson],
    exceptions: Iterable[RecurrenceException],
    lessons: Iterable[Lesson],
    series_lessons: Iterable[Lesson] = (),
    default_duration: timedelta = timedelta(minutes=60),
) -> list[Occurrence]:
    """Merge persisted lessons and expanded series into one ordered list.

    ``lessons`` are rows whose start falls in the window and are returned
    as-is. ``series_lessons`` are extra rows of the given series, possibly
    moved out of the window, used only to suppress their virtual twins.
    """
    start = ensure_utc(window_start)
    end = ensure_utc(window_end)
    if end <= start:
        return []

    exceptions_by_slot: dict[Slot, RecurrenceException] = {
        (item.series_id, ensure_utc(item.original_start_at)): item for item in exceptions
    }
    labels = {rule.id: format_rule_label(rule) for rule in rules}

    visible: dict[int, Lesson] = {lesson.id: lesson for lesson in lessons}
    persisted_slots = {
        slot
        for lesson in (*visible.values(), *series_lessons)
        if (slot := _lesson_slot(lesson)) is not None
    }

    results: list[Occurrence] = []
    for lesson in visible.values():
        slot = _lesson_slot(lesson)
        exception = exceptions_by_slot.get(slot) if slot is not None else None
        if exception is not None and exception.kind == RecurrenceExceptionKind.CANCELLED.value:
            continue
        results.append(
            MaterializedOccurrence(
                lesson=lesson,
                label=labels.get(lesson.series_id) if lesson.series_id is not None else None,
                exception_applied=exception is not None,
            )
        )

    for rule in rules:
        base = base_lessons.get(rule.base_lesson_id)
        if base is None:
            logger.warning("occurrences.base_lesson_missing", series_id=rule.id, base_lesson_id=rule.base_lesson_id)
            continue
        template_duration = base.duration if base.end_at > base.start_at else default_duration
        for original in _candidates(rule, start, end, exceptions_by_slot):
            if (rule.id, original) in persisted_slots:
                continue
            exception = exceptions_by_slot.get((rule.id, original))
            if exception is not None and exception.kind == RecurrenceExceptionKind.CANCELLED.value:
                continue
            occurrence = _virtual(rule, base, original, template_duration, exception, labels[rule.id])
            if start <= occurrence.start_at < end:
                results.append(occurrence)

    results.sort(key=occurrence_sort_key)
    return results


def _candidates(
    rule: RecurrenceRule,
    start: datetime,
    end: datetime,
    exceptions_by_slot: Mapping[Slot, RecurrenceException],
) -> list[datetime]:
    found = set(expand_rule(rule, start, end))
    for (series_id, original), exception in exceptions_by_slot.items():
        if series_id != rule.id or original in found:
            continue
        if exception.kind != RecurrenceExceptionKind.OVERRIDDEN.value or exception.override_start_at is None:
            continue
        moved_to = ensure_utc(exception.override_start_at)
        if not (start <= moved_to < end):
            continue
        # Only honour overrides that still point at a real slot of the rule.
        if expand_rule(rule, original, original + timedelta(milliseconds=1)) == [original]:
            found.add(original)
    return sorted(found)


def _virtual(
    rule: RecurrenceRule,
    base: Lesson,
    original: datetime,
    template_duration: timedelta,
    exception: RecurrenceException | None,
    label: str,
) -> VirtualOccurrence:
    start_at = original
    duration = template_duration
    price = base.price_cents
    note = base.note
    if exception is not None:
        if exception.override_start_at is not None:
            start_at = ensure_utc(exception.override_start_at)
        if exception.override_duration_minutes:
            duration = timedelta(minutes=exception.override_duration_minutes)
        if exception.override_price_cents is not None:
            price = exception.override_price_cents
        if exception.override_note is not None:
            note = exception.override_note
    return VirtualOccurrence(
        series_id=rule.id,
        base_lesson_id=base.id,
        original_start_at=original,
        start_at=start_at,
        end_at=start_at + duration,
        student_id=base.student_id,
        subject_id=base.subject_id,
        title=base.title,
        price_cents=price,
        note=note,
        label=label,
        exception_applied=exception is not None,
    )


def _lesson_slot(lesson: Lesson) -> Slot | None:
    if lesson.series_id is None or lesson.original_start_at is None:
        return None
    return (lesson.series_id, ensure_utc(lesson.original_start_at))
