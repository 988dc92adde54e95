from __future__ import annotations

from datetime import datetime, timedelta

import structlog

from tutorledger.core.datetime_utils import ensure_utc, utc_now
from tutorledger.core.errors import ConsistencyError
from tutorledger.db.models import Lesson, RecurrenceException, RecurrenceRule
from tutorledger.domain.enums import LessonStatus, PaymentStatus, RecurrenceExceptionKind
from tutorledger.repositories.lesson_repository import LessonRepository
from tutorledger.repositories.recurrence_repository import (
    RecurrenceExceptionRepository,
    RecurrenceRuleRepository,
)
from tutorledger.services.recurrence.expander import expand_rule

logger = structlog.get_logger(__name__)


class MaterializationService:
    """Persists the near-future occurrences of a series as lesson rows.

    Rows are keyed by (series_id, original_start_at), so re-running for the
    same rule only fills gaps. The caller owns the transaction.
    """

    def __init__(
        self,
        lesson_repository: LessonRepository,
        rule_repository: RecurrenceRuleRepository,
        exception_repository: RecurrenceExceptionRepository,
        horizon_weeks: int = 12,
        max_occurrences: int = 12,
        default_duration_minutes: int = 60,
    ) -> None:
        self._lessons = lesson_repository
        self._rules = rule_repository
        self._exceptions = exception_repository
        self._horizon_weeks = horizon_weeks
        self._max_occurrences = max_occurrences
        self._default_duration = timedelta(minutes=default_duration_minutes)

    async def rematerialize(
        self,
        rule_id: int,
        now_utc: datetime | None = None,
        horizon_weeks: int | None = None,
        max_occurrences: int | None = None,
    ) -> list[Lesson]:
        rule = await self._rules.get_by_id(rule_id)
        if rule is None:
            msg = f"Recurrence rule {rule_id} does not exist"
            raise ConsistencyError(msg)
        base = await self._lessons.get_by_id(rule.base_lesson_id, refresh=True)
        return await self.materialize(
            rule,
            base,
            now_utc=now_utc,
            horizon_weeks=horizon_weeks,
            max_occurrences=max_occurrences,
        )

    async def materialize(
        self,
        rule: RecurrenceRule,
        base_lesson: Lesson | None,
        now_utc: datetime | None = None,
        horizon_weeks: int | None = None,
        max_occurrences: int | None = None,
    ) -> list[Lesson]:
        if base_lesson is None or base_lesson.id != rule.base_lesson_id:
            msg = f"Base lesson {rule.base_lesson_id} of series {rule.id} does not exist"
            raise ConsistencyError(msg)

        now = ensure_utc(now_utc) if now_utc is not None else utc_now()
        weeks = self._horizon_weeks if horizon_weeks is None else horizon_weeks
        limit = self._max_occurrences if max_occurrences is None else max_occurrences
        rule_start = ensure_utc(rule.start_at)
        horizon = max(rule_start, now) + timedelta(weeks=weeks)

        exceptions = {
            ensure_utc(item.original_start_at): item for item in await self._exceptions.list_for_series(rule.id)
        }
        planned: list[datetime] = []
        for start in expand_rule(rule, rule_start, horizon):
            if len(planned) >= limit:
                break
            if start < now:
                continue
            exception = exceptions.get(start)
            if exception is not None and exception.kind == RecurrenceExceptionKind.CANCELLED.value:
                continue
            planned.append(start)

        existing = {
            ensure_utc(lesson.original_start_at)
            for lesson in await self._lessons.list_for_series(rule.id)
            if lesson.original_start_at is not None
        }
        duration = base_lesson.duration if base_lesson.end_at > base_lesson.start_at else self._default_duration

        created: list[Lesson] = []
        for original in planned:
            if original in existing:
                continue
            instance = self._build_instance(rule, base_lesson, original, duration, exceptions.get(original))
            await self._lessons.create(instance)
            created.append(instance)

        logger.info(
            "materialize.completed",
            series_id=rule.id,
            planned=len(planned),
            created=len(created),
            horizon=horizon.isoformat(),
        )
        return created

    def _build_instance(
        self,
        rule: RecurrenceRule,
        base: Lesson,
        original: datetime,
        duration: timedelta,
        exception: RecurrenceException | None,
    ) -> Lesson:
        start_at = original
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
        return Lesson(
            student_id=base.student_id,
            subject_id=base.subject_id,
            title=base.title,
            start_at=start_at,
            end_at=start_at + duration,
            price_cents=price,
            paid_cents=0,
            payment_status=PaymentStatus.UNPAID.value,
            status=LessonStatus.PLANNED.value,
            note=note,
            series_id=rule.id,
            is_instance=True,
            original_start_at=original,
        )
