from __future__ import annotations

from datetime import datetime, timedelta

import structlog

from tutorledger.core.datetime_utils import ensure_utc
from tutorledger.core.errors import LessonValidationError
from tutorledger.domain.occurrences import Occurrence
from tutorledger.repositories.lesson_repository import LessonRepository
from tutorledger.repositories.recurrence_repository import (
    RecurrenceExceptionRepository,
    RecurrenceRuleRepository,
)
from tutorledger.services.recurrence.resolver import resolve_occurrences

logger = structlog.get_logger(__name__)


class OccurrenceService:
    def __init__(
        self,
        lesson_repository: LessonRepository,
        rule_repository: RecurrenceRuleRepository,
        exception_repository: RecurrenceExceptionRepository,
        default_duration_minutes: int = 60,
    ) -> None:
        self._lessons = lesson_repository
        self._rules = rule_repository
        self._exceptions = exception_repository
        self._default_duration = timedelta(minutes=default_duration_minutes)

    async def query(self, window_start: datetime, window_end: datetime) -> list[Occurrence]:
        start = ensure_utc(window_start)
        end = ensure_utc(window_end)
        if end <= start:
            msg = "Query window must end after it starts"
            raise LessonValidationError(msg)

        rules = await self._rules.list_intersecting(start, end)
        rule_ids = {rule.id for rule in rules}
        exceptions = await self._exceptions.list_for_window(rule_ids, start, end)
        missing_ids = {item.series_id for item in exceptions} - rule_ids
        if missing_ids:
            rules.extend(await self._rules.list_by_ids(missing_ids))
            rule_ids |= missing_ids

        originals_from, originals_to = start, end
        for item in exceptions:
            original = ensure_utc(item.original_start_at)
            originals_from = min(originals_from, original)
            originals_to = max(originals_to, original + timedelta(milliseconds=1))

        lessons = await self._lessons.list_window(start, end)
        series_lessons = await self._lessons.list_series_members(rule_ids, originals_from, originals_to)
        base_lessons = {
            lesson.id: lesson
            for lesson in await self._lessons.list_by_ids({rule.base_lesson_id for rule in rules})
        }

        occurrences = resolve_occurrences(
            start,
            end,
            rules=rules,
            base_lessons=base_lessons,
            exceptions=exceptions,
            lessons=lessons,
            series_lessons=series_lessons,
            default_duration=self._default_duration,
        )
        logger.debug(
            "occurrences.resolved",
            window_start=start.isoformat(),
            window_end=end.isoformat(),
            series=len(rules),
            total=len(occurrences),
        )
        return occurrences
