from __future__ import annotations

from datetime import datetime, timedelta

import structlog

from tutorledger.core.datetime_utils import ensure_utc
from tutorledger.core.errors import LessonValidationError
from tutorledger.domain.occurrences import MaterializedOccurrence, Occurrence, overlaps
from tutorledger.services.occurrence_service import OccurrenceService

logger = structlog.get_logger(__name__)


class ConflictService:
    """Lists occurrences colliding with a proposed time range.

    Overlaps are reported, never rejected: the caller decides whether to
    proceed. The lookback widens the query so lessons that started before the
    range but are still running are found too.
    """

    def __init__(self, occurrence_service: OccurrenceService, lookback_hours: int = 24) -> None:
        self._occurrences = occurrence_service
        self._lookback = timedelta(hours=lookback_hours)

    async def find_conflicts(
        self,
        start_at: datetime,
        end_at: datetime,
        exclude_lesson_id: int | None = None,
    ) -> list[Occurrence]:
        start = ensure_utc(start_at)
        end = ensure_utc(end_at)
        if end <= start:
            msg = "Proposed range must end after it starts"
            raise LessonValidationError(msg)

        candidates = await self._occurrences.query(start - self._lookback, end)
        conflicts = [
            item
            for item in candidates
            if overlaps(item, start, end) and not _is_ignored(item, exclude_lesson_id)
        ]
        if conflicts:
            logger.info("conflicts.found", count=len(conflicts), start_at=start.isoformat())
        return conflicts


def _is_ignored(item: Occurrence, exclude_lesson_id: int | None) -> bool:
    if not isinstance(item, MaterializedOccurrence):
        return False
    if exclude_lesson_id is not None and item.lesson.id == exclude_lesson_id:
        return True
    return item.lesson.is_cancelled
