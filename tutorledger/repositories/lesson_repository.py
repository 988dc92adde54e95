from __future__ import annotations

from collections.abc import Collection
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tutorledger.db.models import Lesson


class LessonRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, lesson: Lesson) -> Lesson:
        self._session.add(lesson)
        await self._session.flush()
        return lesson

    async def get_by_id(self, lesson_id: int, *, refresh: bool = False) -> Lesson | None:
        stmt = select(Lesson).where(Lesson.id == lesson_id)
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_by_ids(self, lesson_ids: Collection[int]) -> list[Lesson]:
        if not lesson_ids:
            return []
        stmt = select(Lesson).where(Lesson.id.in_(lesson_ids))
        result = await self._session.execute(stmt)
        return list(result.scalars())

    async def list_window(self, start_utc: datetime, end_utc: datetime) -> list[Lesson]:
        stmt = (
            select(Lesson)
            .where(Lesson.start_at >= start_utc, Lesson.start_at < end_utc)
            .order_by(Lesson.start_at, Lesson.id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars())

    async def list_series_members(
        self,
        series_ids: Collection[int],
        original_from: datetime,
        original_to: datetime,
    ) -> list[Lesson]:
        if not series_ids:
            return []
        stmt = select(Lesson).where(
            Lesson.series_id.in_(series_ids),
            Lesson.original_start_at >= original_from,
            Lesson.original_start_at < original_to,
        )
        result = await self._session.execute(stmt)
        return list(result.scalars())

    async def list_for_series(self, series_id: int) -> list[Lesson]:
        stmt = (
            select(Lesson)
            .where(Lesson.series_id == series_id)
            .order_by(Lesson.start_at)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars())

    async def find_series_slot(self, series_id: int, original_start_at: datetime) -> Lesson | None:
        stmt = select(Lesson).where(
            Lesson.series_id == series_id,
            Lesson.original_start_at == original_start_at,
        )
        result = await self._session.execute(stmt.order_by(Lesson.id))
        return result.scalars().first()

    async def list_by_student_ascending(self, student_id: int) -> list[Lesson]:
        stmt = select(Lesson).where(Lesson.student_id == student_id).order_by(Lesson.start_at, Lesson.id)
        # Overwrite rows already in the session with what other transactions committed.
        stmt = stmt.execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return list(result.scalars())

    async def update(self, lesson: Lesson) -> Lesson:
        await self._session.flush()
        return lesson

    async def delete(self, lesson: Lesson) -> None:
        await self._session.delete(lesson)
        await self._session.flush()

    async def detach_series(self, series_id: int) -> int:
        stmt = (
            update(Lesson)
            .where(Lesson.series_id == series_id)
            .values(series_id=None, is_instance=False, original_start_at=None)
            .execution_options(synchronize_session="fetch")
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return int(result.rowcount or 0)
