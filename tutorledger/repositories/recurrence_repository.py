from __future__ import annotations

from collections.abc import Collection
from datetime import datetime

from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from tutorledger.db.models import RecurrenceException, RecurrenceRule


class RecurrenceRuleRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, rule: RecurrenceRule) -> RecurrenceRule:
        self._session.add(rule)
        await self._session.flush()
        return rule

    async def get_by_id(self, rule_id: int, *, refresh: bool = False) -> RecurrenceRule | None:
        stmt = select(RecurrenceRule).where(RecurrenceRule.id == rule_id)
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_base_lesson(self, lesson_id: int) -> RecurrenceRule | None:
        stmt = select(RecurrenceRule).where(RecurrenceRule.base_lesson_id == lesson_id)
        result = await self._session.execute(stmt)
        return result.scalars().first()

    async def list_by_ids(self, rule_ids: Collection[int]) -> list[RecurrenceRule]:
        if not rule_ids:
            return []
        stmt = select(RecurrenceRule).where(RecurrenceRule.id.in_(rule_ids)).order_by(RecurrenceRule.id)
        result = await self._session.execute(stmt)
        return list(result.scalars())

    async def list_intersecting(self, start_utc: datetime, end_utc: datetime) -> list[RecurrenceRule]:
        stmt = (
            select(RecurrenceRule)
            .where(
                RecurrenceRule.start_at < end_utc,
                or_(RecurrenceRule.until_at.is_(None), RecurrenceRule.until_at >= start_utc),
            )
            .order_by(RecurrenceRule.id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars())

    async def delete(self, rule: RecurrenceRule) -> None:
        await self._session.delete(rule)
        await self._session.flush()


class RecurrenceExceptionRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_slot(self, series_id: int, original_start_at: datetime) -> RecurrenceException | None:
        stmt = select(RecurrenceException).where(
            RecurrenceException.series_id == series_id,
            RecurrenceException.original_start_at == original_start_at,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def upsert(self, item: RecurrenceException) -> RecurrenceException:
        existing = await self.get_slot(item.series_id, item.original_start_at)
        if existing is None:
            self._session.add(item)
            await self._session.flush()
            return item
        existing.kind = item.kind
        existing.override_start_at = item.override_start_at
        existing.override_duration_minutes = item.override_duration_minutes
        existing.override_note = item.override_note
        existing.override_price_cents = item.override_price_cents
        await self._session.flush()
        return existing

    async def list_for_window(
        self,
        series_ids: Collection[int],
        start_utc: datetime,
        end_utc: datetime,
    ) -> list[RecurrenceException]:
        """Exceptions of the given series plus overrides moved into the window."""
        moved_in = (
            RecurrenceException.override_start_at.is_not(None)
            & (RecurrenceException.override_start_at >= start_utc)
            & (RecurrenceException.override_start_at < end_utc)
        )
        condition = or_(RecurrenceException.series_id.in_(series_ids), moved_in) if series_ids else moved_in
        stmt = select(RecurrenceException).where(condition).order_by(RecurrenceException.id)
        result = await self._session.execute(stmt)
        return list(result.scalars())

    async def list_for_series(self, series_id: int) -> list[RecurrenceException]:
        stmt = (
            select(RecurrenceException)
            .where(RecurrenceException.series_id == series_id)
            .order_by(RecurrenceException.original_start_at)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars())

    async def delete_slot(self, series_id: int, original_start_at: datetime) -> bool:
        existing = await self.get_slot(series_id, original_start_at)
        if existing is None:
            return False
        await self._session.delete(existing)
        await self._session.flush()
        return True

    async def delete_for_series(self, series_id: int) -> int:
        stmt = delete(RecurrenceException).where(RecurrenceException.series_id == series_id)
        result = await self._session.execute(stmt)
        await self._session.flush()
        return int(result.rowcount or 0)
