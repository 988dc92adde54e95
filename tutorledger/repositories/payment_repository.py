from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tutorledger.db.models import Payment
from tutorledger.domain.enums import PaymentStatus


class PaymentRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, item: Payment) -> Payment:
        self._session.add(item)
        await self._session.flush()
        return item

    async def get_by_id(self, payment_id: int, *, refresh: bool = False) -> Payment | None:
        stmt = select(Payment).where(Payment.id == payment_id)
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_student(self, student_id: int) -> list[Payment]:
        stmt = (
            select(Payment)
            .where(Payment.student_id == student_id)
            .order_by(Payment.paid_at, Payment.id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars())

    async def list_for_lesson(self, lesson_id: int) -> list[Payment]:
        stmt = select(Payment).where(Payment.lesson_id == lesson_id).order_by(Payment.id)
        result = await self._session.execute(stmt)
        return list(result.scalars())

    async def deposit_total(self, student_id: int) -> int:
        stmt = select(func.coalesce(func.sum(Payment.amount_cents), 0)).where(
            Payment.student_id == student_id,
            Payment.lesson_id.is_(None),
            Payment.status == PaymentStatus.PAID.value,
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    async def update(self, item: Payment) -> Payment:
        await self._session.flush()
        return item

    async def delete(self, item: Payment) -> None:
        await self._session.delete(item)
        await self._session.flush()
