from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

import structlog

from tutorledger.core.datetime_utils import utc_now
from tutorledger.db.models import Lesson, Payment
from tutorledger.domain.enums import PaymentMethod, PaymentStatus
from tutorledger.repositories.lesson_repository import LessonRepository
from tutorledger.repositories.payment_repository import PaymentRepository

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class AllocationResult:
    student_id: int
    deposit_cents: int = 0
    consumed_cents: int = 0
    paid_lesson_ids: list[int] = field(default_factory=list)
    reverted_lesson_ids: list[int] = field(default_factory=list)
    writes: int = 0

    @property
    def remaining_cents(self) -> int:
        return self.deposit_cents - self.consumed_cents


class PrepaymentAllocator:
    """Spreads a student's deposits over their lessons, oldest first.

    The pass is recomputed from scratch every time: the deposit total is
    consumed greedily in (start_at, id) order and every lesson's automatic
    allocation is created, kept, or reverted to match. Lessons settled by a
    manual payment are left alone. Callers must hold the student's ledger
    lock and run the pass inside a transaction.
    """

    def __init__(self, lesson_repository: LessonRepository, payment_repository: PaymentRepository) -> None:
        self._lessons = lesson_repository
        self._payments = payment_repository

    async def sync(self, student_id: int, now_utc: datetime | None = None) -> AllocationResult:
        now = now_utc or utc_now()
        lessons = await self._lessons.list_by_student_ascending(student_id)
        deposit = await self._payments.deposit_total(student_id)
        result = AllocationResult(student_id=student_id, deposit_cents=deposit)
        if not lessons:
            return result

        by_lesson: dict[int, list[Payment]] = {}
        for payment in await self._payments.list_for_student(student_id):
            if payment.lesson_id is not None:
                by_lesson.setdefault(payment.lesson_id, []).append(payment)

        remaining = deposit
        for lesson in lessons:
            attached = by_lesson.get(lesson.id, [])
            auto = next((item for item in attached if item.is_auto_allocation), None)

            if lesson.is_cancelled:
                if auto is not None:
                    await self._revert(lesson, auto, now, result)
                continue

            if any(not item.is_auto_allocation and item.status == PaymentStatus.PAID.value for item in attached):
                continue

            price = lesson.price_cents
            if price <= 0:
                if auto is not None:
                    await self._revert(lesson, auto, now, result)
                continue

            if remaining >= price:
                remaining -= price
                result.consumed_cents += price
                await self._ensure_prepaid(lesson, auto, now, result)
            elif auto is not None:
                await self._revert(lesson, auto, now, result)

        logger.info(
            "prepayment.sync.completed",
            student_id=student_id,
            deposit_cents=deposit,
            consumed_cents=result.consumed_cents,
            paid_lessons=len(result.paid_lesson_ids),
            reverted_lessons=len(result.reverted_lesson_ids),
            writes=result.writes,
        )
        return result

    async def _ensure_prepaid(
        self,
        lesson: Lesson,
        payment: Payment | None,
        now: datetime,
        result: AllocationResult,
    ) -> None:
        result.paid_lesson_ids.append(lesson.id)
        if lesson.payment_status != PaymentStatus.PAID.value or lesson.paid_cents != lesson.price_cents:
            lesson.payment_status = PaymentStatus.PAID.value
            lesson.paid_cents = lesson.price_cents
            lesson.marked_at = now
            await self._lessons.update(lesson)
            result.writes += 1

        if payment is None:
            await self._payments.create(
                Payment(
                    lesson_id=lesson.id,
                    student_id=lesson.student_id,
                    amount_cents=lesson.price_cents,
                    method=PaymentMethod.PREPAYMENT.value,
                    status=PaymentStatus.PAID.value,
                    paid_at=now,
                )
            )
            result.writes += 1
        elif payment.amount_cents != lesson.price_cents or payment.status != PaymentStatus.PAID.value:
            payment.amount_cents = lesson.price_cents
            payment.status = PaymentStatus.PAID.value
            payment.paid_at = now
            await self._payments.update(payment)
            result.writes += 1

    async def _revert(
        self,
        lesson: Lesson,
        payment: Payment,
        now: datetime,
        result: AllocationResult,
    ) -> None:
        result.reverted_lesson_ids.append(lesson.id)
        if lesson.payment_status == PaymentStatus.CANCELLED.value:
            status = PaymentStatus.CANCELLED
        elif lesson.start_at < now:
            status = PaymentStatus.DUE
        else:
            status = PaymentStatus.UNPAID

        if lesson.payment_status != status.value or lesson.paid_cents != 0:
            lesson.payment_status = status.value
            lesson.paid_cents = 0
            lesson.marked_at = now if status is PaymentStatus.DUE else None
            await self._lessons.update(lesson)

        await self._payments.delete(payment)
        result.writes += 1
        logger.debug("prepayment.reverted", lesson_id=lesson.id, status=status.value)
