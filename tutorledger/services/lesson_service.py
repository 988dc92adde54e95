from __future__ import annotations

from datetime import datetime, timedelta

import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from structlog.contextvars import bound_contextvars

from tutorledger.core.datetime_utils import ensure_utc, utc_now
from tutorledger.core.errors import ConsistencyError, LessonValidationError, NotFoundError, RecurrenceValidationError
from tutorledger.core.locks import StudentLocks
from tutorledger.db.models import Lesson, Payment, RecurrenceException, RecurrenceRule
from tutorledger.db.session import atomic
from tutorledger.domain.commands import CreateLessonCommand, OccurrenceOverride, RecordPaymentCommand
from tutorledger.domain.enums import (
    LessonStatus,
    PaymentMethod,
    PaymentStatus,
    RecurrenceExceptionKind,
)
from tutorledger.domain.occurrences import Occurrence
from tutorledger.repositories.lesson_repository import LessonRepository
from tutorledger.repositories.payment_repository import PaymentRepository
from tutorledger.repositories.recurrence_repository import (
    RecurrenceExceptionRepository,
    RecurrenceRuleRepository,
)
from tutorledger.repositories.student_repository import StudentRepository
from tutorledger.services.conflict_service import ConflictService
from tutorledger.services.materializer import MaterializationService
from tutorledger.services.occurrence_service import OccurrenceService
from tutorledger.services.prepayment_allocator import AllocationResult, PrepaymentAllocator
from tutorledger.services.recurrence.expander import expand_rule, validate_rule

logger = structlog.get_logger(__name__)


class LessonService:
    """Entry point for lesson, series and payment writes and calendar reads.

    Every write runs under the owning student's ledger lock and inside a
    single transaction that also re-runs the prepayment allocator, so a
    rule is never visible without its base lesson and a lesson is never
    visible with a stale allocation.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        students: StudentRepository,
        lessons: LessonRepository,
        rules: RecurrenceRuleRepository,
        exceptions: RecurrenceExceptionRepository,
        payments: PaymentRepository,
        materializer: MaterializationService,
        occurrences: OccurrenceService,
        conflicts: ConflictService,
        allocator: PrepaymentAllocator,
        locks: StudentLocks,
    ) -> None:
        self._session = session
        self._students = students
        self._lessons = lessons
        self._rules = rules
        self._exceptions = exceptions
        self._payments = payments
        self._materializer = materializer
        self._occurrences = occurrences
        self._conflicts = conflicts
        self._allocator = allocator
        self._locks = locks

    async def create_lesson(
        self,
        cmd: CreateLessonCommand,
        now_utc: datetime | None = None,
        horizon_weeks: int | None = None,
        max_occurrences: int | None = None,
    ) -> int:
        now = now_utc or utc_now()
        rule: RecurrenceRule | None = None
        if cmd.recurrence is not None:
            rule = RecurrenceRule(
                frequency=cmd.recurrence.frequency.value,
                interval=cmd.recurrence.interval,
                weekdays=[day.value for day in cmd.recurrence.weekdays],
                start_at=cmd.start_at,
                until_at=cmd.recurrence.until,
                timezone=cmd.recurrence.timezone,
            )
            validate_rule(rule)

        if await self._students.get_by_id(cmd.student_id) is None:
            msg = f"Student {cmd.student_id} not found"
            raise NotFoundError(msg)

        async with self._locks.hold(cmd.student_id), atomic(self._session):
            lesson = Lesson(
                student_id=cmd.student_id,
                subject_id=cmd.subject_id,
                title=cmd.title,
                start_at=cmd.start_at,
                end_at=cmd.end_at,
                price_cents=cmd.price_cents,
                paid_cents=0,
                payment_status=PaymentStatus.UNPAID.value,
                status=LessonStatus.PLANNED.value,
                note=cmd.note,
            )
            await self._lessons.create(lesson)

            if rule is not None:
                rule.base_lesson_id = lesson.id
                await self._rules.create(rule)
                lesson.series_id = rule.id
                lesson.original_start_at = lesson.start_at
                await self._lessons.update(lesson)
                await self._materializer.materialize(
                    rule,
                    lesson,
                    now_utc=now,
                    horizon_weeks=horizon_weeks,
                    max_occurrences=max_occurrences,
                )

            await self._allocator.sync(cmd.student_id, now_utc=now)

        logger.info(
            "lesson.created",
            lesson_id=lesson.id,
            student_id=cmd.student_id,
            series_id=lesson.series_id,
        )
        return lesson.id

    async def query_occurrences(self, window_start: datetime, window_end: datetime) -> list[Occurrence]:
        return await self._occurrences.query(window_start, window_end)

    async def find_conflicts(
        self,
        start_at: datetime,
        end_at: datetime,
        exclude_lesson_id: int | None = None,
    ) -> list[Occurrence]:
        return await self._conflicts.find_conflicts(start_at, end_at, exclude_lesson_id=exclude_lesson_id)

    async def cancel_occurrence(
        self,
        series_id: int,
        original_start_at: datetime,
        now_utc: datetime | None = None,
    ) -> RecurrenceException:
        now = now_utc or utc_now()
        original = ensure_utc(original_start_at)
        rule, student_id = await self._series_context(series_id, original)

        with bound_contextvars(series_id=series_id, original_start_at=original.isoformat()):
            async with self._locks.hold(student_id), atomic(self._session):
                rule = await self._reload_rule(series_id)
                exception = await self._exceptions.upsert(
                    RecurrenceException(
                        series_id=rule.id,
                        original_start_at=original,
                        kind=RecurrenceExceptionKind.CANCELLED.value,
                    )
                )
                row = await self._lessons.find_series_slot(rule.id, original)
                if row is not None and row.status != LessonStatus.CANCELED.value:
                    row.status = LessonStatus.CANCELED.value
                    row.canceled_at = now
                    await self._lessons.update(row)
                await self._allocator.sync(student_id, now_utc=now)
            logger.info("occurrence.cancelled", materialized=row is not None)
        return exception

    async def override_occurrence(
        self,
        series_id: int,
        original_start_at: datetime,
        override: OccurrenceOverride,
        now_utc: datetime | None = None,
    ) -> RecurrenceException:
        now = now_utc or utc_now()
        original = ensure_utc(original_start_at)
        rule, student_id = await self._series_context(series_id, original)

        with bound_contextvars(series_id=series_id, original_start_at=original.isoformat()):
            async with self._locks.hold(student_id), atomic(self._session):
                rule = await self._reload_rule(series_id)
                exception = await self._exceptions.upsert(
                    RecurrenceException(
                        series_id=rule.id,
                        original_start_at=original,
                        kind=RecurrenceExceptionKind.OVERRIDDEN.value,
                        override_start_at=override.start_at,
                        override_duration_minutes=override.duration_minutes,
                        override_note=override.note,
                        override_price_cents=override.price_cents,
                    )
                )
                row = await self._lessons.find_series_slot(rule.id, original)
                if row is not None:
                    _apply_override(row, override)
                    await self._lessons.update(row)
                await self._allocator.sync(student_id, now_utc=now)
            logger.info("occurrence.overridden", materialized=row is not None)
        return exception

    async def clear_occurrence_exception(
        self,
        series_id: int,
        original_start_at: datetime,
        now_utc: datetime | None = None,
    ) -> bool:
        now = now_utc or utc_now()
        original = ensure_utc(original_start_at)
        rule, student_id = await self._series_context(series_id, original)

        async with self._locks.hold(student_id), atomic(self._session):
            rule = await self._reload_rule(series_id)
            existing = await self._exceptions.get_slot(rule.id, original)
            if existing is None:
                return False
            was_cancelled = existing.kind == RecurrenceExceptionKind.CANCELLED.value
            await self._exceptions.delete_slot(rule.id, original)
            row = await self._lessons.find_series_slot(rule.id, original)
            if was_cancelled and row is not None and row.status == LessonStatus.CANCELED.value:
                row.status = LessonStatus.PLANNED.value
                row.canceled_at = None
                await self._lessons.update(row)
            await self._allocator.sync(student_id, now_utc=now)
        logger.info("occurrence.exception_cleared", series_id=series_id)
        return True

    async def rematerialize_series(
        self,
        series_id: int,
        now_utc: datetime | None = None,
        horizon_weeks: int | None = None,
        max_occurrences: int | None = None,
    ) -> list[int]:
        now = now_utc or utc_now()
        rule = await self._rules.get_by_id(series_id)
        if rule is None:
            msg = f"Recurrence rule {series_id} does not exist"
            raise ConsistencyError(msg)
        base = await self._lessons.get_by_id(rule.base_lesson_id)
        if base is None:
            msg = f"Base lesson {rule.base_lesson_id} of series {series_id} does not exist"
            raise ConsistencyError(msg)

        async with self._locks.hold(base.student_id), atomic(self._session):
            await self._reload_rule(series_id)
            created = await self._materializer.rematerialize(
                series_id,
                now_utc=now,
                horizon_weeks=horizon_weeks,
                max_occurrences=max_occurrences,
            )
            await self._allocator.sync(base.student_id, now_utc=now)
        return [lesson.id for lesson in created]

    async def delete_series(self, series_id: int, now_utc: datetime | None = None) -> None:
        rule = await self._rules.get_by_id(series_id)
        if rule is None:
            msg = f"Series {series_id} not found"
            raise NotFoundError(msg)
        base = await self._lessons.get_by_id(rule.base_lesson_id)
        if base is None:
            msg = f"Base lesson {rule.base_lesson_id} of series {series_id} does not exist"
            raise ConsistencyError(msg)

        async with self._locks.hold(base.student_id), atomic(self._session):
            await self._drop_series(await self._reload_rule(series_id))
            await self._allocator.sync(base.student_id, now_utc=now_utc or utc_now())
        logger.info("series.deleted", series_id=series_id)

    async def delete_lesson(self, lesson_id: int, now_utc: datetime | None = None) -> None:
        lesson = await self._require_lesson(lesson_id)
        student_id = lesson.student_id

        async with self._locks.hold(student_id), atomic(self._session):
            lesson = await self._require_lesson(lesson_id, refresh=True)
            owned_rule = await self._rules.get_by_base_lesson(lesson.id)
            if owned_rule is not None:
                await self._drop_series(owned_rule)
            elif lesson.series_id is not None and lesson.original_start_at is not None:
                # A deleted instance must not come back as a virtual occurrence.
                await self._exceptions.upsert(
                    RecurrenceException(
                        series_id=lesson.series_id,
                        original_start_at=lesson.original_start_at,
                        kind=RecurrenceExceptionKind.CANCELLED.value,
                    )
                )
            for payment in await self._payments.list_for_lesson(lesson.id):
                await self._payments.delete(payment)
            await self._lessons.delete(lesson)
            await self._allocator.sync(student_id, now_utc=now_utc or utc_now())
        logger.info("lesson.deleted", lesson_id=lesson_id, student_id=student_id)

    async def record_payment(self, cmd: RecordPaymentCommand, now_utc: datetime | None = None) -> int:
        now = now_utc or utc_now()
        if await self._students.get_by_id(cmd.student_id) is None:
            msg = f"Student {cmd.student_id} not found"
            raise NotFoundError(msg)
        lesson: Lesson | None = None
        if cmd.lesson_id is not None:
            lesson = await self._require_lesson(cmd.lesson_id)
            if lesson.student_id != cmd.student_id:
                msg = f"Lesson {lesson.id} does not belong to student {cmd.student_id}"
                raise ConsistencyError(msg)

        async with self._locks.hold(cmd.student_id), atomic(self._session):
            if lesson is not None:
                lesson = await self._require_lesson(lesson.id, refresh=True)
            payment = Payment(
                lesson_id=cmd.lesson_id,
                student_id=cmd.student_id,
                amount_cents=cmd.amount_cents,
                method=cmd.method,
                status=cmd.status.value,
                note=cmd.note,
                paid_at=cmd.paid_at or now,
            )
            await self._payments.create(payment)
            if lesson is not None and cmd.status is PaymentStatus.PAID:
                await self._settle_manually(lesson, now)
            await self._allocator.sync(cmd.student_id, now_utc=now)

        logger.info(
            "payment.recorded",
            payment_id=payment.id,
            student_id=cmd.student_id,
            lesson_id=cmd.lesson_id,
            amount_cents=cmd.amount_cents,
        )
        return payment.id

    async def delete_payment(self, payment_id: int, now_utc: datetime | None = None) -> None:
        now = now_utc or utc_now()
        payment = await self._payments.get_by_id(payment_id)
        if payment is None:
            msg = f"Payment {payment_id} not found"
            raise NotFoundError(msg)
        if payment.is_auto_allocation:
            msg = "Automatic allocations are managed by the prepayment sync"
            raise LessonValidationError(msg)

        student_id = payment.student_id

        async with self._locks.hold(student_id), atomic(self._session):
            payment = await self._payments.get_by_id(payment_id, refresh=True)
            if payment is None:
                msg = f"Payment {payment_id} not found"
                raise NotFoundError(msg)
            lesson_id = payment.lesson_id
            await self._payments.delete(payment)
            if lesson_id is not None:
                lesson = await self._lessons.get_by_id(lesson_id, refresh=True)
                if lesson is not None:
                    await self._refresh_manual_state(lesson, now)
            await self._allocator.sync(student_id, now_utc=now)
        logger.info("payment.deleted", payment_id=payment_id, student_id=student_id)

    async def mark_paid(self, lesson_id: int, now_utc: datetime | None = None) -> None:
        now = now_utc or utc_now()
        lesson = await self._require_lesson(lesson_id)
        async with self._locks.hold(lesson.student_id), atomic(self._session):
            lesson = await self._require_lesson(lesson_id, refresh=True)
            manual = await self._drop_auto_allocations(lesson)
            settled = sum(item.amount_cents for item in manual if item.status == PaymentStatus.PAID.value)
            outstanding = lesson.price_cents - settled
            # Free or already settled lessons get no zero-amount payment row.
            if outstanding > 0:
                await self._payments.create(
                    Payment(
                        lesson_id=lesson.id,
                        student_id=lesson.student_id,
                        amount_cents=outstanding,
                        method=PaymentMethod.MANUAL.value,
                        status=PaymentStatus.PAID.value,
                        paid_at=now,
                    )
                )
            await self._settle_manually(lesson, now)
            await self._allocator.sync(lesson.student_id, now_utc=now)

    async def mark_due(self, lesson_id: int, now_utc: datetime | None = None) -> None:
        await self._reset_lesson_payments(lesson_id, PaymentStatus.DUE, now_utc or utc_now())

    async def reset_payment_status(self, lesson_id: int, now_utc: datetime | None = None) -> None:
        await self._reset_lesson_payments(lesson_id, PaymentStatus.UNPAID, now_utc or utc_now())

    async def sync_prepayment(self, student_id: int, now_utc: datetime | None = None) -> AllocationResult:
        if await self._students.get_by_id(student_id) is None:
            msg = f"Student {student_id} not found"
            raise NotFoundError(msg)
        async with self._locks.hold(student_id), atomic(self._session):
            return await self._allocator.sync(student_id, now_utc=now_utc or utc_now())

    async def _series_context(self, series_id: int, original: datetime) -> tuple[RecurrenceRule, int]:
        rule = await self._rules.get_by_id(series_id)
        if rule is None:
            msg = f"Series {series_id} does not exist"
            raise ConsistencyError(msg)
        base = await self._lessons.get_by_id(rule.base_lesson_id)
        if base is None:
            msg = f"Base lesson {rule.base_lesson_id} of series {series_id} does not exist"
            raise ConsistencyError(msg)
        if expand_rule(rule, original, original + timedelta(milliseconds=1)) != [original]:
            msg = f"{original.isoformat()} is not an occurrence of series {series_id}"
            raise RecurrenceValidationError(msg)
        return rule, base.student_id

    async def _require_lesson(self, lesson_id: int, *, refresh: bool = False) -> Lesson:
        lesson = await self._lessons.get_by_id(lesson_id, refresh=refresh)
        if lesson is None:
            msg = f"Lesson {lesson_id} not found"
            raise NotFoundError(msg)
        return lesson

    async def _reload_rule(self, series_id: int) -> RecurrenceRule:
        # Rows read before the lock was taken may have changed or gone since.
        rule = await self._rules.get_by_id(series_id, refresh=True)
        if rule is None:
            msg = f"Series {series_id} was deleted by a concurrent write"
            raise ConsistencyError(msg)
        return rule

    async def _drop_series(self, rule: RecurrenceRule) -> None:
        removed = await self._exceptions.delete_for_series(rule.id)
        detached = await self._lessons.detach_series(rule.id)
        await self._rules.delete(rule)
        logger.debug("series.dropped", series_id=rule.id, exceptions=removed, detached=detached)

    async def _drop_auto_allocations(self, lesson: Lesson) -> list[Payment]:
        manual: list[Payment] = []
        for payment in await self._payments.list_for_lesson(lesson.id):
            if payment.is_auto_allocation:
                await self._payments.delete(payment)
            else:
                manual.append(payment)
        return manual

    async def _settle_manually(self, lesson: Lesson, now: datetime) -> None:
        manual = await self._drop_auto_allocations(lesson)
        paid = sum(item.amount_cents for item in manual if item.status == PaymentStatus.PAID.value)
        lesson.paid_cents = min(paid, lesson.price_cents)
        if lesson.paid_cents >= lesson.price_cents and lesson.payment_status != PaymentStatus.CANCELLED.value:
            lesson.payment_status = PaymentStatus.PAID.value
        lesson.marked_at = now
        await self._lessons.update(lesson)

    async def _refresh_manual_state(self, lesson: Lesson, now: datetime) -> None:
        remaining = await self._payments.list_for_lesson(lesson.id)
        paid = sum(
            item.amount_cents
            for item in remaining
            if not item.is_auto_allocation and item.status == PaymentStatus.PAID.value
        )
        lesson.paid_cents = min(paid, lesson.price_cents)
        if lesson.paid_cents < lesson.price_cents and lesson.payment_status == PaymentStatus.PAID.value:
            lesson.payment_status = (
                PaymentStatus.DUE.value if lesson.start_at < now else PaymentStatus.UNPAID.value
            )
            lesson.marked_at = now
        await self._lessons.update(lesson)

    async def _reset_lesson_payments(self, lesson_id: int, status: PaymentStatus, now: datetime) -> None:
        lesson = await self._require_lesson(lesson_id)
        async with self._locks.hold(lesson.student_id), atomic(self._session):
            lesson = await self._require_lesson(lesson_id, refresh=True)
            for payment in await self._payments.list_for_lesson(lesson.id):
                await self._payments.delete(payment)
            lesson.payment_status = status.value
            lesson.paid_cents = 0
            lesson.marked_at = now if status is PaymentStatus.DUE else None
            await self._lessons.update(lesson)
            await self._allocator.sync(lesson.student_id, now_utc=now)


def _apply_override(lesson: Lesson, override: OccurrenceOverride) -> None:
    duration = lesson.duration
    if override.duration_minutes is not None:
        duration = timedelta(minutes=override.duration_minutes)
    if override.start_at is not None:
        lesson.start_at = override.start_at
    lesson.end_at = lesson.start_at + duration
    if override.note is not None:
        lesson.note = override.note
    if override.price_cents is not None:
        lesson.price_cents = override.price_cents
        if lesson.paid_cents > lesson.price_cents and lesson.payment_status != PaymentStatus.CANCELLED.value:
            lesson.paid_cents = lesson.price_cents
