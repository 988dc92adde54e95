from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo

import pytest
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tutorledger.core.container import AppContainer
from tutorledger.core.errors import (
    ConsistencyError,
    LedgerBusyError,
    NotFoundError,
    RecurrenceValidationError,
)
from tutorledger.db.models import Lesson, Payment, RecurrenceException, RecurrenceRule, Student
from tutorledger.domain.commands import CreateLessonCommand, OccurrenceOverride, RecordPaymentCommand
from tutorledger.domain.occurrences import MaterializedOccurrence, VirtualOccurrence
from tutorledger.services.lesson_service import LessonService

# Monday
START = datetime(2026, 11, 2, 10, 0, tzinfo=UTC)
NOW = datetime(2026, 11, 1, 0, 0, tzinfo=UTC)


def _weekly_command(student_id: int, price: int = 1000, **recurrence: Any) -> CreateLessonCommand:
    return CreateLessonCommand(
        student_id=student_id,
        title="Английский",
        start_at=START,
        end_at=START + timedelta(hours=1),
        price_cents=price,
        recurrence={"frequency": "weekly", "weekdays": ["MO"], **recurrence},
    )


async def _count(session_factory: async_sessionmaker[AsyncSession], model: type[Any]) -> int:
    async with session_factory() as session:
        result = await session.execute(select(func.count()).select_from(model))
        return int(result.scalar_one())


@pytest.fixture
def service(container: AppContainer, db_session: AsyncSession) -> LessonService:
    return container.create_lesson_service(db_session)


@pytest.mark.asyncio
async def test_create_recurring_lesson_materializes_horizon(
    service: LessonService,
    student: Student,
    session_factory: async_sessionmaker[AsyncSession],
    fake_redis: Any,
) -> None:
    lesson_id = await service.create_lesson(_weekly_command(student.id), now_utc=NOW)

    assert await _count(session_factory, Lesson) == 12
    assert await _count(session_factory, RecurrenceRule) == 1
    assert fake_redis.acquired == [f"prepayment:{student.id}"]

    items = await service.query_occurrences(START, datetime(2027, 2, 1, tzinfo=UTC))
    assert len(items) == 13
    assert isinstance(items[0], MaterializedOccurrence)
    assert items[0].lesson.id == lesson_id
    assert all(isinstance(item, MaterializedOccurrence) for item in items[:12])
    assert isinstance(items[12], VirtualOccurrence)
    assert items[12].start_at == START + timedelta(weeks=12)
    assert items[12].label == "каждую Пн"


@pytest.mark.asyncio
async def test_create_one_off_lesson_uses_deposit(service: LessonService, db_session: AsyncSession, student: Student) -> None:
    await service.record_payment(RecordPaymentCommand(student_id=student.id, amount_cents=1000), now_utc=NOW)

    lesson_id = await service.create_lesson(
        CreateLessonCommand(
            student_id=student.id,
            start_at=START,
            end_at=START + timedelta(hours=1),
            price_cents=1000,
        ),
        now_utc=NOW,
    )

    lesson = await db_session.get(Lesson, lesson_id)
    assert lesson is not None
    assert lesson.series_id is None
    assert lesson.payment_status == "paid"
    assert lesson.paid_cents == 1000


@pytest.mark.asyncio
async def test_create_lesson_validation_happens_before_writes(
    service: LessonService,
    student: Student,
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    cmd = _weekly_command(student.id, frequency="monthly_by_dow", weekdays=["MO", "FR"])

    with pytest.raises(RecurrenceValidationError):
        await service.create_lesson(cmd, now_utc=NOW)
    with pytest.raises(NotFoundError):
        await service.create_lesson(_weekly_command(student.id + 99), now_utc=NOW)

    assert await _count(session_factory, Lesson) == 0


@pytest.mark.asyncio
async def test_create_lesson_is_atomic(
    service: LessonService,
    student: Student,
    session_factory: async_sessionmaker[AsyncSession],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    async def broken_sync(*args: Any, **kwargs: Any) -> None:
        raise RuntimeError("allocator down")

    monkeypatch.setattr(service._allocator, "sync", broken_sync)

    with pytest.raises(RuntimeError):
        await service.create_lesson(_weekly_command(student.id), now_utc=NOW)

    assert await _count(session_factory, Lesson) == 0
    assert await _count(session_factory, RecurrenceRule) == 0


@pytest.mark.asyncio
async def test_busy_ledger_rejects_write(
    service: LessonService,
    student: Student,
    fake_redis: Any,
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    fake_redis.held.add(f"prepayment:{student.id}")

    with pytest.raises(LedgerBusyError):
        await service.create_lesson(_weekly_command(student.id), now_utc=NOW)

    assert await _count(session_factory, Lesson) == 0


@pytest.mark.asyncio
async def test_cancel_materialized_occurrence_reverts_allocation(
    service: LessonService,
    db_session: AsyncSession,
    student: Student,
) -> None:
    await service.record_payment(RecordPaymentCommand(student_id=student.id, amount_cents=2000), now_utc=NOW)
    lesson_id = await service.create_lesson(_weekly_command(student.id), now_utc=NOW)
    second = START + timedelta(weeks=1)
    row = (await db_session.execute(select(Lesson).where(Lesson.original_start_at == second))).scalar_one()
    assert row.payment_status == "paid"

    await service.cancel_occurrence(row.series_id, second, now_utc=NOW)

    assert row.status == "canceled"
    assert row.canceled_at == NOW
    assert row.payment_status == "unpaid"
    third = (
        await db_session.execute(select(Lesson).where(Lesson.original_start_at == START + timedelta(weeks=2)))
    ).scalar_one()
    assert third.payment_status == "paid"

    items = await service.query_occurrences(START, START + timedelta(weeks=3))
    assert [item.start_at for item in items] == [START, START + timedelta(weeks=2)]
    assert items[0].lesson_id == lesson_id


@pytest.mark.asyncio
async def test_cancel_and_override_virtual_occurrences(
    service: LessonService,
    student: Student,
) -> None:
    await service.create_lesson(_weekly_command(student.id), now_utc=NOW, max_occurrences=1)
    items = await service.query_occurrences(START, START + timedelta(weeks=4))
    series_id = items[0].series_id
    assert series_id is not None
    assert len(items) == 4

    await service.cancel_occurrence(series_id, START + timedelta(weeks=1), now_utc=NOW)
    await service.override_occurrence(
        series_id,
        START + timedelta(weeks=2),
        OccurrenceOverride(price_cents=2000, note="перенос"),
        now_utc=NOW,
    )

    items = await service.query_occurrences(START, START + timedelta(weeks=4))
    assert [item.start_at for item in items] == [START, START + timedelta(weeks=2), START + timedelta(weeks=3)]
    assert [item.price_cents for item in items] == [1000, 2000, 1000]
    assert items[1].note == "перенос"

    assert await service.clear_occurrence_exception(series_id, START + timedelta(weeks=1), now_utc=NOW)
    assert not await service.clear_occurrence_exception(series_id, START + timedelta(weeks=1), now_utc=NOW)
    assert len(await service.query_occurrences(START, START + timedelta(weeks=4))) == 4


@pytest.mark.asyncio
async def test_override_materialized_occurrence_moves_row(
    service: LessonService,
    db_session: AsyncSession,
    student: Student,
) -> None:
    await service.create_lesson(_weekly_command(student.id), now_utc=NOW, max_occurrences=3)
    original = START + timedelta(weeks=1)
    row = (await db_session.execute(select(Lesson).where(Lesson.original_start_at == original))).scalar_one()
    assert row.series_id is not None

    await service.override_occurrence(
        row.series_id,
        original,
        OccurrenceOverride(start_at=original + timedelta(days=1), duration_minutes=90),
        now_utc=NOW,
    )

    assert row.start_at == original + timedelta(days=1)
    assert row.end_at == row.start_at + timedelta(minutes=90)
    items = await service.query_occurrences(START, START + timedelta(weeks=2))
    assert [item.start_at for item in items] == [START, original + timedelta(days=1)]


@pytest.mark.asyncio
async def test_exception_targets_are_checked(service: LessonService, student: Student) -> None:
    await service.create_lesson(_weekly_command(student.id), now_utc=NOW, max_occurrences=1)
    items = await service.query_occurrences(START, START + timedelta(days=1))
    series_id = items[0].series_id
    assert series_id is not None

    with pytest.raises(ConsistencyError):
        await service.cancel_occurrence(series_id + 50, START, now_utc=NOW)
    with pytest.raises(RecurrenceValidationError):
        await service.cancel_occurrence(series_id, START + timedelta(hours=1), now_utc=NOW)


@pytest.mark.asyncio
async def test_find_conflicts(service: LessonService, student: Student) -> None:
    lesson_id = await service.create_lesson(
        CreateLessonCommand(student_id=student.id, start_at=START, end_at=START + timedelta(hours=1)),
        now_utc=NOW,
    )
    late = START - timedelta(hours=2)
    await service.create_lesson(
        CreateLessonCommand(student_id=student.id, start_at=late, end_at=late + timedelta(hours=3)),
        now_utc=NOW,
    )

    conflicts = await service.find_conflicts(START + timedelta(minutes=30), START + timedelta(minutes=45))
    assert len(conflicts) == 2

    conflicts = await service.find_conflicts(
        START + timedelta(minutes=30),
        START + timedelta(minutes=45),
        exclude_lesson_id=lesson_id,
    )
    assert len(conflicts) == 1
    assert conflicts[0].start_at == late

    assert await service.find_conflicts(START + timedelta(hours=1), START + timedelta(hours=2)) == []


@pytest.mark.asyncio
async def test_find_conflicts_includes_virtual_occurrences(service: LessonService, student: Student) -> None:
    await service.create_lesson(_weekly_command(student.id), now_utc=NOW, max_occurrences=1)
    target = START + timedelta(weeks=5, minutes=30)

    conflicts = await service.find_conflicts(target, target + timedelta(hours=1))

    assert len(conflicts) == 1
    assert isinstance(conflicts[0], VirtualOccurrence)


@pytest.mark.asyncio
async def test_delete_series_detaches_instances(
    service: LessonService,
    db_session: AsyncSession,
    student: Student,
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    lesson_id = await service.create_lesson(_weekly_command(student.id), now_utc=NOW, max_occurrences=3)
    base = await db_session.get(Lesson, lesson_id)
    assert base is not None and base.series_id is not None
    await service.cancel_occurrence(base.series_id, START + timedelta(weeks=3), now_utc=NOW)

    await service.delete_series(base.series_id, now_utc=NOW)

    assert await _count(session_factory, RecurrenceRule) == 0
    assert await _count(session_factory, RecurrenceException) == 0
    assert await _count(session_factory, Lesson) == 3
    items = await service.query_occurrences(START, START + timedelta(weeks=8))
    assert len(items) == 3
    assert all(isinstance(item, MaterializedOccurrence) and item.series_id is None for item in items)

    with pytest.raises(NotFoundError):
        await service.delete_series(base.series_id or 0, now_utc=NOW)


@pytest.mark.asyncio
async def test_deleted_instance_does_not_reappear(
    service: LessonService,
    db_session: AsyncSession,
    student: Student,
) -> None:
    await service.create_lesson(_weekly_command(student.id), now_utc=NOW, max_occurrences=2)
    original = START + timedelta(weeks=1)
    row = (await db_session.execute(select(Lesson).where(Lesson.original_start_at == original))).scalar_one()

    await service.delete_lesson(row.id, now_utc=NOW)

    items = await service.query_occurrences(START, START + timedelta(weeks=2))
    assert [item.start_at for item in items] == [START]


@pytest.mark.asyncio
async def test_deleting_base_lesson_drops_series(
    service: LessonService,
    student: Student,
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    lesson_id = await service.create_lesson(_weekly_command(student.id), now_utc=NOW, max_occurrences=2)

    await service.delete_lesson(lesson_id, now_utc=NOW)

    assert await _count(session_factory, RecurrenceRule) == 0
    assert await _count(session_factory, Lesson) == 1
    with pytest.raises(NotFoundError):
        await service.delete_lesson(lesson_id, now_utc=NOW)


@pytest.mark.asyncio
async def test_record_payment_checks_references(service: LessonService, student: Student, db_session: AsyncSession) -> None:
    other = Student(name="Борис")
    db_session.add(other)
    await db_session.commit()
    lesson_id = await service.create_lesson(
        CreateLessonCommand(student_id=other.id, start_at=START, end_at=START + timedelta(hours=1)),
        now_utc=NOW,
    )

    with pytest.raises(NotFoundError):
        await service.record_payment(RecordPaymentCommand(student_id=student.id + 99, amount_cents=100))
    with pytest.raises(NotFoundError):
        await service.record_payment(RecordPaymentCommand(student_id=student.id, lesson_id=9999, amount_cents=100))
    with pytest.raises(ConsistencyError):
        await service.record_payment(
            RecordPaymentCommand(student_id=student.id, lesson_id=lesson_id, amount_cents=100)
        )


@pytest.mark.asyncio
async def test_manual_lesson_payment_keeps_deposit_for_next_lesson(
    service: LessonService,
    db_session: AsyncSession,
    student: Student,
) -> None:
    await service.create_lesson(_weekly_command(student.id), now_utc=NOW, max_occurrences=2)
    first = (await db_session.execute(select(Lesson).where(Lesson.original_start_at == START))).scalar_one()
    second = (
        await db_session.execute(select(Lesson).where(Lesson.original_start_at == START + timedelta(weeks=1)))
    ).scalar_one()
    await service.record_payment(RecordPaymentCommand(student_id=student.id, amount_cents=1000), now_utc=NOW)
    assert first.payment_status == "paid"
    assert second.payment_status == "unpaid"

    await service.mark_paid(first.id, now_utc=NOW)

    assert first.payment_status == "paid"
    assert second.payment_status == "paid"
    payments = (await db_session.execute(select(Payment).where(Payment.lesson_id == first.id))).scalars().all()
    assert [(item.method, item.amount_cents) for item in payments] == [("manual", 1000)]

    await service.reset_payment_status(first.id, now_utc=NOW)
    # The deposit goes back to the earliest lesson.
    assert first.payment_status == "paid"
    assert second.payment_status == "unpaid"

    await service.mark_due(second.id, now_utc=NOW)
    assert second.payment_status == "due"
    assert second.marked_at == NOW


@pytest.mark.asyncio
async def test_delete_manual_payment_restores_allocation(
    service: LessonService,
    db_session: AsyncSession,
    student: Student,
) -> None:
    lesson_id = await service.create_lesson(
        CreateLessonCommand(student_id=student.id, start_at=START, end_at=START + timedelta(hours=1), price_cents=800),
        now_utc=NOW,
    )
    payment_id = await service.record_payment(
        RecordPaymentCommand(student_id=student.id, lesson_id=lesson_id, amount_cents=800),
        now_utc=NOW,
    )
    lesson = await db_session.get(Lesson, lesson_id)
    assert lesson is not None
    assert (lesson.payment_status, lesson.paid_cents) == ("paid", 800)

    await service.delete_payment(payment_id, now_utc=NOW)
    assert (lesson.payment_status, lesson.paid_cents) == ("unpaid", 0)

    with pytest.raises(NotFoundError):
        await service.delete_payment(payment_id, now_utc=NOW)


@pytest.mark.asyncio
async def test_sync_prepayment_reports_balance(service: LessonService, student: Student) -> None:
    await service.create_lesson(
        CreateLessonCommand(student_id=student.id, start_at=START, end_at=START + timedelta(hours=1), price_cents=600),
        now_utc=NOW,
    )
    await service.record_payment(RecordPaymentCommand(student_id=student.id, amount_cents=1000), now_utc=NOW)

    result = await service.sync_prepayment(student.id, now_utc=NOW)

    assert result.deposit_cents == 1000
    assert result.consumed_cents == 600
    assert result.remaining_cents == 400
    assert result.writes == 0
    with pytest.raises(NotFoundError):
        await service.sync_prepayment(student.id + 99)


@pytest.mark.asyncio
async def test_rematerialize_series_fills_new_horizon(service: LessonService, student: Student) -> None:
    lesson_id = await service.create_lesson(_weekly_command(student.id), now_utc=NOW, max_occurrences=2)
    items = await service.query_occurrences(START, START + timedelta(days=1))
    series_id = items[0].series_id
    assert series_id is not None and items[0].lesson_id == lesson_id

    created = await service.rematerialize_series(series_id, now_utc=NOW, max_occurrences=4)
    assert len(created) == 2
    assert await service.rematerialize_series(series_id, now_utc=NOW, max_occurrences=4) == []
    with pytest.raises(ConsistencyError):
        await service.rematerialize_series(series_id + 10, now_utc=NOW)


@pytest.mark.asyncio
async def test_naive_series_times_are_local_wall_clock(service: LessonService, student: Student) -> None:
    moscow = ZoneInfo("Europe/Moscow")
    now = datetime(2024, 6, 1, tzinfo=UTC)
    await service.create_lesson(
        CreateLessonCommand(
            student_id=student.id,
            start_at=datetime(2024, 6, 3, 10, 0),
            end_at=datetime(2024, 6, 3, 11, 0),
            price_cents=1000,
            recurrence={"frequency": "weekly", "weekdays": ["MO"], "timezone": "Europe/Moscow"},
        ),
        now_utc=now,
        max_occurrences=1,
    )
    window = (datetime(2024, 6, 3, tzinfo=moscow), datetime(2024, 7, 1, tzinfo=moscow))

    items = await service.query_occurrences(*window)
    local = [item.start_at.astimezone(moscow) for item in items]
    assert [(item.day, item.hour) for item in local] == [(3, 10), (10, 10), (17, 10), (24, 10)]

    series_id = items[0].series_id
    assert series_id is not None
    await service.cancel_occurrence(series_id, datetime(2024, 6, 10, 10, 0, tzinfo=moscow), now_utc=now)
    await service.override_occurrence(
        series_id,
        datetime(2024, 6, 17, 10, 0, tzinfo=moscow),
        OccurrenceOverride(price_cents=2000),
        now_utc=now,
    )

    items = await service.query_occurrences(*window)
    assert [item.start_at.astimezone(moscow).day for item in items] == [3, 17, 24]
    assert [item.price_cents for item in items] == [1000, 2000, 1000]


@pytest.mark.asyncio
async def test_allocator_sees_rows_committed_by_another_session(
    service: LessonService,
    container: AppContainer,
    db_session: AsyncSession,
    student: Student,
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    await service.create_lesson(_weekly_command(student.id), now_utc=NOW, max_occurrences=2)
    first = (await db_session.execute(select(Lesson).where(Lesson.original_start_at == START))).scalar_one()
    second = (
        await db_session.execute(select(Lesson).where(Lesson.original_start_at == START + timedelta(weeks=1)))
    ).scalar_one()
    assert first.series_id is not None

    async with session_factory() as other:
        await container.create_lesson_service(other).cancel_occurrence(first.series_id, START, now_utc=NOW)

    await service.record_payment(RecordPaymentCommand(student_id=student.id, amount_cents=1000), now_utc=NOW)

    assert first.status == "canceled"
    assert (first.payment_status, second.payment_status) == ("unpaid", "paid")


@pytest.mark.asyncio
async def test_payment_deleted_while_waiting_for_the_ledger_is_not_found(
    service: LessonService,
    student: Student,
    session_factory: async_sessionmaker[AsyncSession],
    fake_redis: Any,
) -> None:
    payment_id = await service.record_payment(
        RecordPaymentCommand(student_id=student.id, amount_cents=500),
        now_utc=NOW,
    )

    async def delete_elsewhere() -> None:
        async with session_factory() as other:
            await other.execute(delete(Payment).where(Payment.id == payment_id))
            await other.commit()

    fake_redis.on_acquire.append(delete_elsewhere)

    with pytest.raises(NotFoundError):
        await service.delete_payment(payment_id, now_utc=NOW)
    assert await _count(session_factory, Payment) == 0


@pytest.mark.asyncio
async def test_mark_paid_free_lesson_writes_no_payment(
    service: LessonService,
    db_session: AsyncSession,
    student: Student,
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    lesson_id = await service.create_lesson(
        CreateLessonCommand(student_id=student.id, start_at=START, end_at=START + timedelta(hours=1)),
        now_utc=NOW,
    )

    await service.mark_paid(lesson_id, now_utc=NOW)

    lesson = await db_session.get(Lesson, lesson_id)
    assert lesson is not None
    assert (lesson.payment_status, lesson.paid_cents) == ("paid", 0)
    assert await _count(session_factory, Payment) == 0
