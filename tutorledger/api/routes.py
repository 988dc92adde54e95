from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Literal

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from structlog.contextvars import bound_contextvars

from tutorledger.api.deps import get_container, get_db_session, get_lesson_service
from tutorledger.core.container import AppContainer
from tutorledger.core.errors import ConsistencyError, LedgerBusyError, NotFoundError
from tutorledger.db.session import atomic
from tutorledger.domain.commands import CreateLessonCommand, OccurrenceOverride, RecordPaymentCommand
from tutorledger.domain.occurrences import MaterializedOccurrence, Occurrence
from tutorledger.repositories.student_repository import StudentRepository
from tutorledger.services.lesson_service import LessonService

logger = structlog.get_logger(__name__)
router = APIRouter()


class CreateStudentRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    phone: str | None = None
    note: str | None = None


class OccurrenceSlotRequest(BaseModel):
    original_start_at: datetime


class OverrideOccurrenceRequest(OccurrenceOverride):
    original_start_at: datetime


class PaymentStatusRequest(BaseModel):
    status: Literal["paid", "due", "unpaid"]


class MaterializeRequest(BaseModel):
    horizon_weeks: int | None = Field(default=None, ge=1)
    max_occurrences: int | None = Field(default=None, ge=1)


@contextmanager
def _ledger_errors() -> Iterator[None]:
    try:
        yield
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except (ConsistencyError, LedgerBusyError) as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


def serialize_occurrence(item: Occurrence) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "kind": item.kind,
        "id": item.display_id,
        "lesson_id": item.lesson_id,
        "series_id": item.series_id,
        "original_start_at": item.original_start_at.isoformat() if item.original_start_at else None,
        "start_at": item.start_at.isoformat(),
        "end_at": item.end_at.isoformat(),
        "student_id": item.student_id,
        "price_cents": item.price_cents,
        "note": item.note,
        "label": item.label,
        "exception_applied": item.exception_applied,
    }
    if isinstance(item, MaterializedOccurrence):
        payload["title"] = item.lesson.title
        payload["status"] = item.lesson.status
        payload["payment_status"] = item.lesson.payment_status
        payload["paid_cents"] = item.lesson.paid_cents
    else:
        payload["title"] = item.title
        payload["base_lesson_id"] = item.base_lesson_id
    return payload


@router.get("/health/live")
async def health_live() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/health/ready")
async def health_ready(
    container: AppContainer = Depends(get_container),
    session: AsyncSession = Depends(get_db_session),
) -> dict[str, str]:
    try:
        await session.execute(text("SELECT 1"))
        if container.redis is not None:
            await container.redis.ping()
    except Exception as exc:
        logger.exception("health.ready_failed", error=str(exc))
        raise HTTPException(status_code=503, detail="dependencies unavailable") from exc
    return {"status": "ready"}


@router.post("/students", status_code=201)
async def create_student(
    payload: CreateStudentRequest,
    session: AsyncSession = Depends(get_db_session),
) -> dict[str, int]:
    async with atomic(session):
        student = await StudentRepository(session).create(payload.name, phone=payload.phone, note=payload.note)
    logger.info("student.created", student_id=student.id)
    return {"id": student.id}


@router.post("/lessons", status_code=201)
async def create_lesson(
    payload: CreateLessonCommand,
    service: LessonService = Depends(get_lesson_service),
) -> dict[str, int]:
    with bound_contextvars(student_id=payload.student_id), _ledger_errors():
        lesson_id = await service.create_lesson(payload)
    return {"id": lesson_id}


@router.delete("/lessons/{lesson_id}", status_code=204)
async def delete_lesson(
    lesson_id: int,
    service: LessonService = Depends(get_lesson_service),
) -> None:
    with bound_contextvars(lesson_id=lesson_id), _ledger_errors():
        await service.delete_lesson(lesson_id)


@router.post("/lessons/{lesson_id}/payment-status")
async def set_payment_status(
    lesson_id: int,
    payload: PaymentStatusRequest,
    service: LessonService = Depends(get_lesson_service),
) -> dict[str, str]:
    actions: dict[str, Callable[[int], Any]] = {
        "paid": service.mark_paid,
        "due": service.mark_due,
        "unpaid": service.reset_payment_status,
    }
    with bound_contextvars(lesson_id=lesson_id), _ledger_errors():
        await actions[payload.status](lesson_id)
    return {"status": payload.status}


@router.get("/occurrences")
async def list_occurrences(
    start: datetime = Query(...),
    end: datetime = Query(...),
    service: LessonService = Depends(get_lesson_service),
) -> dict[str, object]:
    with _ledger_errors():
        items = await service.query_occurrences(start, end)
    return {"items": [serialize_occurrence(item) for item in items]}


@router.get("/conflicts")
async def list_conflicts(
    start: datetime = Query(...),
    end: datetime = Query(...),
    exclude_lesson_id: int | None = None,
    service: LessonService = Depends(get_lesson_service),
) -> dict[str, object]:
    with _ledger_errors():
        items = await service.find_conflicts(start, end, exclude_lesson_id=exclude_lesson_id)
    return {"conflicts": [serialize_occurrence(item) for item in items]}


@router.post("/series/{series_id}/cancel")
async def cancel_occurrence(
    series_id: int,
    payload: OccurrenceSlotRequest,
    service: LessonService = Depends(get_lesson_service),
) -> dict[str, object]:
    with bound_contextvars(series_id=series_id), _ledger_errors():
        exception = await service.cancel_occurrence(series_id, payload.original_start_at)
    return {"id": exception.id, "kind": exception.kind}


@router.post("/series/{series_id}/override")
async def override_occurrence(
    series_id: int,
    payload: OverrideOccurrenceRequest,
    service: LessonService = Depends(get_lesson_service),
) -> dict[str, object]:
    override = OccurrenceOverride.model_validate(payload.model_dump(exclude={"original_start_at"}))
    with bound_contextvars(series_id=series_id), _ledger_errors():
        exception = await service.override_occurrence(series_id, payload.original_start_at, override)
    return {"id": exception.id, "kind": exception.kind}


@router.delete("/series/{series_id}/exceptions")
async def clear_occurrence_exception(
    series_id: int,
    original_start_at: datetime = Query(...),
    service: LessonService = Depends(get_lesson_service),
) -> dict[str, bool]:
    with bound_contextvars(series_id=series_id), _ledger_errors():
        removed = await service.clear_occurrence_exception(series_id, original_start_at)
    return {"removed": removed}


@router.post("/series/{series_id}/materialize")
async def materialize_series(
    series_id: int,
    payload: MaterializeRequest,
    service: LessonService = Depends(get_lesson_service),
) -> dict[str, list[int]]:
    with bound_contextvars(series_id=series_id), _ledger_errors():
        created = await service.rematerialize_series(
            series_id,
            horizon_weeks=payload.horizon_weeks,
            max_occurrences=payload.max_occurrences,
        )
    return {"created": created}


@router.delete("/series/{series_id}", status_code=204)
async def delete_series(
    series_id: int,
    service: LessonService = Depends(get_lesson_service),
) -> None:
    with bound_contextvars(series_id=series_id), _ledger_errors():
        await service.delete_series(series_id)


@router.post("/payments", status_code=201)
async def record_payment(
    payload: RecordPaymentCommand,
    service: LessonService = Depends(get_lesson_service),
) -> dict[str, int]:
    with bound_contextvars(student_id=payload.student_id), _ledger_errors():
        payment_id = await service.record_payment(payload)
    return {"id": payment_id}


@router.delete("/payments/{payment_id}", status_code=204)
async def delete_payment(
    payment_id: int,
    service: LessonService = Depends(get_lesson_service),
) -> None:
    with bound_contextvars(payment_id=payment_id), _ledger_errors():
        await service.delete_payment(payment_id)


@router.post("/students/{student_id}/prepayment/sync")
async def sync_prepayment(
    student_id: int,
    service: LessonService = Depends(get_lesson_service),
) -> dict[str, object]:
    with bound_contextvars(student_id=student_id), _ledger_errors():
        result = await service.sync_prepayment(student_id)
    return {
        "student_id": result.student_id,
        "deposit_cents": result.deposit_cents,
        "consumed_cents": result.consumed_cents,
        "remaining_cents": result.remaining_cents,
        "paid_lesson_ids": result.paid_lesson_ids,
        "reverted_lesson_ids": result.reverted_lesson_ids,
    }
