from __future__ import annotations

from dataclasses import dataclass

from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tutorledger.core.config import Settings
from tutorledger.core.locks import StudentLocks
from tutorledger.repositories.lesson_repository import LessonRepository
from tutorledger.repositories.payment_repository import PaymentRepository
from tutorledger.repositories.recurrence_repository import (
    RecurrenceExceptionRepository,
    RecurrenceRuleRepository,
)
from tutorledger.repositories.student_repository import StudentRepository
from tutorledger.services.conflict_service import ConflictService
from tutorledger.services.lesson_service import LessonService
from tutorledger.services.materializer import MaterializationService
from tutorledger.services.occurrence_service import OccurrenceService
from tutorledger.services.prepayment_allocator import PrepaymentAllocator


@dataclass(slots=True)
class AppContainer:
    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    redis: Redis | None
    locks: StudentLocks

    def create_lesson_service(self, session: AsyncSession) -> LessonService:
        lesson_repo = LessonRepository(session)
        rule_repo = RecurrenceRuleRepository(session)
        exception_repo = RecurrenceExceptionRepository(session)
        payment_repo = PaymentRepository(session)
        occurrences = OccurrenceService(
            lesson_repo,
            rule_repo,
            exception_repo,
            default_duration_minutes=self.settings.default_lesson_duration_minutes,
        )
        return LessonService(
            session,
            students=StudentRepository(session),
            lessons=lesson_repo,
            rules=rule_repo,
            exceptions=exception_repo,
            payments=payment_repo,
            materializer=MaterializationService(
                lesson_repo,
                rule_repo,
                exception_repo,
                horizon_weeks=self.settings.materialize_horizon_weeks,
                max_occurrences=self.settings.materialize_max_occurrences,
                default_duration_minutes=self.settings.default_lesson_duration_minutes,
            ),
            occurrences=occurrences,
            conflicts=ConflictService(occurrences, lookback_hours=self.settings.conflict_lookback_hours),
            allocator=PrepaymentAllocator(lesson_repo, payment_repo),
            locks=self.locks,
        )
