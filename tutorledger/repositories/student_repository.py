from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tutorledger.db.models import Student


class StudentRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, name: str, phone: str | None = None, note: str | None = None) -> Student:
        student = Student(name=name, phone=phone, note=note)
        self._session.add(student)
        await self._session.flush()
        return student

    async def get_by_id(self, student_id: int) -> Student | None:
        stmt = select(Student).where(Student.id == student_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()
