from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import cast

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from tutorledger.core.container import AppContainer
from tutorledger.services.lesson_service import LessonService


def get_container(request: Request) -> AppContainer:
    return cast(AppContainer, request.app.state.container)


async def get_db_session(
    container: AppContainer = Depends(get_container),
) -> AsyncGenerator[AsyncSession, None]:
    async with container.session_factory() as session:
        yield session


def get_lesson_service(
    container: AppContainer = Depends(get_container),
    session: AsyncSession = Depends(get_db_session),
) -> LessonService:
    return container.create_lesson_service(session)
