from __future__ import annotations

from collections.abc import AsyncGenerator, Awaitable, Callable

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from tutorledger.core.config import Settings
from tutorledger.core.container import AppContainer
from tutorledger.core.locks import StudentLocks
from tutorledger.db.base import Base
from tutorledger.db.models import Student
from tutorledger.repositories.student_repository import StudentRepository


class FakeLock:
    def __init__(self, owner: FakeRedis, name: str) -> None:
        self._owner = owner
        self.name = name

    async def acquire(self, blocking: bool = True, blocking_timeout: float | None = None) -> bool:
        if self.name in self._owner.held:
            return False
        self._owner.held.add(self.name)
        self._owner.acquired.append(self.name)
        # Runs while the pass holds the lock, like a write committed by another process.
        while self._owner.on_acquire:
            await self._owner.on_acquire.pop(0)()
        return True

    async def release(self) -> None:
        self._owner.held.discard(self.name)


class FakeRedis:
    def __init__(self) -> None:
        self.held: set[str] = set()
        self.acquired: list[str] = []
        self.on_acquire: list[Callable[[], Awaitable[None]]] = []

    def lock(self, name: str, timeout: float | None = None) -> FakeLock:
        return FakeLock(self, name)

    async def ping(self) -> bool:
        return True


@pytest.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, autoflush=False)
    yield factory
    await engine.dispose()


@pytest.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def settings() -> Settings:
    return Settings(DATABASE_URL="sqlite+aiosqlite:///:memory:", REDIS_URL="")


@pytest.fixture
def container(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    fake_redis: FakeRedis,
) -> AppContainer:
    return AppContainer(
        settings=settings,
        session_factory=session_factory,
        redis=fake_redis,  # type: ignore[arg-type]
        locks=StudentLocks(fake_redis, ttl_seconds=5),  # type: ignore[arg-type]
    )


@pytest.fixture
async def student(db_session: AsyncSession) -> Student:
    created = await StudentRepository(db_session).create("Анна", phone="+79990000000")
    await db_session.commit()
    return created
