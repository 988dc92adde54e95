from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from redis.asyncio import Redis

from tutorledger.api.routes import router as api_router
from tutorledger.core.config import get_settings
from tutorledger.core.container import AppContainer
from tutorledger.core.locks import StudentLocks
from tutorledger.core.logging import setup_logging
from tutorledger.db.session import create_engine, create_session_factory

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    setup_logging(settings.log_level, json_logs=settings.log_json)

    engine = create_engine(settings)
    session_factory = create_session_factory(engine)
    redis = Redis.from_url(settings.redis_url, decode_responses=False) if settings.redis_url else None

    container = AppContainer(
        settings=settings,
        session_factory=session_factory,
        redis=redis,
        locks=StudentLocks(redis, ttl_seconds=settings.prepayment_lock_ttl_seconds),
    )
    app.state.engine = engine
    app.state.container = container
    logger.info("app.started", app=settings.app_name, env=settings.app_env, redis=redis is not None)

    try:
        yield
    finally:
        if redis is not None:
            await redis.aclose()
        await engine.dispose()


app = FastAPI(title="TutorLedger", lifespan=lifespan)
app.include_router(api_router)
