from __future__ import annotations

import asyncio
import weakref
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from redis.asyncio import Redis

from tutorledger.core.errors import LedgerBusyError


class StudentLocks:
    """Serializes ledger passes per student.

    The in-process lock always applies; with a Redis client the pass also
    holds ``prepayment:{student_id}`` so workers in other processes wait too.
    A student's local lock lives only while some pass holds or awaits it.
    """

    def __init__(self, redis: Redis | None = None, ttl_seconds: int = 30) -> None:
        self._redis = redis
        self._ttl = ttl_seconds
        self._local: weakref.WeakValueDictionary[int, asyncio.Lock] = weakref.WeakValueDictionary()

    def _local_lock(self, student_id: int) -> asyncio.Lock:
        lock = self._local.get(student_id)
        if lock is None:
            lock = asyncio.Lock()
            self._local[student_id] = lock
        return lock

    @asynccontextmanager
    async def hold(self, student_id: int) -> AsyncIterator[None]:
        local = self._local_lock(student_id)
        async with local:
            if self._redis is None:
                yield
                return
            lock = self._redis.lock(f"prepayment:{student_id}", timeout=self._ttl)
            acquired = await lock.acquire(blocking=True, blocking_timeout=self._ttl)
            if not acquired:
                msg = f"Ledger of student {student_id} is locked by another pass"
                raise LedgerBusyError(msg)
            try:
                yield
            finally:
                await lock.release()
