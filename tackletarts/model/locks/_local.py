# model/locks/_local.py
from __future__ import annotations
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

from ...errors import CapacityExhaustedError


class CompetitionLocks:
    """One asyncio.Lock per competition id, valid within a single process."""

    def __init__(self, timeout_seconds: float = 10.0) -> None:
        self.timeout = timeout_seconds
        self._locks: Dict[int, asyncio.Lock] = {}

    def _lock_for(self, competition_id: int) -> asyncio.Lock:
        lock = self._locks.get(competition_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[competition_id] = lock
        return lock

    @asynccontextmanager
    async def hold(self, competition_id: int) -> AsyncIterator[None]:
        lock = self._lock_for(int(competition_id))
        try:
            await asyncio.wait_for(lock.acquire(), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise CapacityExhaustedError(
                "competition is busy, try again",
                details={"competition_id": competition_id},
            )
        try:
            yield
        finally:
            lock.release()

    def locked(self, competition_id: int) -> bool:
        lock = self._locks.get(int(competition_id))
        return lock is not None and lock.locked()
