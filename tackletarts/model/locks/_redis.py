# model/locks/_redis.py
from __future__ import annotations
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

import redis.asyncio as redis
from redis.exceptions import LockError

from ...errors import CapacityExhaustedError

logger = logging.getLogger(__name__)


# ---- keys
def k_lock(competition_id: int) -> str: return f"lock:competition:{competition_id}"


class CompetitionLocks:
    """Per-competition lock shared by every worker talking to the same redis."""

    def __init__(self, r: redis.Redis, timeout_seconds: float = 10.0,
                 lease_seconds: float = 30.0) -> None:
        self.r = r
        self.timeout = timeout_seconds
        # lease outlives any single reservation transaction
        self.lease = lease_seconds

    @asynccontextmanager
    async def hold(self, competition_id: int) -> AsyncIterator[None]:
        lock = self.r.lock(
            k_lock(int(competition_id)),
            timeout=self.lease,
            blocking_timeout=self.timeout,
        )
        if not await lock.acquire():
            raise CapacityExhaustedError(
                "competition is busy, try again",
                details={"competition_id": competition_id},
            )
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                # lease ran out; the DB constraints still hold the invariants
                logger.warning(
                    "lock for competition %s expired before release",
                    competition_id,
                )
