# model/locks/__init__.py
import os
from typing import Optional
import redis.asyncio as redis

BACKEND = os.getenv("LOCK_BACKEND", "local").lower()  # 'local' | 'redis'

if BACKEND == "redis":
    from ._redis import CompetitionLocks as _CompetitionLocks
else:
    from ._local import CompetitionLocks as _CompetitionLocks


# Factory keeps server.py simple and constructor-agnostic:
def new_locks(*, r: Optional[redis.Redis] = None,
              timeout_seconds: float = 10.0,
              lease_seconds: float = 30.0):
    if BACKEND == "redis":
        if r is None:
            raise RuntimeError(
                "CompetitionLocks(redis) requires r=redis.Redis"
            )
        return _CompetitionLocks(r=r, timeout_seconds=timeout_seconds,
                                 lease_seconds=lease_seconds)
    else:
        return _CompetitionLocks(timeout_seconds=timeout_seconds)


CompetitionLocks = _CompetitionLocks
__all__ = ["CompetitionLocks", "new_locks", "BACKEND"]
