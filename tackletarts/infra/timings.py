# tackletarts/infra/timings.py
from __future__ import annotations
import logging
import time
from collections import deque
from typing import Deque, Dict, List
import statistics
from fastapi import FastAPI

logger = logging.getLogger(__name__)

# ------------ hot path: append only ------------
# one bounded window per kind; no locks, single-threaded event loop
MAX_SAMPLES = 10000
_TIMINGS: Dict[str, Deque[float]] = {}


def now_ts() -> float:
    # monotonic for durations
    return time.perf_counter()


def record_timing(kind: str, value: float) -> None:
    lst = _TIMINGS.get(kind)
    if lst is None:
        lst = deque(maxlen=MAX_SAMPLES)
        _TIMINGS[kind] = lst
    lst.append(float(value))


class timeit:
    """async usage:
        async with timeit("ledger.reserve"):
            await fn()
    """
    __slots__ = ("_kind", "_t0")

    def __init__(self, kind: str):
        self._kind = kind
        self._t0 = 0.0

    async def __aenter__(self):
        self._t0 = now_ts()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        record_timing(self._kind, now_ts() - self._t0)


# ------------ stats only on demand ------------

def _mean_std(values: Deque[float]) -> tuple[float, float]:
    if not values:
        return 0.0, 0.0
    return (
        statistics.mean(values),
        statistics.stdev(values) if len(values) > 1 else 0.0
    )


def summarize() -> List[Dict[str, float]]:
    # one record per kind: {"kind","n","mean","std","max"}
    out = []
    for kind, vals in sorted(_TIMINGS.items()):
        mean, std = _mean_std(vals)
        out.append({
            "kind": kind,
            "n": len(vals),
            "mean": mean,
            "std": std,
            "max": max(vals) if vals else 0.0,
        })
    return out


def reset() -> None:
    _TIMINGS.clear()


def install_shutdown_report(app: FastAPI) -> None:
    """Log the aggregated timings once when the app shuts down."""

    @app.on_event("shutdown")
    async def _report_on_shutdown():
        for rec in summarize():
            logger.info(
                "timing %s n=%d mean=%.6fs std=%.6fs max=%.6fs",
                rec["kind"], rec["n"], rec["mean"], rec["std"], rec["max"],
            )
