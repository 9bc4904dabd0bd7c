# showtix/infra/timings.py
from __future__ import annotations
import math
import statistics
import time
from typing import Dict, List

from fastapi import FastAPI

from ..applog import get_logger

logger = get_logger(__name__)


def _percentile(ordered: List[float], q: float) -> float:
    # nearest-rank on an already sorted list
    if not ordered:
        return 0.0
    rank = max(1, math.ceil(q * len(ordered)))
    return ordered[rank - 1]


class _Timer:
    __slots__ = ("_registry", "_kind", "_t0")

    def __init__(self, registry: "Timings", kind: str):
        self._registry = registry
        self._kind = kind
        self._t0 = 0.0

    async def __aenter__(self):
        self._t0 = time.perf_counter()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        # recorded on failure too
        self._registry.record(self._kind, time.perf_counter() - self._t0)


class Timings:
    """
    Per-kind duration samples, kept in memory for the process lifetime.

    Recording is a list append on the event loop thread; statistics are only
    computed when someone asks for them.
    """

    def __init__(self) -> None:
        self._samples: Dict[str, List[float]] = {}

    def record(self, kind: str, seconds: float) -> None:
        self._samples.setdefault(kind, []).append(float(seconds))

    def timeit(self, kind: str) -> _Timer:
        return _Timer(self, kind)

    def summary(self) -> List[Dict[str, float]]:
        out = []
        for kind, vals in sorted(self._samples.items()):
            ordered = sorted(vals)
            out.append({
                "kind": kind,
                "n": len(vals),
                "mean": statistics.fmean(vals),
                "std": statistics.stdev(vals) if len(vals) > 1 else 0.0,
                "p50": _percentile(ordered, 0.50),
                "p95": _percentile(ordered, 0.95),
                "max": ordered[-1],
            })
        return out

    def reset(self) -> None:
        self._samples.clear()


TIMINGS = Timings()


def timeit(kind: str) -> _Timer:
    """async with timeit("store.mark_paid_once"): ..."""
    return TIMINGS.timeit(kind)


def install_shutdown_log(app: FastAPI, timings: Timings = TIMINGS) -> None:
    @app.on_event("shutdown")
    async def _log_timings_on_shutdown():
        for rec in timings.summary():
            logger.info(
                "timing %-28s n=%-6d mean=%.4fs p50=%.4fs p95=%.4fs "
                "max=%.4fs",
                rec["kind"], rec["n"], rec["mean"], rec["p50"], rec["p95"],
                rec["max"],
            )
        timings.reset()
