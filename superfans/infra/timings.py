# superfans/infra/timings.py
from __future__ import annotations
import statistics
import time
from collections import deque
from typing import Deque, Dict, List

# newest samples win; old ones fall off the left
MAX_SAMPLES_PER_KIND = 10_000

_SAMPLES: Dict[str, Deque[float]] = {}


def record_timing(kind: str, seconds: float) -> None:
    samples = _SAMPLES.get(kind)
    if samples is None:
        samples = _SAMPLES[kind] = deque(maxlen=MAX_SAMPLES_PER_KIND)
    samples.append(float(seconds))


class timeit:
    """Time the body of an ``async with`` block under ``kind``:

        async with timeit("chain.eth_getTransactionReceipt"):
            await rpc(...)

    Failed calls are recorded too.
    """
    __slots__ = ("_kind", "_t0")

    def __init__(self, kind: str):
        self._kind = kind
        self._t0 = 0.0

    async def __aenter__(self):
        self._t0 = time.perf_counter()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        record_timing(self._kind, time.perf_counter() - self._t0)


def _ms(seconds: float) -> float:
    return round(seconds * 1000, 3)


def _summary(kind: str, samples: Deque[float]) -> Dict[str, float]:
    vals = sorted(samples)
    n = len(vals)
    return {
        "kind": kind,
        "n": n,
        "mean_ms": _ms(statistics.fmean(vals)),
        "std_ms": _ms(statistics.stdev(vals)) if n > 1 else 0.0,
        "p95_ms": _ms(vals[min(n - 1, int(n * 0.95))]),
        "max_ms": _ms(vals[-1]),
    }


def aggregates() -> List[Dict[str, float]]:
    """Per-kind latency summary, computed on read."""
    return [_summary(kind, samples)
            for kind, samples in sorted(_SAMPLES.items()) if samples]


def reset() -> None:
    _SAMPLES.clear()
