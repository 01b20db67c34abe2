"""
Lightweight in-process metrics for the purchase queue: counters for
enqueued/completed/failed/retried jobs and a histogram of processor call
durations. Exposed through the dashboard's /queue/metrics endpoint.
"""

import time
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Dict, Any


_counters: Dict[str, int] = defaultdict(int)
_histograms: Dict[str, list] = defaultdict(list)

MAX_HISTOGRAM_SAMPLES = 500  # Rolling window


def inc(name: str, value: int = 1) -> None:
    """Increment a counter."""
    _counters[name] += value


def observe(name: str, value: float) -> None:
    """Record a histogram observation (e.g., duration)."""
    bucket = _histograms[name]
    bucket.append(value)
    if len(bucket) > MAX_HISTOGRAM_SAMPLES:
        _histograms[name] = bucket[-MAX_HISTOGRAM_SAMPLES:]


@asynccontextmanager
async def track_duration(name: str):
    """
    Record the duration of the wrapped block under `<name>.duration_ms`,
    whether it succeeds or raises.

    Usage:
        async with track_duration("queue.job"):
            result = await processor(payload)
    """
    start = time.monotonic()
    try:
        yield
    finally:
        observe(f"{name}.duration_ms", (time.monotonic() - start) * 1000)


def get_snapshot() -> Dict[str, Any]:
    """Return a snapshot of all counters and histogram summaries."""
    snapshot: Dict[str, Any] = {"counters": dict(_counters)}

    summaries = {}
    for name, samples in _histograms.items():
        if samples:
            sorted_s = sorted(samples)
            p50_idx = int(len(sorted_s) * 0.5)
            p95_idx = int(len(sorted_s) * 0.95)
            summaries[name] = {
                "count": len(sorted_s),
                "p50": round(sorted_s[p50_idx], 1),
                "p95": round(sorted_s[min(p95_idx, len(sorted_s) - 1)], 1),
                "max": round(sorted_s[-1], 1),
            }
    snapshot["histograms"] = summaries
    return snapshot


def reset() -> None:
    """Reset all metrics (useful for testing)."""
    _counters.clear()
    _histograms.clear()
