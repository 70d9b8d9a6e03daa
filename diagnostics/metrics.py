# diagnostics/metrics.py
from __future__ import annotations

from collections import deque
import time
from typing import Dict, Any

import numpy as np


# -----------------------------
# Metric keys
# -----------------------------
CYCLE_LATENCY = "cycle_latency_s"
CONTROLLER_LATENCY = "controller_latency_s"

TRACKS_ACTIVE = "tracks_active"
TRACKS_CONFIRMED = "tracks_confirmed"
MIO_TRACK_ID = "mio_track_id"           # -1 when the lane is clear
COMMANDED_ACCEL = "commanded_accel_mps2"

DETECTIONS_TOTAL = "detections_total"
DETECTIONS_REJECTED = "detections_rejected_total"
CLUSTERS_TOTAL = "clusters_total"
REJECTED_THIS_CYCLE = "rejected_this_cycle"

CONTROLLER_FALLBACKS = "controller_fallbacks_total"
FALLBACK_THIS_CYCLE = "fallback_this_cycle"
CYCLE_ERRORS = "cycle_errors_total"
FAULTS_INJECTED = "faults_injected_total"


class _TimerWindow:
    """Sliding window of durations (seconds)."""

    def __init__(self, maxlen: int):
        self.samples: deque = deque(maxlen=maxlen)

    def add(self, x: float) -> None:
        self.samples.append(x)

    def summary(self) -> Dict[str, float]:
        if not self.samples:
            return {"count": 0, "mean_s": 0.0, "p95_s": 0.0, "max_s": 0.0}
        arr = np.fromiter(self.samples, dtype=float)
        return {
            "count": int(arr.size),
            "mean_s": float(arr.mean()),
            "p95_s": float(np.percentile(arr, 95)),
            "max_s": float(arr.max()),
        }


class MetricsRegistry:
    """
    In-process metrics for the control cycle:
      - counters: monotonically increasing totals
      - gauges: last value of a per-cycle quantity
      - timers: sliding-window latencies, used to watch the cycle deadline
    """

    def __init__(self, window_size: int = 200):
        if window_size < 1:
            raise ValueError("window_size must be >= 1")
        self.window_size = int(window_size)
        self._counters: Dict[str, int] = {}
        self._gauges: Dict[str, float] = {}
        self._timers: Dict[str, _TimerWindow] = {}

    def inc(self, key: str, amount: int = 1) -> None:
        self._counters[key] = self._counters.get(key, 0) + int(amount)

    def set_gauge(self, key: str, value: float) -> None:
        self._gauges[key] = float(value)

    def observe(self, key: str, value_s: float) -> None:
        self._timers.setdefault(key, _TimerWindow(self.window_size)).add(float(value_s))

    def counter(self, key: str) -> int:
        return self._counters.get(key, 0)

    def gauge(self, key: str, default: float = 0.0) -> float:
        return self._gauges.get(key, default)

    def reset(self) -> None:
        self._counters.clear()
        self._gauges.clear()
        self._timers.clear()

    def snapshot(self) -> Dict[str, Any]:
        return {
            "counters": dict(self._counters),
            "gauges": dict(self._gauges),
            "timers": {k: v.summary() for k, v in self._timers.items()},
        }


class Timer:
    """Context manager timing a block; records into `metrics` when one is given."""

    def __init__(self, metrics: MetricsRegistry | None, key: str):
        self.metrics = metrics
        self.key = key
        self._t0 = 0.0
        self.elapsed = 0.0

    def __enter__(self):
        self._t0 = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.elapsed = time.perf_counter() - self._t0
        if self.metrics is not None:
            self.metrics.observe(self.key, self.elapsed)
        return False
