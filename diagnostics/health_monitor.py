# diagnostics/health_monitor.py
from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Any, List, Tuple

from diagnostics.metrics import CYCLE_LATENCY, FALLBACK_THIS_CYCLE, REJECTED_THIS_CYCLE


@dataclass
class HealthConfig:
    # Mean cycle latency, against the 100 ms sample period
    latency_mean_ms_enter: float = 50.0
    latency_mean_ms_exit: float = 30.0

    # Rejected (ill-conditioned / out-of-range) detections per cycle
    rejected_enter: float = 5.0
    rejected_exit: float = 1.0

    # Controller fallback (infeasible / timeout) in the current cycle
    fallback_counts: bool = True

    enter_count_required: int = 3
    exit_count_required: int = 5


class HealthMonitor:
    """
    Hysteresis state machine over per-cycle sensing and timing health:
      NORMAL -> DEGRADED after `enter_count_required` bad cycles in a row
      DEGRADED -> NORMAL after `exit_count_required` clean cycles in a row

    The pipeline stops spawning new tracks while DEGRADED, so a burst of
    corrupted detections cannot seed ghost objects.
    """

    NORMAL = "NORMAL"
    DEGRADED = "DEGRADED"

    def __init__(self, cfg: HealthConfig | None = None):
        self.cfg = HealthConfig() if cfg is None else cfg
        self.state = self.NORMAL
        self._enter_streak = 0
        self._exit_streak = 0

    @property
    def degraded(self) -> bool:
        return self.state == self.DEGRADED

    def _evaluate(self, snap: Dict[str, Any]) -> Tuple[List[str], bool]:
        timers = snap.get("timers", {})
        gauges = snap.get("gauges", {})

        lat_ms = 1000.0 * float(timers.get(CYCLE_LATENCY, {}).get("mean_s", 0.0))
        rejected = float(gauges.get(REJECTED_THIS_CYCLE, 0.0))
        fallback = self.cfg.fallback_counts and float(gauges.get(FALLBACK_THIS_CYCLE, 0.0)) > 0

        reasons = []
        if lat_ms >= self.cfg.latency_mean_ms_enter:
            reasons.append(f"lat_ms={lat_ms:.1f}")
        if rejected >= self.cfg.rejected_enter:
            reasons.append(f"rejected={rejected:.0f}")
        if fallback:
            reasons.append("controller_fallback")

        clean = (lat_ms <= self.cfg.latency_mean_ms_exit
                 and rejected <= self.cfg.rejected_exit
                 and not fallback)
        return reasons, clean

    def update(self, snap: Dict[str, Any]) -> Tuple[str, str]:
        reasons, clean = self._evaluate(snap)

        if self.state == self.NORMAL:
            self._enter_streak = self._enter_streak + 1 if reasons else 0
            if self._enter_streak >= self.cfg.enter_count_required:
                self.state = self.DEGRADED
                self._exit_streak = 0
        else:
            self._exit_streak = self._exit_streak + 1 if clean else 0
            if self._exit_streak >= self.cfg.exit_count_required:
                self.state = self.NORMAL
                self._enter_streak = 0

        return self.state, " ".join(reasons)
