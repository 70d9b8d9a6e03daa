# control/command.py
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import math
from typing import Protocol

from control.acc_config import AccConfig
from selection.lead_car import MioReference


class ControlStatus(Enum):
    NOMINAL = "nominal"
    INFEASIBLE = "infeasible"
    TIMEOUT = "timeout"
    INVALID_INPUT = "invalid_input"


@dataclass(frozen=True)
class AccCommand:
    acceleration: float
    status: ControlStatus = ControlStatus.NOMINAL
    message: str = ""

    @property
    def is_fallback(self) -> bool:
        return self.status is not ControlStatus.NOMINAL


class AccController(Protocol):
    """Given ego/relative state, produce a bounded longitudinal acceleration."""

    def compute(
        self,
        ego_velocity: float,
        set_velocity: float,
        mio: MioReference | None,
    ) -> AccCommand: ...

    def reset(self) -> None: ...

    def note_applied(self, acceleration: float) -> None:
        """Record a command applied on the controller's behalf (pipeline fallback)."""
        ...


def inputs_problem(ego_velocity: float, set_velocity: float, mio: MioReference | None) -> str | None:
    if not (math.isfinite(ego_velocity) and math.isfinite(set_velocity)):
        return "non-finite ego or set velocity"
    if mio is not None and not (math.isfinite(mio.distance) and math.isfinite(mio.relative_velocity)):
        return f"non-finite relative state for MIO {mio.track_id}"
    return None


def predict_gap(cfg: AccConfig, ego_velocity: float, mio: MioReference, accel: float) -> tuple[float, float]:
    """
    One-step kinematic prediction under `accel`.

    Returns:
        (relative distance, safe distance) at t + Ts
    """
    Ts = cfg.sample_time
    v = max(float(ego_velocity), 0.0)
    distance = mio.distance + Ts * mio.relative_velocity - 0.5 * Ts * Ts * accel
    return distance, cfg.default_spacing + cfg.time_gap * (v + Ts * accel)


def spacing_accel_bound(cfg: AccConfig, ego_velocity: float, mio: MioReference) -> float:
    """
    Largest acceleration whose one-step prediction keeps D >= D_safe.
    """
    Ts = cfg.sample_time
    v = max(float(ego_velocity), 0.0)
    margin = mio.distance - cfg.safe_distance(v) + Ts * mio.relative_velocity
    return margin / (Ts * (0.5 * Ts + cfg.time_gap))
