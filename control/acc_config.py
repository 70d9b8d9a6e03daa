# control/acc_config.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict

from processing.errors import ConfigurationError


CONTROLLER_TYPES = {
    1: "classical",
    2: "mpc",
    "classical": "classical",
    "mpc": "mpc",
}

TIMEOUT_FALLBACKS = ("min_accel", "previous")


@dataclass
class MpcConfig:
    horizon: int = 30                   # prediction steps N

    # Cost weights
    weight_velocity: float = 1.0        # (v_k - V_set)^2
    weight_accel: float = 0.1           # u_k^2
    weight_jerk: float = 0.5            # (u_k - u_{k-1})^2

    max_jerk: float = 10.0              # m/s^3; per-step change <= max_jerk * Ts
    spacing_margin: float = 2.0         # m planned above D_safe; absorbs gap noise

    # Solver budget
    max_iterations: int = 100
    max_solve_time: float = 0.05        # seconds
    constraint_tolerance: float = 1e-3  # metres of spacing violation accepted
    timeout_fallback: str = "min_accel"

    def __post_init__(self):
        if int(self.horizon) <= 0:
            raise ConfigurationError("horizon must be positive")
        self.horizon = int(self.horizon)
        if self.weight_velocity <= 0:
            raise ConfigurationError("weight_velocity must be positive")
        if self.weight_accel < 0 or self.weight_jerk < 0:
            raise ConfigurationError("cost weights must be >= 0")
        if self.max_jerk <= 0:
            raise ConfigurationError("max_jerk must be positive")
        if self.spacing_margin < 0:
            raise ConfigurationError("spacing_margin must be >= 0")
        if self.max_iterations < 1:
            raise ConfigurationError("max_iterations must be >= 1")
        if self.max_solve_time <= 0:
            raise ConfigurationError("max_solve_time must be positive")
        if self.constraint_tolerance < 0:
            raise ConfigurationError("constraint_tolerance must be >= 0")
        if self.timeout_fallback not in TIMEOUT_FALLBACKS:
            raise ConfigurationError(f"timeout_fallback must be one of {TIMEOUT_FALLBACKS}")


@dataclass
class AccConfig:
    """
    Shared ACC design parameters plus the gains of each control law.

    Safe distance: D_safe = default_spacing + time_gap * V_x
    """

    controller_type: Any = "classical"
    sample_time: float = 0.1            # Ts (s)

    default_spacing: float = 10.0       # D_default (m)
    time_gap: float = 1.5               # h (s)
    min_accel: float = -3.0             # m/s^2
    max_accel: float = 2.0              # m/s^2

    # Classical (switched) law gains
    verr_gain: float = 0.5              # speed error
    xerr_gain: float = 0.2              # spacing error
    vx_gain: float = 0.4                # relative velocity

    mpc: MpcConfig = field(default_factory=MpcConfig)

    def __post_init__(self):
        key = self.controller_type.lower() if isinstance(self.controller_type, str) else self.controller_type
        if key not in CONTROLLER_TYPES:
            raise ConfigurationError(f"Unknown controller_type: {self.controller_type!r}")
        self.controller_type = CONTROLLER_TYPES[key]

        if isinstance(self.mpc, dict):
            self.mpc = MpcConfig(**self.mpc)

        if self.sample_time <= 0:
            raise ConfigurationError("sample_time must be positive")
        if self.default_spacing < 0 or self.time_gap < 0:
            raise ConfigurationError("default_spacing and time_gap must be >= 0")
        if not (self.min_accel < 0.0 <= self.max_accel):
            raise ConfigurationError("acceleration bounds must satisfy min_accel < 0 <= max_accel")
        if min(self.verr_gain, self.xerr_gain, self.vx_gain) < 0:
            raise ConfigurationError("classical gains must be >= 0")

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "AccConfig":
        return cls(**d)

    def safe_distance(self, ego_velocity: float) -> float:
        return self.default_spacing + self.time_gap * max(float(ego_velocity), 0.0)

    def clamp(self, accel: float) -> float:
        return max(self.min_accel, min(self.max_accel, float(accel)))
