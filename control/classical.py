# control/classical.py
from __future__ import annotations

import logging

from control.acc_config import AccConfig
from control.command import AccCommand, ControlStatus, inputs_problem, spacing_accel_bound
from selection.lead_car import MioReference

logger = logging.getLogger(__name__)


class ClassicalAcc:
    """
    Switched proportional ACC.

    Speed control:   a_v = k_v (V_set - V_x)
    Spacing control: a_d = k_d (D_rel - D_safe) + k_vrel V_rel,
                     capped so the one-step prediction keeps D_rel >= D_safe
    Output:          a_v with no MIO, min(a_v, a_d) otherwise, clamped.

    Memoryless: the output depends only on the current inputs.
    """

    def __init__(self, config: AccConfig | None = None):
        self.cfg = AccConfig() if config is None else config

    def reset(self) -> None:
        pass

    def note_applied(self, acceleration: float) -> None:
        pass

    def speed_term(self, ego_velocity: float, set_velocity: float) -> float:
        return self.cfg.verr_gain * (set_velocity - ego_velocity)

    def spacing_term(self, ego_velocity: float, mio: MioReference) -> float:
        d_safe = self.cfg.safe_distance(ego_velocity)
        a_d = self.cfg.xerr_gain * (mio.distance - d_safe) + self.cfg.vx_gain * mio.relative_velocity
        return min(a_d, spacing_accel_bound(self.cfg, ego_velocity, mio))

    def compute(self, ego_velocity: float, set_velocity: float, mio: MioReference | None) -> AccCommand:
        problem = inputs_problem(ego_velocity, set_velocity, mio)
        if problem is not None:
            logger.warning("Classical ACC fallback: %s", problem)
            return AccCommand(self.cfg.min_accel, ControlStatus.INVALID_INPUT, problem)

        v = max(float(ego_velocity), 0.0)
        v_set = max(float(set_velocity), 0.0)

        accel = self.speed_term(v, v_set)
        if mio is not None:
            accel = min(accel, self.spacing_term(v, mio))

        return AccCommand(self.cfg.clamp(accel))
