# control/mpc.py
from __future__ import annotations

from dataclasses import dataclass
import logging
import time

import numpy as np
from scipy.optimize import minimize

from control.acc_config import AccConfig
from control.command import (
    AccCommand,
    ControlStatus,
    inputs_problem,
    spacing_accel_bound,
)
from selection.lead_car import MioReference

logger = logging.getLogger(__name__)


class _SolverDeadline(Exception):
    pass


@dataclass
class MpcSolution:
    status: ControlStatus
    sequence: np.ndarray | None
    iterations: int = 0
    solve_time: float = 0.0
    message: str = ""

    @property
    def first(self) -> float | None:
        return None if self.sequence is None else float(self.sequence[0])


class MpcAcc:
    """
    Receding-horizon ACC.

    Decision variable u = [u_0 .. u_{N-1}] (ego acceleration). With a lead car
    at constant speed v_L = V_x + V_rel, the kinematic predictions are linear:

      v_k = V_x + Ts * sum_{j<k} u_j
      D_k = D_0 + k Ts V_rel - Ts^2 * sum_{j<k} (k - j - 1/2) u_j

    Minimise  sum w_v (v_k - V_set)^2 + w_u u_k^2 + w_du (u_k - u_{k-1})^2
    s.t.      min_accel <= u_k <= max_accel
              |u_k - u_{k-1}| <= max_jerk * Ts
              D_k >= D_default + h v_k + margin,   k = 1..N   (only with a MIO)
    """

    def __init__(self, config: AccConfig | None = None):
        self.cfg = AccConfig(controller_type="mpc") if config is None else config
        self.mcfg = self.cfg.mpc

        N = self.mcfg.horizon
        Ts = self.cfg.sample_time
        k = np.arange(1, N + 1, dtype=float)

        # v = v0 + Ts * L u
        self._L = np.tril(np.ones((N, N)))
        # D = D0 + Ts V_rel k - Ts^2 M u
        diff = k[:, None] - np.arange(N)[None, :] - 0.5
        self._M = np.where(diff > 0, diff, 0.0)
        self._k = k
        # Spacing constraint rows: A_gap u <= b_gap
        self._A_gap = Ts * Ts * self._M + self.cfg.time_gap * Ts * self._L
        # Step-to-step differences u_k - u_{k-1}, k >= 1
        self._Dfirst = np.eye(N) - np.eye(N, k=-1)

        self._warm_start: np.ndarray | None = None
        self._last_command: float | None = None

        self.last_solution: MpcSolution | None = None

    def reset(self) -> None:
        self._warm_start = None
        self._last_command = None
        self.last_solution = None

    @property
    def last_command(self) -> float | None:
        return self._last_command

    def note_applied(self, acceleration: float) -> None:
        """Re-anchor the rate limit on a command applied outside `compute`."""
        self._last_command = float(acceleration)
        self._warm_start = None

    # -----------------------------
    # Problem construction
    # -----------------------------
    def _cost(self, v0: float, v_set: float, u_prev: float | None):
        N = self.mcfg.horizon
        Ts = self.cfg.sample_time
        w_v, w_u, w_du = self.mcfg.weight_velocity, self.mcfg.weight_accel, self.mcfg.weight_jerk

        D = self._Dfirst.copy()
        e = np.zeros(N)
        if u_prev is None:
            D[0, :] = 0.0
        else:
            e[0] = u_prev

        L = self._L
        H = 2.0 * (w_v * Ts * Ts * L.T @ L + w_u * np.eye(N) + w_du * D.T @ D)
        f = 2.0 * (w_v * Ts * (v0 - v_set) * L.T @ np.ones(N) - w_du * D.T @ e)
        return H, f

    def _inequalities(self, v0: float, mio: MioReference | None, u_prev: float | None,
                      margin: float = 0.0):
        """Stack all constraints as G u <= h; `margin` tightens the spacing rows."""
        N = self.mcfg.horizon
        Ts = self.cfg.sample_time
        du_max = self.mcfg.max_jerk * Ts

        D = self._Dfirst.copy()
        e = np.zeros(N)
        if u_prev is None:
            D = D[1:]
            e = e[1:]
        else:
            e[0] = u_prev

        G = [D, -D]
        h = [du_max + e, du_max - e]

        if mio is not None:
            b_gap = (mio.distance + Ts * mio.relative_velocity * self._k
                     - self.cfg.default_spacing - self.cfg.time_gap * v0 - margin)
            G.append(self._A_gap)
            h.append(b_gap)

        return np.vstack(G), np.concatenate(h)

    def _initial_guess(self, warm_start: np.ndarray | None, u_prev: float | None) -> np.ndarray:
        N = self.mcfg.horizon
        if warm_start is not None and len(warm_start) == N and np.all(np.isfinite(warm_start)):
            guess = np.asarray(warm_start, dtype=float)
        else:
            guess = np.full(N, 0.0 if u_prev is None else u_prev)
        return np.clip(guess, self.cfg.min_accel, self.cfg.max_accel)

    # -----------------------------
    # Solve
    # -----------------------------
    def _minimize(self, H, f, G, h, x0, deadline):
        def objective(u):
            if time.perf_counter() > deadline:
                raise _SolverDeadline()
            Hu = H @ u
            return 0.5 * u @ Hu + f @ u, Hu + f

        constraints = [{
            "type": "ineq",
            "fun": lambda u: h - G @ u,
            "jac": lambda u: -G,
        }]
        bounds = [(self.cfg.min_accel, self.cfg.max_accel)] * self.mcfg.horizon

        res = minimize(
            objective,
            x0,
            jac=True,
            method="SLSQP",
            bounds=bounds,
            constraints=constraints,
            options={"maxiter": self.mcfg.max_iterations, "ftol": 1e-8},
        )
        if not res.success or not np.all(np.isfinite(res.x)):
            return None, int(getattr(res, "nit", 0)), str(res.message)

        u = np.clip(res.x, self.cfg.min_accel, self.cfg.max_accel)
        violation = float(np.max(G @ u - h, initial=0.0))
        if violation > self.mcfg.constraint_tolerance:
            return None, int(getattr(res, "nit", 0)), f"constraint violation {violation:.3g}"
        return u, int(getattr(res, "nit", 0)), str(res.message)

    def solve(
        self,
        ego_velocity: float,
        set_velocity: float,
        mio: MioReference | None,
        u_prev: float | None = None,
        warm_start: np.ndarray | None = None,
    ) -> MpcSolution:
        """
        Solve one horizon. `warm_start` only seeds the solver.

        The spacing rows are first tightened by `spacing_margin`, so steady
        following settles inside the safe set. If that problem has no
        solution (a noisy gap dipped into the margin) it is solved again
        against the plain safe distance before giving up.

        Returns:
            MpcSolution with status NOMINAL and the optimal sequence, or
            INFEASIBLE / TIMEOUT and no sequence
        """
        v0 = max(float(ego_velocity), 0.0)
        v_set = max(float(set_velocity), 0.0)

        H, f = self._cost(v0, v_set, u_prev)
        x0 = self._initial_guess(warm_start, u_prev)

        margins = [self.mcfg.spacing_margin]
        if mio is not None and self.mcfg.spacing_margin > 0:
            margins.append(0.0)

        t0 = time.perf_counter()
        deadline = t0 + self.mcfg.max_solve_time
        iterations = 0
        message = ""

        for margin in margins:
            G, h = self._inequalities(v0, mio, u_prev, margin)
            try:
                u, nit, message = self._minimize(H, f, G, h, x0, deadline)
            except _SolverDeadline:
                elapsed = time.perf_counter() - t0
                return MpcSolution(ControlStatus.TIMEOUT, None, iterations, elapsed,
                                   f"deadline {self.mcfg.max_solve_time * 1e3:.1f} ms exceeded")
            iterations += nit
            if u is not None:
                return MpcSolution(ControlStatus.NOMINAL, u, iterations,
                                   time.perf_counter() - t0, message)

        return MpcSolution(ControlStatus.INFEASIBLE, None, iterations, time.perf_counter() - t0, message)

    def _timeout_command(self, ego_velocity: float, mio: MioReference | None) -> float:
        if self.mcfg.timeout_fallback == "previous" and self._last_command is not None:
            previous = self._last_command
            if mio is None or previous <= spacing_accel_bound(self.cfg, ego_velocity, mio):
                return previous
        return self.cfg.min_accel

    def compute(self, ego_velocity: float, set_velocity: float, mio: MioReference | None) -> AccCommand:
        problem = inputs_problem(ego_velocity, set_velocity, mio)
        if problem is not None:
            logger.warning("MPC ACC fallback: %s", problem)
            self._warm_start = None
            self._last_command = self.cfg.min_accel
            return AccCommand(self.cfg.min_accel, ControlStatus.INVALID_INPUT, problem)

        sol = self.solve(ego_velocity, set_velocity, mio,
                         u_prev=self._last_command, warm_start=self._warm_start)
        self.last_solution = sol

        if sol.status is ControlStatus.NOMINAL:
            accel = self.cfg.clamp(sol.first)
            self._warm_start = np.append(sol.sequence[1:], sol.sequence[-1])
        else:
            if sol.status is ControlStatus.TIMEOUT:
                accel = self._timeout_command(ego_velocity, mio)
            else:
                accel = self.cfg.min_accel
            logger.warning("MPC %s: %s; applying %.2f m/s^2", sol.status.value, sol.message, accel)
            self._warm_start = None

        self._last_command = accel
        return AccCommand(accel, sol.status, sol.message)
