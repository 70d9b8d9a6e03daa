import numpy as np
import pytest

from control.acc_config import AccConfig, MpcConfig
from control.classical import ClassicalAcc
from control.command import ControlStatus, predict_gap, spacing_accel_bound
from control.factory import make_controller
from control.mpc import MpcAcc
from processing.errors import ConfigurationError
from selection.lead_car import MioReference


def _mio(distance, relative_velocity=0.0, track_id=1):
    return MioReference(track_id=track_id, distance=distance,
                        relative_velocity=relative_velocity, lateral_offset=0.0)


def _mpc_config(**kw):
    mpc = {"max_solve_time": 1.0}
    mpc.update(kw.pop("mpc", {}))
    return AccConfig(controller_type="mpc", mpc=mpc, **kw)


def _random_inputs(n, seed=0):
    rng = np.random.default_rng(seed)
    for _ in range(n):
        v = rng.uniform(0.0, 35.0)
        v_set = rng.uniform(0.0, 35.0)
        mio = None if rng.random() < 0.3 else _mio(rng.uniform(1.0, 150.0), rng.uniform(-15.0, 10.0))
        yield v, v_set, mio


# -----------------------------
# Classical
# -----------------------------
def test_classical_speeds_up_on_clear_road():
    cmd = ClassicalAcc().compute(20.0, 30.0, None)

    assert cmd.status is ControlStatus.NOMINAL
    assert 0.0 < cmd.acceleration <= 2.0


def test_classical_brakes_hard_when_too_close():
    cfg = AccConfig(default_spacing=10.0, time_gap=0.8)
    cmd = ClassicalAcc(cfg).compute(25.0, 30.0, _mio(10.0, 0.0))

    assert cmd.acceleration == pytest.approx(cfg.min_accel)


def test_classical_output_is_bounded():
    ctrl = ClassicalAcc()
    for v, v_set, mio in _random_inputs(300):
        a = ctrl.compute(v, v_set, mio).acceleration
        assert -3.0 <= a <= 2.0


def test_classical_keeps_one_step_safe_distance_when_possible():
    cfg = AccConfig()
    ctrl = ClassicalAcc(cfg)
    for v, v_set, mio in _random_inputs(300, seed=1):
        if mio is None or spacing_accel_bound(cfg, v, mio) < cfg.min_accel:
            continue
        a = ctrl.compute(v, v_set, mio).acceleration
        distance, safe = predict_gap(cfg, v, mio, a)
        assert distance >= safe - 1e-9


def test_classical_is_memoryless():
    ctrl = ClassicalAcc()
    first = ctrl.compute(22.0, 30.0, _mio(45.0, -1.0))
    ctrl.compute(5.0, 30.0, _mio(12.0, -8.0))

    assert ctrl.compute(22.0, 30.0, _mio(45.0, -1.0)) == first


def test_classical_rejects_non_finite_inputs():
    cmd = ClassicalAcc().compute(float("nan"), 30.0, None)

    assert cmd.status is ControlStatus.INVALID_INPUT
    assert cmd.acceleration == -3.0


# -----------------------------
# MPC
# -----------------------------
def test_mpc_speeds_up_on_clear_road():
    cmd = MpcAcc(_mpc_config()).compute(20.0, 30.0, None)

    assert cmd.status is ControlStatus.NOMINAL
    assert 0.0 < cmd.acceleration <= 2.0


def test_mpc_reports_infeasible_when_too_close():
    cfg = _mpc_config(default_spacing=10.0, time_gap=0.8)
    ctrl = MpcAcc(cfg)

    cmd = ctrl.compute(25.0, 30.0, _mio(10.0, 0.0))

    assert cmd.status is ControlStatus.INFEASIBLE
    assert cmd.acceleration == cfg.min_accel


def test_mpc_follows_lead_within_safe_distance():
    cfg = _mpc_config()
    ctrl = MpcAcc(cfg)
    mio = _mio(60.0, 0.0)

    cmd = ctrl.compute(20.0, 30.0, mio)

    assert cmd.status is ControlStatus.NOMINAL
    distance, safe = predict_gap(cfg, 20.0, mio, cmd.acceleration)
    assert distance >= safe - cfg.mpc.constraint_tolerance - 1e-6

    sol = ctrl.last_solution
    assert sol.sequence.shape == (cfg.mpc.horizon,)
    assert np.all(sol.sequence >= cfg.min_accel - 1e-9)
    assert np.all(sol.sequence <= cfg.max_accel + 1e-9)


def test_mpc_output_is_bounded_and_safe_when_nominal():
    cfg = _mpc_config(mpc={"horizon": 15})
    ctrl = MpcAcc(cfg)
    for v, v_set, mio in _random_inputs(40, seed=2):
        ctrl.reset()
        cmd = ctrl.compute(v, v_set, mio)
        assert cfg.min_accel <= cmd.acceleration <= cfg.max_accel
        if cmd.status is ControlStatus.NOMINAL and mio is not None:
            distance, safe = predict_gap(cfg, v, mio, cmd.acceleration)
            assert distance >= safe - cfg.mpc.constraint_tolerance - 1e-6
        elif cmd.status is not ControlStatus.NOMINAL:
            assert cmd.acceleration == cfg.min_accel


def test_mpc_respects_rate_limit_from_previous_command():
    cfg = _mpc_config()
    ctrl = MpcAcc(cfg)

    sol = ctrl.solve(20.0, 30.0, None, u_prev=-3.0)

    assert sol.status is ControlStatus.NOMINAL
    assert sol.first <= -3.0 + cfg.mpc.max_jerk * cfg.sample_time + 1e-3


def test_mpc_warm_start_does_not_change_solution():
    ctrl = MpcAcc(_mpc_config())
    mio = _mio(50.0, -2.0)

    cold = ctrl.solve(22.0, 30.0, mio)
    warm = ctrl.solve(22.0, 30.0, mio, warm_start=np.linspace(-1.0, 1.0, 30))

    assert cold.status is ControlStatus.NOMINAL
    assert warm.status is ControlStatus.NOMINAL
    assert warm.first == pytest.approx(cold.first, abs=5e-2)


def test_mpc_timeout_applies_min_accel():
    cfg = _mpc_config(mpc={"max_solve_time": 1e-9})
    ctrl = MpcAcc(cfg)

    cmd = ctrl.compute(20.0, 30.0, None)

    assert cmd.status is ControlStatus.TIMEOUT
    assert cmd.acceleration == cfg.min_accel


def test_mpc_timeout_can_hold_previous_command():
    cfg = _mpc_config(mpc={"timeout_fallback": "previous"})
    ctrl = MpcAcc(cfg)
    nominal = ctrl.compute(20.0, 30.0, None)
    assert nominal.status is ControlStatus.NOMINAL

    cfg.mpc.max_solve_time = 1e-9
    cmd = ctrl.compute(20.0, 30.0, None)

    assert cmd.status is ControlStatus.TIMEOUT
    assert cmd.acceleration == nominal.acceleration


def test_mpc_rejects_non_finite_inputs():
    cmd = MpcAcc(_mpc_config()).compute(20.0, 30.0, _mio(float("inf"), 0.0))

    assert cmd.status is ControlStatus.INVALID_INPUT
    assert cmd.acceleration == -3.0


# -----------------------------
# Config / factory
# -----------------------------
def test_factory_selects_controller():
    assert isinstance(make_controller(AccConfig(controller_type=1)), ClassicalAcc)
    assert isinstance(make_controller({"controller_type": 2}), MpcAcc)
    assert isinstance(make_controller({"controller_type": "MPC"}), MpcAcc)
    assert isinstance(make_controller(), ClassicalAcc)


@pytest.mark.parametrize("kwargs", [
    {"controller_type": "pid"},
    {"sample_time": 0.0},
    {"min_accel": 1.0},
    {"min_accel": -3.0, "max_accel": -1.0},
    {"time_gap": -1.0},
    {"mpc": {"horizon": 0}},
    {"mpc": {"timeout_fallback": "hold"}},
])
def test_invalid_config_is_rejected(kwargs):
    with pytest.raises(ConfigurationError):
        AccConfig(**kwargs)


def test_safe_distance_uses_time_gap():
    cfg = AccConfig(default_spacing=10.0, time_gap=0.8)

    assert cfg.safe_distance(25.0) == pytest.approx(30.0)
    assert cfg.safe_distance(-5.0) == pytest.approx(10.0)


def test_mpc_config_defaults():
    cfg = MpcConfig()

    assert cfg.horizon == 30
    assert cfg.timeout_fallback == "min_accel"


def test_mpc_noisy_steady_following_does_not_fall_back():
    cfg = _mpc_config(mpc={"horizon": 15})
    ctrl = MpcAcc(cfg)
    rng = np.random.default_rng(4)
    Ts = cfg.sample_time

    v = v_lead = 25.0
    gap = cfg.safe_distance(v) + cfg.mpc.spacing_margin
    for _ in range(60):
        mio = _mio(gap + rng.normal(0.0, 0.3), v_lead - v + rng.normal(0.0, 0.1))
        cmd = ctrl.compute(v, 30.0, mio)
        assert cmd.status is ControlStatus.NOMINAL, cmd.message

        a = cmd.acceleration
        gap += Ts * (v_lead - v) - 0.5 * Ts * Ts * a
        v += Ts * a


def test_mpc_note_applied_reanchors_rate_limit():
    cfg = _mpc_config()
    ctrl = MpcAcc(cfg)
    ctrl.compute(20.0, 30.0, None)

    ctrl.note_applied(cfg.min_accel)
    cmd = ctrl.compute(20.0, 30.0, None)

    assert ctrl.last_command == cmd.acceleration
    assert cmd.acceleration <= cfg.min_accel + cfg.mpc.max_jerk * cfg.sample_time + 1e-3


def test_negative_spacing_margin_is_rejected():
    with pytest.raises(ConfigurationError):
        MpcConfig(spacing_margin=-1.0)
