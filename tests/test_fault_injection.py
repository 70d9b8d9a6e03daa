# tests/test_fault_injection.py
import numpy as np

from diagnostics.fault_injection import FaultInjector, FaultConfig
from processing.detection import Detection, validate_detections


def _dets(n=3):
    return [Detection(np.array([20.0 + 10 * i, 0.0]), np.eye(2) * 0.25, sensor_id=1, timestamp=0.0)
            for i in range(n)]


def test_disabled_injector_is_a_no_op():
    fi = FaultInjector(FaultConfig(enabled=False, drop_detections=1.0, spike_prob=1.0,
                                   corrupt_covariance_prob=1.0, clutter_prob=1.0))
    dets = _dets()

    assert fi.maybe_drop_detections(dets) == dets
    assert fi.maybe_spike(dets) == (dets, 0)
    assert fi.maybe_corrupt_covariance(dets) == (dets, 0)
    assert fi.maybe_clutter(0.0) == []


def test_drop_detections_empties_list():
    fi = FaultInjector(FaultConfig(enabled=True, drop_detections=1.0, rng_seed=123))

    assert fi.maybe_drop_detections(_dets()) == []


def test_spike_moves_detections():
    fi = FaultInjector({"enabled": True, "spike_prob": 1.0, "spike_scale": 5.0, "rng_seed": 123})
    dets = _dets()

    out, spiked = fi.maybe_spike(dets)

    assert spiked == 3
    assert all(not np.allclose(a.position, b.position) for a, b in zip(out, dets))


def test_corrupted_covariance_is_rejected_by_validation():
    fi = FaultInjector(FaultConfig(enabled=True, corrupt_covariance_prob=1.0, rng_seed=1))

    out, corrupted = fi.maybe_corrupt_covariance(_dets())
    accepted, rejected = validate_detections(out)

    assert corrupted == 3
    assert accepted == []
    assert len(rejected) == 3


def test_clutter_lands_in_front_of_ego():
    cfg = FaultConfig(enabled=True, clutter_prob=1.0, clutter_max_range=50.0,
                      clutter_half_width=5.0, rng_seed=7)
    fi = FaultInjector(cfg)

    for k in range(20):
        (det,) = fi.maybe_clutter(0.1 * k)
        assert 1.0 <= det.position[0] <= 50.0
        assert abs(det.position[1]) <= 5.0
        assert det.sensor_id == cfg.clutter_sensor_id
        assert det.timestamp == 0.1 * k


def test_same_seed_gives_same_faults():
    a = FaultInjector(FaultConfig(enabled=True, drop_detections=0.5, rng_seed=42))
    b = FaultInjector(FaultConfig(enabled=True, drop_detections=0.5, rng_seed=42))
    dets = _dets(10)

    assert a.maybe_drop_detections(dets) == b.maybe_drop_detections(dets)
