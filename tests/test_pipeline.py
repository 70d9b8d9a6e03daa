import numpy as np
import pytest

from control.command import ControlStatus
from control.mpc import MpcAcc
from diagnostics.fault_injection import FaultConfig, FaultInjector
from diagnostics.health_monitor import HealthConfig, HealthMonitor
from diagnostics.metrics import (
    CYCLE_ERRORS,
    CYCLE_LATENCY,
    DETECTIONS_REJECTED,
    DETECTIONS_TOTAL,
    MIO_TRACK_ID,
    MetricsRegistry,
)
from processing.detection import Detection
from processing.errors import ConfigurationError
from processing.pipeline import AccPipeline, PipelineConfig
from selection.lead_car import LaneGeometry

LANE = LaneGeometry(curvature=0.0, lane_width=3.6)


def _det(x, y, sensor_id, t, var=0.25):
    return Detection(np.array([x, y]), np.eye(2) * var, sensor_id=sensor_id, timestamp=t)


def _lead_car_cycles(pipeline, n, x0=50.0, closing=0.0):
    result = None
    for k in range(n):
        t = 0.1 * k
        x = x0 + closing * t
        result = pipeline.step({1: [_det(x, 0.2, 1, t)], 2: [_det(x + 0.3, 0.1, 2, t, var=0.5)]},
                               t, LANE, 20.0, 30.0)
    return result


def test_lead_car_seen_by_two_sensors_becomes_one_mio():
    pipeline = AccPipeline()

    result = _lead_car_cycles(pipeline, 5)

    assert len(result.clusters) == 1
    assert len(result.tracks) == 1
    assert result.mio is not None
    assert result.mio.track_id == result.tracks[0].track_id
    assert result.mio.distance == pytest.approx(50.1, abs=1.0)
    assert result.status is ControlStatus.NOMINAL


def test_clear_road_accelerates_towards_set_speed():
    pipeline = AccPipeline()

    result = pipeline.step([], 0.0, LANE, 20.0, 30.0)

    assert result.mio is None
    assert result.acceleration > 0.0


def test_close_lead_car_makes_ego_brake():
    pipeline = AccPipeline()

    result = _lead_car_cycles(pipeline, 5, x0=15.0, closing=-5.0)

    assert result.mio is not None
    assert result.acceleration < 0.0


def test_mpc_pipeline_output_is_bounded():
    pipeline = AccPipeline({"acc": {"controller_type": "mpc", "mpc": {"max_solve_time": 1.0}}})
    assert isinstance(pipeline.controller, MpcAcc)

    result = _lead_car_cycles(pipeline, 5, x0=40.0, closing=-2.0)

    assert -3.0 <= result.acceleration <= 2.0


def test_lane_may_be_given_as_dict():
    pipeline = AccPipeline()

    result = pipeline.step([], 0.0, {"curvature": 0.001, "lane_width": 3.5}, 20.0, 30.0)

    assert result.status is ControlStatus.NOMINAL


def test_cycle_errors_are_contained():
    metrics = MetricsRegistry()
    pipeline = AccPipeline(metrics=metrics)

    result = pipeline.step([], 0.0, {"lane_width": -1.0}, 20.0, 30.0)

    assert result.status is ControlStatus.INVALID_INPUT
    assert result.acceleration == -3.0
    assert metrics.counter(CYCLE_ERRORS) == 1

    pipeline.step([], 1.0, LANE, 20.0, 30.0)
    result = pipeline.step([], 0.5, LANE, 20.0, 30.0)
    assert result.status is ControlStatus.INVALID_INPUT
    assert metrics.counter(CYCLE_ERRORS) == 2


def test_mixed_timestamps_within_a_sensor_are_dropped_not_fatal():
    pipeline = AccPipeline()

    result = pipeline.step([_det(30.0, 0.0, 1, 0.0), _det(31.0, 0.0, 1, 0.5)], 0.0, LANE, 20.0, 30.0)

    assert result.clusters == ()
    assert result.status is ControlStatus.NOMINAL


def test_metrics_are_recorded():
    metrics = MetricsRegistry()
    pipeline = AccPipeline(metrics=metrics)

    result = _lead_car_cycles(pipeline, 5)
    pipeline.step([_det(400.0, 0.0, 1, 0.5)], 0.5, LANE, 20.0, 30.0)

    snap = metrics.snapshot()
    assert snap["counters"][DETECTIONS_TOTAL] == 11
    assert snap["counters"][DETECTIONS_REJECTED] == 1
    assert snap["timers"][CYCLE_LATENCY]["count"] == 6
    assert metrics.gauge(MIO_TRACK_ID) == result.mio.track_id


def test_degraded_health_freezes_track_births():
    metrics = MetricsRegistry()
    fi = FaultInjector(FaultConfig(enabled=True, corrupt_covariance_prob=1.0, rng_seed=3))
    health = HealthMonitor(HealthConfig(rejected_enter=1, enter_count_required=1))
    pipeline = AccPipeline(metrics=metrics, fault_injector=fi, health_monitor=health)

    result = pipeline.step([_det(30.0, 0.0, 1, 0.0)], 0.0, LANE, 20.0, 30.0)

    assert result.health == HealthMonitor.DEGRADED
    assert result.rejected == 1
    assert pipeline.tracker.birth_enabled is False


def test_reset_clears_tracks_and_mio():
    pipeline = AccPipeline()
    _lead_car_cycles(pipeline, 5)

    pipeline.reset()

    assert pipeline.tracker.tracks == []
    assert pipeline.selector.previous_id is None


def test_config_from_dict_rejects_unknown_sections():
    with pytest.raises(ConfigurationError):
        PipelineConfig.from_dict({"radar": {}})
    with pytest.raises(ConfigurationError):
        PipelineConfig.from_dict({"cluster": {"gate": 0.0}})


def test_config_from_dict_builds_sections():
    cfg = PipelineConfig.from_dict({
        "cluster": {"gate": 2.0},
        "tracker": {"max_tracks": 8},
        "selector": {"hysteresis": 0.5},
        "acc": {"controller_type": 2, "time_gap": 1.2},
    })

    assert cfg.cluster.gate == 2.0
    assert cfg.tracker.max_tracks == 8
    assert cfg.selector.hysteresis == 0.5
    assert cfg.acc.controller_type == "mpc"


@pytest.mark.parametrize("sensor_detections, lane, ego_velocity", [
    ([], {"curvature": 0.0, "radius": 500.0}, 20.0),
    ([], LANE, None),
    (None, LANE, 20.0),
])
def test_malformed_inputs_are_contained(sensor_detections, lane, ego_velocity):
    pipeline = AccPipeline()

    result = pipeline.step(sensor_detections, 0.0, lane, ego_velocity, 30.0)

    assert result.status is ControlStatus.INVALID_INPUT
    assert result.acceleration == -3.0


def test_cycle_fallback_is_reported_to_the_controller():
    cfg = {"acc": {"controller_type": "mpc", "mpc": {"max_solve_time": 1.0}}}
    pipeline = AccPipeline(cfg)
    pipeline.step([], 1.0, LANE, 20.0, 30.0)

    failed = pipeline.step([], 0.5, LANE, 20.0, 30.0)
    assert failed.status is ControlStatus.INVALID_INPUT
    assert pipeline.controller.last_command == -3.0

    result = pipeline.step([], 1.1, LANE, 20.0, 30.0)
    assert result.status is ControlStatus.NOMINAL
    assert result.acceleration <= -3.0 + 10.0 * 0.1 + 1e-3
