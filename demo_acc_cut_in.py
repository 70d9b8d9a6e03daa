# demo_acc_cut_in.py
#
# Closed-loop cut-in on a curved road.
#
#   python demo_acc_cut_in.py [classical|mpc] [faults]
#
# The ego car is a point mass that applies the commanded acceleration
# exactly; radar and vision detections are synthesised inline. Both are
# stand-ins for the vehicle/sensor environment and not part of the core.
import logging
import sys

import numpy as np

from processing.detection import Detection
from processing.pipeline import AccPipeline, PipelineConfig
from selection.lead_car import LaneGeometry

from diagnostics.metrics import (
    MetricsRegistry,
    CYCLE_LATENCY,
    CONTROLLER_FALLBACKS,
    DETECTIONS_REJECTED,
    FAULTS_INJECTED,
)
from diagnostics.fault_injection import FaultInjector, FaultConfig
from diagnostics.health_monitor import HealthMonitor, HealthConfig


# -----------------------------
# Scenario
# -----------------------------
Ts = 0.1
duration = 40.0
curvature = 1.0 / 800.0          # left-hand curve
lane_width = 3.6

v_set = 30.0
ego = {"s": 0.0, "v": 22.0}

# Arc position, lateral offset (left positive), speed
# The cut-in car stays between the ego car and the lead until it leaves
actors = [
    {"name": "lead",   "s": 80.0, "d": 0.0,        "v": 26.0},
    {"name": "cut-in", "s": 45.0, "d": lane_width, "v": 27.0},
]
cut_in_start, cut_in_end = 11.0, 14.0
cut_out_start, cut_out_end = 20.0, 23.0

RADAR_ID = 1
VISION_ID = 2

rng = np.random.default_rng(7)


def world_pose(s, d):
    """Point at arc length s and offset d on a circle of radius 1/curvature."""
    R = 1.0 / curvature
    theta = s / R
    return np.array([(R - d) * np.sin(theta), R - (R - d) * np.cos(theta)]), theta


def to_ego(s, d, v):
    p_e, th_e = world_pose(ego["s"], 0.0)
    p_a, th_a = world_pose(s, d)
    c, sn = np.cos(-th_e), np.sin(-th_e)
    rot = np.array([[c, -sn], [sn, c]])
    v_rel_world = v * np.array([np.cos(th_a), np.sin(th_a)]) - ego["v"] * np.array([np.cos(th_e), np.sin(th_e)])
    return rot @ (p_a - p_e), rot @ v_rel_world


def cut_in_offset(t):
    if t < cut_in_start:
        return lane_width
    if t < cut_in_end:
        return lane_width * (1.0 - (t - cut_in_start) / (cut_in_end - cut_in_start))
    if t < cut_out_start:
        return 0.0
    if t < cut_out_end:
        return -lane_width * (t - cut_out_start) / (cut_out_end - cut_out_start)
    return -lane_width


def sense(t):
    detections = []
    for actor in actors:
        pos, vel = to_ego(actor["s"], actor["d"], actor["v"])
        if pos[0] <= 0 or pos[0] > 150:
            continue

        rng_m = float(np.hypot(*pos))
        bearing = float(np.arctan2(pos[1], pos[0]))
        range_rate = float(pos @ vel / rng_m)

        # Radar: range/bearing/range-rate, sometimes two returns per car
        for _ in range(1 + int(rng.random() < 0.4)):
            detections.append(Detection.from_polar(
                rng_m + rng.normal(0, 0.3),
                bearing + rng.normal(0, np.deg2rad(0.8)),
                sensor_id=RADAR_ID,
                timestamp=t,
                sigma_range=0.3,
                sigma_bearing=np.deg2rad(0.8),
                range_rate=range_rate + rng.normal(0, 0.2),
                sigma_range_rate=0.2,
            ))

        # Vision: good lateral accuracy, poor range
        if pos[0] < 80 and rng.random() < 0.9:
            sigma = np.array([0.05 * pos[0] + 0.5, 0.2])
            detections.append(Detection(
                position=pos + rng.normal(0, sigma),
                covariance=np.diag(sigma ** 2),
                sensor_id=VISION_ID,
                timestamp=t,
            ))
    return detections


def main():
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")

    controller_type = sys.argv[1] if len(sys.argv) > 1 else "classical"
    with_faults = "faults" in sys.argv[2:]

    config = PipelineConfig.from_dict({
        "acc": {"controller_type": controller_type, "sample_time": Ts},
        "tracker": {"dt_default": Ts},
    })

    metrics = MetricsRegistry(window_size=100)
    fault_injector = None
    if with_faults:
        fault_injector = FaultInjector(FaultConfig(
            enabled=True,
            rng_seed=123,
            drop_detections=0.1,
            spike_prob=0.05,
            spike_scale=4.0,
            corrupt_covariance_prob=0.05,
            clutter_prob=0.3,
        ))
    health = HealthMonitor(HealthConfig(rejected_enter=2, rejected_exit=0, enter_count_required=2))

    pipeline = AccPipeline(config, metrics=metrics, fault_injector=fault_injector, health_monitor=health)
    lane = LaneGeometry(curvature=curvature, lane_width=lane_width)

    min_gap = np.inf
    for k in range(int(duration / Ts)):
        t = k * Ts
        actors[1]["d"] = cut_in_offset(t)

        result = pipeline.step(sense(t), t, lane, ego["v"], v_set)

        # Plant: point mass
        a = result.acceleration
        ego["s"] += ego["v"] * Ts + 0.5 * a * Ts * Ts
        ego["v"] = max(0.0, ego["v"] + a * Ts)
        for actor in actors:
            actor["s"] += actor["v"] * Ts

        in_lane = [act["s"] - ego["s"] for act in actors if abs(act["d"]) <= lane_width / 2 and act["s"] > ego["s"]]
        if in_lane:
            min_gap = min(min_gap, min(in_lane))

        if k % 20 == 0:
            snap = metrics.snapshot()
            lat_ms = 1000.0 * snap["timers"].get(CYCLE_LATENCY, {}).get("mean_s", 0.0)
            mio = result.mio
            mio_txt = "none" if mio is None else f"id={mio.track_id} D={mio.distance:5.1f} Vrel={mio.relative_velocity:+5.1f}"
            print(
                f"[t={t:5.1f}] v={ego['v']:5.2f} a={a:+5.2f} status={result.status.value:<13} "
                f"MIO {mio_txt:<30} tracks={len(result.tracks)} health={result.health} "
                f"lat_mean={lat_ms:.2f}ms"
            )

    counters = metrics.snapshot()["counters"]
    print(
        f"done: min in-lane gap={min_gap:.1f} m "
        f"fallbacks={counters.get(CONTROLLER_FALLBACKS, 0)} "
        f"rejected={counters.get(DETECTIONS_REJECTED, 0)} "
        f"faults={counters.get(FAULTS_INJECTED, 0)}"
    )


if __name__ == "__main__":
    main()
