# processing/pipeline.py

from __future__ import annotations

from dataclasses import dataclass, field, replace
import logging
from typing import Any, Dict, Iterable, Mapping

import numpy as np

from control.acc_config import AccConfig
from control.command import AccCommand, ControlStatus
from control.factory import make_controller
from processing.detection import (
    Detection,
    cluster_by_sensor,
    fuse_across_sensors,
    validate_detections,
)
from processing.errors import ConfigurationError
from selection.lead_car import LaneGeometry, LeadCarSelector, MioReference, SelectorConfig
from tracking.tracker_manager import TrackerConfig, TrackerManager, TrackSnapshot

from diagnostics.metrics import (
    MetricsRegistry,
    Timer,
    CYCLE_LATENCY,
    CONTROLLER_LATENCY,
    TRACKS_ACTIVE,
    TRACKS_CONFIRMED,
    MIO_TRACK_ID,
    COMMANDED_ACCEL,
    DETECTIONS_TOTAL,
    DETECTIONS_REJECTED,
    CLUSTERS_TOTAL,
    REJECTED_THIS_CYCLE,
    CONTROLLER_FALLBACKS,
    FALLBACK_THIS_CYCLE,
    CYCLE_ERRORS,
    FAULTS_INJECTED,
)
from diagnostics.fault_injection import FaultInjector
from diagnostics.health_monitor import HealthMonitor

logger = logging.getLogger(__name__)


@dataclass
class ClusterConfig:
    gate: float = 3.0                       # same-sensor merge distance (m)
    velocity_gate: float | None = None      # m/s, only when both carry velocity
    cross_sensor_gate: float | None = 3.0   # None keeps sensors separate
    max_range: float = 150.0
    max_condition: float = 1e8
    timestamp_tolerance: float = 1e-3

    def __post_init__(self):
        if self.gate <= 0:
            raise ConfigurationError("cluster gate must be positive")
        if self.velocity_gate is not None and self.velocity_gate <= 0:
            raise ConfigurationError("velocity_gate must be positive")
        if self.cross_sensor_gate is not None and self.cross_sensor_gate <= 0:
            raise ConfigurationError("cross_sensor_gate must be positive")
        if self.max_range <= 0 or self.max_condition <= 1:
            raise ConfigurationError("max_range must be positive and max_condition > 1")
        if self.timestamp_tolerance < 0:
            raise ConfigurationError("timestamp_tolerance must be >= 0")


@dataclass
class PipelineConfig:
    cluster: ClusterConfig = field(default_factory=ClusterConfig)
    tracker: TrackerConfig = field(default_factory=TrackerConfig)
    selector: SelectorConfig = field(default_factory=SelectorConfig)
    acc: AccConfig = field(default_factory=AccConfig)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "PipelineConfig":
        """Build from nested plain dicts, e.g. loaded from JSON."""
        unknown = set(d) - {"cluster", "tracker", "selector", "acc"}
        if unknown:
            raise ConfigurationError(f"Unknown config sections: {sorted(unknown)}")
        return cls(
            cluster=ClusterConfig(**d.get("cluster", {})),
            tracker=TrackerConfig(**d.get("tracker", {})),
            selector=SelectorConfig(**d.get("selector", {})),
            acc=AccConfig(**d.get("acc", {})),
        )


@dataclass(frozen=True)
class CycleResult:
    timestamp: float
    command: AccCommand
    mio: MioReference | None
    tracks: tuple[TrackSnapshot, ...]
    clusters: tuple[Detection, ...]
    rejected: int
    health: str = HealthMonitor.NORMAL

    @property
    def acceleration(self) -> float:
        return self.command.acceleration

    @property
    def status(self) -> ControlStatus:
        return self.command.status


class AccPipeline:
    """
    Fixed-rate ACC cycle:

        1. Detection validation and per-sensor clustering
        2. Cross-sensor merge
        3. Multi-object tracking
        4. Lead car (MIO) selection
        5. Acceleration command

    Optional:
        - metrics: records latencies, counts and gauges
        - fault_injector: drops, spikes, corrupts or adds detections
        - health_monitor: freezes track births while DEGRADED

    A cycle never raises; any per-cycle failure yields `min_accel`.
    """

    def __init__(
        self,
        config: PipelineConfig | Dict[str, Any] | None = None,
        *,
        metrics: MetricsRegistry | None = None,
        fault_injector: FaultInjector | None = None,
        health_monitor: HealthMonitor | None = None,
    ):
        if config is None:
            config = PipelineConfig()
        if isinstance(config, dict):
            config = PipelineConfig.from_dict(config)
        self.cfg: PipelineConfig = config

        self.metrics = metrics
        self.fault_injector = fault_injector
        self.health_monitor = health_monitor

        self.tracker = TrackerManager(self.cfg.tracker)
        self.selector = LeadCarSelector(self.cfg.selector)
        self.controller = make_controller(self.cfg.acc)

    def reset(self) -> None:
        self.tracker.reset()
        self.selector.reset()
        self.controller.reset()

    def _inc(self, key: str, amount: int = 1) -> None:
        if self.metrics is not None and amount:
            self.metrics.inc(key, amount)

    def _gauge(self, key: str, value: float) -> None:
        if self.metrics is not None:
            self.metrics.set_gauge(key, value)

    def _inject_faults(self, detections: list[Detection], timestamp: float) -> list[Detection]:
        fi = self.fault_injector
        before = len(detections)
        detections = fi.maybe_drop_detections(detections)
        faults = before - len(detections)

        detections, spiked = fi.maybe_spike(detections)
        detections, corrupted = fi.maybe_corrupt_covariance(detections)
        clutter = fi.maybe_clutter(timestamp)

        self._inc(FAULTS_INJECTED, faults + spiked + corrupted + len(clutter))
        return detections + clutter

    def _cluster(self, detections: list[Detection]) -> list[Detection]:
        cc = self.cfg.cluster
        clusters = cluster_by_sensor(
            detections,
            gate=cc.gate,
            velocity_gate=cc.velocity_gate,
            timestamp_tolerance=cc.timestamp_tolerance,
            skip_invalid=True,
        )
        if cc.cross_sensor_gate is not None:
            clusters = fuse_across_sensors(clusters, cc.cross_sensor_gate)
        return clusters

    def _run_cycle(
        self,
        detections: list[Detection],
        timestamp: float,
        lane: LaneGeometry,
        ego_velocity: float,
        set_velocity: float,
    ) -> CycleResult:
        if self.fault_injector is not None:
            detections = self._inject_faults(detections, timestamp)

        # Step 1: reject unusable detections
        accepted, rejected = validate_detections(
            detections,
            max_range=self.cfg.cluster.max_range,
            max_condition=self.cfg.cluster.max_condition,
        )

        # Step 1-2: clustering (per sensor, then across sensors)
        clusters = self._cluster(accepted)

        # Step 3: tracking
        tracks = self.tracker.step(clusters, timestamp)
        rejected_total = len(rejected) + self.tracker.last_rejected

        # Step 4: MIO
        mio = self.selector.select(tracks, lane)

        # Step 5: control
        with Timer(self.metrics, CONTROLLER_LATENCY):
            command = self.controller.compute(ego_velocity, set_velocity, mio)

        self._inc(DETECTIONS_TOTAL, len(detections))
        self._inc(DETECTIONS_REJECTED, rejected_total)
        self._inc(CLUSTERS_TOTAL, len(clusters))
        self._gauge(REJECTED_THIS_CYCLE, rejected_total)
        self._gauge(TRACKS_ACTIVE, len(self.tracker.tracks))
        self._gauge(TRACKS_CONFIRMED, len(tracks))
        self._gauge(MIO_TRACK_ID, -1 if mio is None else mio.track_id)

        return CycleResult(
            timestamp=timestamp,
            command=command,
            mio=mio,
            tracks=tracks,
            clusters=tuple(clusters),
            rejected=rejected_total,
        )

    def step(
        self,
        sensor_detections: Mapping[int, Iterable[Detection]] | Iterable[Detection],
        timestamp: float,
        lane: LaneGeometry | Dict[str, float],
        ego_velocity: float,
        set_velocity: float,
    ) -> CycleResult:
        """
        Run one cycle.

        Parameters:
            sensor_detections: detections per sensor id, or one flat iterable
            timestamp: monotonic cycle time (s)
            lane: ego lane geometry at the ego car
            ego_velocity: V_x (m/s)
            set_velocity: driver-set V_set (m/s)

        Returns:
            CycleResult with the bounded acceleration command
        """
        with Timer(self.metrics, CYCLE_LATENCY):
            try:
                if isinstance(sensor_detections, Mapping):
                    detections = [d for sid in sorted(sensor_detections) for d in sensor_detections[sid]]
                else:
                    detections = list(sensor_detections)
                if isinstance(lane, dict):
                    lane = LaneGeometry(**lane)
                result = self._run_cycle(detections, float(timestamp), lane,
                                         float(ego_velocity), float(set_velocity))
            except (ValueError, TypeError, KeyError, ArithmeticError, np.linalg.LinAlgError) as exc:
                logger.exception("Cycle at t=%s failed; applying minimum acceleration", timestamp)
                self._inc(CYCLE_ERRORS)
                command = AccCommand(self.cfg.acc.min_accel, ControlStatus.INVALID_INPUT, str(exc))
                self.controller.note_applied(command.acceleration)
                result = CycleResult(
                    timestamp=float(timestamp) if isinstance(timestamp, (int, float)) else float("nan"),
                    command=command,
                    mio=None,
                    tracks=(),
                    clusters=(),
                    rejected=0,
                )

        self._gauge(COMMANDED_ACCEL, result.acceleration)
        self._gauge(FALLBACK_THIS_CYCLE, 1.0 if result.command.is_fallback else 0.0)
        if result.command.is_fallback:
            self._inc(CONTROLLER_FALLBACKS)

        # Health decides births for the next cycle
        if self.health_monitor is not None and self.metrics is not None:
            state, reason = self.health_monitor.update(self.metrics.snapshot())
            self.tracker.set_birth_enabled(state != HealthMonitor.DEGRADED)
            if state == HealthMonitor.DEGRADED:
                logger.debug("Health DEGRADED (%s); track births frozen", reason)
            result = replace(result, health=state)

        return result
