# tracking/tracker_manager.py

from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
import logging
from typing import Sequence

import numpy as np
from scipy.optimize import linear_sum_assignment
from scipy.stats import chi2

from processing.detection import Detection, validate_detections
from processing.errors import ConfigurationError
from tracking.kalman_filter import KalmanFilterCV2D

logger = logging.getLogger(__name__)


class TrackStatus(Enum):
    TENTATIVE = "tentative"
    CONFIRMED = "confirmed"
    COASTING = "coasting"


@dataclass
class TrackerConfig:
    dt_default: float = 0.1

    # Association
    gate_probability: float = 0.999       # chi-square gate on d^2
    cost_unassigned: float = 1e6          # big cost for forbidden assignments

    # Lifecycle
    confirm_hits: int = 2                 # consecutive hits to confirm
    confirm_window: int = 3               # cycles from birth to reach confirm_hits
    tentative_max_misses: int = 1
    max_misses: int = 5                   # confirmed/coasting deleted when exceeded
    max_coast_time: float = 1.0           # seconds without an update
    max_position_variance: float = 400.0  # trace of position covariance (m^2)

    # Filter
    process_noise: float = 1.0
    velocity_variance: float = 25.0

    # Pools
    max_tracks: int = 32
    max_detections: int = 64
    max_condition: float = 1e8

    # Births closer than this to an existing track are duplicates (m)
    birth_exclusion_radius: float = 2.0

    def __post_init__(self):
        if self.dt_default <= 0:
            raise ConfigurationError("dt_default must be positive")
        if not 0.0 < self.gate_probability < 1.0:
            raise ConfigurationError("gate_probability must be in (0, 1)")
        if self.confirm_hits < 1:
            raise ConfigurationError("confirm_hits must be >= 1")
        if self.confirm_window < self.confirm_hits:
            raise ConfigurationError("confirm_window must be >= confirm_hits")
        if self.tentative_max_misses < 0 or self.max_misses < 0:
            raise ConfigurationError("miss thresholds must be >= 0")
        if self.max_coast_time <= 0 or self.max_position_variance <= 0:
            raise ConfigurationError("coast time and variance bound must be positive")
        if self.process_noise <= 0 or self.velocity_variance <= 0:
            raise ConfigurationError("filter noise parameters must be positive")
        if self.max_tracks < 1 or self.max_detections < 1:
            raise ConfigurationError("pool sizes must be >= 1")
        if self.birth_exclusion_radius < 0:
            raise ConfigurationError("birth_exclusion_radius must be >= 0")


@dataclass
class Track:
    track_id: int
    kf: KalmanFilterCV2D
    status: TrackStatus = TrackStatus.TENTATIVE
    age: int = 1
    hits: int = 1
    misses: int = 0
    time_since_update: float = 0.0

    @property
    def confirmed(self) -> bool:
        return self.status is not TrackStatus.TENTATIVE


@dataclass(frozen=True, eq=False)
class TrackSnapshot:
    """Read-only view of a track, handed to downstream stages."""

    track_id: int
    status: TrackStatus
    position: np.ndarray
    velocity: np.ndarray
    covariance: np.ndarray
    age: int
    time_since_update: float

    @classmethod
    def of(cls, trk: Track) -> "TrackSnapshot":
        arrays = [trk.kf.position.copy(), trk.kf.velocity.copy(), trk.kf.P.copy()]
        for a in arrays:
            a.setflags(write=False)
        return cls(
            track_id=trk.track_id,
            status=trk.status,
            position=arrays[0],
            velocity=arrays[1],
            covariance=arrays[2],
            age=trk.age,
            time_since_update=trk.time_since_update,
        )


class TrackerManager:
    """
    Multi-object tracker manager using:
      - KalmanFilterCV2D (ego-frame constant velocity)
      - chi-square gating on Mahalanobis distance
      - Hungarian global assignment on normalized distance
      - Track initiation/confirmation/coasting/deletion

    The tracker is the only writer of track state; `step` returns immutable
    snapshots of confirmed (and coasting) tracks ordered by id.
    """

    def __init__(self, config: TrackerConfig | dict | None = None):
        if config is None:
            config = TrackerConfig()
        if isinstance(config, dict):
            config = TrackerConfig(**config)
        self.cfg: TrackerConfig = config

        self._gates = {dim: float(chi2.ppf(self.cfg.gate_probability, dim)) for dim in (2, 4)}

        self._tracks: list[Track] = []
        self._next_id = 1
        self._last_timestamp: float | None = None

        self.birth_enabled = True
        self.last_rejected = 0

    @property
    def tracks(self) -> list[Track]:
        return list(self._tracks)

    def set_birth_enabled(self, enabled: bool) -> None:
        self.birth_enabled = bool(enabled)

    def reset(self) -> None:
        """Drop all tracks; ids keep increasing so none is reused."""
        self._tracks = []
        self._last_timestamp = None

    def confirmed_tracks(self) -> tuple[TrackSnapshot, ...]:
        confirmed = sorted((t for t in self._tracks if t.confirmed), key=lambda t: t.track_id)
        return tuple(TrackSnapshot.of(t) for t in confirmed)

    def _spawn_track(self, det: Detection) -> None:
        if len(self._tracks) >= self.cfg.max_tracks:
            logger.warning("Track pool full (%d); dropping birth at %s",
                           self.cfg.max_tracks, np.round(det.position, 2))
            return

        kf = KalmanFilterCV2D.from_measurement(
            det.z,
            det.R,
            velocity_variance=self.cfg.velocity_variance,
            q=self.cfg.process_noise,
        )
        trk = Track(track_id=self._next_id, kf=kf)
        if self.cfg.confirm_hits <= 1:
            trk.status = TrackStatus.CONFIRMED

        self._tracks.append(trk)
        self._next_id += 1
        logger.debug("Spawned tentative track %d at %s", trk.track_id, np.round(det.position, 2))

    def _in_gate(self, trk: Track, det: Detection) -> bool:
        return trk.kf.mahalanobis(det.z, det.R) <= self._gates[len(det.z)]

    def _is_near_any_track(self, det: Detection) -> bool:
        """
        Prevent spawning a duplicate right on top of an existing track.

        Only a tight Euclidean radius is used: an association gate at long
        range is wider than a lane and would hide a neighbouring car.
        """
        radius = self.cfg.birth_exclusion_radius
        return any(np.linalg.norm(trk.kf.position - det.position) < radius for trk in self._tracks)

    def _limit_detections(self, detections: list[Detection]) -> list[Detection]:
        # Deterministic order; nearest objects win when over capacity
        ordered = sorted(detections, key=lambda d: (d.range, d.sensor_id, d.position[1]))
        if len(ordered) > self.cfg.max_detections:
            logger.warning("Dropping %d detections beyond capacity %d",
                           len(ordered) - self.cfg.max_detections, self.cfg.max_detections)
            ordered = ordered[:self.cfg.max_detections]
        return ordered

    def _associate(self, Z: Sequence[Detection]) -> tuple[list[tuple[int, int]], set[int], set[int]]:
        T = len(self._tracks)
        M = len(Z)
        if T == 0 or M == 0:
            return [], set(range(T)), set(range(M))

        cost = np.full((T, M), self.cfg.cost_unassigned, dtype=float)
        for i, trk in enumerate(self._tracks):
            for j, det in enumerate(Z):
                if self._in_gate(trk, det):
                    cost[i, j] = trk.kf.normalized_distance(det.z, det.R)

        # Hungarian assignment
        row_ind, col_ind = linear_sum_assignment(cost)

        pairs = [(r, c) for r, c in zip(row_ind, col_ind) if cost[r, c] < self.cfg.cost_unassigned]
        unassigned_tracks = set(range(T)) - {r for r, _ in pairs}
        unassigned_meas = set(range(M)) - {c for _, c in pairs}
        return pairs, unassigned_tracks, unassigned_meas

    def _hit(self, trk: Track, det: Detection) -> None:
        trk.kf.update(det.z, det.R)
        trk.hits += 1
        trk.misses = 0
        trk.time_since_update = 0.0

        if trk.status is TrackStatus.TENTATIVE:
            if trk.hits >= self.cfg.confirm_hits and trk.age <= self.cfg.confirm_window:
                trk.status = TrackStatus.CONFIRMED
                logger.info("Track %d confirmed after %d hits", trk.track_id, trk.hits)
        elif trk.status is TrackStatus.COASTING:
            trk.status = TrackStatus.CONFIRMED

    def _miss(self, trk: Track, dt: float) -> None:
        trk.hits = 0
        trk.misses += 1
        trk.time_since_update += dt
        if trk.status is TrackStatus.CONFIRMED:
            trk.status = TrackStatus.COASTING

    def _deletion_reason(self, trk: Track) -> str | None:
        if not (np.all(np.isfinite(trk.kf.x)) and np.all(np.isfinite(trk.kf.P))):
            return "non-finite state"
        if np.trace(trk.kf.position_covariance) > self.cfg.max_position_variance:
            return "covariance diverged"

        if trk.status is TrackStatus.TENTATIVE:
            if trk.misses > self.cfg.tentative_max_misses:
                return "tentative track missed"
            if trk.age >= self.cfg.confirm_window:
                return "not confirmed within window"
            return None

        if trk.misses > self.cfg.max_misses:
            return f"{trk.misses} consecutive misses"
        if trk.time_since_update > self.cfg.max_coast_time:
            return f"coasted {trk.time_since_update:.2f} s"
        return None

    def _prune(self) -> None:
        kept = []
        for trk in self._tracks:
            reason = self._deletion_reason(trk)
            if reason is None:
                kept.append(trk)
            elif trk.confirmed:
                logger.info("Deleted track %d: %s", trk.track_id, reason)
            else:
                logger.debug("Deleted track %d: %s", trk.track_id, reason)
        self._tracks = kept

    def step(self, detections: Sequence[Detection], timestamp: float) -> tuple[TrackSnapshot, ...]:
        """
        Advance the tracker to `timestamp` with this cycle's clustered detections.

        Returns:
            confirmed and coasting tracks as snapshots, ordered by track id
        """
        timestamp = float(timestamp)
        if self._last_timestamp is None:
            dt = self.cfg.dt_default
        else:
            dt = timestamp - self._last_timestamp
            if dt < 0:
                raise ValueError(f"non-monotonic timestamp {timestamp} < {self._last_timestamp}")
        self._last_timestamp = timestamp

        # 1) Predict all tracks, once
        for trk in self._tracks:
            trk.kf.predict(dt)
            trk.age += 1

        # 2) Reject unusable detections before they touch any track
        accepted, rejected = validate_detections(detections, max_condition=self.cfg.max_condition)
        self.last_rejected = len(rejected)
        Z = self._limit_detections(accepted)

        # 3) Global assignment
        pairs, unassigned_tracks, unassigned_meas = self._associate(Z)

        # 4) Update / miss
        for r, c in pairs:
            self._hit(self._tracks[r], Z[c])
        for i in sorted(unassigned_tracks):
            self._miss(self._tracks[i], dt)

        # 5) Delete stale or diverged tracks
        self._prune()

        # 6) Birth from unassigned detections
        if self.birth_enabled:
            for j in sorted(unassigned_meas):
                if not self._is_near_any_track(Z[j]):
                    self._spawn_track(Z[j])

        return self.confirmed_tracks()
