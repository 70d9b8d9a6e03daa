# processing/detection.py
from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Iterable, Sequence

import numpy as np
from scipy.sparse import csr_matrix
from scipy.sparse.csgraph import connected_components

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class Detection:
    """
    One sensor observation in the ego frame (x forward, y left).

    Measurement:
      z = [x, y]            covariance 2x2
      z = [x, y, vx, vy]    covariance 4x4 (when velocity is reported)
    """

    position: np.ndarray
    covariance: np.ndarray
    sensor_id: int
    timestamp: float
    velocity: np.ndarray | None = None

    def __post_init__(self):
        pos = np.array(self.position, dtype=float).reshape(2,)
        cov = np.array(self.covariance, dtype=float)
        vel = None if self.velocity is None else np.array(self.velocity, dtype=float).reshape(2,)

        dim = 2 if vel is None else 4
        if cov.shape != (dim, dim):
            raise ValueError(f"covariance must be {dim}x{dim}, got {cov.shape}")

        for arr in (pos, cov, vel):
            if arr is not None:
                arr.setflags(write=False)

        object.__setattr__(self, "position", pos)
        object.__setattr__(self, "covariance", cov)
        object.__setattr__(self, "velocity", vel)
        object.__setattr__(self, "sensor_id", int(self.sensor_id))
        object.__setattr__(self, "timestamp", float(self.timestamp))

    @classmethod
    def from_polar(
        cls,
        range_m: float,
        bearing: float,
        sensor_id: int,
        timestamp: float,
        sigma_range: float = 0.5,
        sigma_bearing: float = np.deg2rad(1.0),
        range_rate: float | None = None,
        sigma_range_rate: float = 0.5,
    ) -> "Detection":
        """
        Build a Cartesian detection from a range/bearing(/range-rate) return.

        The covariance is the first-order projection J R J^T of the polar noise.
        A range-rate only constrains the radial velocity component; the
        tangential component gets a wide prior.
        """
        r = float(range_m)
        b = float(bearing)
        c, s = np.cos(b), np.sin(b)

        position = np.array([r * c, r * s])
        J = np.array([[c, -r * s],
                      [s,  r * c]])
        R_pos = J @ np.diag([sigma_range ** 2, sigma_bearing ** 2]) @ J.T

        if range_rate is None:
            return cls(position=position, covariance=R_pos, sensor_id=sensor_id, timestamp=timestamp)

        rr = float(range_rate)
        velocity = np.array([rr * c, rr * s])
        # Radial axis is known to sigma_range_rate; tangential is loosely bounded
        rot = np.array([[c, -s], [s, c]])
        R_vel = rot @ np.diag([sigma_range_rate ** 2, 100.0]) @ rot.T

        cov = np.zeros((4, 4))
        cov[:2, :2] = R_pos
        cov[2:, 2:] = R_vel
        return cls(position=position, covariance=cov, sensor_id=sensor_id,
                   timestamp=timestamp, velocity=velocity)

    @property
    def z(self) -> np.ndarray:
        if self.velocity is None:
            return self.position.copy()
        return np.concatenate([self.position, self.velocity])

    @property
    def R(self) -> np.ndarray:
        return self.covariance.copy()

    @property
    def range(self) -> float:
        return float(np.hypot(self.position[0], self.position[1]))

    @property
    def has_velocity(self) -> bool:
        return self.velocity is not None


def covariance_problem(cov: np.ndarray, max_condition: float = 1e8) -> str | None:
    """
    Returns a short reason if `cov` cannot be fused safely, else None.
    """
    cov = np.asarray(cov, dtype=float)
    if not np.all(np.isfinite(cov)):
        return "non-finite covariance"
    if not np.allclose(cov, cov.T, atol=1e-9):
        return "asymmetric covariance"
    try:
        np.linalg.cholesky(cov)
    except np.linalg.LinAlgError:
        return "covariance not positive definite"
    cond = np.linalg.cond(cov)
    if not np.isfinite(cond) or cond > max_condition:
        return f"ill-conditioned covariance (cond={cond:.3g})"
    return None


def validate_detections(
    detections: Iterable[Detection],
    max_range: float = np.inf,
    max_condition: float = 1e8,
) -> tuple[list[Detection], list[Detection]]:
    """
    Split detections into (accepted, rejected).

    Rejected: non-finite state, unusable covariance, or beyond `max_range`.
    """
    accepted: list[Detection] = []
    rejected: list[Detection] = []

    for det in detections:
        reason = None
        if not np.all(np.isfinite(det.z)):
            reason = "non-finite measurement"
        elif det.range > max_range:
            reason = f"out of range ({det.range:.1f} m > {max_range:.1f} m)"
        else:
            reason = covariance_problem(det.covariance, max_condition)

        if reason is None:
            accepted.append(det)
        else:
            logger.warning("Rejected detection from sensor %d at t=%.3f: %s",
                           det.sensor_id, det.timestamp, reason)
            rejected.append(det)

    return accepted, rejected


def _adjacency(
    detections: Sequence[Detection],
    gate: float,
    velocity_gate: float | None,
    across_sensors_only: bool,
) -> csr_matrix:
    n = len(detections)
    pos = np.array([d.position for d in detections])
    dist = np.linalg.norm(pos[:, None, :] - pos[None, :, :], axis=-1)
    linked = dist < gate

    if velocity_gate is not None:
        for i in range(n):
            for j in range(i + 1, n):
                vi, vj = detections[i].velocity, detections[j].velocity
                if vi is not None and vj is not None and np.linalg.norm(vi - vj) >= velocity_gate:
                    linked[i, j] = linked[j, i] = False

    if across_sensors_only:
        sensors = np.array([d.sensor_id for d in detections])
        linked &= sensors[:, None] != sensors[None, :]

    np.fill_diagonal(linked, False)
    return csr_matrix(linked)


def merge_cluster(members: Sequence[Detection]) -> Detection:
    """
    Reduce a cluster to one representative detection.

    Position (and velocity, when every member reports it) is the
    information-weighted mean; covariance is the fused covariance plus the
    scatter of the members about that mean.
    """
    if len(members) == 1:
        return members[0]

    with_velocity = all(m.has_velocity for m in members)
    dim = 4 if with_velocity else 2

    info = np.zeros((dim, dim))
    info_z = np.zeros(dim)
    zs = []
    for m in members:
        z = m.z[:dim]
        R = m.covariance[:dim, :dim]
        R_inv = np.linalg.inv(R)
        info += R_inv
        info_z += R_inv @ z
        zs.append(z)

    P = np.linalg.inv(info)
    mean = P @ info_z

    spread = np.array(zs) - mean
    P = P + spread.T @ spread / len(members)
    P = 0.5 * (P + P.T)

    lead = min(members, key=lambda m: m.sensor_id)
    return Detection(
        position=mean[:2],
        covariance=P,
        sensor_id=lead.sensor_id,
        timestamp=max(m.timestamp for m in members),
        velocity=mean[2:] if with_velocity else None,
    )


def _cluster(
    detections: Sequence[Detection],
    gate: float,
    velocity_gate: float | None,
    across_sensors_only: bool,
) -> list[Detection]:
    if len(detections) == 0:
        return []
    if gate <= 0:
        raise ValueError("gate must be positive")

    graph = _adjacency(detections, gate, velocity_gate, across_sensors_only)
    num_clusters, labels = connected_components(graph, directed=False)

    # Clusters come out in order of their first member
    clusters: list[Detection] = []
    for label_id in range(num_clusters):
        members = [detections[i] for i in np.flatnonzero(labels == label_id)]
        clusters.append(merge_cluster(members))
    return clusters


def cluster_detections(
    detections: Sequence[Detection],
    gate: float,
    velocity_gate: float | None = None,
    timestamp_tolerance: float = 1e-9,
) -> list[Detection]:
    """
    Cluster detections from one sensor in one cycle.

    Two detections are linked when their positions are closer than `gate`
    (and, if both carry velocity and `velocity_gate` is set, their velocities
    are closer than `velocity_gate`). Linked groups (single linkage) are
    reduced with `merge_cluster`; singletons are returned unchanged.

    Parameters:
        detections: detections sharing one timestamp
        gate: position gate in metres
        velocity_gate: optional velocity gate in m/s
        timestamp_tolerance: allowed timestamp spread in seconds

    Returns:
        list of representative detections, one per cluster
    """
    detections = list(detections)
    if detections:
        stamps = [d.timestamp for d in detections]
        if max(stamps) - min(stamps) > timestamp_tolerance:
            raise ValueError("detections to cluster must share a timestamp")

    return _cluster(detections, gate, velocity_gate, across_sensors_only=False)


def cluster_by_sensor(
    detections: Iterable[Detection],
    gate: float,
    velocity_gate: float | None = None,
    timestamp_tolerance: float = 1e-9,
    skip_invalid: bool = False,
) -> list[Detection]:
    """
    Cluster each sensor's detections independently, then union the results.

    With `skip_invalid`, a sensor whose detections cannot be clustered
    (mixed timestamps) is dropped and logged instead of raising.
    """
    by_sensor: dict[int, list[Detection]] = {}
    for det in detections:
        by_sensor.setdefault(det.sensor_id, []).append(det)

    out: list[Detection] = []
    for sensor_id in sorted(by_sensor):
        try:
            out.extend(cluster_detections(by_sensor[sensor_id], gate, velocity_gate, timestamp_tolerance))
        except ValueError as exc:
            if not skip_invalid:
                raise
            logger.warning("Dropping %d detections from sensor %d: %s",
                           len(by_sensor[sensor_id]), sensor_id, exc)
    return out


def fuse_across_sensors(clusters: Sequence[Detection], gate: float) -> list[Detection]:
    """
    Merge per-sensor cluster representatives from different sensors that
    fall within `gate` of each other, so one object reaches the tracker once.
    """
    return _cluster(list(clusters), gate, velocity_gate=None, across_sensors_only=True)
