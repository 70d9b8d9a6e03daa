# selection/lead_car.py
from __future__ import annotations

from dataclasses import dataclass
import logging
import math
from typing import Iterable

import numpy as np

from processing.errors import ConfigurationError
from tracking.tracker_manager import TrackSnapshot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LaneGeometry:
    """
    Ego lane at the ego car's current position.

    curvature:      1/m, positive when the lane curves left
    lane_width:     m
    heading_error:  rad, ego heading minus lane heading
    lateral_offset: m, ego position left of the lane centre
    """

    curvature: float = 0.0
    lane_width: float = 3.6
    heading_error: float = 0.0
    lateral_offset: float = 0.0

    def __post_init__(self):
        values = (self.curvature, self.lane_width, self.heading_error, self.lateral_offset)
        if not all(math.isfinite(v) for v in values):
            raise ValueError("lane geometry must be finite")
        if self.lane_width <= 0:
            raise ValueError("lane_width must be positive")

    @property
    def half_width(self) -> float:
        return 0.5 * self.lane_width


@dataclass(frozen=True)
class MioReference:
    track_id: int
    distance: float
    relative_velocity: float
    lateral_offset: float


@dataclass
class SelectorConfig:
    curvature_threshold: float = 1e-5   # below this the lane is a straight line
    hysteresis: float = 0.3             # extra lateral margin before the MIO is dropped

    def __post_init__(self):
        if self.curvature_threshold < 0:
            raise ConfigurationError("curvature_threshold must be >= 0")
        if self.hysteresis < 0:
            raise ConfigurationError("hysteresis must be >= 0")


def _ego_to_lane(vec: np.ndarray, lane: LaneGeometry) -> np.ndarray:
    c, s = math.cos(lane.heading_error), math.sin(lane.heading_error)
    return np.array([c * vec[0] - s * vec[1], s * vec[0] + c * vec[1]])


def to_lane_frame(
    position: np.ndarray,
    lane: LaneGeometry,
    curvature_threshold: float = 1e-5,
) -> tuple[float, float, float]:
    """
    Express an ego-frame position relative to the lane centreline.

    The centreline is a straight line, or a circular arc of radius 1/curvature
    tangent to the lane heading at the ego car.

    Returns:
        (s, d, phi): arc length ahead, lateral offset (left positive) and the
        tangent angle of the centreline at s
    """
    xl, yl = _ego_to_lane(np.asarray(position, dtype=float), lane)
    yl += lane.lateral_offset

    if abs(lane.curvature) < curvature_threshold:
        return float(xl), float(yl), 0.0

    R = 1.0 / lane.curvature
    sgn = 1.0 if R > 0 else -1.0
    dx, dy = xl, yl - R

    rho = math.hypot(dx, dy)
    phi = math.atan2(dx, -sgn * dy)
    s = abs(R) * phi
    d = R - sgn * rho
    return s, d, sgn * phi


def find_lead_car(
    tracks: Iterable[TrackSnapshot],
    lane: LaneGeometry,
    previous_mio_id: int | None = None,
    hysteresis: float = 0.0,
    curvature_threshold: float = 1e-5,
) -> MioReference | None:
    """
    Pick the closest track ahead of the ego car inside the ego lane.

    A track qualifies when its arc position is ahead (s > 0) and its lateral
    offset is within half a lane width. The previous MIO keeps qualifying
    until it drifts `hysteresis` metres past that bound.
    Ties on distance go to the smaller lateral offset, then the lower id.

    Returns:
        MioReference, or None when the lane ahead is clear
    """
    candidates = []
    for trk in tracks:
        s, d, phi = to_lane_frame(trk.position, lane, curvature_threshold)
        if not (math.isfinite(s) and math.isfinite(d)) or s <= 0.0:
            continue

        bound = lane.half_width
        if previous_mio_id is not None and trk.track_id == previous_mio_id:
            bound += hysteresis
        if abs(d) > bound:
            continue

        # Closing speed along the lane tangent at the track
        v_lane = _ego_to_lane(trk.velocity, lane)
        v_rel = v_lane[0] * math.cos(phi) + v_lane[1] * math.sin(phi)
        candidates.append((s, abs(d), trk.track_id, d, v_rel))

    if not candidates:
        return None

    s, _, track_id, d, v_rel = min(candidates)
    return MioReference(track_id=track_id, distance=s, relative_velocity=float(v_rel), lateral_offset=d)


class LeadCarSelector:
    """
    Carries the previous MIO id across cycles so the lateral hysteresis
    applies; otherwise a thin wrapper over `find_lead_car`.
    """

    def __init__(self, config: SelectorConfig | dict | None = None):
        if config is None:
            config = SelectorConfig()
        if isinstance(config, dict):
            config = SelectorConfig(**config)
        self.cfg: SelectorConfig = config
        self._previous_id: int | None = None

    @property
    def previous_id(self) -> int | None:
        return self._previous_id

    def reset(self) -> None:
        self._previous_id = None

    def select(self, tracks: Iterable[TrackSnapshot], lane: LaneGeometry) -> MioReference | None:
        mio = find_lead_car(
            tracks,
            lane,
            previous_mio_id=self._previous_id,
            hysteresis=self.cfg.hysteresis,
            curvature_threshold=self.cfg.curvature_threshold,
        )
        new_id = None if mio is None else mio.track_id
        if new_id != self._previous_id:
            logger.info("MIO changed: %s -> %s", self._previous_id, new_id)
        self._previous_id = new_id
        return mio
