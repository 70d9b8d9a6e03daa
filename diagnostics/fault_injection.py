# diagnostics/fault_injection.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Any, Optional, Sequence

import numpy as np

from processing.detection import Detection


@dataclass
class FaultConfig:
    enabled: bool = False

    drop_detections: float = 0.0

    # Position spikes (association churn)
    spike_prob: float = 0.0
    spike_scale: float = 5.0            # metres, std-dev of the jump

    # Ill-conditioned covariance (should be rejected, never fused)
    corrupt_covariance_prob: float = 0.0

    # Spurious returns scattered in front of the ego car
    clutter_prob: float = 0.0
    clutter_max_range: float = 80.0
    clutter_half_width: float = 10.0
    clutter_sensor_id: int = 99

    rng_seed: Optional[int] = None


class FaultInjector:
    def __init__(self, config: FaultConfig | Dict[str, Any] | None = None):
        if config is None:
            config = FaultConfig()
        if isinstance(config, dict):
            config = FaultConfig(**config)
        self.cfg: FaultConfig = config
        self.rng = np.random.default_rng(self.cfg.rng_seed)

    def _p(self, prob: float) -> bool:
        if not self.cfg.enabled:
            return False
        return self.rng.random() < float(prob)

    def maybe_drop_detections(self, detections: Sequence[Detection]) -> list[Detection]:
        if not self.cfg.enabled or self.cfg.drop_detections <= 0:
            return list(detections)
        kept = []
        for det in detections:
            if self.rng.random() >= float(self.cfg.drop_detections):
                kept.append(det)
        return kept

    def maybe_spike(self, detections: Sequence[Detection]) -> tuple[list[Detection], int]:
        """
        Returns (detections_out, number_spiked).
        """
        out = []
        spiked = 0
        for det in detections:
            if self._p(self.cfg.spike_prob):
                jump = self.rng.normal(0.0, float(self.cfg.spike_scale), size=2)
                det = Detection(
                    position=det.position + jump,
                    covariance=det.covariance,
                    sensor_id=det.sensor_id,
                    timestamp=det.timestamp,
                    velocity=det.velocity,
                )
                spiked += 1
            out.append(det)
        return out, spiked

    def maybe_corrupt_covariance(self, detections: Sequence[Detection]) -> tuple[list[Detection], int]:
        """
        Replace covariances with a near-singular matrix.
        Returns (detections_out, number_corrupted).
        """
        out = []
        corrupted = 0
        for det in detections:
            if self._p(self.cfg.corrupt_covariance_prob):
                dim = det.covariance.shape[0]
                cov = np.eye(dim)
                cov[0, 0] = 1e-12
                det = Detection(
                    position=det.position,
                    covariance=cov,
                    sensor_id=det.sensor_id,
                    timestamp=det.timestamp,
                    velocity=det.velocity,
                )
                corrupted += 1
            out.append(det)
        return out, corrupted

    def maybe_clutter(self, timestamp: float) -> list[Detection]:
        if not self._p(self.cfg.clutter_prob):
            return []
        x = self.rng.uniform(1.0, float(self.cfg.clutter_max_range))
        y = self.rng.uniform(-self.cfg.clutter_half_width, self.cfg.clutter_half_width)
        return [Detection(
            position=np.array([x, y]),
            covariance=np.diag([1.0, 1.0]),
            sensor_id=self.cfg.clutter_sensor_id,
            timestamp=timestamp,
        )]
