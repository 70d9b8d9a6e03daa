# tracking/kalman_filter.py
from __future__ import annotations
import numpy as np


class KalmanFilterCV2D:
    """
    Constant-velocity KF in the ego frame.

    State:
      x = [x, vx, y, vy]^T
    Measurement (chosen by its length):
      z = [x, y]^T
      z = [x, y, vx, vy]^T
    """

    _H_POS = np.array(
        [[1, 0, 0, 0],
         [0, 0, 1, 0]],
        dtype=float
    )
    _H_POS_VEL = np.array(
        [[1, 0, 0, 0],
         [0, 0, 1, 0],
         [0, 1, 0, 0],
         [0, 0, 0, 1]],
        dtype=float
    )

    def __init__(
        self,
        x0: np.ndarray,
        P0: np.ndarray | None = None,
        q: float = 1.0,
    ):
        self.x = np.array(x0, dtype=float).reshape(4,)
        self.P = np.eye(4) * 10.0 if P0 is None else np.array(P0, dtype=float)

        # White-noise acceleration spectral density (m^2/s^3)
        self.q = float(q)

    @classmethod
    def from_measurement(
        cls,
        z: np.ndarray,
        R: np.ndarray,
        velocity_variance: float = 25.0,
        q: float = 1.0,
    ) -> "KalmanFilterCV2D":
        """Initialise state and covariance from a single measurement."""
        z = np.array(z, dtype=float).reshape(-1)
        R = np.array(R, dtype=float)

        H = cls.measurement_matrix(len(z))

        # Back-project measured components; unmeasured ones get a wide prior
        observed = np.diag(H.T @ H) > 0
        x0 = H.T @ z
        P0 = np.diag(np.where(observed, 0.0, velocity_variance)) + H.T @ R @ H
        return cls(x0=x0, P0=P0, q=q)

    @classmethod
    def measurement_matrix(cls, dim: int) -> np.ndarray:
        if dim == 2:
            return cls._H_POS
        if dim == 4:
            return cls._H_POS_VEL
        raise ValueError(f"Unsupported measurement size: {dim}")

    def _F(self, dt: float) -> np.ndarray:
        return np.array(
            [[1, dt, 0,  0],
             [0,  1, 0,  0],
             [0,  0, 1, dt],
             [0,  0, 0,  1]],
            dtype=float
        )

    def _Q(self, dt: float) -> np.ndarray:
        # Discrete white-noise acceleration, independent per axis
        block = self.q * np.array(
            [[dt ** 3 / 3.0, dt ** 2 / 2.0],
             [dt ** 2 / 2.0, dt]],
            dtype=float
        )
        Q = np.zeros((4, 4))
        Q[:2, :2] = block
        Q[2:, 2:] = block
        return Q

    @property
    def position(self) -> np.ndarray:
        return self.x[[0, 2]]

    @property
    def velocity(self) -> np.ndarray:
        return self.x[[1, 3]]

    @property
    def position_covariance(self) -> np.ndarray:
        return self.P[np.ix_([0, 2], [0, 2])]

    def predict(self, dt: float) -> None:
        F = self._F(dt)
        Q = self._Q(dt)
        self.x = F @ self.x
        self.P = F @ self.P @ F.T + Q

    def innovation(self, z: np.ndarray, R: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        z = np.array(z, dtype=float).reshape(-1)
        H = self.measurement_matrix(len(z))
        y = z - (H @ self.x)
        S = H @ self.P @ H.T + np.array(R, dtype=float)
        return y, S

    def mahalanobis(self, z: np.ndarray, R: np.ndarray) -> float:
        y, S = self.innovation(z, R)
        return float(y @ np.linalg.solve(S, y))

    def normalized_distance(self, z: np.ndarray, R: np.ndarray) -> float:
        """Squared Mahalanobis distance plus ln|S| (penalises loose tracks)."""
        y, S = self.innovation(z, R)
        _, logdet = np.linalg.slogdet(S)
        return float(y @ np.linalg.solve(S, y) + logdet)

    def update(self, z: np.ndarray, R: np.ndarray) -> None:
        z = np.array(z, dtype=float).reshape(-1)
        R = np.array(R, dtype=float)
        H = self.measurement_matrix(len(z))

        y, S = self.innovation(z, R)
        K = np.linalg.solve(S, H @ self.P).T
        self.x = self.x + K @ y

        # Joseph form keeps P symmetric positive semi-definite
        I_KH = np.eye(4) - K @ H
        self.P = I_KH @ self.P @ I_KH.T + K @ R @ K.T
        self.P = 0.5 * (self.P + self.P.T)
