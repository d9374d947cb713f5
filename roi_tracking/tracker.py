# tracker.py
"""4-state ballistic Kalman predictor (x, y, vx, vy) with gravity as control input."""
from __future__ import annotations

from enum import Enum
from typing import Optional, Sequence, Tuple

import numpy as np
from filterpy.kalman import KalmanFilter

from roi_tracking.config import TrackerConfig

State4 = Tuple[float, float, float, float]

_UNIT_CONTROL = np.array([[1.0]])


class TrackState(str, Enum):
    UNINITIALIZED = "uninitialized"
    TRACKING = "tracking"


class MotionPredictor:
    """
    One filter per tracked blob, working in world units.

    Position advances by v*dt + 0.5*g*dt**2 on the vertical axis and the
    vertical velocity by g*dt: a projectile model, valid only while the
    object is in free flight.
    """

    # ------------------------------------------------------------------ #
    #   I N I T
    # ------------------------------------------------------------------ #
    def __init__(
        self,
        cfg: TrackerConfig,
        nominal_dt: float,
        initial_state: Optional[Sequence[float]] = None,
    ):
        self.cfg = cfg
        self.nominal_dt = nominal_dt

        self.kf = KalmanFilter(dim_x=4, dim_z=2, dim_u=1)
        self._set_dt(nominal_dt)
        self.kf.H = np.array([[1.0, 0.0, 0.0, 0.0], [0.0, 1.0, 0.0, 0.0]])
        self.kf.Q = np.eye(4) * cfg.process_noise_var
        self.kf.R = np.eye(2) * cfg.measurement_noise_var

        # Every filter owns its covariance; nothing is shared between blobs.
        self.kf.P = np.eye(4) * cfg.initial_covariance
        if initial_state is not None:
            self.kf.x = np.asarray(initial_state, dtype=float).reshape(4, 1).copy()
        else:
            self.kf.x = np.zeros((4, 1))
        self._seeded = initial_state is not None

        self.state = TrackState.UNINITIALIZED
        self.last_time: Optional[float] = None
        self.age_frames = 0

    # ------------------------------------------------------------------ #
    #   M O D E L   M A T R I C E S
    # ------------------------------------------------------------------ #
    def _set_dt(self, dt: float) -> None:
        g = self.cfg.gravity
        self.kf.F = np.array(
            [
                [1.0, 0.0, dt, 0.0],
                [0.0, 1.0, 0.0, dt],
                [0.0, 0.0, 1.0, 0.0],
                [0.0, 0.0, 0.0, 1.0],
            ]
        )
        self.kf.B = np.array([[0.0], [0.5 * g * dt * dt], [0.0], [g * dt]])

    def update_nominal_dt(self, dt: float) -> None:
        if dt > 0 and abs(self.nominal_dt - dt) > 1e-9:
            self.nominal_dt = dt
            self._set_dt(dt)

    def apply_tuning(
        self,
        *,
        process_noise_var: float | None = None,
        measurement_noise_var: float | None = None,
    ) -> None:
        """Swap noise terms while running; only touches what changed."""
        if process_noise_var is not None and process_noise_var > 0:
            self.cfg.process_noise_var = float(process_noise_var)
            self.kf.Q = np.eye(4) * self.cfg.process_noise_var
        if measurement_noise_var is not None and measurement_noise_var > 0:
            self.cfg.measurement_noise_var = float(measurement_noise_var)
            self.kf.R = np.eye(2) * self.cfg.measurement_noise_var

    # ------------------------------------------------------------------ #
    #   P R E D I C T   /   C O R R E C T
    # ------------------------------------------------------------------ #
    @property
    def tracking(self) -> bool:
        return self.state is TrackState.TRACKING

    @property
    def estimate(self) -> State4:
        x, y, vx, vy = (float(v) for v in self.kf.x.ravel())
        return x, y, vx, vy

    @property
    def covariance(self) -> np.ndarray:
        return self.kf.P.copy()

    def predict(self, dt: float | None = None) -> State4:
        """Prior estimate `dt` seconds ahead (nominal Δt if omitted)."""
        self._set_dt(self.nominal_dt if dt is None else dt)
        self.kf.predict(u=_UNIT_CONTROL)
        return self.estimate

    def correct(self, measurement: Sequence[float]) -> State4:
        """Posterior estimate after fusing one (x, y) measurement."""
        z = np.array([[float(measurement[0])], [float(measurement[1])]])
        if self._seeded:
            self.kf.update(z)
        else:
            # No initial guess: the first fix is taken as the position as-is.
            self.kf.x[:2] = z
            self._seeded = True
        self.state = TrackState.TRACKING
        self.age_frames += 1
        return self.estimate

    def step(self, measurement: Optional[Sequence[float]], timestamp: float) -> State4:
        """
        Predict to `timestamp` (seconds) and correct if a measurement exists.
        Without one the estimate is simply carried forward.
        """
        dt = self.nominal_dt
        if self.last_time is not None:
            actual_dt = timestamp - self.last_time
            if actual_dt > 1e-6:
                dt = float(np.clip(actual_dt, 0.5 * self.nominal_dt, 2.0 * self.nominal_dt))
        self.predict(dt)
        self.last_time = timestamp

        if measurement is None:
            return self.estimate
        return self.correct(measurement)
