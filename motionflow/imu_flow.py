# motionflow/imu_flow.py
from __future__ import annotations

import logging
import math
from enum import Enum
from typing import NamedTuple, Optional, Tuple

import numba as nb
import numpy as np

from flow_metrics.measurand import Measurand

logger = logging.getLogger(__name__)


# Discard this many samples after every reset (leftover data from before a
# timestamp discontinuity).
FLUSH_COUNT = 10
CALIBRATION_SAMPLES = 800

# Gyro offsets (deg/s) measured on the reference camera
DEFAULT_PAN_OFFSET = 0.7216
DEFAULT_TILT_OFFSET = 3.4707
DEFAULT_ROLL_OFFSET = -0.2576

_DEG2RAD = math.pi / 180.0


class ImuSample(NamedTuple):
    timestamp_us: int
    pan_rate: float    # deg/s, gyro Y (yaw)
    tilt_rate: float   # deg/s, gyro X
    roll_rate: float   # deg/s, gyro Z


class EstimatorState(Enum):
    UNINITIALIZED = "uninitialized"
    FLUSHING = "flushing"
    INITIALIZING = "initializing"
    CALIBRATING = "calibrating"
    ACTIVE = "active"


@nb.njit(cache=True, fastmath=False)
def _rigid_flow_kernel(W: int, H: int, roll_rad: float, pan_px: float, tilt_px: float, dt_s: float):
    vx = np.zeros((H, W), dtype=np.float32)
    vy = np.zeros((H, W), dtype=np.float32)
    c = math.cos(roll_rad)
    s = math.sin(roll_rad)
    cx = W // 2
    cy = H // 2
    for yi in range(H):
        ny = yi - cy
        for xi in range(W):
            nx = xi - cx
            newx = c * nx - s * ny + pan_px
            newy = s * nx + c * ny + tilt_px
            vx[yi, xi] = (nx - newx) / dt_s
            vy[yi, xi] = (ny - newy) / dt_s
    return vx, vy


class ImuFlowEstimator:
    """
    Predicts the optical flow that pure camera rotation would induce, from
    gyro rates. Pan/tilt become an image translation, roll a rotation about
    the image centre. Scene depth and camera translation are ignored, so this
    is a ground-truth proxy rather than a measurement.
    """

    def __init__(
        self,
        resolution: Tuple[int, int] = (346, 260),
        pixel_pitch_um: float = 18.5,
        focal_length_mm: float = 4.5,
    ):
        self.resolution = (int(resolution[0]), int(resolution[1]))
        self.pixel_pitch_um = float(pixel_pitch_um)
        self.focal_length_mm = float(focal_length_mm)

        self.pan_calibrator = Measurand()
        self.tilt_calibrator = Measurand()
        self.roll_calibrator = Measurand()
        self.pan_offset = DEFAULT_PAN_OFFSET
        self.tilt_offset = DEFAULT_TILT_OFFSET
        self.roll_offset = DEFAULT_ROLL_OFFSET
        self.calibrating = False

        self.reset()
        # stays here until the first reset() or sample
        self._state = EstimatorState.UNINITIALIZED

    # ---- lifecycle ---------------------------------------------------------

    def set_geometry(self, resolution: Tuple[int, int], pixel_pitch_um: float, focal_length_mm: float) -> None:
        self.resolution = (int(resolution[0]), int(resolution[1]))
        self.pixel_pitch_um = float(pixel_pitch_um)
        self.focal_length_mm = float(focal_length_mm)

    def reset(self) -> None:
        self.flush_counter = FLUSH_COUNT
        self.pan_rate = 0.0
        self.tilt_rate = 0.0
        self.roll_rate = 0.0
        self.pan_translation = 0.0
        self.tilt_translation = 0.0
        self.roll_rotation_rad = 0.0
        self.rad_per_pixel = math.atan(self.pixel_pitch_um / (1000.0 * self.focal_length_mm))
        self.dt_s = 0.0
        self.last_ts_us: Optional[int] = None
        self.initialized = False
        self.vx = 0.0
        self.vy = 0.0
        self.v = 0.0
        self._state = EstimatorState.FLUSHING

    @property
    def state(self) -> EstimatorState:
        if self._state is EstimatorState.UNINITIALIZED:
            return self._state
        if self.flush_counter > 0:
            return EstimatorState.FLUSHING
        if not self.initialized:
            return EstimatorState.INITIALIZING
        if self.calibrating:
            return EstimatorState.CALIBRATING
        return EstimatorState.ACTIVE

    # ---- calibration -------------------------------------------------------

    def start_calibration(self) -> None:
        self.calibrating = True
        self.pan_calibrator.reset()
        self.tilt_calibrator.reset()
        self.roll_calibrator.reset()
        logger.info("IMU calibration started")

    def reset_calibration(self) -> None:
        self.pan_offset = 0.0
        self.tilt_offset = 0.0
        self.roll_offset = 0.0
        logger.info("IMU calibration erased")

    def is_calibration_set(self) -> bool:
        return self.roll_offset != 0 or self.tilt_offset != 0 or self.pan_offset != 0

    # ---- transform ---------------------------------------------------------

    def update_transform(self, sample: Optional[ImuSample]) -> bool:
        """
        Consume one gyro sample. Returns True only when the rigid transform
        (pan/tilt translation, roll rotation) was recomputed.
        """
        if sample is None:
            return False

        if self._state is EstimatorState.UNINITIALIZED:
            self.reset()

        if self.flush_counter > 0:
            self.flush_counter -= 1
            return False

        ts = int(sample.timestamp_us)
        if not self.initialized:
            self.last_ts_us = ts
            self.initialized = True
            return False

        self.dt_s = (ts - self.last_ts_us) * 1e-6
        self.last_ts_us = ts

        self.pan_rate = float(sample.pan_rate)
        self.tilt_rate = float(sample.tilt_rate)
        self.roll_rate = float(sample.roll_rate)

        if self.calibrating:
            self.pan_calibrator.update(self.pan_rate)
            self.tilt_calibrator.update(self.tilt_rate)
            self.roll_calibrator.update(self.roll_rate)
            if self.pan_calibrator.n >= CALIBRATION_SAMPLES:
                self.calibrating = False
                self.pan_offset = self.pan_calibrator.get_mean()
                self.tilt_offset = self.tilt_calibrator.get_mean()
                self.roll_offset = self.roll_calibrator.get_mean()
                logger.info(
                    "calibration finished. %d samples averaged to (pan,tilt,roll)=(%.3f,%.3f,%.3f)",
                    CALIBRATION_SAMPLES, self.pan_offset, self.tilt_offset, self.roll_offset,
                )
            return False

        self.pan_translation = _DEG2RAD * (self.pan_rate - self.pan_offset) * self.dt_s / self.rad_per_pixel
        self.tilt_translation = _DEG2RAD * (self.tilt_rate - self.tilt_offset) * self.dt_s / self.rad_per_pixel
        self.roll_rotation_rad = _DEG2RAD * (self.roll_offset - self.roll_rate) * self.dt_s
        return True

    def calculate_flow(self, x: int, y: int) -> Tuple[float, float, float]:
        """
        Flow (px/s) at sensor pixel (x, y): apply R*e+T about the image centre
        and compare with the original position.
        """
        if self.dt_s == 0:
            self.dt_s = 1.0
        W, H = self.resolution
        nx = x - W // 2
        ny = y - H // 2
        c = math.cos(self.roll_rotation_rad)
        s = math.sin(self.roll_rotation_rad)
        newx = c * nx - s * ny + self.pan_translation
        newy = s * nx + c * ny + self.tilt_translation
        self.vx = (nx - newx) / self.dt_s
        self.vy = (ny - newy) / self.dt_s
        self.v = math.sqrt(self.vx * self.vx + self.vy * self.vy)
        return self.vx, self.vy, self.v

    def flow_field(self) -> Tuple[np.ndarray, np.ndarray]:
        """Predicted (vx, vy) for every sensor pixel, arrays shaped (H, W)."""
        W, H = self.resolution
        dt_s = self.dt_s if self.dt_s != 0 else 1.0
        return _rigid_flow_kernel(
            int(W), int(H),
            float(self.roll_rotation_rad),
            float(self.pan_translation),
            float(self.tilt_translation),
            float(dt_s),
        )
