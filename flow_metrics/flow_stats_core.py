# flow_metrics/flow_stats_core.py
# -*- coding: utf-8 -*-
"""
Motion-flow statistics: global motion, accuracy against ground truth and
processing time.

Accuracy definitions:
  angular error  = angle between (vx, vy) and (vxGT, vyGT) in degrees,
                   0 when either vector has zero length
  endpoint error = |(vx, vy) - (vxGT, vyGT)|               (px/s)
  relative EE    = endpoint error / |(vxGT, vyGT)| * 100    (%)

Global rotation and expansion of an event at offset (dx, dy) from the image
centre with r^2 = dx^2 + dy^2:
  rotation  = (dx*vy - dy*vx) / r^2
  expansion = (dx*vx + dy*vy) / r^2
"""

from __future__ import annotations

import math
import time
from typing import Dict, Optional, Sequence, Tuple

import numba as nb
import numpy as np

from flow_metrics.measurand import Measurand


ANGULAR_THRESHOLDS_DEG: Tuple[float, ...] = (3.0, 10.0, 30.0)
ENDPOINT_ABS_THRESHOLDS: Tuple[float, ...] = (1.0, 10.0, 20.0)     # px/s
ENDPOINT_REL_THRESHOLDS: Tuple[float, ...] = (5.0, 10.0, 20.0)     # %


# -----------------------------
# Scalar / batch error functions
# -----------------------------
def angular_error_deg(vx: float, vy: float, v: float, vx_gt: float, vy_gt: float, v_gt: float) -> float:
    if v == 0 or v_gt == 0:
        return 0.0
    c = (vx * vx_gt + vy * vy_gt) / (v * v_gt)
    c = min(1.0, max(-1.0, c))
    return math.degrees(math.acos(c))


def endpoint_error(vx: float, vy: float, vx_gt: float, vy_gt: float) -> float:
    return math.hypot(vx - vx_gt, vy - vy_gt)


@nb.njit(cache=True, fastmath=False)
def angular_error_batch(vx, vy, vx_gt, vy_gt):
    n = vx.shape[0]
    out = np.zeros(n, dtype=np.float64)
    for i in range(n):
        v = math.sqrt(vx[i] * vx[i] + vy[i] * vy[i])
        v_gt = math.sqrt(vx_gt[i] * vx_gt[i] + vy_gt[i] * vy_gt[i])
        if v == 0.0 or v_gt == 0.0:
            continue
        c = (vx[i] * vx_gt[i] + vy[i] * vy_gt[i]) / (v * v_gt)
        if c > 1.0:
            c = 1.0
        elif c < -1.0:
            c = -1.0
        out[i] = math.acos(c) * 180.0 / math.pi
    return out


@nb.njit(cache=True, fastmath=False)
def endpoint_error_batch(vx, vy, vx_gt, vy_gt):
    n = vx.shape[0]
    out = np.empty(n, dtype=np.float64)
    for i in range(n):
        dx = vx[i] - vx_gt[i]
        dy = vy[i] - vy_gt[i]
        out[i] = math.sqrt(dx * dx + dy * dy)
    return out


# -----------------------------
# Accumulators
# -----------------------------
class ThresholdedError:
    """Measurand plus the share of samples above each threshold."""

    def __init__(self, name: str, unit: str, thresholds: Sequence[float]):
        self.name = name
        self.unit = unit
        self.thresholds = tuple(float(x) for x in thresholds)
        self.measurand = Measurand()
        self._above = [0] * len(self.thresholds)

    def reset(self) -> None:
        self.measurand.reset()
        self._above = [0] * len(self.thresholds)

    def update(self, err: float) -> None:
        self.measurand.update(err)
        for k, thr in enumerate(self.thresholds):
            if err > thr:
                self._above[k] += 1

    def get_mean(self) -> float:
        return self.measurand.get_mean()

    def get_std_dev(self) -> float:
        return self.measurand.get_std_dev()

    def percent_above(self) -> Dict[float, float]:
        n = self.measurand.n
        return {thr: (100.0 * c / n if n else 0.0) for thr, c in zip(self.thresholds, self._above)}

    def __str__(self) -> str:
        above = ", ".join(f">{thr:g}{self.unit}: {pct:.1f}%" for thr, pct in self.percent_above().items())
        return f"{self.name}: {self.get_mean():.2f} +/- {self.get_std_dev():.2f} {self.unit} ({above})"


class GlobalMotion:
    """Means of vx, vy, rotation and expansion over the current packet."""

    def __init__(self, sub_size: Tuple[int, int] = (1, 1)):
        self.vx = Measurand()
        self.vy = Measurand()
        self.rotation = Measurand()
        self.expansion = Measurand()
        self.reset(*sub_size)

    def reset(self, sub_w: int, sub_h: int) -> None:
        self.sub_size = (int(sub_w), int(sub_h))
        # last accepted velocity per subsampled pixel
        self.flow_matrix = np.zeros((self.sub_size[0], self.sub_size[1], 2), dtype=np.float32)
        self.begin_packet()

    def begin_packet(self) -> None:
        self.vx.reset()
        self.vy.reset()
        self.rotation.reset()
        self.expansion.reset()

    def update(self, vx: float, vy: float, v: float, x: int, y: int,
               center: Tuple[float, float], sub_xy: Optional[Tuple[int, int]] = None) -> None:
        if v == 0:
            return
        self.vx.update(vx)
        self.vy.update(vy)
        dx = x - center[0]
        dy = y - center[1]
        r2 = dx * dx + dy * dy
        if r2 > 0:
            self.rotation.update((dx * vy - dy * vx) / r2)
            self.expansion.update((dx * vx + dy * vy) / r2)
        if sub_xy is not None:
            sx, sy = sub_xy
            if 0 <= sx < self.sub_size[0] and 0 <= sy < self.sub_size[1]:
                self.flow_matrix[sx, sy, 0] = vx
                self.flow_matrix[sx, sy, 1] = vy

    @property
    def mean_global_vx(self) -> float:
        return self.vx.get_mean()

    @property
    def mean_global_vy(self) -> float:
        return self.vy.get_mean()

    @property
    def mean_global_rotation(self) -> float:
        return self.rotation.get_mean()

    @property
    def mean_global_expansion(self) -> float:
        return self.expansion.get_mean()

    def __str__(self) -> str:
        return (
            f"global motion: vx={self.mean_global_vx:.2f} vy={self.mean_global_vy:.2f} px/s, "
            f"rotation={self.mean_global_rotation:.4f} 1/s, expansion={self.mean_global_expansion:.4f} 1/s"
        )


class ProcessingTime:
    """Wall-clock cost per packet (us) and per input event (us/event)."""

    def __init__(self):
        self.per_packet = Measurand()
        self.per_event = Measurand()
        self.start_time: Optional[float] = None

    def reset(self) -> None:
        self.per_packet.reset()
        self.per_event.reset()
        self.start_time = None

    def start(self) -> None:
        self.start_time = time.perf_counter()

    def stop(self, n_events: int) -> Optional[float]:
        if self.start_time is None:
            return None
        elapsed_us = (time.perf_counter() - self.start_time) * 1e6
        self.start_time = None
        self.per_packet.update(elapsed_us)
        if n_events > 0:
            self.per_event.update(elapsed_us / n_events)
        return elapsed_us

    def get_mean(self) -> float:
        return self.per_event.get_mean()

    def get_std_dev(self) -> float:
        return self.per_event.get_std_dev()

    def __str__(self) -> str:
        return (
            f"processing time: {self.per_event.get_mean():.2f} +/- {self.per_event.get_std_dev():.2f} us/event, "
            f"{self.per_packet.get_mean():.1f} +/- {self.per_packet.get_std_dev():.1f} us/packet"
        )


class MotionFlowStatistics:
    def __init__(self, filter_name: str, sub_size: Tuple[int, int] = (1, 1)):
        self.filter_name = filter_name
        self.global_motion = GlobalMotion(sub_size)
        self.angular_error = ThresholdedError("angular error", "deg", ANGULAR_THRESHOLDS_DEG)
        self.endpoint_error_abs = ThresholdedError("endpoint error", "px/s", ENDPOINT_ABS_THRESHOLDS)
        self.endpoint_error_rel = ThresholdedError("relative endpoint error", "%", ENDPOINT_REL_THRESHOLDS)
        self.processing_time = ProcessingTime()

    def reset(self, sub_w: int, sub_h: int) -> None:
        self.global_motion.reset(sub_w, sub_h)
        self.angular_error.reset()
        self.endpoint_error_abs.reset()
        self.endpoint_error_rel.reset()
        self.processing_time.reset()

    def update_accuracy(self, vx: float, vy: float, v: float, vx_gt: float, vy_gt: float, v_gt: float) -> None:
        self.angular_error.update(angular_error_deg(vx, vy, v, vx_gt, vy_gt, v_gt))
        ee = endpoint_error(vx, vy, vx_gt, vy_gt)
        self.endpoint_error_abs.update(ee)
        if v_gt > 0:
            self.endpoint_error_rel.update(100.0 * ee / v_gt)

    def to_row(self) -> Dict[str, float]:
        gm = self.global_motion
        return {
            "global_vx": gm.mean_global_vx,
            "global_vy": gm.mean_global_vy,
            "global_rotation": gm.mean_global_rotation,
            "global_expansion": gm.mean_global_expansion,
            "ae_mean": self.angular_error.get_mean(),
            "ae_std": self.angular_error.get_std_dev(),
            "ee_abs_mean": self.endpoint_error_abs.get_mean(),
            "ee_abs_std": self.endpoint_error_abs.get_std_dev(),
            "ee_rel_mean": self.endpoint_error_rel.get_mean(),
            "pt_us_per_event": self.processing_time.get_mean(),
        }

    def summary(self) -> str:
        return "\n".join([
            f"{self.filter_name} motion flow statistics",
            str(self.global_motion),
            str(self.angular_error),
            str(self.endpoint_error_abs),
            str(self.endpoint_error_rel),
            str(self.processing_time),
        ])

    def __str__(self) -> str:
        return self.summary()
