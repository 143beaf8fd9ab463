# motionflow/pipeline.py
from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple

import numpy as np

from flow_metrics.flow_stats_core import MotionFlowStatistics, angular_error_deg
from motionflow.config import MotionFlowComputeConfig, save_config
from motionflow.events import FLOW_EVENT_DTYPE, FlowEvent, extract_txyp
from motionflow.ground_truth import FlowExporter, GroundTruthField, GroundTruthImportError, load_ground_truth
from motionflow.imu_flow import ImuFlowEstimator, ImuSample
from motionflow.time_map import EventTimeMap, SpatialBounds, TimeMapUpdate

logger = logging.getLogger(__name__)


_GEOMETRY_KEYS = ("resolution", "sub_sample_shift", "pixel_pitch_um", "focal_length_mm")


class ResetReason(Enum):
    USER = "user"
    TIMESTAMPS_RESET = "timestamps_reset"
    REWIND = "rewind"
    FILE_OPEN = "file_open"
    CHIP_SIZE_CHANGED = "chip_size_changed"


@dataclass(frozen=True)
class FlowContext:
    """What a flow algorithm may read while computing one event's flow."""
    time_map: EventTimeMap
    imu: ImuFlowEstimator
    cfg: MotionFlowComputeConfig


class FlowAlgorithm(Protocol):
    name: str
    margin: int   # border (subsampled px) the neighbourhood needs

    def reset(self, sub_size: Tuple[int, int]) -> None:
        ...

    def compute_flow(self, ev: FlowEvent, ctx: FlowContext) -> Optional[Tuple[float, float]]:
        """(vx, vy) in px/s, or None when no flow can be computed for ev."""
        ...


@dataclass
class MotionFlowResult:
    events: np.ndarray          # FLOW_EVENT_DTYPE (N_out,)
    stats: Dict[str, Any]


class MotionFlowPipeline:
    """
    Per-event motion-flow filter: spatial / address / refractory filtering,
    a pluggable flow algorithm, ground-truth assignment, speed and outlier
    rejection, statistics and output.

    All state-mutating entry points hold one re-entrant lock, so configuration
    changes from another thread never interleave with a packet in flight.
    """

    def __init__(self, algorithm: FlowAlgorithm, cfg: Optional[MotionFlowComputeConfig] = None):
        self._lock = threading.RLock()
        self.algorithm = algorithm
        self.cfg = cfg if cfg is not None else MotionFlowComputeConfig()
        self.imu = ImuFlowEstimator(self.cfg.resolution, self.cfg.pixel_pitch_um, self.cfg.focal_length_mm)
        self.statistics = MotionFlowStatistics(getattr(algorithm, "name", type(algorithm).__name__),
                                               self.cfg.sub_size)
        self.exporter = FlowExporter(self.cfg.resolution)
        self.ground_truth: Optional[GroundTruthField] = None
        self.avg_speed = 0.0
        self.n_resets = 0
        self.time_map: Optional[EventTimeMap] = None
        self.reset_filter()

    # ------------------------------------------------------------------
    # Reset / notifications
    # ------------------------------------------------------------------
    def _allocate_map(self) -> None:
        self.time_map = EventTimeMap.create(self.cfg.sub_size)
        self.statistics.global_motion.reset(*self.cfg.sub_size)
        logger.info("Reallocated filter storage after parameter change or reset.")

    def reset_filter(self) -> None:
        with self._lock:
            cfg = self.cfg
            sub_w, sub_h = cfg.sub_size
            self.statistics.reset(sub_w, sub_h)
            self.imu.set_geometry(cfg.resolution, cfg.pixel_pitch_um, cfg.focal_length_mm)
            self.imu.reset()
            self.exporter.reset(cfg.resolution)
            self._allocate_map()
            self.algorithm.reset((sub_w, sub_h))
            self.n_resets += 1

    def notify(self, reason: ResetReason) -> None:
        with self._lock:
            if reason is ResetReason.REWIND and (self.cfg.measure_accuracy or self.cfg.measure_processing_time):
                self.trigger_logging()
            if reason is ResetReason.FILE_OPEN:
                logger.info("File Open")
                self.reset_ground_truth()
            logger.debug("reset requested: %s", reason.value)
            self.reset_filter()

    def set_chip_size(self, width: int, height: int) -> None:
        with self._lock:
            self.update_config(resolution=(int(width), int(height)))
            self.notify(ResetReason.CHIP_SIZE_CHANGED)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------
    def update_config(self, **changes) -> MotionFlowComputeConfig:
        """
        Apply live parameter changes. Out-of-range values are clamped by the
        config itself; switching on accuracy or processing-time measurement
        and any geometry change reset the filter.
        """
        with self._lock:
            old = self.cfg
            if any(k in changes for k in ("resolution", "sub_sample_shift")):
                # full-frame bounds follow the new frame size
                if "x_max" not in changes and old.x_max == old.sub_size[0]:
                    changes["x_max"] = None
                if "y_max" not in changes and old.y_max == old.sub_size[1]:
                    changes["y_max"] = None
            if changes.get("measure_processing_time") and not old.measure_processing_time:
                # worst-case per-event cost
                changes["refractory_period_us"] = 1

            new = replace(old, **changes)
            self.cfg = new

            needs_reset = any(getattr(old, k) != getattr(new, k) for k in _GEOMETRY_KEYS)
            needs_reset |= new.measure_accuracy and not old.measure_accuracy
            needs_reset |= new.measure_processing_time and not old.measure_processing_time
            if needs_reset:
                self.reset_filter()
            return new

    def save_config(self, path: str | Path) -> Path:
        return save_config(self.cfg, path)

    # ------------------------------------------------------------------
    # IMU calibration / logging
    # ------------------------------------------------------------------
    def start_imu_calibration(self) -> None:
        with self._lock:
            self.imu.start_calibration()

    def reset_imu_calibration(self) -> None:
        with self._lock:
            self.imu.reset_calibration()

    def trigger_logging(self) -> str:
        with self._lock:
            if not self.imu.is_calibration_set():
                logger.info("IMU has not been calibrated yet!")
            summary = self.statistics.summary()
        logger.info(summary)
        return summary

    # ------------------------------------------------------------------
    # Ground truth import / flow export
    # ------------------------------------------------------------------
    def import_ground_truth(self, path: str | Path) -> GroundTruthField:
        try:
            field = load_ground_truth(path)
        except GroundTruthImportError as e:
            logger.error("Ground truth import failed: %s", e)
            raise
        self.set_ground_truth(field)
        logger.info("Imported ground truth file %s", path)
        return field

    def set_ground_truth(self, field: GroundTruthField) -> None:
        with self._lock:
            self.ground_truth = field

    def reset_ground_truth(self) -> None:
        with self._lock:
            self.ground_truth = None

    def export_flow(self, tmin: int, tmax: int, path: str | Path) -> None:
        with self._lock:
            self.exporter.arm(tmin, tmax, path)

    # ------------------------------------------------------------------
    # Per-event steps
    # ------------------------------------------------------------------
    def _context(self) -> FlowContext:
        return FlowContext(time_map=self.time_map, imu=self.imu, cfg=self.cfg)

    def _ground_truth_at(self, ev: FlowEvent) -> Tuple[float, float, float]:
        if self.ground_truth is not None:
            sampled = self.ground_truth.sample(ev.x, ev.y, ev.t)
            if sampled is not None:
                vx_gt, vy_gt = sampled
                return vx_gt, vy_gt, math.sqrt(vx_gt * vx_gt + vy_gt * vy_gt)
        vx_gt, vy_gt, _ = self.imu.calculate_flow(ev.raw_x, ev.raw_y)
        return vx_gt, vy_gt, math.sqrt(vx_gt * vx_gt + vy_gt * vy_gt)

    def _is_speeder(self, v: float) -> bool:
        # compare against the average before this sample is mixed in
        prev = self.avg_speed
        a = self.cfg.speed_mixing_factor
        self.avg_speed = (1.0 - a) * self.avg_speed + a * v
        return v > prev * self.cfg.excess_speed_reject_factor

    def _is_outlier(self, vx, vy, v, vx_gt, vy_gt, v_gt) -> bool:
        return abs(angular_error_deg(vx, vy, v, vx_gt, vy_gt, v_gt)) > self.cfg.epsilon_deg

    # ------------------------------------------------------------------
    # Packet processing
    # ------------------------------------------------------------------
    def filter_packet(self, events, imu_samples: Iterable[ImuSample] = ()) -> MotionFlowResult:
        """
        Process one packet of events. IMU samples are applied in timestamp
        order, each one before the first event that is not older than it.
        """
        t, x, y, p = extract_txyp(events)
        imu = sorted(imu_samples, key=lambda s: s.timestamp_us)
        n = int(t.shape[0])

        with self._lock:
            cfg = self.cfg
            if cfg.measure_processing_time:
                self.statistics.processing_time.start()
            self.time_map.begin_packet()
            self.statistics.global_motion.begin_packet()

            counts = {
                "n_in": n, "n_out": 0, "n_with_direction": 0,
                "rej_xy": 0, "rej_address": 0, "rej_refractory": 0, "rej_no_flow": 0,
                "rej_speed": 0, "rej_outlier": 0, "n_rewind": 0, "n_imu_updates": 0,
            }
            rows: List[tuple] = []
            ctx = self._context()
            bounds = SpatialBounds(cfg.x_min, cfg.x_max, cfg.y_min, cfg.y_max)
            shift = cfg.sub_sample_shift
            W, H = cfg.resolution
            center = (W / 2.0, H / 2.0)
            k = 0

            for i in range(n):
                ti = int(t[i])
                while k < len(imu) and imu[k].timestamp_us <= ti:
                    counts["n_imu_updates"] += int(self.imu.update_transform(imu[k]))
                    k += 1

                raw_x, raw_y = int(x[i]), int(y[i])
                ev = FlowEvent(raw_x >> shift, raw_y >> shift, ti, int(p[i]), raw_x, raw_y)

                if bounds.rejects(ev.x, ev.y):
                    counts["rej_xy"] += 1
                    continue
                if self.time_map.is_invalid_address(ev.x, ev.y, self.algorithm.margin, shift):
                    counts["rej_address"] += 1
                    continue

                upd = self.time_map.update(ev.x, ev.y, ev.type, ev.t, cfg.refractory_period_us)
                if upd is TimeMapUpdate.REWOUND:
                    logger.debug("non-monotonic timestamp %d at (%d,%d), resetting", ev.t, ev.x, ev.y)
                    counts["n_rewind"] += 1
                    self.reset_filter()
                    ctx = self._context()
                    if cfg.measure_processing_time:
                        # the reset cleared the running timer
                        self.statistics.processing_time.start()
                    continue
                if upd is TimeMapUpdate.REFRACTORY:
                    counts["rej_refractory"] += 1
                    continue

                flow = self.algorithm.compute_flow(ev, ctx)
                if flow is None:
                    counts["rej_no_flow"] += 1
                    continue
                vx, vy = float(flow[0]), float(flow[1])
                v = math.sqrt(vx * vx + vy * vy)

                vx_gt, vy_gt, v_gt = self._ground_truth_at(ev)

                if cfg.speed_control_enabled and self._is_speeder(v):
                    counts["rej_speed"] += 1
                    continue
                if cfg.discard_outliers_enabled and self._is_outlier(vx, vy, v, vx_gt, vy_gt, v_gt):
                    counts["rej_outlier"] += 1
                    continue

                out_x = ev.x << shift
                out_y = ev.y << shift
                has_direction = v != 0
                rows.append((ev.t, out_x, out_y, ev.type, vx, vy, v, has_direction, vx_gt, vy_gt))
                counts["n_out"] += 1
                if has_direction:
                    counts["n_with_direction"] += 1
                    if cfg.show_global_enabled:
                        self.statistics.global_motion.update(vx, vy, v, out_x, out_y, center, (ev.x, ev.y))
                    if cfg.measure_accuracy:
                        self.statistics.update_accuracy(vx, vy, v, vx_gt, vy_gt, v_gt)

            while k < len(imu):
                counts["n_imu_updates"] += int(self.imu.update_transform(imu[k]))
                k += 1

            out = np.array(rows, dtype=FLOW_EVENT_DTYPE) if rows else np.empty((0,), dtype=FLOW_EVENT_DTYPE)

            if cfg.measure_processing_time:
                elapsed_us = self.statistics.processing_time.stop(n)
                counts["time_us"] = elapsed_us

            if self.exporter.armed:
                counts["exported"] = self.exporter.observe(out, int(t[0]) if n else None)

            counts["avg_speed"] = self.avg_speed
            return MotionFlowResult(events=out, stats=counts)
