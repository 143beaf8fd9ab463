# motionflow/ground_truth.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

import numpy as np
import scipy.io

from motionflow.events import FLOW_EVENT_DTYPE

logger = logging.getLogger(__name__)


class GroundTruthImportError(RuntimeError):
    pass


@dataclass(frozen=True)
class GroundTruthField:
    """
    Reference flow field vx[y, x], vy[y, x] (px/s), valid for timestamps in
    [t_start, t_end).
    """
    vx: np.ndarray
    vy: np.ndarray
    t_start: float
    t_end: float

    def sample(self, x: int, y: int, t: int) -> Optional[Tuple[float, float]]:
        """(vx, vy) at (x, y), or None when t or the pixel is outside the field."""
        if not (self.t_start <= t < self.t_end):
            return None
        H, W = self.vx.shape
        if not (0 <= x < W and 0 <= y < H):
            return None
        return float(self.vx[y, x]), float(self.vy[y, x])

    @staticmethod
    def from_imu(estimator, t_start: float, t_end: float) -> "GroundTruthField":
        """Freeze the estimator's current whole-frame prediction into a field."""
        vx, vy = estimator.flow_field()
        return GroundTruthField(vx=vx.astype(np.float64), vy=vy.astype(np.float64),
                                t_start=float(t_start), t_end=float(t_end))


def _read_arrays(path: Path) -> dict:
    if path.suffix.lower() == ".mat":
        return scipy.io.loadmat(str(path))
    with np.load(path, allow_pickle=False) as data:
        return {k: data[k] for k in data.files}


def load_ground_truth(path: str | Path) -> GroundTruthField:
    """
    Load vxGT[y][x], vyGT[y][x] and ts[2] from a .mat (MATLAB) or .npz file.
    Raises GroundTruthImportError for anything missing or malformed.
    """
    path = Path(path)
    if not path.exists():
        raise GroundTruthImportError(f"Ground truth file not found: {path}")
    try:
        data = _read_arrays(path)
    except Exception as e:
        raise GroundTruthImportError(f"Cannot read ground truth file {path}: {e}") from e

    missing = [k for k in ("vxGT", "vyGT", "ts") if k not in data]
    if missing:
        raise GroundTruthImportError(f"Ground truth file {path} lacks arrays {missing}")

    vx = np.asarray(data["vxGT"], dtype=np.float64)
    vy = np.asarray(data["vyGT"], dtype=np.float64)
    ts = np.asarray(data["ts"], dtype=np.float64).ravel()
    if vx.ndim != 2 or vx.shape != vy.shape:
        raise GroundTruthImportError(
            f"vxGT/vyGT must be 2D arrays of equal shape, got {vx.shape} and {vy.shape}"
        )
    if ts.size < 2:
        raise GroundTruthImportError(f"ts must hold [t_start, t_end], got {ts.size} values")

    return GroundTruthField(vx=vx, vy=vy, t_start=float(ts[0]), t_end=float(ts[1]))


def _write_arrays(path: Path, vx: np.ndarray, vy: np.ndarray) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.suffix.lower() == ".mat":
        scipy.io.savemat(str(path), {"vx": vx, "vy": vy})
    else:
        np.savez_compressed(path, vx=vx, vy=vy)


class FlowExporter:
    """
    One-shot export of the last-known flow per sensor pixel over [tmin, tmax).

    Packets whose first timestamp lies in the window contribute; the first
    packet at or after tmax writes the arrays and closes the exporter until
    reset().
    """

    def __init__(self, resolution: Tuple[int, int]):
        self.resolution = (int(resolution[0]), int(resolution[1]))
        self.path: Optional[Path] = None
        self.tmin = 0
        self.tmax = 0
        self.exported = False
        self.vx_out: Optional[np.ndarray] = None
        self.vy_out: Optional[np.ndarray] = None

    @property
    def armed(self) -> bool:
        return self.path is not None and not self.exported

    def arm(self, tmin: int, tmax: int, path: str | Path) -> None:
        self.tmin = int(tmin)
        self.tmax = int(tmax)
        self.path = Path(path)
        self.exported = False
        self.vx_out = None
        self.vy_out = None

    def reset(self, resolution: Tuple[int, int]) -> None:
        """Drop accumulated flow; an armed export starts over on the next packet."""
        self.resolution = (int(resolution[0]), int(resolution[1]))
        self.exported = False
        self.vx_out = None
        self.vy_out = None

    def observe(self, out_events: np.ndarray, first_ts: Optional[int] = None) -> bool:
        """
        Feed one output packet. `first_ts` is the first timestamp of the input
        packet, so a packet with no output still opens or closes the window;
        it defaults to the first output timestamp. Returns True when the export
        was written.
        """
        if out_events.dtype != FLOW_EVENT_DTYPE:
            raise TypeError(f"expected FLOW_EVENT_DTYPE records, got dtype {out_events.dtype}")
        if first_ts is None:
            if out_events.size == 0:
                return False
            first_ts = int(out_events["t"][0])
        if not self.armed:
            return False

        first_ts = int(first_ts)
        if self.tmin <= first_ts < self.tmax:
            if self.vx_out is None:
                W, H = self.resolution
                self.vx_out = np.zeros((H, W), dtype=np.float64)
                self.vy_out = np.zeros((H, W), dtype=np.float64)
            sel = out_events[out_events["has_direction"]]
            self.vx_out[sel["y"], sel["x"]] = sel["vx"]
            self.vy_out[sel["y"], sel["x"]] = sel["vy"]
            return False

        if first_ts >= self.tmax and self.vx_out is not None:
            written = False
            try:
                _write_arrays(self.path, self.vx_out, self.vy_out)
                logger.info("Exported motion flow to %s", self.path)
                written = True
            except OSError as e:
                logger.error("Flow export to %s failed: %s", self.path, e)
            self.exported = True
            self.vx_out = None
            self.vy_out = None
            return written
        return False
