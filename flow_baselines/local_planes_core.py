# flow_baselines/local_planes_core.py
# Local-planes flow:
# - take the same-polarity time-map neighbourhood (2r+1)^2 around the event
# - keep pixels whose last timestamp is within max_dt_us of the event
# - least-squares fit t = a*x + b*y + c (t in us, x/y in subsampled px)
# - flow = (a, b) / (a^2 + b^2), converted to px/s at sensor resolution

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

import numba as nb
import numpy as np

from motionflow.events import FlowEvent
from motionflow.pipeline import FlowContext
from motionflow.time_map import INIT_TS


@dataclass
class LocalPlanesConfig:
    radius: int = 2                 # 5x5 neighbourhood
    max_dt_us: int = 100_000        # neighbours older than this are ignored
    min_points: int = 5
    min_gradient: float = 1e-9      # us/px; flatter planes have no defined speed


@nb.njit(cache=True, fastmath=False)
def _fit_plane_kernel(last_times, xi, yi, ci, ti, radius, max_dt_us, min_points, min_gradient):
    """
    Returns (ok, a, b): plane gradient in us/px around (xi, yi).
    """
    W = last_times.shape[0]
    H = last_times.shape[1]

    # accumulate normal equations of t = a*dx + b*dy + c with dx, dy relative to the event
    sxx = 0.0
    sxy = 0.0
    syy = 0.0
    sx = 0.0
    sy = 0.0
    st = 0.0
    sxt = 0.0
    syt = 0.0
    n = 0
    for dy in range(-radius, radius + 1):
        yy = yi + dy
        if yy < 0 or yy >= H:
            continue
        for dx in range(-radius, radius + 1):
            xx = xi + dx
            if xx < 0 or xx >= W:
                continue
            t_last = last_times[xx, yy, ci]
            if t_last == INIT_TS:
                continue
            age = ti - t_last
            if age < 0 or age > max_dt_us:
                continue
            tt = float(t_last - ti)
            fx = float(dx)
            fy = float(dy)
            sxx += fx * fx
            sxy += fx * fy
            syy += fy * fy
            sx += fx
            sy += fy
            st += tt
            sxt += fx * tt
            syt += fy * tt
            n += 1

    if n < min_points:
        return False, 0.0, 0.0

    # solve the 3x3 system [[sxx,sxy,sx],[sxy,syy,sy],[sx,sy,n]] [a,b,c]^T = [sxt,syt,st]^T
    fn = float(n)
    det = (sxx * (syy * fn - sy * sy)
           - sxy * (sxy * fn - sy * sx)
           + sx * (sxy * sy - syy * sx))
    if abs(det) < 1e-12:
        return False, 0.0, 0.0

    det_a = (sxt * (syy * fn - sy * sy)
             - sxy * (syt * fn - sy * st)
             + sx * (syt * sy - syy * st))
    det_b = (sxx * (syt * fn - st * sy)
             - sxt * (sxy * fn - sy * sx)
             + sx * (sxy * st - syt * sx))
    a = det_a / det
    b = det_b / det
    if a * a + b * b < min_gradient * min_gradient:
        return False, 0.0, 0.0
    return True, a, b


class LocalPlanesFlow:
    name = "LocalPlanesFlow"

    def __init__(self, cfg: Optional[LocalPlanesConfig] = None):
        self.cfg = cfg if cfg is not None else LocalPlanesConfig()
        self.margin = int(self.cfg.radius)

    def reset(self, sub_size: Tuple[int, int]) -> None:
        pass

    def compute_flow(self, ev: FlowEvent, ctx: FlowContext) -> Optional[Tuple[float, float]]:
        ok, a, b = _fit_plane_kernel(
            ctx.time_map.last_times,
            int(ev.x), int(ev.y), int(ev.type), np.int64(ev.t),
            int(self.cfg.radius),
            int(self.cfg.max_dt_us),
            int(self.cfg.min_points),
            float(self.cfg.min_gradient),
        )
        if not ok:
            return None
        g2 = a * a + b * b
        # us/px (subsampled) -> px/s at sensor resolution
        scale = 1e6 * (1 << ctx.cfg.sub_sample_shift)
        return scale * a / g2, scale * b / g2
