# motionflow/time_map.py
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Tuple

import numpy as np

from motionflow.events import NUM_POLARITY_TYPES


# "never seen" marker, so the first event at a pixel always passes
INIT_TS = -10**18


class TimeMapUpdate(Enum):
    PASSED = "passed"
    REFRACTORY = "refractory"
    REWOUND = "rewound"


@dataclass(frozen=True)
class SpatialBounds:
    """Accept region [x_min, x_max) x [y_min, y_max) in subsampled pixels."""

    x_min: int
    x_max: int
    y_min: int
    y_max: int

    def rejects(self, x: int, y: int) -> bool:
        return x < self.x_min or x >= self.x_max or y < self.y_min or y >= self.y_max


class EventTimeMap:
    """
    Per-pixel, per-polarity last-event timestamps at subsampled resolution,
    plus the per-packet "already fired" grid.

    last_times[x, y, c] holds the timestamp of the last event at (x, y) with
    polarity type c that passed the refractory test; last_seen[x, y, c] the
    last one that arrived at all, which is what a rewind is detected against.
    """

    def __init__(self, sub_size: Tuple[int, int], num_types: int = NUM_POLARITY_TYPES):
        W, H = int(sub_size[0]), int(sub_size[1])
        if W <= 0 or H <= 0:
            raise ValueError(f"Invalid subsampled size (W,H)=({W},{H})")
        self.sub_size = (W, H)
        self.num_types = int(num_types)
        self.last_times = np.full((W, H, self.num_types), INIT_TS, dtype=np.int64)
        self.last_seen = np.full((W, H, self.num_types), INIT_TS, dtype=np.int64)
        self.fired = np.zeros((W, H), dtype=np.bool_)

    @staticmethod
    def create(sub_size: Tuple[int, int]) -> "EventTimeMap":
        return EventTimeMap(sub_size)

    def reset(self):
        self.last_times.fill(INIT_TS)
        self.last_seen.fill(INIT_TS)
        self.fired.fill(False)

    def begin_packet(self):
        self.fired.fill(False)

    def is_invalid_address(self, x: int, y: int, margin: int, sub_sample_shift: int) -> bool:
        """
        True if (x, y) lies within `margin` pixels of the subsampled frame edge,
        or, when subsampling, if this subsampled pixel already fired in the
        current packet. A valid address marks the pixel as fired.
        """
        W, H = self.sub_size
        if not (margin <= x < W - margin and margin <= y < H - margin):
            return True
        if sub_sample_shift > 0:
            if self.fired[x, y]:
                return True
            self.fired[x, y] = True
        return False

    def update(self, x: int, y: int, c: int, ts: int, refractory_period_us: int) -> TimeMapUpdate:
        if ts < self.last_seen[x, y, c]:
            return TimeMapUpdate.REWOUND
        self.last_seen[x, y, c] = ts
        last = int(self.last_times[x, y, c])
        if last != INIT_TS and ts - last <= refractory_period_us:
            return TimeMapUpdate.REFRACTORY
        self.last_times[x, y, c] = ts
        return TimeMapUpdate.PASSED
