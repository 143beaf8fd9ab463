from __future__ import annotations

from typing import List, Optional, Sequence, Tuple

import numpy as np
import pytest

from motionflow.config import MotionFlowComputeConfig
from motionflow.events import make_events


class ScriptedFlow:
    """Flow algorithm returning pre-set velocities, one per call."""

    name = "ScriptedFlow"

    def __init__(self, flows: Sequence[Optional[Tuple[float, float]]] = (), default=(1.0, 0.0), margin: int = 0):
        self.flows: List[Optional[Tuple[float, float]]] = list(flows)
        self.default = default
        self.margin = margin
        self.calls = []
        self.resets = 0

    def reset(self, sub_size):
        self.resets += 1

    def compute_flow(self, ev, ctx):
        self.calls.append(ev)
        if self.flows:
            return self.flows.pop(0)
        return self.default


@pytest.fixture
def small_cfg() -> MotionFlowComputeConfig:
    return MotionFlowComputeConfig(
        resolution=(128, 128),
        sub_sample_shift=0,
        refractory_period_us=1000,
        speed_control_enabled=False,
    )


def events(rows):
    """rows: iterable of (t, x, y, p)."""
    arr = np.asarray(rows, dtype=np.int64).reshape(-1, 4)
    return make_events(arr[:, 0], arr[:, 1], arr[:, 2], arr[:, 3])
