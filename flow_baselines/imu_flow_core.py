# flow_baselines/imu_flow_core.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

from motionflow.events import FlowEvent
from motionflow.pipeline import FlowContext


@dataclass
class ImuFlowAlgorithm:
    """
    Reports the gyro-predicted flow as the observed flow. Useful as a
    reference run and for checking the IMU calibration.
    """
    name: str = "ImuFlow"
    margin: int = 0

    def reset(self, sub_size: Tuple[int, int]) -> None:
        pass

    def compute_flow(self, ev: FlowEvent, ctx: FlowContext) -> Optional[Tuple[float, float]]:
        vx, vy, _ = ctx.imu.calculate_flow(ev.raw_x, ev.raw_y)
        return vx, vy
