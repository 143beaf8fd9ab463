# motionflow/config.py
from __future__ import annotations

import json
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Optional, Tuple


def get_repo_root() -> Path:
    # <repo>/motionflow/config.py -> parents[1] == <repo>
    return Path(__file__).resolve().parents[1]


@dataclass(frozen=True)
class MotionFlowPaths:
    # -----------------------------
    # Repo paths
    # -----------------------------
    REPO_ROOT: Path = get_repo_root()

    # <repo>/data/recordings/*.npz   (t, x, y, p [, imu_t, gyro_x, gyro_y, gyro_z])
    DATA_ROOT: Path = REPO_ROOT / "data" / "recordings"

    # Outputs
    OUT_ROOT: Path = REPO_ROOT / "data" / "motionflow_out"
    CONFIG_FILE: Path = REPO_ROOT / "data" / "motionflow_config.json"


PATHS = MotionFlowPaths()


MAX_SUB_SAMPLE_SHIFT = 4
_MIN_MIXING_FACTOR = float.fromhex("0x1p-149")  # smallest positive float32


@dataclass(frozen=True)
class MotionFlowComputeConfig:
    # -----------------------------
    # Sensor geometry
    # -----------------------------
    resolution: Tuple[int, int] = (346, 260)   # (W, H), DAVIS346
    pixel_pitch_um: float = 18.5
    focal_length_mm: float = 4.5

    # -----------------------------
    # Time-map / spatial filter
    # -----------------------------
    sub_sample_shift: int = 0                  # 0..4
    x_min: int = 0
    x_max: Optional[int] = None                # None -> subsampled width
    y_min: int = 0
    y_max: Optional[int] = None                # None -> subsampled height
    refractory_period_us: int = 50_000

    # -----------------------------
    # Speed control / outliers
    # -----------------------------
    speed_control_enabled: bool = True
    speed_mixing_factor: float = 1e-3          # (0, 1]
    excess_speed_reject_factor: float = 2.0
    discard_outliers_enabled: bool = False
    epsilon_deg: float = 10.0                  # [0, 180]

    # -----------------------------
    # Measurements
    # -----------------------------
    measure_accuracy: bool = False
    measure_processing_time: bool = False

    # -----------------------------
    # Display (only consumed by viewers; show_global also gates global motion)
    # -----------------------------
    show_vectors_enabled: bool = True
    show_raw_input_enabled: bool = True
    show_global_enabled: bool = True
    pps_scale: float = 1.0

    def __post_init__(self):
        W, H = int(self.resolution[0]), int(self.resolution[1])
        object.__setattr__(self, "resolution", (max(W, 1), max(H, 1)))

        shift = min(max(int(self.sub_sample_shift), 0), MAX_SUB_SAMPLE_SHIFT)
        object.__setattr__(self, "sub_sample_shift", shift)

        sub_w, sub_h = self.sub_size
        x_max = sub_w if self.x_max is None else min(max(int(self.x_max), 0), sub_w)
        y_max = sub_h if self.y_max is None else min(max(int(self.y_max), 0), sub_h)
        object.__setattr__(self, "x_max", x_max)
        object.__setattr__(self, "y_max", y_max)
        object.__setattr__(self, "x_min", min(max(int(self.x_min), 0), x_max))
        object.__setattr__(self, "y_min", min(max(int(self.y_min), 0), y_max))

        object.__setattr__(self, "refractory_period_us", max(int(self.refractory_period_us), 0))

        mix = float(self.speed_mixing_factor)
        object.__setattr__(self, "speed_mixing_factor", min(max(mix, _MIN_MIXING_FACTOR), 1.0))
        object.__setattr__(self, "excess_speed_reject_factor", max(float(self.excess_speed_reject_factor), 0.0))
        object.__setattr__(self, "epsilon_deg", min(max(float(self.epsilon_deg), 0.0), 180.0))

    @property
    def sub_size(self) -> Tuple[int, int]:
        """Subsampled (W, H)."""
        W, H = self.resolution
        return W >> self.sub_sample_shift, H >> self.sub_sample_shift


def save_config(cfg: MotionFlowComputeConfig, path: str | Path) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = asdict(cfg)
    data["resolution"] = list(cfg.resolution)
    path.write_text(json.dumps(data, indent=2), encoding="utf-8")
    return path


def load_config(path: str | Path) -> MotionFlowComputeConfig:
    """
    Load a config saved by save_config(). Unknown keys are ignored so that
    files written by older/newer versions still load.
    """
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    known = {f.name for f in fields(MotionFlowComputeConfig)}
    kwargs = {k: v for k, v in raw.items() if k in known}
    if "resolution" in kwargs:
        kwargs["resolution"] = tuple(kwargs["resolution"])
    return MotionFlowComputeConfig(**kwargs)
