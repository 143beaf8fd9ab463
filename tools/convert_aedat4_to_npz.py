"""
Convert AEDAT4 recordings (events + IMU) to compressed NPZ for the motion-flow tools.

Output arrays: t, x, y, p (p in {0,1}), resolution (W, H) and, when the
recording has an IMU stream, imu_t, gyro_x, gyro_y, gyro_z (deg/s).

This script is PyCharm "one-click run" friendly: default configuration is
provided at the top of the file and argparse only overrides those values when
explicit command-line parameters are given.
"""
from __future__ import annotations

import argparse
from pathlib import Path
from typing import Sequence

import numpy as np

from motionflow.stream_slice import read_aedat4

# ============================================================
# User configuration (edit here)
# ============================================================
IN_DIR = "data/aedat4"
OUT_DIR = "data/recordings"
NORMALIZE_T = True
OVERWRITE = False
VERBOSE = True
RECURSIVE = True
# ============================================================


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Convert AEDAT4 event + IMU streams to NPZ.")
    parser.add_argument("--in-dir", default=IN_DIR, help="Input directory with .aedat4 files.")
    parser.add_argument("--out-dir", default=OUT_DIR, help="Output directory for .npz files.")
    parser.add_argument("--normalize-t", action="store_true", default=NORMALIZE_T,
                        help="Shift event and IMU timestamps so the first event is at zero.")
    parser.add_argument("--no-normalize-t", action="store_false", dest="normalize_t",
                        help="Do not normalize timestamps.")
    parser.add_argument("--overwrite", action="store_true", default=OVERWRITE,
                        help="Overwrite existing NPZ outputs.")
    parser.add_argument("--verbose", action="store_true", default=VERBOSE, help="Print per-file details.")
    parser.add_argument("--quiet", action="store_false", dest="verbose", help="Silence per-file logs.")
    parser.add_argument("--recursive", action="store_true", default=RECURSIVE,
                        help="Recursively search for .aedat4 files.")
    parser.add_argument("--non-recursive", action="store_false", dest="recursive",
                        help="Do not search subdirectories.")
    return parser.parse_args(argv)


def _span(arr: np.ndarray) -> str:
    return f"{arr.min()}..{arr.max()}" if arr.size else "-"


def process_file(path: Path, args: argparse.Namespace) -> bool:
    out_path = (Path(args.out_dir) / path.relative_to(args.in_dir)).with_suffix(".npz")
    if out_path.exists() and not args.overwrite:
        print(f"[CONVERT] exists, skipped: {out_path}")
        return True

    try:
        rec = read_aedat4(path)
    except (OSError, RuntimeError) as exc:
        print(f"[CONVERT] FAILED {path.name}: {exc}")
        return False

    events = rec["events"]
    order = np.argsort(events["t"], kind="stable")
    events = events[order]
    imu = rec["imu"]

    t = events["t"].astype(np.int64)
    imu_t = np.asarray([s.timestamp_us for s in imu], dtype=np.int64)
    if args.normalize_t and t.size:
        t0 = int(t[0])
        t = t - t0
        imu_t = imu_t - t0

    arrays = {
        "t": t,
        "x": events["x"].astype(np.int32),
        "y": events["y"].astype(np.int32),
        "p": events["p"].astype(np.int8),
        "resolution": np.asarray(rec["resolution"], dtype=np.int32),
    }
    if imu:
        # back to raw sensor axes: pan = gyro Y, tilt = gyro X, roll = gyro Z
        arrays["imu_t"] = imu_t
        arrays["gyro_x"] = np.asarray([s.tilt_rate for s in imu], dtype=np.float32)
        arrays["gyro_y"] = np.asarray([s.pan_rate for s in imu], dtype=np.float32)
        arrays["gyro_z"] = np.asarray([s.roll_rate for s in imu], dtype=np.float32)

    out_path.parent.mkdir(parents=True, exist_ok=True)
    np.savez_compressed(out_path, **arrays)

    if args.verbose:
        info = {
            "events": int(t.size),
            "imu_samples": len(imu),
            "resolution": rec["resolution"],
            "t_range": _span(t),
            "x_range": _span(arrays["x"]),
            "y_range": _span(arrays["y"]),
            "output": str(out_path),
        }
        print(f"[CONVERT] {path.name}: {info}")
    return True


def main(argv: Sequence[str] | None = None) -> None:
    args = parse_args(argv)
    in_dir = Path(args.in_dir)
    recordings = sorted(in_dir.rglob("*.aedat4") if args.recursive else in_dir.glob("*.aedat4"))

    print("=" * 90)
    print(f"[CONVERT] {in_dir} -> {args.out_dir} | recordings: {len(recordings)}")
    print("=" * 90)

    n_ok = sum(process_file(path, args) for path in recordings)
    print(f"[CONVERT] done: ok={n_ok} failed={len(recordings) - n_ok}")


if __name__ == "__main__":
    main()
