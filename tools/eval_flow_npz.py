# tools/eval_flow_npz.py
# Accuracy of a flow-events npz written by run_motion_flow_npz.py:
# - angular error (deg) and endpoint error (px/s) of (vx, vy) against (vx_gt, vy_gt)
# - only events with has_direction are evaluated
# - one CSV row per file

import argparse
import csv
from pathlib import Path
from typing import List

import numpy as np

from flow_metrics.flow_stats_core import (
    ANGULAR_THRESHOLDS_DEG,
    ENDPOINT_ABS_THRESHOLDS,
    angular_error_batch,
    endpoint_error_batch,
)
from motionflow.config import PATHS


# ============================================================
# User configuration (edit here)
# ============================================================
IN_DIR = str(PATHS.OUT_ROOT)
OUT_CSV = str(PATHS.OUT_ROOT / "flow_accuracy.csv")
# ============================================================


def evaluate_file(path: Path) -> dict:
    with np.load(path, allow_pickle=False) as data:
        keep = data["has_direction"].astype(bool)
        vx = data["vx"][keep].astype(np.float64)
        vy = data["vy"][keep].astype(np.float64)
        vx_gt = data["vx_gt"][keep].astype(np.float64)
        vy_gt = data["vy_gt"][keep].astype(np.float64)

    row = {"file": path.name, "n": int(vx.size)}
    if vx.size == 0:
        row.update({"ae_mean": 0.0, "ae_std": 0.0, "ee_mean": 0.0, "ee_std": 0.0})
        return row

    ae = angular_error_batch(vx, vy, vx_gt, vy_gt)
    ee = endpoint_error_batch(vx, vy, vx_gt, vy_gt)
    row.update({
        "ae_mean": float(ae.mean()),
        "ae_std": float(ae.std(ddof=1)) if ae.size > 1 else 0.0,
        "ee_mean": float(ee.mean()),
        "ee_std": float(ee.std(ddof=1)) if ee.size > 1 else 0.0,
    })
    for thr in ANGULAR_THRESHOLDS_DEG:
        row[f"ae_gt_{thr:g}"] = float(100.0 * np.mean(ae > thr))
    for thr in ENDPOINT_ABS_THRESHOLDS:
        row[f"ee_gt_{thr:g}"] = float(100.0 * np.mean(ee > thr))
    return row


def main():
    parser = argparse.ArgumentParser(description="Evaluate flow-event npz files against their ground truth.")
    parser.add_argument("--in-dir", default=IN_DIR)
    parser.add_argument("--out-csv", default=OUT_CSV)
    args = parser.parse_args()

    files: List[Path] = sorted(Path(args.in_dir).glob("*_flow.npz"))
    print("=" * 90)
    print(f"[EVAL] Input dir : {args.in_dir}")
    print(f"[EVAL] Files     : {len(files)}")
    print("=" * 90)
    if not files:
        return

    rows = [evaluate_file(fp) for fp in files]
    for r in rows:
        print(f"  {r['file']}: n={r['n']} AE={r['ae_mean']:.2f}+/-{r['ae_std']:.2f} deg "
              f"EE={r['ee_mean']:.2f}+/-{r['ee_std']:.2f} px/s")

    out_csv = Path(args.out_csv)
    out_csv.parent.mkdir(parents=True, exist_ok=True)
    fieldnames = list(rows[0].keys())
    for r in rows[1:]:
        fieldnames += [k for k in r if k not in fieldnames]
    with open(out_csv, "w", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=fieldnames)
        writer.writeheader()
        writer.writerows(rows)
    print("-" * 90)
    print(f"[EVAL] CSV saved: {out_csv}")


if __name__ == "__main__":
    main()
