# plot_flow_profile.py
import argparse

import matplotlib.pyplot as plt
import pandas as pd

# ------------------------
# Config
# ------------------------
CSV_PATH = "data/motionflow_out/recording_planes_profile.csv"

parser = argparse.ArgumentParser(description="Plot global motion and accuracy from a per-packet CSV.")
parser.add_argument("--csv", default=CSV_PATH)
parser.add_argument("--out", default="", help="Save the figure here instead of showing it.")
args = parser.parse_args()

# ------------------------
# Load data
# ------------------------
df = pd.read_csv(args.csv)
df["t_s"] = df["t_first"] * 1e-6
df["global_speed"] = (df["global_vx"] ** 2 + df["global_vy"] ** 2) ** 0.5

# ------------------------
# Plot
# ------------------------
fig, axes = plt.subplots(3, 1, figsize=(10, 7), sharex=True)

axes[0].plot(df["t_s"], df["global_vx"], label="vx")
axes[0].plot(df["t_s"], df["global_vy"], label="vy")
axes[0].plot(df["t_s"], df["global_speed"], label="|v|", linestyle="--")
axes[0].set_ylabel("global flow (px/s)")
axes[0].legend()

axes[1].plot(df["t_s"], df["global_rotation"], label="rotation")
axes[1].plot(df["t_s"], df["global_expansion"], label="expansion")
axes[1].axhline(0.0, linestyle="--", linewidth=1)
axes[1].set_ylabel("1/s")
axes[1].legend()

axes[2].plot(df["t_s"], df["ae_mean"], label="angular error (deg)")
axes[2].plot(df["t_s"], df["ee_abs_mean"], label="endpoint error (px/s)")
axes[2].set_ylabel("running mean")
axes[2].set_xlabel("time (s)")
axes[2].legend()

plt.tight_layout()
if args.out:
    plt.savefig(args.out, dpi=150)
else:
    plt.show()
