# motionflow/stream_slice.py
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

import numpy as np

from motionflow.events import EVENT_DTYPE, extract_txyp, make_events
from motionflow.imu_flow import ImuSample


def _require_dvp():
    """
    dv-processing official python binding.
    """
    try:
        import dv_processing as dv  # type: ignore
    except ImportError as e:
        raise ImportError(
            "Failed to import `dv_processing`.\n"
            "Install the aedat extra (pip install .[aedat]) to read .aedat4 recordings."
        ) from e
    return dv


@dataclass
class PacketInfo:
    """
    Fixed-duration packet metadata.
    begin/end are indices into the time-ordered event stream (left-closed, right-open).
    """
    packet_id: int
    begin: int
    end: int
    n_events: int
    t_first: int
    t_last: int
    n_imu: int


# ---------------------------
# Windows / packets
# ---------------------------

def build_windows(timestamps: np.ndarray, window_us: int) -> np.ndarray:
    """
    Return an (N, 2) int64 array of [start, stop) indices of fixed-duration
    windows over sorted timestamps. Empty windows are dropped.
    """
    timestamps = np.asarray(timestamps, dtype=np.int64)
    n_events = timestamps.shape[0]
    if n_events == 0:
        return np.zeros((0, 2), dtype=np.int64)

    dt = max(1, int(window_us))
    t_start, t_end = int(timestamps[0]), int(timestamps[-1])

    # boundaries cover the entire range, including the last partial window
    boundaries = np.arange(t_start, t_end + dt + 1, dt, dtype=np.int64)
    starts = np.searchsorted(timestamps, boundaries[:-1], side="left")
    stops = np.searchsorted(timestamps, boundaries[1:], side="left")

    non_empty = stops > starts
    return np.stack([starts[non_empty], stops[non_empty]], axis=1).astype(np.int64)


def imu_samples_from_arrays(imu_t, gyro_x, gyro_y, gyro_z) -> List[ImuSample]:
    """Raw gyro axes -> samples (pan = gyro Y, tilt = gyro X, roll = gyro Z)."""
    return [
        ImuSample(int(ts), float(gy), float(gx), float(gz))
        for ts, gx, gy, gz in zip(imu_t, gyro_x, gyro_y, gyro_z)
    ]


def iter_time_packets(
    events,
    window_us: int,
    imu: Optional[List[ImuSample]] = None,
    *,
    max_packets: Optional[int] = None,
) -> Iterator[Tuple[np.ndarray, List[ImuSample], PacketInfo]]:
    """
    Slice an event recording into fixed-duration packets and hand each packet
    the IMU samples up to its last timestamp. Events are stably sorted by time.
    """
    t, x, y, p = extract_txyp(events)
    order = np.argsort(t, kind="stable")
    arr = make_events(t[order], x[order], y[order], p[order])

    imu = sorted(imu or [], key=lambda s: s.timestamp_us)
    imu_ts = np.asarray([s.timestamp_us for s in imu], dtype=np.int64)
    k = 0

    windows = build_windows(arr["t"], window_us)
    for pid, (s, e) in enumerate(windows, 1):
        packet = arr[s:e]
        t_last = int(packet["t"][-1])
        k_end = int(np.searchsorted(imu_ts, t_last, side="right")) if pid < len(windows) else len(imu)
        packet_imu = imu[k:k_end]
        k = k_end

        info = PacketInfo(
            packet_id=pid,
            begin=int(s),
            end=int(e),
            n_events=int(e - s),
            t_first=int(packet["t"][0]),
            t_last=t_last,
            n_imu=len(packet_imu),
        )
        yield packet, packet_imu, info

        if max_packets is not None and pid >= max_packets:
            return


# ---------------------------
# Recordings
# ---------------------------

def load_events_npz(path: str | Path) -> Dict[str, Any]:
    """
    Load an npz recording with arrays t, x, y, p and, optionally, IMU arrays
    imu_t, gyro_x, gyro_y, gyro_z (deg/s).

    Returns {'events': EVENT_DTYPE array, 'imu': list[ImuSample], 'resolution': (W, H) or None}
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Recording not found: {path}")

    with np.load(path, allow_pickle=False) as data:
        missing = [k for k in ("t", "x", "y", "p") if k not in data.files]
        if missing:
            raise KeyError(f"{path} lacks event arrays {missing}. Available keys: {data.files}")
        events = make_events(data["t"], data["x"], data["y"], data["p"])

        imu: List[ImuSample] = []
        if all(k in data.files for k in ("imu_t", "gyro_x", "gyro_y", "gyro_z")):
            imu = imu_samples_from_arrays(data["imu_t"], data["gyro_x"], data["gyro_y"], data["gyro_z"])

        resolution = None
        if "resolution" in data.files:
            res = data["resolution"]
            resolution = (int(res[0]), int(res[1]))

    return {"events": events, "imu": imu, "resolution": resolution}


def _get(obj: Any, key: str):
    if not hasattr(obj, key):
        return None
    v = getattr(obj, key)
    return v() if callable(v) else v


def _read_imu(m: Any) -> Optional[ImuSample]:
    """
    Read one dv IMU measurement, tolerant to attribute/method styles.
    """
    ts = _get(m, "timestamp")
    gx = _get(m, "gyroscopeX")
    gy = _get(m, "gyroscopeY")
    gz = _get(m, "gyroscopeZ")
    if ts is None or gx is None or gy is None or gz is None:
        return None
    return ImuSample(int(ts), float(gy), float(gx), float(gz))


def read_aedat4(aedat4_path: str | Path) -> Dict[str, Any]:
    """
    Read a whole .aedat4 recording (events + IMU) via dv_processing.
    Returns the same layout as load_events_npz().
    """
    dv = _require_dvp()
    aedat4_path = str(Path(aedat4_path))

    reader = dv.io.MonoCameraRecording(aedat4_path)
    if not reader.isEventStreamAvailable():
        raise RuntimeError(f"No event stream available in: {aedat4_path}")
    res = reader.getEventResolution()
    resolution = (int(res[0]), int(res[1]))

    chunks: List[np.ndarray] = []
    while reader.isRunning():
        batch = reader.getNextEventBatch()
        if batch is None:
            break
        t, x, y, p = extract_txyp(batch)
        if t.size:
            chunks.append(make_events(t, x, y, p))

    imu: List[ImuSample] = []
    if reader.isImuStreamAvailable():
        reader = dv.io.MonoCameraRecording(aedat4_path)
        while reader.isRunning():
            measurements = reader.getNextImuBatch()
            if measurements is None:
                break
            for m in measurements:
                s = _read_imu(m)
                if s is not None:
                    imu.append(s)

    events = np.concatenate(chunks) if chunks else np.empty((0,), dtype=EVENT_DTYPE)
    return {"events": events, "imu": imu, "resolution": resolution}


def iter_aedat4_packets(
    aedat4_path: str | Path,
    window_us: int,
    *,
    max_packets: Optional[int] = None,
) -> Iterator[Tuple[np.ndarray, List[ImuSample], PacketInfo]]:
    """read_aedat4() + iter_time_packets(): fixed-duration packets with their IMU samples."""
    rec = read_aedat4(aedat4_path)
    yield from iter_time_packets(rec["events"], window_us, rec["imu"], max_packets=max_packets)
