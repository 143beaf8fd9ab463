# motionflow/events.py
from __future__ import annotations

from typing import NamedTuple, Tuple

import numpy as np


# Canonical input record (microsecond timestamps, polarity in {0,1})
EVENT_DTYPE = np.dtype([
    ("t", np.int64),
    ("x", np.int16),
    ("y", np.int16),
    ("p", np.int8),
])

# Output record: input event plus attached observed / ground-truth flow (px/s)
FLOW_EVENT_DTYPE = np.dtype([
    ("t", np.int64),
    ("x", np.int16),
    ("y", np.int16),
    ("p", np.int8),
    ("vx", np.float32),
    ("vy", np.float32),
    ("speed", np.float32),
    ("has_direction", np.bool_),
    ("vx_gt", np.float32),
    ("vy_gt", np.float32),
])

OFF = 0
ON = 1
NUM_POLARITY_TYPES = 2


class FlowEvent(NamedTuple):
    """One event as seen by the pipeline after subsampling."""

    x: int       # subsampled x
    y: int       # subsampled y
    t: int       # microseconds
    type: int    # 0 = OFF, 1 = ON
    raw_x: int   # sensor x
    raw_y: int   # sensor y


def _empty_txyp():
    return (
        np.empty((0,), dtype=np.int64),   # t_us
        np.empty((0,), dtype=np.int32),   # x
        np.empty((0,), dtype=np.int32),   # y
        np.empty((0,), dtype=np.uint8),   # p01
    )


def to_p01(p: np.ndarray) -> np.ndarray:
    """
    Convert polarity array to uint8 {0,1}.
    Supports p in {-1,+1}, {0,1}, bool, int.
    """
    p = np.asarray(p)
    if p.size == 0:
        return np.empty((0,), dtype=np.uint8)
    if p.dtype == np.bool_:
        return p.astype(np.uint8, copy=False)
    return (p > 0).astype(np.uint8)


def _from_structured(arr: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    names = arr.dtype.fields
    x = arr["x"].astype(np.int32, copy=False)
    y = arr["y"].astype(np.int32, copy=False)
    if x.size == 0:
        return _empty_txyp()

    if "t" in names:
        t = arr["t"].astype(np.int64, copy=False)
    elif "timestamp" in names:
        t = arr["timestamp"].astype(np.int64, copy=False)
    else:
        raise KeyError(f"Event array has no time field. Available fields: {tuple(names)}")

    if "p" in names:
        p = arr["p"]
    elif "polarity" in names:
        p = arr["polarity"]
    else:
        p = np.zeros_like(x, dtype=np.int8)
    return t, x, y, to_p01(p)


def extract_txyp(events) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """
    Extract (t_us, x, y, p01) where p01 is {0,1}.
    Supports dv.EventStore-like .numpy(), numpy structured arrays, and dict.
    """
    if hasattr(events, "numpy"):
        arr = events.numpy()
        if isinstance(arr, np.ndarray) and arr.dtype.fields is not None:
            return _from_structured(arr)
        events = arr

    if isinstance(events, dict):
        x = np.asarray(events.get("x", []), dtype=np.int32)
        y = np.asarray(events.get("y", []), dtype=np.int32)
        if x.size == 0:
            return _empty_txyp()
        t = np.asarray(events.get("t", events.get("timestamp", np.zeros_like(x))), dtype=np.int64)
        p = np.asarray(events.get("p", events.get("polarity", np.zeros_like(x))))
        return t, x, y, to_p01(p)

    if isinstance(events, np.ndarray) and events.dtype.fields is not None:
        return _from_structured(events)

    raise TypeError("Unsupported events container type for extract_txyp().")


def make_events(t, x, y, p) -> np.ndarray:
    """Build an EVENT_DTYPE array from column arrays (polarity mapped to {0,1})."""
    t = np.asarray(t, dtype=np.int64)
    out = np.empty(t.shape[0], dtype=EVENT_DTYPE)
    out["t"] = t
    out["x"] = np.asarray(x)
    out["y"] = np.asarray(y)
    out["p"] = to_p01(p) if t.shape[0] else np.empty((0,), dtype=np.int8)
    return out
