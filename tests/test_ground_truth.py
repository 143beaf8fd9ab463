import logging

import numpy as np
import pytest
import scipy.io

from motionflow.events import FLOW_EVENT_DTYPE
from motionflow.ground_truth import (
    FlowExporter,
    GroundTruthField,
    GroundTruthImportError,
    load_ground_truth,
)
from motionflow.imu_flow import FLUSH_COUNT, ImuFlowEstimator, ImuSample


def _flow_events(rows):
    """rows: (t, x, y, vx, vy)"""
    out = np.zeros(len(rows), dtype=FLOW_EVENT_DTYPE)
    for i, (t, x, y, vx, vy) in enumerate(rows):
        out[i]["t"] = t
        out[i]["x"] = x
        out[i]["y"] = y
        out[i]["vx"] = vx
        out[i]["vy"] = vy
        out[i]["speed"] = np.hypot(vx, vy)
        out[i]["has_direction"] = vx != 0 or vy != 0
    return out


def test_load_mat_file(tmp_path):
    path = tmp_path / "gt.mat"
    vx = np.arange(12, dtype=np.float64).reshape(3, 4)
    scipy.io.savemat(str(path), {"vxGT": vx, "vyGT": -vx, "ts": np.array([[100.0, 900.0]])})

    field = load_ground_truth(path)
    assert field.vx.shape == (3, 4)
    assert (field.t_start, field.t_end) == (100.0, 900.0)
    assert field.sample(3, 2, 500) == (11.0, -11.0)


def test_load_npz_file(tmp_path):
    path = tmp_path / "gt.npz"
    np.savez(path, vxGT=np.ones((2, 2)), vyGT=np.zeros((2, 2)), ts=np.array([0, 10]))
    field = load_ground_truth(path)
    assert field.sample(1, 1, 9) == (1.0, 0.0)


def test_missing_file_raises(tmp_path):
    with pytest.raises(GroundTruthImportError):
        load_ground_truth(tmp_path / "nope.mat")


def test_missing_arrays_raise(tmp_path):
    path = tmp_path / "gt.npz"
    np.savez(path, vxGT=np.ones((2, 2)), ts=np.array([0, 10]))
    with pytest.raises(GroundTruthImportError, match="vyGT"):
        load_ground_truth(path)


@pytest.mark.parametrize("vy,ts", [
    (np.ones((3, 2)), np.array([0, 10])),
    (np.ones((2, 2)), np.array([5])),
])
def test_malformed_arrays_raise(tmp_path, vy, ts):
    path = tmp_path / "gt.npz"
    np.savez(path, vxGT=np.ones((2, 2)), vyGT=vy, ts=ts)
    with pytest.raises(GroundTruthImportError):
        load_ground_truth(path)


def test_unreadable_file_raises(tmp_path):
    path = tmp_path / "gt.mat"
    path.write_bytes(b"not a matlab file")
    with pytest.raises(GroundTruthImportError):
        load_ground_truth(path)


def test_sample_outside_interval_or_frame():
    field = GroundTruthField(vx=np.ones((4, 5)), vy=np.ones((4, 5)), t_start=10.0, t_end=20.0)
    assert field.sample(0, 0, 9) is None
    assert field.sample(0, 0, 20) is None
    assert field.sample(5, 0, 15) is None
    assert field.sample(4, 3, 10) == (1.0, 1.0)


def test_field_from_imu():
    est = ImuFlowEstimator((16, 12))
    est.reset_calibration()
    for i in range(FLUSH_COUNT + 1):
        est.update_transform(ImuSample(1000 * i, 0.0, 0.0, 0.0))
    est.update_transform(ImuSample(1000 * (FLUSH_COUNT + 1), 0.0, 5.0, 0.0))

    field = GroundTruthField.from_imu(est, 0, 100)
    assert field.vx.shape == (12, 16)
    vx, vy = field.sample(3, 4, 50)
    fx, fy, _ = est.calculate_flow(3, 4)
    assert vx == pytest.approx(fx, abs=1e-3)
    assert vy == pytest.approx(fy, rel=1e-5)


def test_exporter_collects_window_then_writes_mat(tmp_path):
    path = tmp_path / "out" / "flow.mat"
    ex = FlowExporter((8, 6))
    assert not ex.armed
    ex.arm(100, 200, path)
    assert ex.armed

    assert ex.observe(_flow_events([(50, 1, 1, 9.0, 9.0)])) is False
    assert ex.observe(_flow_events([(100, 2, 3, 1.5, -1.0), (150, 4, 5, 0.0, 0.0)])) is False
    assert ex.observe(_flow_events([(199, 2, 3, 2.5, 0.5)])) is False
    assert ex.observe(_flow_events([(250, 0, 0, 1.0, 1.0)])) is True
    assert not ex.armed

    data = scipy.io.loadmat(str(path))
    assert data["vx"].shape == (6, 8)
    assert data["vx"][3, 2] == pytest.approx(2.5)
    assert data["vy"][3, 2] == pytest.approx(0.5)
    assert data["vx"][1, 1] == 0.0


def test_exporter_without_window_data_stays_armed(tmp_path):
    ex = FlowExporter((8, 6))
    ex.arm(100, 200, tmp_path / "flow.npz")
    assert ex.observe(_flow_events([(300, 1, 1, 1.0, 0.0)])) is False
    assert ex.armed


def test_exporter_reset_drops_accumulated_flow(tmp_path):
    path = tmp_path / "flow.npz"
    ex = FlowExporter((8, 6))
    ex.arm(0, 100, path)
    ex.observe(_flow_events([(10, 1, 1, 1.0, 0.0)]))
    ex.reset((8, 6))
    assert ex.observe(_flow_events([(200, 1, 1, 1.0, 0.0)])) is False
    assert not path.exists()


def test_exporter_write_failure_is_logged(tmp_path, caplog):
    blocker = tmp_path / "file"
    blocker.write_text("x")
    ex = FlowExporter((8, 6))
    ex.arm(0, 100, blocker / "flow.npz")
    ex.observe(_flow_events([(10, 1, 1, 1.0, 0.0)]))

    with caplog.at_level(logging.ERROR, logger="motionflow.ground_truth"):
        assert ex.observe(_flow_events([(200, 1, 1, 1.0, 0.0)])) is False
    assert "failed" in caplog.text
    assert not ex.armed


def test_exporter_closes_on_input_timestamp_without_output(tmp_path):
    path = tmp_path / "flow.npz"
    ex = FlowExporter((8, 6))
    ex.arm(0, 100, path)
    ex.observe(_flow_events([(10, 1, 1, 1.0, 0.0)]), first_ts=10)

    assert ex.observe(np.empty((0,), dtype=FLOW_EVENT_DTYPE), first_ts=150) is True
    assert path.exists()
    assert not ex.armed


def test_exporter_rejects_foreign_records():
    ex = FlowExporter((8, 6))
    ex.arm(0, 100, "flow.npz")
    with pytest.raises(TypeError):
        ex.observe(np.zeros(3, dtype=[("t", "i8"), ("x", "i2")]))
