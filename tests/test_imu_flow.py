import math

import numpy as np
import pytest

from motionflow.imu_flow import (
    CALIBRATION_SAMPLES,
    FLUSH_COUNT,
    EstimatorState,
    ImuFlowEstimator,
    ImuSample,
)

RAD_PER_PIXEL = math.atan(18.5 / (1000 * 4.5))


def _sample(ts, pan=0.0, tilt=0.0, roll=0.0):
    return ImuSample(ts, pan, tilt, roll)


def _activate(est, t0=0, step=1000):
    """Feed flush + baseline samples; returns next timestamp."""
    ts = t0
    for _ in range(FLUSH_COUNT + 1):
        assert est.update_transform(_sample(ts)) is False
        ts += step
    assert est.state is EstimatorState.ACTIVE
    return ts


def test_flush_then_baseline_then_update():
    est = ImuFlowEstimator((128, 128))
    assert est.state is EstimatorState.UNINITIALIZED

    for i in range(FLUSH_COUNT):
        assert est.update_transform(_sample(1000 * i)) is False
    assert est.state is EstimatorState.INITIALIZING

    assert est.update_transform(_sample(20_000)) is False
    assert est.state is EstimatorState.ACTIVE

    assert est.update_transform(_sample(20_750)) is True
    assert est.dt_s == pytest.approx(750e-6)


def test_new_estimator_waits_for_reset_or_first_sample():
    est = ImuFlowEstimator()
    assert est.state is EstimatorState.UNINITIALIZED
    est.reset()
    assert est.state is EstimatorState.FLUSHING

    est = ImuFlowEstimator()
    assert est.update_transform(_sample(0)) is False
    assert est.state is EstimatorState.FLUSHING
    assert est.flush_counter == FLUSH_COUNT - 1


def test_none_sample_is_no_update():
    est = ImuFlowEstimator()
    assert est.update_transform(None) is False
    assert est.flush_counter == FLUSH_COUNT


def test_reset_goes_back_to_flushing():
    est = ImuFlowEstimator()
    _activate(est)
    est.reset()
    assert est.state is EstimatorState.FLUSHING
    assert est.update_transform(_sample(0)) is False


def test_calibration_latches_mean_after_800_samples():
    est = ImuFlowEstimator()
    ts = _activate(est)
    est.start_calibration()
    assert est.state is EstimatorState.CALIBRATING

    means = (1.5, -2.0, 0.25)
    for i in range(CALIBRATION_SAMPLES):
        jitter = 0.1 if i % 2 == 0 else -0.1
        sample = _sample(ts, means[0] + jitter, means[1] - jitter, means[2] + jitter)
        assert est.update_transform(sample) is False
        ts += 1000
        if i < CALIBRATION_SAMPLES - 1:
            assert est.calibrating

    assert not est.calibrating
    assert est.state is EstimatorState.ACTIVE
    assert est.pan_offset == pytest.approx(means[0])
    assert est.tilt_offset == pytest.approx(means[1])
    assert est.roll_offset == pytest.approx(means[2])

    # calibrated rates now produce no motion
    assert est.update_transform(_sample(ts, *means)) is True
    assert est.pan_translation == pytest.approx(0.0, abs=1e-9)
    assert est.tilt_translation == pytest.approx(0.0, abs=1e-9)
    assert est.roll_rotation_rad == pytest.approx(0.0, abs=1e-12)


def test_calibration_set_flags():
    est = ImuFlowEstimator()
    assert est.is_calibration_set()
    est.reset_calibration()
    assert not est.is_calibration_set()


def test_pan_rate_gives_uniform_horizontal_flow():
    est = ImuFlowEstimator((128, 128))
    est.reset_calibration()
    ts = _activate(est)
    assert est.update_transform(_sample(ts, pan=10.0)) is True

    expected_vx = -math.radians(10.0) / RAD_PER_PIXEL
    for x, y in ((64, 64), (0, 0), (127, 5)):
        vx, vy, v = est.calculate_flow(x, y)
        assert vx == pytest.approx(expected_vx, rel=1e-9)
        assert vy == pytest.approx(0.0, abs=1e-9)
        assert v == pytest.approx(abs(expected_vx), rel=1e-9)


def test_roll_rotates_about_centre():
    est = ImuFlowEstimator((128, 128))
    est.reset_calibration()
    ts = _activate(est)
    est.update_transform(_sample(ts, roll=-90.0))

    # centre pixel does not move
    vx, vy, _ = est.calculate_flow(64, 64)
    assert vx == pytest.approx(0.0, abs=1e-9)
    assert vy == pytest.approx(0.0, abs=1e-9)

    # a pixel right of centre moves vertically
    vx, vy, _ = est.calculate_flow(74, 64)
    assert abs(vy) > abs(vx)


def test_uninitialized_flow_is_zero_and_zero_dt_is_safe():
    est = ImuFlowEstimator((128, 128))
    vx, vy, v = est.calculate_flow(10, 100)
    assert (vx, vy, v) == (0.0, 0.0, 0.0)
    assert est.dt_s == 1.0


def test_flow_field_matches_per_pixel_flow():
    est = ImuFlowEstimator((40, 30))
    est.reset_calibration()
    ts = _activate(est)
    est.update_transform(_sample(ts, pan=3.0, tilt=-4.0, roll=20.0))

    vx, vy = est.flow_field()
    assert vx.shape == (30, 40)
    for x, y in ((0, 0), (39, 29), (20, 15), (7, 22)):
        fx, fy, _ = est.calculate_flow(x, y)
        assert vx[y, x] == pytest.approx(fx, rel=1e-4, abs=1e-3)
        assert vy[y, x] == pytest.approx(fy, rel=1e-4, abs=1e-3)
    assert np.isfinite(vx).all()
