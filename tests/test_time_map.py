import pytest

from motionflow.time_map import INIT_TS, EventTimeMap, SpatialBounds, TimeMapUpdate


def test_allocation_shapes():
    tm = EventTimeMap.create((64, 48))
    assert tm.last_times.shape == (64, 48, 2)
    assert tm.fired.shape == (64, 48)
    assert (tm.last_times == INIT_TS).all()


def test_invalid_size_raises():
    with pytest.raises(ValueError):
        EventTimeMap((0, 10))


def test_margin_rejects_border_pixels():
    tm = EventTimeMap((20, 20))
    assert tm.is_invalid_address(1, 10, margin=2, sub_sample_shift=0)
    assert tm.is_invalid_address(10, 18, margin=2, sub_sample_shift=0)
    assert not tm.is_invalid_address(2, 2, margin=2, sub_sample_shift=0)
    assert not tm.is_invalid_address(17, 17, margin=2, sub_sample_shift=0)


def test_fired_grid_only_with_subsampling():
    tm = EventTimeMap((20, 20))
    assert not tm.is_invalid_address(5, 5, 0, sub_sample_shift=0)
    assert not tm.is_invalid_address(5, 5, 0, sub_sample_shift=0)
    assert not tm.fired.any()

    assert not tm.is_invalid_address(5, 5, 0, sub_sample_shift=1)
    assert tm.is_invalid_address(5, 5, 0, sub_sample_shift=1)
    assert not tm.is_invalid_address(6, 5, 0, sub_sample_shift=1)

    tm.begin_packet()
    assert not tm.is_invalid_address(5, 5, 0, sub_sample_shift=1)


def test_refractory_period():
    tm = EventTimeMap((8, 8))
    assert tm.update(3, 3, 1, 0, 1000) is TimeMapUpdate.PASSED
    assert tm.update(3, 3, 1, 500, 1000) is TimeMapUpdate.REFRACTORY
    assert tm.update(3, 3, 1, 1000, 1000) is TimeMapUpdate.REFRACTORY
    assert tm.update(3, 3, 1, 1500, 1000) is TimeMapUpdate.PASSED
    assert tm.last_times[3, 3, 1] == 1500


def test_polarities_are_independent():
    tm = EventTimeMap((8, 8))
    assert tm.update(3, 3, 1, 0, 1000) is TimeMapUpdate.PASSED
    assert tm.update(3, 3, 0, 10, 1000) is TimeMapUpdate.PASSED


def test_timestamp_decrease_is_reported_as_rewind():
    tm = EventTimeMap((8, 8))
    tm.update(3, 3, 0, 5000, 0)
    assert tm.update(3, 3, 0, 4000, 0) is TimeMapUpdate.REWOUND
    # map is left untouched; the caller resets
    assert tm.last_times[3, 3, 0] == 5000


def test_rewind_is_detected_against_rejected_events():
    tm = EventTimeMap((8, 8))
    assert tm.update(3, 3, 1, 0, 1000) is TimeMapUpdate.PASSED
    assert tm.update(3, 3, 1, 500, 1000) is TimeMapUpdate.REFRACTORY
    # older than the last arrival, though newer than the last accepted event
    assert tm.update(3, 3, 1, 400, 1000) is TimeMapUpdate.REWOUND
    assert tm.last_seen[3, 3, 1] == 500


def test_reset_clears_everything():
    tm = EventTimeMap((8, 8))
    tm.update(1, 1, 0, 5, 0)
    tm.is_invalid_address(2, 2, 0, 1)
    tm.reset()
    assert (tm.last_times == INIT_TS).all()
    assert (tm.last_seen == INIT_TS).all()
    assert not tm.fired.any()


def test_spatial_bounds_half_open():
    b = SpatialBounds(x_min=2, x_max=10, y_min=0, y_max=5)
    assert not b.rejects(2, 0)
    assert b.rejects(1, 0)
    assert b.rejects(10, 0)
    assert not b.rejects(9, 4)
    assert b.rejects(9, 5)
