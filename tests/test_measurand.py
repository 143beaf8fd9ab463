import numpy as np
import pytest

from flow_metrics.measurand import Measurand


def test_matches_closed_form_mean_and_std():
    samples = [2.0, 4.0, 4.0, 4.0, 5.0, 5.0, 7.0, 9.0]
    m = Measurand()
    for s in samples:
        m.update(s)
    assert m.n == len(samples)
    assert m.get_mean() == pytest.approx(np.mean(samples))
    assert m.get_std_dev() == pytest.approx(np.std(samples, ddof=1))


def test_std_dev_is_zero_below_two_samples():
    m = Measurand()
    assert m.get_std_dev() == 0.0
    m.update(3.5)
    assert m.get_mean() == 3.5
    assert m.get_std_dev() == 0.0


def test_reset_starts_fresh():
    m = Measurand()
    for s in (100.0, -50.0, 12.0):
        m.update(s)
    m.reset()
    assert m.n == 0
    assert m.get_mean() == 0.0

    m.update(1.0)
    m.update(3.0)
    assert m.get_mean() == pytest.approx(2.0)
    assert m.get_std_dev() == pytest.approx(np.std([1.0, 3.0], ddof=1))


def test_large_offset_is_numerically_stable():
    base = 1e9
    samples = [base + d for d in (0.1, 0.2, 0.3, 0.4)]
    m = Measurand()
    for s in samples:
        m.update(s)
    assert m.get_std_dev() == pytest.approx(np.std([0.1, 0.2, 0.3, 0.4], ddof=1), rel=1e-4)
