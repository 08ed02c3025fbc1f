import pytest
import numpy as np

from backtest.calibrator import QuantileCalibrator, QuantileSource
from errors import InsufficientSample


@pytest.fixture
def calibrator():
    return QuantileCalibrator()


def test_linear_interpolation_between_order_statistics(calibrator):
    # h = (5 - 1) * 0.1 = 0.4, so 1 + 0.4 * (2 - 1) on the raw scale
    q = calibrator.calibrate([1.0, 2.0, 3.0, 4.0, 5.0], 0.1)
    assert q == pytest.approx((1.4 - 3.0) / np.sqrt(2.5))


def test_standardize_uses_sample_std(calibrator):
    z = calibrator.standardize([1.0, 2.0, 3.0, 4.0, 5.0])
    assert np.mean(z) == pytest.approx(0.0)
    assert np.std(z, ddof=1) == pytest.approx(1.0)


def test_quantile_is_invariant_to_location_and_scale(calibrator):
    sample = np.random.RandomState(1).standard_t(5, size=500)
    q = calibrator.calibrate(sample, 0.05)
    assert calibrator.calibrate(3.0 + 0.01 * sample, 0.05) == pytest.approx(q)


def test_monotone_in_level(calibrator):
    sample = np.random.RandomState(2).normal(0, 0.02, 1000)
    levels = [0.01, 0.025, 0.05, 0.1, 0.5, 0.9]
    quantiles = [calibrator.calibrate(sample, level) for level in levels]
    assert quantiles == sorted(quantiles)
    assert quantiles[0] < 0 < quantiles[-1]


def test_normal_sample_matches_normal_quantile(calibrator):
    sample = np.random.RandomState(3).normal(0, 1, 200000)
    assert calibrator.calibrate(sample, 0.05) == pytest.approx(-1.645, abs=0.02)


@pytest.mark.parametrize("sample", [
    [],
    [0.01],
    [0.02, 0.02, 0.02],
    [0.01, np.nan, 0.02],
    [0.01, np.inf, 0.02],
])
def test_insufficient_sample(calibrator, sample):
    with pytest.raises(InsufficientSample):
        calibrator.calibrate(sample, 0.05)


@pytest.mark.parametrize("level", [0.0, 1.0, -0.1, 1.5])
def test_level_outside_unit_interval(calibrator, level):
    with pytest.raises(ValueError):
        calibrator.calibrate([1.0, 2.0, 3.0], level)


@pytest.mark.parametrize("method", ["type7", "Linear", ""])
def test_unknown_method_rejected_up_front(method):
    with pytest.raises(ValueError):
        QuantileCalibrator(method=method)


def test_alternative_method_is_used():
    sample = [1.0, 2.0, 3.0, 4.0, 5.0]
    lower = QuantileCalibrator(method='lower').calibrate(sample, 0.1)
    assert lower == pytest.approx((1.0 - 3.0) / np.sqrt(2.5))


def test_quantile_source_values():
    assert QuantileSource('raw_prefix') is QuantileSource.RAW_PREFIX
    assert QuantileSource('standardized_residuals') is QuantileSource.STANDARDIZED_RESIDUALS


if __name__ == '__main__':
    pytest.main([__file__])
