"""Empirical quantiles of standardized returns"""

from enum import Enum

import numpy as np

from errors import InsufficientSample

# Methods accepted by numpy.quantile
QUANTILE_METHODS = (
    'inverted_cdf', 'averaged_inverted_cdf', 'closest_observation',
    'interpolated_inverted_cdf', 'hazen', 'weibull', 'linear', 'median_unbiased',
    'normal_unbiased', 'lower', 'higher', 'midpoint', 'nearest',
)


class QuantileSource(Enum):
    """Which sample a rolling step calibrates its quantile from"""
    RAW_PREFIX = 'raw_prefix'
    STANDARDIZED_RESIDUALS = 'standardized_residuals'


class QuantileCalibrator:
    """Standardize a sample and read off its empirical quantile.

    The sample is centred on its mean and divided by its sample standard
    deviation (ddof=1). Quantiles between order statistics use numpy's
    ``linear`` rule (Hyndman-Fan type 7): with sorted values x and
    h = (n - 1) * level, the result is
    x[floor(h)] + (h - floor(h)) * (x[floor(h) + 1] - x[floor(h)]).
    """

    def __init__(self, method: str = 'linear'):
        if method not in QUANTILE_METHODS:
            raise ValueError(
                f"Unknown quantile method {method!r}; expected one of {QUANTILE_METHODS}"
            )
        self.method = method

    def __repr__(self) -> str:
        return f"QuantileCalibrator(method={self.method!r})"

    def standardize(self, sample) -> np.ndarray:
        sample = np.asarray(sample, dtype=np.float64)
        if sample.ndim != 1 or len(sample) < 2:
            raise InsufficientSample(f"Need at least 2 observations, got {sample.size}")
        if not np.all(np.isfinite(sample)):
            raise InsufficientSample("Sample contains NaN or infinite values")

        std = np.std(sample, ddof=1)
        if std == 0.0:
            raise InsufficientSample(f"Sample of {len(sample)} observations has zero variance")
        return (sample - np.mean(sample)) / std

    def calibrate(self, sample, level: float) -> float:
        """
        Empirical level-quantile of the standardized sample.

        Args:
            sample: Observations, e.g. the expanding return prefix
            level: Tail probability in (0, 1), e.g. 0.01 for 1% VaR

        Returns:
            Quantile in standard-deviation units (negative for small levels)
        """
        if not 0 < level < 1:
            raise ValueError(f"Quantile level must lie in (0, 1), got {level}")
        standardized = self.standardize(sample)
        return float(np.quantile(standardized, level, method=self.method))
