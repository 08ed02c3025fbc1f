"""Common data models used across the project."""

from dataclasses import dataclass, field
from enum import Enum
from functools import total_ordering
from typing import Dict, List, Optional, Tuple
import math

import numpy as np
import pandas as pd

from errors import DegradedRun, InvalidSpec


class VolatilityVariant(Enum):
    """Closed set of supported variance equations"""
    CONSTANT = 'constant'
    GARCH = 'garch'
    EGARCH = 'egarch'
    GJR_GARCH = 'gjrgarch'

    @property
    def rank(self) -> int:
        return _VARIANT_ORDER.index(self)


_VARIANT_ORDER = [
    VolatilityVariant.CONSTANT,
    VolatilityVariant.GARCH,
    VolatilityVariant.EGARCH,
    VolatilityVariant.GJR_GARCH,
]

DISTRIBUTIONS = ('normal', 'studentst', 'skewt', 'ged')
_DISTRIBUTION_ALIASES = {
    't': 'studentst',
    'student': 'studentst',
    'skewstudent': 'skewt',
    'gaussian': 'normal',
}

_DISPLAY_NAMES = {
    VolatilityVariant.CONSTANT: 'CONST',
    VolatilityVariant.GARCH: 'GARCH',
    VolatilityVariant.EGARCH: 'EGARCH',
    VolatilityVariant.GJR_GARCH: 'GJR-GARCH',
}


def _as_order(value, name: str) -> Tuple[int, int]:
    try:
        order = tuple(value)
    except TypeError:
        raise InvalidSpec(f"{name} must be a pair of integers, got {value!r}")
    if len(order) != 2:
        raise InvalidSpec(f"{name} must have exactly two entries, got {value!r}")
    for item in order:
        if isinstance(item, bool) or not isinstance(item, (int, np.integer)):
            raise InvalidSpec(f"{name} entries must be integers, got {value!r}")
        if item < 0:
            raise InvalidSpec(f"{name} entries must be non-negative, got {value!r}")
    return int(order[0]), int(order[1])


@total_ordering
@dataclass(frozen=True)
class ModelSpec:
    """Candidate model: variance variant, mean/variance orders and innovation law"""
    variant: VolatilityVariant = VolatilityVariant.GARCH
    mean_order: Tuple[int, int] = (0, 0)  # (AR p, MA q)
    variance_order: Tuple[int, int] = (1, 1)  # (shock a, persistence b)
    distribution: str = 'normal'

    def __post_init__(self):
        variant = self.variant
        if not isinstance(variant, VolatilityVariant):
            try:
                variant = VolatilityVariant(
                    str(variant).lower().replace('-', '').replace('_', '')
                )
            except ValueError:
                raise InvalidSpec(f"Unknown volatility variant: {self.variant!r}")
        object.__setattr__(self, 'variant', variant)
        object.__setattr__(self, 'mean_order', _as_order(self.mean_order, 'mean_order'))
        object.__setattr__(self, 'variance_order',
                           _as_order(self.variance_order, 'variance_order'))

        dist = str(self.distribution).lower()
        dist = _DISTRIBUTION_ALIASES.get(dist, dist)
        if dist not in DISTRIBUTIONS:
            raise InvalidSpec(f"Unknown distribution: {self.distribution!r}")
        object.__setattr__(self, 'distribution', dist)
        self.validate()

    def validate(self):
        """Cross-field checks between the variant and its variance orders"""
        a, b = self.variance_order
        if self.variant is VolatilityVariant.CONSTANT:
            if a or b:
                raise InvalidSpec(
                    f"Constant variance takes no variance orders, got {self.variance_order}"
                )
        elif a == 0:
            # (0, 0) is spelled CONSTANT; a persistence-only recursion has no shock
            raise InvalidSpec(
                f"{self.variant.value} requires a positive shock order, got {self.variance_order}"
            )

    def sort_key(self) -> tuple:
        return (self.variant.rank, self.mean_order, self.variance_order,
                DISTRIBUTIONS.index(self.distribution))

    def __lt__(self, other):
        if not isinstance(other, ModelSpec):
            return NotImplemented
        return self.sort_key() < other.sort_key()

    @property
    def order_sum(self) -> int:
        return sum(self.mean_order) + sum(self.variance_order)

    def minimum_observations(self, multiplier: int = 10) -> int:
        """Shortest prefix the model may be fitted on"""
        return multiplier * (self.order_sum + 1)

    @property
    def label(self) -> str:
        name = _DISPLAY_NAMES[self.variant]
        if self.variant is not VolatilityVariant.CONSTANT:
            name += f"({self.variance_order[0]},{self.variance_order[1]})"
        p, q = self.mean_order
        if p or q:
            name = f"ARMA({p},{q})-" + name
        return f"{name}-{self.distribution}"

    def __str__(self) -> str:
        return self.label


@dataclass
class FittedModel:
    """Result of fitting one ModelSpec to one return prefix.

    Volatility path and log-likelihood are on the decimal return scale.
    Positions consumed as mean-equation hold-back carry NaN volatility.
    """
    spec: ModelSpec
    params: pd.Series
    pvalues: pd.Series
    volatility_path: np.ndarray
    std_resid: np.ndarray
    loglikelihood: float
    converged: bool
    n_params: int
    nobs: int
    sigma_forecast: float

    @property
    def aic(self) -> float:
        return -2.0 * self.loglikelihood + 2.0 * self.n_params

    @property
    def bic(self) -> float:
        return -2.0 * self.loglikelihood + self.n_params * math.log(self.nobs)

    @property
    def hqic(self) -> float:
        return -2.0 * self.loglikelihood + 2.0 * self.n_params * math.log(math.log(self.nobs))

    def criteria(self) -> Dict[str, float]:
        return {'aic': self.aic, 'bic': self.bic, 'hqic': self.hqic}

    def insignificant_fraction(self, significance: float = 0.05) -> float:
        """Share of parameters whose p-value exceeds the significance level"""
        pvalues = np.asarray(self.pvalues, dtype=float)
        if pvalues.size == 0:
            return 0.0
        # NaN p-values (e.g. parameters on a bound) count as insignificant
        return float(np.mean(~(pvalues <= significance)))


@dataclass(frozen=True)
class ForecastPoint:
    as_of_index: int
    sigma_forecast: float


@dataclass(frozen=True)
class VarEstimate:
    """One-step-ahead VaR threshold, or a missing slot when the step failed"""
    timestamp: pd.Timestamp
    threshold: Optional[float]
    index: int
    sigma_forecast: Optional[float] = None
    quantile: Optional[float] = None
    failure: Optional[str] = None

    @property
    def missing(self) -> bool:
        return self.threshold is None


@dataclass
class RollingRun:
    """Ordered output of a walk-forward run over [start, finish]"""
    spec: ModelSpec
    level: float
    start: int
    finish: int
    estimates: List[VarEstimate]
    truncated: bool = False
    max_failure_fraction: float = 0.25

    @property
    def requested(self) -> int:
        return self.finish - self.start + 1

    @property
    def completed(self) -> int:
        return len(self.estimates)

    @property
    def failures(self) -> Dict[int, str]:
        return {e.index: e.failure for e in self.estimates if e.missing}

    @property
    def failure_fraction(self) -> float:
        if not self.estimates:
            return 0.0
        return len(self.failures) / len(self.estimates)

    @property
    def degraded(self) -> bool:
        return self.failure_fraction > self.max_failure_fraction

    @property
    def error(self) -> Optional[DegradedRun]:
        if not self.degraded:
            return None
        return DegradedRun(
            f"{len(self.failures)}/{self.completed} steps failed for {self.spec.label} "
            f"at level {self.level} (limit {self.max_failure_fraction:.0%})"
        )

    def raise_for_status(self):
        error = self.error
        if error is not None:
            raise error

    def thresholds(self) -> pd.Series:
        """VaR thresholds by timestamp, NaN where the step failed"""
        return pd.Series(
            [np.nan if e.missing else e.threshold for e in self.estimates],
            index=pd.Index([e.timestamp for e in self.estimates], name='date'),
            name=f"VaR_{self.level:g}",
            dtype=float,
        )

    def to_dataframe(self) -> pd.DataFrame:
        records = [{
            'date': e.timestamp,
            'index': e.index,
            'threshold': np.nan if e.missing else e.threshold,
            'sigma_forecast': np.nan if e.sigma_forecast is None else e.sigma_forecast,
            'quantile': np.nan if e.quantile is None else e.quantile,
            'failure': e.failure,
        } for e in self.estimates]
        columns = ['date', 'index', 'threshold', 'sigma_forecast', 'quantile', 'failure']
        return pd.DataFrame(records, columns=columns)


@dataclass
class BacktestResult:
    """Breach statistics of one VaR stream against realized returns"""
    breach_count: int
    sample_size: int
    breach_rate: float
    expected_rate: float
    within_tolerance: bool
    missing_count: int = 0
    p_value: float = float('nan')
    confidence_interval: Tuple[float, float] = (float('nan'), float('nan'))
    kupiec_lr: float = float('nan')
    kupiec_pvalue: float = float('nan')
    christoffersen_lr: float = float('nan')
    christoffersen_pvalue: float = float('nan')
    traffic_light: str = 'GREY'
    breach_timestamps: List[pd.Timestamp] = field(default_factory=list)

    @property
    def valid_sample_size(self) -> int:
        return self.sample_size


@dataclass
class CandidateScore:
    """One ranked row of the model-selection table"""
    spec: ModelSpec
    model: FittedModel
    criteria: Dict[str, float]
    n_params: int
    insignificant_fraction: float
    diagnostics_passed: bool
    backtest_passed: Optional[bool]
    adequate: bool
    rank: int = 0
