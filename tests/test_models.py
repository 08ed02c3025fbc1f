import pytest
import numpy as np
import pandas as pd

from errors import DegradedRun, InvalidSpec
from models import ModelSpec, RollingRun, VarEstimate, VolatilityVariant


def test_spec_normalizes_strings():
    spec = ModelSpec('gjr-garch', [0, 0], [1, 1], 't')
    assert spec.variant is VolatilityVariant.GJR_GARCH
    assert spec.mean_order == (0, 0)
    assert spec.variance_order == (1, 1)
    assert spec.distribution == 'studentst'
    assert spec == ModelSpec(VolatilityVariant.GJR_GARCH, (0, 0), (1, 1), 'studentst')


def test_spec_is_hashable_and_ordered():
    specs = [
        ModelSpec('gjrgarch', (0, 0), (1, 1)),
        ModelSpec('garch', (0, 0), (2, 1)),
        ModelSpec('constant', (0, 0), (0, 0)),
        ModelSpec('garch', (0, 0), (1, 1), 'studentst'),
        ModelSpec('garch', (0, 0), (1, 1)),
    ]
    ordered = sorted(specs)
    assert [s.label for s in ordered] == [
        'CONST-normal',
        'GARCH(1,1)-normal',
        'GARCH(1,1)-studentst',
        'GARCH(2,1)-normal',
        'GJR-GARCH(1,1)-normal',
    ]
    assert len(set(specs + [ModelSpec('garch', (0, 0), (1, 1))])) == len(specs)


@pytest.mark.parametrize("kwargs", [
    {'variant': 'figarch'},
    {'distribution': 'cauchy'},
    {'variance_order': (0, 1)},
    {'variance_order': (-1, 1)},
    {'variance_order': (1.5, 1)},
    {'variance_order': (1, 1, 1)},
    {'mean_order': (0, -1)},
    {'mean_order': 3},
    {'variant': 'constant', 'variance_order': (1, 0)},
])
def test_invalid_specs(kwargs):
    with pytest.raises(InvalidSpec):
        ModelSpec(**kwargs)


def test_invalid_spec_is_value_error():
    with pytest.raises(ValueError):
        ModelSpec(variance_order=(0, 0))


def test_minimum_observations():
    spec = ModelSpec('garch', (1, 0), (1, 1))
    assert spec.minimum_observations() == 40
    assert spec.minimum_observations(multiplier=20) == 80
    assert ModelSpec('constant', (0, 0), (0, 0)).minimum_observations() == 10


def test_label_with_mean_orders():
    assert ModelSpec('egarch', (1, 1), (1, 1), 'ged').label == 'ARMA(1,1)-EGARCH(1,1)-ged'


def _estimate(i, threshold, failure=None):
    return VarEstimate(timestamp=pd.Timestamp('2024-01-01') + pd.Timedelta(days=i),
                       threshold=threshold, index=i, failure=failure)


def test_rolling_run_status():
    spec = ModelSpec()
    estimates = [_estimate(10, -0.02), _estimate(11, None, 'ConvergenceFailure'),
                 _estimate(12, -0.03)]
    run = RollingRun(spec=spec, level=0.01, start=10, finish=14,
                     estimates=estimates, max_failure_fraction=0.5)
    assert run.requested == 5
    assert run.completed == 3
    assert run.failures == {11: 'ConvergenceFailure'}
    assert run.failure_fraction == pytest.approx(1 / 3)
    assert not run.degraded
    run.raise_for_status()

    thresholds = run.thresholds()
    assert thresholds.iloc[0] == -0.02
    assert np.isnan(thresholds.iloc[1])

    df = run.to_dataframe()
    assert list(df['index']) == [10, 11, 12]
    assert df.loc[1, 'failure'] == 'ConvergenceFailure'


def test_degraded_run_raises():
    estimates = [_estimate(i, None, 'ConvergenceFailure') for i in range(5)]
    estimates.append(_estimate(5, -0.01))
    run = RollingRun(spec=ModelSpec(), level=0.05, start=0, finish=5, estimates=estimates)
    assert run.degraded
    assert isinstance(run.error, DegradedRun)
    with pytest.raises(DegradedRun):
        run.raise_for_status()
