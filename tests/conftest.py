import sys
import os
import threading
import time

# Add project root to Python path
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if project_root not in sys.path:
    sys.path.insert(0, project_root)

import pytest
import numpy as np
import pandas as pd

from data_manager.return_series import ReturnSeries
from errors import ConvergenceFailure
from models import FittedModel, ModelSpec, VolatilityVariant
from volatility.estimator import FitEngine


def simulate_garch(n: int, seed: int = 42, omega: float = 2e-6,
                   alpha: float = 0.08, beta: float = 0.90) -> np.ndarray:
    """GARCH(1,1) returns with normal innovations, decimal scale"""
    rng = np.random.RandomState(seed)
    z = rng.standard_normal(n)
    returns = np.empty(n)
    variance = omega / (1 - alpha - beta)
    for t in range(n):
        returns[t] = np.sqrt(variance) * z[t]
        variance = omega + alpha * returns[t] ** 2 + beta * variance
    return returns


class SampleVarianceFitEngine(FitEngine):
    """Constant-variance model: sigma is the prefix sample standard deviation"""

    def __repr__(self):
        # Subclasses fit the same model, so checkpoints carry over between them
        return f"SampleVarianceFitEngine(min_obs_multiplier={self.min_obs_multiplier})"

    def fit(self, returns, spec):
        returns = self.check_input(returns, spec)
        sigma = float(np.std(returns, ddof=1))
        mu = float(np.mean(returns))
        resid = (returns - mu) / sigma
        loglik = float(np.sum(-0.5 * (np.log(2 * np.pi * sigma ** 2) + resid ** 2)))
        return FittedModel(
            spec=spec,
            params=pd.Series({'mu': mu, 'sigma2': sigma ** 2}),
            pvalues=pd.Series({'mu': 0.5, 'sigma2': 0.0}),
            volatility_path=np.full(len(returns), sigma),
            std_resid=resid,
            loglikelihood=loglik,
            converged=True,
            n_params=2,
            nobs=len(returns),
            sigma_forecast=sigma
        )


class FlakyFitEngine(SampleVarianceFitEngine):
    """Fails with ConvergenceFailure for chosen prefix lengths"""

    def __init__(self, fail_at, **kwargs):
        super().__init__(**kwargs)
        self.fail_at = set(fail_at)

    def fit(self, returns, spec):
        if len(returns) in self.fail_at:
            raise ConvergenceFailure(f"injected failure at {len(returns)}")
        return super().fit(returns, spec)


class RecordingFitEngine(SampleVarianceFitEngine):
    """Remembers the prefix lengths and last values it was handed"""

    def __init__(self, delay: float = 0.0, **kwargs):
        super().__init__(**kwargs)
        self.delay = delay
        self.calls = []
        self._lock = threading.Lock()

    def fit(self, returns, spec):
        if self.delay:
            # Later indices finish first so completion order is scrambled
            time.sleep(self.delay * (1 + (len(returns) * 7) % 5))
        with self._lock:
            self.calls.append((len(returns), float(returns[-1]), returns.flags.writeable))
        return super().fit(returns, spec)


class CancellingFitEngine(SampleVarianceFitEngine):
    """Sets an event once it has fitted the prefix of a given length"""

    def __init__(self, event: threading.Event, cancel_at: int, **kwargs):
        super().__init__(**kwargs)
        self.event = event
        self.cancel_at = cancel_at

    def fit(self, returns, spec):
        model = super().fit(returns, spec)
        if len(returns) >= self.cancel_at:
            self.event.set()
        return model


class SlowFitEngine(SampleVarianceFitEngine):
    def __init__(self, delay: float, **kwargs):
        super().__init__(**kwargs)
        self.delay = delay

    def fit(self, returns, spec):
        time.sleep(self.delay)
        return super().fit(returns, spec)


@pytest.fixture
def garch_returns():
    """1000 days of simulated GARCH(1,1) returns on business days"""
    dates = pd.bdate_range('2018-01-01', periods=1000)
    return pd.Series(simulate_garch(1000), index=dates, name='returns')


@pytest.fixture
def garch_series(garch_returns):
    return ReturnSeries(garch_returns)


@pytest.fixture
def white_noise_series():
    rng = np.random.RandomState(7)
    dates = pd.bdate_range('2000-01-03', periods=6000)
    return ReturnSeries(pd.Series(rng.normal(0, 0.01, 6000), index=dates))


@pytest.fixture
def garch_spec():
    return ModelSpec(VolatilityVariant.GARCH, (0, 0), (1, 1), 'normal')


@pytest.fixture
def constant_spec():
    return ModelSpec(VolatilityVariant.CONSTANT, (0, 0), (0, 0), 'normal')
