"""Breach counting and coverage tests for VaR forecast streams"""

import logging
import math
from typing import Sequence, Tuple, Union

import numpy as np
import pandas as pd
from scipy.stats import binomtest, chi2
from statsmodels.stats.proportion import proportion_confint

from data_manager.return_series import ReturnSeries
from models import BacktestResult, RollingRun, VarEstimate


def _xlogy(x: float, y: float) -> float:
    """x * log(y) with the 0 * log(0) = 0 convention"""
    return 0.0 if x == 0 else x * math.log(y)


def kupiec_pof(breaches: int, n: int, expected_rate: float) -> Tuple[float, float]:
    """
    Kupiec (1995) proportion-of-failures likelihood ratio.

    Under H0 (breach probability equals expected_rate) LR ~ chi2(1).
    """
    if n == 0:
        return float('nan'), float('nan')
    observed = breaches / n
    log_null = _xlogy(n - breaches, 1 - expected_rate) + _xlogy(breaches, expected_rate)
    log_alt = _xlogy(n - breaches, 1 - observed) + _xlogy(breaches, observed)
    lr = max(-2.0 * (log_null - log_alt), 0.0)
    return lr, float(chi2.sf(lr, df=1))


def christoffersen_independence(breach_flags: Sequence[bool]) -> Tuple[float, float]:
    """
    Christoffersen (1998) independence likelihood ratio over a 0/1 breach sequence.

    Compares a first-order Markov chain against independent breaches;
    LR ~ chi2(1) under H0.
    """
    flags = np.asarray(breach_flags, dtype=int)
    if len(flags) < 2:
        return float('nan'), float('nan')

    prev, curr = flags[:-1], flags[1:]
    n00 = int(np.sum((prev == 0) & (curr == 0)))
    n01 = int(np.sum((prev == 0) & (curr == 1)))
    n10 = int(np.sum((prev == 1) & (curr == 0)))
    n11 = int(np.sum((prev == 1) & (curr == 1)))

    pi0 = n01 / (n00 + n01) if (n00 + n01) else 0.0
    pi1 = n11 / (n10 + n11) if (n10 + n11) else 0.0
    pi = (n01 + n11) / (n00 + n01 + n10 + n11)

    log_null = _xlogy(n00 + n10, 1 - pi) + _xlogy(n01 + n11, pi)
    log_alt = (_xlogy(n00, 1 - pi0) + _xlogy(n01, pi0)
               + _xlogy(n10, 1 - pi1) + _xlogy(n11, pi1))
    lr = max(-2.0 * (log_null - log_alt), 0.0)
    return lr, float(chi2.sf(lr, df=1))


def traffic_light(breach_rate: float, expected_rate: float) -> str:
    """Basel-style zone scaled to the sample: GREEN, YELLOW or RED"""
    if math.isnan(breach_rate):
        return 'GREY'
    if breach_rate <= expected_rate * 1.5:
        return 'GREEN'
    if breach_rate <= expected_rate * 3.0:
        return 'YELLOW'
    return 'RED'


class BacktestEvaluator:
    """Compares realized returns with forecast VaR thresholds"""

    def __init__(self, confidence: float = 0.95):
        """
        Args:
            confidence: Confidence of the two-sided binomial tolerance test
        """
        if not 0 < confidence < 1:
            raise ValueError(f"confidence must lie in (0, 1), got {confidence}")
        self.confidence = confidence
        self.logger = logging.getLogger('backtest.evaluator')

    def _actuals(self, actual_returns) -> pd.Series:
        if isinstance(actual_returns, ReturnSeries):
            return actual_returns.to_series()
        if isinstance(actual_returns, pd.Series):
            return actual_returns
        raise TypeError(
            f"actual_returns must be a ReturnSeries or pandas Series, "
            f"got {type(actual_returns).__name__}"
        )

    def evaluate(self, actual_returns: Union[ReturnSeries, pd.Series],
                 var_estimates: Sequence[VarEstimate],
                 expected_rate: float) -> BacktestResult:
        """
        Count breaches of a VaR stream.

        A breach is a realized return strictly below its threshold. Missing
        estimates are left out of the sample rather than counted as passes.

        Args:
            actual_returns: Realized returns indexed by timestamp
            var_estimates: Forecasts to check, one per timestamp
            expected_rate: Nominal breach probability (the VaR level)

        Returns:
            BacktestResult
        """
        if not 0 < expected_rate < 1:
            raise ValueError(f"expected_rate must lie in (0, 1), got {expected_rate}")

        actuals = self._actuals(actual_returns)
        estimates = sorted(var_estimates, key=lambda e: e.index)
        valid = [e for e in estimates if not e.missing]
        missing_count = len(estimates) - len(valid)

        absent = [e.timestamp for e in valid if e.timestamp not in actuals.index]
        if absent:
            raise ValueError(
                f"{len(absent)} estimates have no realized return (first at {absent[0]})"
            )

        realized = np.array([actuals.loc[e.timestamp] for e in valid], dtype=float)
        thresholds = np.array([e.threshold for e in valid], dtype=float)
        breach_flags = realized < thresholds

        n = len(valid)
        breach_count = int(breach_flags.sum())

        if n == 0:
            self.logger.warning("No valid estimates to evaluate")
            return BacktestResult(
                breach_count=0,
                sample_size=0,
                breach_rate=float('nan'),
                expected_rate=expected_rate,
                within_tolerance=False,
                missing_count=missing_count
            )

        breach_rate = breach_count / n
        p_value = float(binomtest(breach_count, n, expected_rate,
                                  alternative='two-sided').pvalue)
        lower, upper = proportion_confint(breach_count, n,
                                          alpha=1 - self.confidence, method='wilson')
        kupiec_lr, kupiec_p = kupiec_pof(breach_count, n, expected_rate)
        ind_lr, ind_p = christoffersen_independence(breach_flags)

        result = BacktestResult(
            breach_count=breach_count,
            sample_size=n,
            breach_rate=breach_rate,
            expected_rate=expected_rate,
            within_tolerance=p_value >= 1 - self.confidence,
            missing_count=missing_count,
            p_value=p_value,
            confidence_interval=(float(lower), float(upper)),
            kupiec_lr=kupiec_lr,
            kupiec_pvalue=kupiec_p,
            christoffersen_lr=ind_lr,
            christoffersen_pvalue=ind_p,
            traffic_light=traffic_light(breach_rate, expected_rate),
            breach_timestamps=[e.timestamp for e, hit in zip(valid, breach_flags) if hit]
        )

        self.logger.info(
            f"Backtest: {breach_count}/{n} breaches ({breach_rate:.2%} vs "
            f"{expected_rate:.2%} expected), p={p_value:.3f}, "
            f"{'within' if result.within_tolerance else 'outside'} tolerance, "
            f"{missing_count} missing"
        )
        return result

    def evaluate_run(self, actual_returns: Union[ReturnSeries, pd.Series],
                     rolling_run: RollingRun) -> BacktestResult:
        """Evaluate a rolling run against its own VaR level"""
        return self.evaluate(actual_returns, rolling_run.estimates, rolling_run.level)
