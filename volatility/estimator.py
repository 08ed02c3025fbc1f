from typing import Callable, Dict, Optional, Tuple
import copy
import logging
import math

import numpy as np
import pandas as pd
from arch.univariate import (
    ARX,
    EGARCH,
    GARCH,
    ConstantMean,
    ConstantVariance,
    GeneralizedError,
    Normal,
    SkewStudent,
    StudentsT,
    ZeroMean,
)
from statsmodels.tsa.arima.model import ARIMA

from errors import ConvergenceFailure, DegenerateInput, InsufficientData, InvalidSpec
from models import FittedModel, ForecastPoint, ModelSpec, VolatilityVariant

logger = logging.getLogger('volatility.estimator')

# Variance recursion per variant, from the (shock, persistence) orders
VOLATILITY_BUILDERS: Dict[VolatilityVariant, Callable[[int, int], object]] = {
    VolatilityVariant.CONSTANT: lambda a, b: ConstantVariance(),
    VolatilityVariant.GARCH: lambda a, b: GARCH(p=a, o=0, q=b),
    VolatilityVariant.GJR_GARCH: lambda a, b: GARCH(p=a, o=a, q=b),
    VolatilityVariant.EGARCH: lambda a, b: EGARCH(p=a, o=0, q=b),
}

DISTRIBUTION_BUILDERS = {
    'normal': Normal,
    'studentst': StudentsT,
    'skewt': SkewStudent,
    'ged': GeneralizedError,
}


class FitEngine:
    """Uniform fitting contract: fit(returns, spec) -> FittedModel.

    Subclasses plug in a concrete optimizer. The shared precondition checks
    live here so every engine reports InsufficientData/DegenerateInput the
    same way.
    """

    def __init__(self, min_obs_multiplier: int = 10, hold_back: Optional[int] = None):
        if min_obs_multiplier < 1:
            raise ValueError(f"min_obs_multiplier must be >= 1, got {min_obs_multiplier}")
        if hold_back is not None and hold_back < 0:
            raise ValueError(f"hold_back must be >= 0, got {hold_back}")
        self.min_obs_multiplier = min_obs_multiplier
        # Leading observations left out of every likelihood, so candidates
        # with different AR orders are scored on the same sample
        self.hold_back = hold_back

    def __repr__(self) -> str:
        return (f"{type(self).__name__}(min_obs_multiplier={self.min_obs_multiplier}, "
                f"hold_back={self.hold_back})")

    def aligned(self, hold_back: Optional[int]) -> 'FitEngine':
        """Copy of this engine that holds back the given number of observations"""
        engine = copy.copy(self)
        engine.hold_back = hold_back
        return engine

    def check_input(self, returns, spec: ModelSpec) -> np.ndarray:
        """Validate a return prefix against the spec's preconditions"""
        if not isinstance(spec, ModelSpec):
            raise InvalidSpec(f"Expected a ModelSpec, got {type(spec).__name__}")

        returns = np.asarray(returns, dtype=np.float64)
        if returns.ndim != 1:
            raise DegenerateInput(f"Returns must be one-dimensional, got shape {returns.shape}")

        required = spec.minimum_observations(self.min_obs_multiplier)
        if len(returns) < required:
            raise InsufficientData(
                f"{spec.label} needs at least {required} observations, got {len(returns)}"
            )

        if not np.all(np.isfinite(returns)):
            raise DegenerateInput("Returns contain NaN or infinite values")

        if np.ptp(returns) == 0.0:
            raise DegenerateInput(f"Constant input prefix of length {len(returns)}")

        return returns

    def fit(self, returns, spec: ModelSpec) -> FittedModel:
        raise NotImplementedError

    def forecast_one_step(self, model: FittedModel) -> ForecastPoint:
        """Conditional sigma for the observation right after the fitted prefix"""
        return ForecastPoint(
            as_of_index=len(model.volatility_path),
            sigma_forecast=model.sigma_forecast
        )


class ArchFitEngine(FitEngine):
    """Maximum-likelihood fits through the arch package"""

    def __init__(self, min_obs_multiplier: int = 10,
                 scale: float = 100.0,
                 max_iter: int = 1000,
                 hold_back: Optional[int] = None):
        """
        Initialize engine

        Args:
            min_obs_multiplier: Observations required per estimated order (plus one)
            scale: Fixed factor applied to decimal returns before estimation
            max_iter: Optimizer iteration budget
            hold_back: Leading observations excluded from the likelihood
                (None: only the AR lags themselves)
        """
        super().__init__(min_obs_multiplier=min_obs_multiplier, hold_back=hold_back)
        if scale <= 0:
            raise ValueError(f"scale must be positive, got {scale}")
        self.scale = scale
        self.max_iter = max_iter

    def __repr__(self) -> str:
        return (f"ArchFitEngine(min_obs_multiplier={self.min_obs_multiplier}, "
                f"scale={self.scale}, max_iter={self.max_iter}, hold_back={self.hold_back})")

    def _build_model(self, y: np.ndarray, spec: ModelSpec, mean_lags: int):
        a, b = spec.variance_order
        volatility = VOLATILITY_BUILDERS[spec.variant](a, b)
        distribution = DISTRIBUTION_BUILDERS[spec.distribution]()

        hold_back = self.hold_back
        if mean_lags < 0:
            return ZeroMean(y, hold_back=hold_back, volatility=volatility,
                            distribution=distribution, rescale=False)
        if mean_lags == 0:
            return ConstantMean(y, hold_back=hold_back, volatility=volatility,
                                distribution=distribution, rescale=False)
        if hold_back is not None:
            hold_back = max(hold_back, mean_lags)
        return ARX(y, lags=mean_lags, constant=True, hold_back=hold_back,
                   volatility=volatility, distribution=distribution, rescale=False)

    def _fit_arma_mean(self, y: np.ndarray, spec: ModelSpec) -> Tuple[np.ndarray, pd.Series, pd.Series]:
        """First stage of the two-step ARMA mean: residuals plus mean parameters"""
        p, q = spec.mean_order
        try:
            result = ARIMA(y, order=(p, 0, q), trend='c').fit()
        except (ValueError, np.linalg.LinAlgError) as e:
            raise ConvergenceFailure(f"ARMA({p},{q}) mean failed for {spec.label}: {e}")

        retvals = result.mle_retvals or {}
        if not retvals.get('converged', True):
            raise ConvergenceFailure(f"ARMA({p},{q}) mean did not converge for {spec.label}")

        names = result.model.param_names
        params = pd.Series(np.asarray(result.params), index=names)
        pvalues = pd.Series(np.asarray(result.pvalues), index=names)
        # sigma2 is re-estimated by the variance equation
        keep = [name for name in names if name != 'sigma2']
        return np.asarray(result.resid, dtype=float), params[keep], pvalues[keep]

    def fit(self, returns, spec: ModelSpec) -> FittedModel:
        """Estimate spec on returns and extract the one-step-ahead sigma"""
        returns = self.check_input(returns, spec)
        y = returns * self.scale

        p, q = spec.mean_order
        mean_params = pd.Series(dtype=float)
        mean_pvalues = pd.Series(dtype=float)
        if q > 0:
            y, mean_params, mean_pvalues = self._fit_arma_mean(y, spec)
            mean_lags = -1
        else:
            mean_lags = p

        model = self._build_model(y, spec, mean_lags)
        try:
            result = model.fit(
                disp='off',
                show_warning=False,
                options={'maxiter': self.max_iter},
                update_freq=0
            )
            forecast = result.forecast(horizon=1, reindex=False)
        except (ValueError, np.linalg.LinAlgError, FloatingPointError) as e:
            raise ConvergenceFailure(f"{spec.label} estimation failed: {e}")

        if result.convergence_flag != 0:
            raise ConvergenceFailure(
                f"{spec.label} optimizer stopped with flag {result.convergence_flag} "
                f"after {len(returns)} observations"
            )

        params = pd.concat([mean_params, result.params])
        pvalues = pd.concat([mean_pvalues, result.pvalues])
        if not np.all(np.isfinite(params.to_numpy(dtype=float))):
            raise ConvergenceFailure(f"{spec.label} produced non-finite parameters")

        volatility_path = np.asarray(result.conditional_volatility, dtype=float) / self.scale
        observed = volatility_path[~np.isnan(volatility_path)]
        if observed.size == 0 or not np.all(np.isfinite(observed)) or np.any(observed <= 0):
            raise ConvergenceFailure(f"{spec.label} produced a non-positive variance path")

        variance = float(np.asarray(forecast.variance)[-1, 0])
        if not math.isfinite(variance) or variance <= 0:
            raise ConvergenceFailure(f"{spec.label} one-step variance forecast is {variance}")
        sigma_forecast = math.sqrt(variance) / self.scale

        # Density of y/scale picks up log(scale) per observation
        loglikelihood = float(result.loglikelihood) + result.nobs * math.log(self.scale)

        fitted = FittedModel(
            spec=spec,
            params=params,
            pvalues=pvalues,
            volatility_path=volatility_path,
            std_resid=np.asarray(result.std_resid, dtype=float),
            loglikelihood=loglikelihood,
            converged=True,
            n_params=len(params),
            nobs=int(result.nobs),
            sigma_forecast=sigma_forecast
        )

        logger.debug(
            f"Fitted {spec.label} on {len(returns)} obs: "
            f"loglik={loglikelihood:.2f}, sigma_next={sigma_forecast:.6f}"
        )
        return fitted
