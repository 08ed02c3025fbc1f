"""
Walk-forward VaR backtest package.
Quantile calibration, rolling one-step-ahead forecasts and breach evaluation.
"""

from .calibrator import QuantileCalibrator, QuantileSource
from .checkpoint import CheckpointManager
from .config import BacktestConfig
from .evaluator import BacktestEvaluator
from .rolling import RollingForecastEngine, forecast_step

__all__ = [
    'BacktestConfig',
    'BacktestEvaluator',
    'CheckpointManager',
    'QuantileCalibrator',
    'QuantileSource',
    'RollingForecastEngine',
    'forecast_step',
]
