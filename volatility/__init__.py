"""
Volatility modeling package.
Fits GARCH-family models behind a uniform contract and ranks candidates.
"""

from .estimator import ArchFitEngine, FitEngine
from .selector import ModelSelector, SelectionResult

__all__ = ['ArchFitEngine', 'FitEngine', 'ModelSelector', 'SelectionResult']
