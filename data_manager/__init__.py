"""
Data management package for the VaR backtest.
Holds the validated, immutable return series handed to the core.
"""

from .return_series import ReturnSeries

__all__ = ['ReturnSeries']
