"""Utility functions and classes for the VaR backtest"""

from .progress import ProgressMonitor

__all__ = ['ProgressMonitor']
