"""
Immutable return series consumed by the fitting and backtest components.
Validation only; cleaning and calendar alignment happen upstream.
"""

import logging
from typing import List, Tuple

import numpy as np
import pandas as pd

from errors import InvalidSeries

logger = logging.getLogger(__name__)


class ReturnSeries:
    """Ordered (timestamp, return) pairs that nobody may mutate"""

    def __init__(self, values, index=None, name: str = 'returns'):
        """
        Build a validated series.

        Args:
            values: Returns in decimal form, or a pandas Series carrying its own index
            index: Timestamps for plain array input (defaults to a positional index)
            name: Display name used in logs and exports
        """
        if isinstance(values, pd.Series):
            if index is None:
                index = values.index
            name = values.name if values.name is not None else name
            values = values.to_numpy()

        data = np.array(values, dtype=np.float64, copy=True)
        if index is None:
            index = pd.RangeIndex(len(data))
        index = pd.Index(index)

        is_valid, issues = self.validate(data, index)
        if not is_valid:
            raise InvalidSeries("; ".join(issues))

        data.setflags(write=False)
        self._values = data
        self._index = index
        self.name = name

    @staticmethod
    def validate(values: np.ndarray, index: pd.Index) -> Tuple[bool, List[str]]:
        """
        Check the structural requirements of a return series.

        Returns:
            Tuple of (is_valid, list_of_issues)
        """
        issues = []

        if values.ndim != 1:
            issues.append(f"Returns must be one-dimensional, got shape {values.shape}")
            return False, issues

        if len(index) != len(values):
            issues.append(f"Index length {len(index)} does not match {len(values)} values")
            return False, issues

        non_finite = ~np.isfinite(values)
        if non_finite.any():
            first = index[int(np.argmax(non_finite))]
            issues.append(
                f"{int(non_finite.sum())} missing or non-finite values "
                f"(first occurrence at {first})"
            )

        if index.has_duplicates:
            duplicates = index[index.duplicated()]
            issues.append(
                f"{len(duplicates)} duplicate timestamps (first occurrence at {duplicates[0]})"
            )

        if len(index) > 1 and not index.is_monotonic_increasing:
            issues.append("Timestamps are not in ascending order")

        return len(issues) == 0, issues

    @property
    def values(self) -> np.ndarray:
        return self._values

    @property
    def timestamps(self) -> pd.Index:
        return self._index

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        if not len(self):
            return f"ReturnSeries(name={self.name!r}, empty)"
        return (f"ReturnSeries(name={self.name!r}, n={len(self)}, "
                f"{self._index[0]} to {self._index[-1]})")

    def timestamp_at(self, i: int):
        return self._index[i]

    def position_of(self, timestamp) -> int:
        """Integer position of a timestamp, e.g. a train/test split date"""
        try:
            return int(self._index.get_loc(timestamp))
        except KeyError:
            # Split dates need not be trading days; take the first one on or after
            position = int(self._index.searchsorted(timestamp, side='left'))
            if position >= len(self):
                raise KeyError(f"{timestamp} is after the last observation")
            return position

    def prefix(self, i: int) -> np.ndarray:
        """Read-only copy of the observations strictly before position i"""
        if not 0 <= i <= len(self):
            raise IndexError(f"Prefix end {i} outside [0, {len(self)}]")
        window = self._values[:i].copy()
        window.setflags(write=False)
        return window

    def to_series(self) -> pd.Series:
        return pd.Series(self._values.copy(), index=self._index, name=self.name)
