"""Run configuration for the walk-forward VaR backtest"""

import logging
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import psutil

logger = logging.getLogger(__name__)

BACKENDS = ('process', 'thread')
QUANTILE_SOURCES = ('raw_prefix', 'standardized_residuals')


def default_workers() -> int:
    """Physical cores, falling back to logical ones"""
    return psutil.cpu_count(logical=False) or psutil.cpu_count() or 1


@dataclass
class BacktestConfig:
    levels: Tuple[float, ...] = (0.01, 0.05)
    min_obs_multiplier: int = 10
    n_workers: Optional[int] = None  # None: one per physical core
    backend: str = 'process'
    timeout: Optional[float] = None  # seconds for a whole rolling run
    max_failure_fraction: float = 0.25
    tolerance_confidence: float = 0.95
    scale: float = 100.0  # decimal -> percent returns for estimation
    max_iter: int = 1000
    quantile_source: str = 'raw_prefix'
    show_progress: bool = False
    checkpoint_dir: Optional[Path] = None

    def __post_init__(self):
        self.levels = tuple(float(level) for level in self.levels)
        if self.checkpoint_dir is not None:
            self.checkpoint_dir = Path(self.checkpoint_dir)
        self.validate()

    def validate(self):
        if not self.levels or any(not 0 < level < 1 for level in self.levels):
            raise ValueError(f"VaR levels must lie in (0, 1), got {self.levels}")
        if self.min_obs_multiplier < 1:
            raise ValueError(f"min_obs_multiplier must be >= 1, got {self.min_obs_multiplier}")
        if self.n_workers is not None and self.n_workers < 1:
            raise ValueError(f"n_workers must be >= 1, got {self.n_workers}")
        if self.backend not in BACKENDS:
            raise ValueError(f"backend must be one of {BACKENDS}, got {self.backend!r}")
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError(f"timeout must be positive, got {self.timeout}")
        if not 0 <= self.max_failure_fraction <= 1:
            raise ValueError(
                f"max_failure_fraction must lie in [0, 1], got {self.max_failure_fraction}"
            )
        if not 0 < self.tolerance_confidence < 1:
            raise ValueError(
                f"tolerance_confidence must lie in (0, 1), got {self.tolerance_confidence}"
            )
        if self.scale <= 0:
            raise ValueError(f"scale must be positive, got {self.scale}")
        if self.quantile_source not in QUANTILE_SOURCES:
            raise ValueError(
                f"quantile_source must be one of {QUANTILE_SOURCES}, got {self.quantile_source!r}"
            )

    @property
    def workers(self) -> int:
        return self.n_workers if self.n_workers is not None else default_workers()

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> 'BacktestConfig':
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            logger.warning(f"Ignoring unknown config keys: {unknown}")
        return cls(**{k: v for k, v in values.items() if k in known})
