"""Candidate comparison by information criteria and adequacy"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from errors import VarBacktestError
from models import BacktestResult, CandidateScore, FittedModel, ModelSpec
from .estimator import FitEngine

CRITERIA = ('bic', 'aic', 'hqic')


@dataclass
class SelectionResult:
    """Ranked candidates plus the specs that could not be fitted"""
    ranked: List[CandidateScore]
    criteria: Tuple[str, ...]
    failures: Dict[ModelSpec, str] = field(default_factory=dict)

    @property
    def best(self) -> Optional[CandidateScore]:
        return self.ranked[0] if self.ranked else None

    def top(self, n: int = 1) -> List[ModelSpec]:
        return [score.spec for score in self.ranked[:n]]

    @property
    def table(self) -> pd.DataFrame:
        """Information-criteria table, one row per ranked candidate"""
        records = []
        for score in self.ranked:
            record = {
                'rank': score.rank,
                'model': score.spec.label,
                'loglik': score.model.loglikelihood,
                'n_params': score.n_params,
                **{name.upper(): score.criteria[name] for name in self.criteria},
                'insignificant_frac': score.insignificant_fraction,
                'diagnostics_passed': score.diagnostics_passed,
                'backtest_passed': score.backtest_passed,
                'adequate': score.adequate,
            }
            records.append(record)
        columns = (['rank', 'model', 'loglik', 'n_params']
                   + [name.upper() for name in self.criteria]
                   + ['insignificant_frac', 'diagnostics_passed', 'backtest_passed', 'adequate'])
        return pd.DataFrame(records, columns=columns).set_index('rank')


class ModelSelector:
    """Deterministic ranking of fitted candidates.

    Adequate candidates come first, then lower primary criterion, then fewer
    parameters, then the remaining criteria in priority order, then the
    spec ordering itself.
    """

    def __init__(self, fit_engine: Optional[FitEngine] = None,
                 criteria: Sequence[str] = CRITERIA,
                 significance: float = 0.05,
                 max_insignificant_fraction: float = 0.5,
                 decimals: int = 6):
        criteria = tuple(c.lower() for c in criteria)
        unknown = [c for c in criteria if c not in CRITERIA]
        if not criteria or unknown:
            raise ValueError(f"Criteria must be a non-empty subset of {CRITERIA}, got {criteria}")
        self.fit_engine = fit_engine
        self.criteria = criteria
        self.significance = significance
        self.max_insignificant_fraction = max_insignificant_fraction
        self.decimals = decimals
        self.logger = logging.getLogger('volatility.selector')

    def fit_candidates(self, returns, specs: Iterable[ModelSpec]
                       ) -> Tuple[List[Tuple[ModelSpec, FittedModel]], Dict[ModelSpec, str]]:
        """Fit every spec on the training prefix, keeping failures aside"""
        if self.fit_engine is None:
            raise ValueError("ModelSelector needs a fit_engine to fit candidates")

        specs = sorted(set(specs))
        # Every candidate skips the leading observations the longest AR mean needs
        hold_back = max((spec.mean_order[0] for spec in specs), default=0)
        fit_engine = self.fit_engine.aligned(hold_back) if hold_back else self.fit_engine

        candidates = []
        failures = {}
        for spec in specs:
            try:
                model = fit_engine.fit(returns, spec)
            except VarBacktestError as e:
                self.logger.warning(f"Candidate {spec.label} failed: {type(e).__name__}: {e}")
                failures[spec] = type(e).__name__
                continue
            candidates.append((spec, model))
        return candidates, failures

    def _score(self, spec: ModelSpec, model: FittedModel,
               diagnostics: Mapping[ModelSpec, bool],
               backtests: Mapping[ModelSpec, BacktestResult]) -> CandidateScore:
        insignificant = model.insignificant_fraction(self.significance)
        diagnostics_passed = bool(diagnostics.get(spec, True))
        backtest = backtests.get(spec)
        backtest_passed = None if backtest is None else bool(backtest.within_tolerance)

        adequate = (insignificant <= self.max_insignificant_fraction
                    and diagnostics_passed
                    and backtest_passed is not False)
        return CandidateScore(
            spec=spec,
            model=model,
            criteria=model.criteria(),
            n_params=model.n_params,
            insignificant_fraction=insignificant,
            diagnostics_passed=diagnostics_passed,
            backtest_passed=backtest_passed,
            adequate=adequate
        )

    def _sort_key(self, score: CandidateScore) -> tuple:
        values = [round(score.criteria[name], self.decimals) for name in self.criteria]
        # NaN criteria sort last
        values = [np.inf if np.isnan(v) else v for v in values]
        return (not score.adequate, values[0], score.n_params, *values[1:], score.spec.sort_key())

    def rank(self, candidates: Sequence[Tuple[ModelSpec, FittedModel]],
             diagnostics: Optional[Mapping[ModelSpec, bool]] = None,
             backtests: Optional[Mapping[ModelSpec, BacktestResult]] = None,
             failures: Optional[Dict[ModelSpec, str]] = None) -> SelectionResult:
        """
        Rank fitted candidates.

        Args:
            candidates: (spec, fitted model) pairs on a common training prefix
            diagnostics: Externally computed residual-diagnostic pass/fail per spec
            backtests: Optional backtest verdicts per spec
            failures: Specs that failed to fit, carried into the result
        """
        diagnostics = diagnostics or {}
        backtests = backtests or {}

        scores = [self._score(spec, model, diagnostics, backtests) for spec, model in candidates]
        scores.sort(key=self._sort_key)
        for position, score in enumerate(scores, start=1):
            score.rank = position

        result = SelectionResult(ranked=scores, criteria=self.criteria,
                                 failures=dict(failures or {}))
        if result.best is not None:
            best = result.best
            self.logger.info(
                f"Selected {best.spec.label} from {len(scores)} candidates "
                f"({self.criteria[0].upper()}={best.criteria[self.criteria[0]]:.2f}, "
                f"adequate={best.adequate})"
            )
        else:
            self.logger.warning("No candidates available for selection")
        return result

    def select(self, returns, specs: Iterable[ModelSpec],
               diagnostics: Optional[Mapping[ModelSpec, bool]] = None) -> SelectionResult:
        """Fit all specs on returns and rank them"""
        candidates, failures = self.fit_candidates(returns, specs)
        return self.rank(candidates, diagnostics=diagnostics, failures=failures)
