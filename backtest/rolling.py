from concurrent.futures import (
    FIRST_COMPLETED,
    Executor,
    ProcessPoolExecutor,
    ThreadPoolExecutor,
    wait,
)
from typing import Dict, Iterable, Optional, Union
import hashlib
import logging
import threading
import time

import numpy as np
import pandas as pd

from data_manager.return_series import ReturnSeries
from errors import VarBacktestError
from models import ModelSpec, RollingRun, VarEstimate
from utils.progress import ProgressMonitor
from volatility.estimator import ArchFitEngine, FitEngine
from .calibrator import QuantileCalibrator, QuantileSource
from .checkpoint import CheckpointManager
from .config import BACKENDS, BacktestConfig, default_workers

logger = logging.getLogger('backtest.rolling')


def forecast_step(index: int,
                  timestamp,
                  prefix: np.ndarray,
                  spec: ModelSpec,
                  level: float,
                  fit_engine: FitEngine,
                  calibrator: QuantileCalibrator,
                  quantile_source: QuantileSource = QuantileSource.RAW_PREFIX) -> VarEstimate:
    """One walk-forward step on the observations strictly before `index`.

    `prefix` is already sliced by the caller; this function never sees the
    rest of the series. Failures come back as a missing estimate carrying
    the error kind.
    """
    try:
        if quantile_source is QuantileSource.RAW_PREFIX:
            quantile = calibrator.calibrate(prefix, level)
            model = fit_engine.fit(prefix, spec)
        else:
            model = fit_engine.fit(prefix, spec)
            resid = model.std_resid[np.isfinite(model.std_resid)]
            quantile = calibrator.calibrate(resid, level)
        sigma = fit_engine.forecast_one_step(model).sigma_forecast
    except VarBacktestError as e:
        logger.debug(f"Step {index} ({timestamp}) failed: {type(e).__name__}: {e}")
        return VarEstimate(timestamp=timestamp, threshold=None, index=index,
                           failure=type(e).__name__)
    except Exception as e:
        logger.error(f"Unexpected error at step {index} ({timestamp}): {type(e).__name__}: {e}")
        return VarEstimate(timestamp=timestamp, threshold=None, index=index,
                           failure=type(e).__name__)

    return VarEstimate(
        timestamp=timestamp,
        threshold=float(quantile * sigma),
        index=index,
        sigma_forecast=float(sigma),
        quantile=float(quantile)
    )


class RollingForecastEngine:
    """Expanding-window VaR forecasts with a refit at every step"""

    def __init__(self, fit_engine: Optional[FitEngine] = None,
                 calibrator: Optional[QuantileCalibrator] = None,
                 n_workers: Optional[int] = None,
                 backend: str = 'process',
                 timeout: Optional[float] = None,
                 max_failure_fraction: float = 0.25,
                 quantile_source: Union[QuantileSource, str] = QuantileSource.RAW_PREFIX,
                 checkpoint_manager: Optional[CheckpointManager] = None,
                 checkpoint_every: int = 25,
                 show_progress: bool = False):
        """
        Initialize engine

        Args:
            fit_engine: Model fitting strategy (arch-backed by default)
            calibrator: Quantile calibrator for each expanding prefix
            n_workers: Pool size; None means one per physical core, 1 runs inline
            backend: 'process' or 'thread' pool
            timeout: Seconds allowed for a whole run before it is truncated
            max_failure_fraction: Failed share of completed steps that degrades a run
            quantile_source: Sample used for the quantile, raw prefix by default
            checkpoint_manager: Persists completed steps for resumption
            checkpoint_every: Completed steps between checkpoint saves
            show_progress: Display a tqdm bar
        """
        if backend not in BACKENDS:
            raise ValueError(f"backend must be one of {BACKENDS}, got {backend!r}")
        if n_workers is not None and n_workers < 1:
            raise ValueError(f"n_workers must be >= 1, got {n_workers}")

        self.fit_engine = fit_engine or ArchFitEngine()
        self.calibrator = calibrator or QuantileCalibrator()
        self.n_workers = n_workers if n_workers is not None else default_workers()
        self.backend = backend
        self.timeout = timeout
        self.max_failure_fraction = max_failure_fraction
        self.quantile_source = QuantileSource(quantile_source)
        self.checkpoint_manager = checkpoint_manager
        self.checkpoint_every = checkpoint_every
        self.show_progress = show_progress
        self.logger = logging.getLogger('backtest.rolling')

    @classmethod
    def from_config(cls, config: BacktestConfig,
                    fit_engine: Optional[FitEngine] = None,
                    calibrator: Optional[QuantileCalibrator] = None) -> 'RollingForecastEngine':
        if fit_engine is None:
            fit_engine = ArchFitEngine(
                min_obs_multiplier=config.min_obs_multiplier,
                scale=config.scale,
                max_iter=config.max_iter
            )
        checkpoint_manager = None
        if config.checkpoint_dir is not None:
            checkpoint_manager = CheckpointManager(config.checkpoint_dir)
        return cls(
            fit_engine=fit_engine,
            calibrator=calibrator,
            n_workers=config.workers,
            backend=config.backend,
            timeout=config.timeout,
            max_failure_fraction=config.max_failure_fraction,
            quantile_source=config.quantile_source,
            checkpoint_manager=checkpoint_manager,
            show_progress=config.show_progress
        )

    def _make_executor(self) -> Executor:
        if self.backend == 'thread':
            return ThreadPoolExecutor(max_workers=self.n_workers)
        return ProcessPoolExecutor(max_workers=self.n_workers)

    @staticmethod
    def _stop_requested(cancel_event: Optional[threading.Event],
                        deadline: Optional[float]) -> bool:
        if cancel_event is not None and cancel_event.is_set():
            return True
        return deadline is not None and time.monotonic() >= deadline

    def _step_args(self, series: ReturnSeries, i: int, spec: ModelSpec, level: float) -> tuple:
        # Slice before scheduling: the worker only ever holds observations < i
        return (i, series.timestamp_at(i), series.prefix(i), spec, level,
                self.fit_engine, self.calibrator, self.quantile_source)

    def run(self, series: Union[ReturnSeries, pd.Series],
            start: int,
            finish: int,
            spec: ModelSpec,
            level: float,
            cancel_event: Optional[threading.Event] = None) -> RollingRun:
        """
        Walk forward over positions [start, finish] of series.

        Args:
            series: Full return history
            start: First evaluation position (its prefix is series[0:start])
            finish: Last evaluation position, inclusive
            spec: Model refitted at every step
            level: VaR tail probability, e.g. 0.01
            cancel_event: Set from another thread to stop between steps

        Returns:
            RollingRun with estimates in ascending timestamp order
        """
        if not isinstance(series, ReturnSeries):
            series = ReturnSeries(series)
        if not 1 <= start <= finish < len(series):
            raise ValueError(
                f"Evaluation range [{start}, {finish}] must satisfy "
                f"1 <= start <= finish < {len(series)}"
            )
        if not 0 < level < 1:
            raise ValueError(f"VaR level must lie in (0, 1), got {level}")

        results: Dict[int, VarEstimate] = {}
        bounds = (start, finish, '')
        if self.checkpoint_manager is not None:
            bounds = (start, finish, self.fingerprint(series, finish))
            restored = self.checkpoint_manager.load_checkpoint(spec, level, *bounds)
            if restored:
                results.update({i: e for i, e in restored.items() if start <= i <= finish})

        indices = [i for i in range(start, finish + 1) if i not in results]
        deadline = time.monotonic() + self.timeout if self.timeout else None

        self.logger.info(
            f"\nRolling forecast setup:"
            f"\n  Model: {spec.label}"
            f"\n  Level: {level}"
            f"\n  Range: {series.timestamp_at(start)} to {series.timestamp_at(finish)}"
            f"\n  Steps: {finish - start + 1} ({len(indices)} to compute)"
            f"\n  Workers: {self.n_workers} ({self.backend if self.n_workers > 1 else 'inline'})"
        )

        monitor = ProgressMonitor(total=len(indices), desc=f"VaR {spec.label}",
                                  logger=self.logger, show_bar=self.show_progress)
        try:
            if self.n_workers == 1:
                self._run_inline(series, indices, spec, level, results, monitor,
                                 cancel_event, deadline, bounds)
            else:
                self._run_pool(series, indices, spec, level, results, monitor,
                               cancel_event, deadline, bounds)
        finally:
            monitor.close()
            self._save(spec, level, bounds, results)

        rolling_run = RollingRun(
            spec=spec,
            level=level,
            start=start,
            finish=finish,
            estimates=[results[i] for i in sorted(results)],
            max_failure_fraction=self.max_failure_fraction
        )
        rolling_run.truncated = rolling_run.completed < rolling_run.requested
        if self.checkpoint_manager is not None and not rolling_run.truncated:
            self.checkpoint_manager.clear_checkpoint(spec, level, *bounds)

        if rolling_run.truncated:
            self.logger.warning(
                f"Run for {spec.label} truncated after "
                f"{rolling_run.completed}/{rolling_run.requested} steps"
            )
        if rolling_run.degraded:
            self.logger.warning(str(rolling_run.error))
        elif rolling_run.failures:
            self.logger.info(
                f"{len(rolling_run.failures)} of {rolling_run.completed} steps "
                f"missing for {spec.label}"
            )
        return rolling_run

    def fingerprint(self, series: ReturnSeries, finish: int) -> str:
        """Digest of the data up to finish and of every setting a step depends on"""
        digest = hashlib.sha1()
        hashed = pd.util.hash_pandas_object(series.to_series().iloc[:finish + 1], index=True)
        digest.update(hashed.to_numpy().tobytes())
        digest.update(
            f"{self.fit_engine!r}|{self.calibrator!r}|{self.quantile_source.value}".encode()
        )
        return digest.hexdigest()[:16]

    def _save(self, spec: ModelSpec, level: float, bounds: tuple,
              results: Dict[int, VarEstimate]):
        if self.checkpoint_manager is not None and results:
            start, finish, fingerprint = bounds
            self.checkpoint_manager.save_checkpoint(spec, level, start, finish, results,
                                                    fingerprint=fingerprint)

    def _record(self, estimate: VarEstimate, results: Dict[int, VarEstimate],
                monitor: ProgressMonitor, spec: ModelSpec, level: float, bounds: tuple):
        results[estimate.index] = estimate
        monitor.update(1, failed=estimate.missing)
        if (self.checkpoint_manager is not None and self.checkpoint_every
                and len(results) % self.checkpoint_every == 0):
            self._save(spec, level, bounds, results)

    def _run_inline(self, series, indices: Iterable[int], spec, level, results,
                    monitor, cancel_event, deadline, bounds):
        for i in indices:
            if self._stop_requested(cancel_event, deadline):
                break
            estimate = forecast_step(*self._step_args(series, i, spec, level))
            self._record(estimate, results, monitor, spec, level, bounds)

    def _run_pool(self, series, indices: Iterable[int], spec, level, results,
                  monitor, cancel_event, deadline, bounds):
        # Bounded submission keeps at most a few prefixes alive at once
        max_in_flight = 2 * self.n_workers
        todo = iter(indices)
        pending = {}
        exhausted = False
        stopped = False

        executor = self._make_executor()
        try:
            while True:
                if self._stop_requested(cancel_event, deadline):
                    stopped = True
                    break

                while not exhausted and len(pending) < max_in_flight:
                    i = next(todo, None)
                    if i is None:
                        exhausted = True
                        break
                    future = executor.submit(forecast_step, *self._step_args(series, i, spec, level))
                    pending[future] = i

                if not pending:
                    break

                done, _ = wait(pending, timeout=0.1, return_when=FIRST_COMPLETED)
                for future in done:
                    self._collect(future, pending.pop(future), series, results,
                                  monitor, spec, level, bounds)
        finally:
            executor.shutdown(wait=True, cancel_futures=True)

        if stopped:
            # Steps already running when the stop arrived still count
            for future, i in pending.items():
                if future.done() and not future.cancelled():
                    self._collect(future, i, series, results, monitor, spec, level, bounds)

    def _collect(self, future, i: int, series, results, monitor, spec, level, bounds):
        try:
            estimate = future.result()
        except Exception as e:
            # Worker died (e.g. broken process pool) rather than the fit failing
            self.logger.error(f"Worker for step {i} failed: {type(e).__name__}: {e}")
            estimate = VarEstimate(timestamp=series.timestamp_at(i), threshold=None,
                                   index=i, failure=type(e).__name__)
        self._record(estimate, results, monitor, spec, level, bounds)
