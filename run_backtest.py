#!/usr/bin/env python
"""
Walk-forward VaR backtest pipeline.
Selects a volatility model on the training prefix, rolls one-step-ahead VaR
forecasts over the test period and evaluates breaches per level.
"""
import argparse
import logging
import numbers
import sys
import time
import traceback
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

import pandas as pd
import psutil

from backtest.calibrator import QuantileCalibrator
from backtest.config import BacktestConfig
from backtest.evaluator import BacktestEvaluator
from backtest.rolling import RollingForecastEngine
from data_manager.return_series import ReturnSeries
from models import ModelSpec, VolatilityVariant
from volatility.estimator import ArchFitEngine
from volatility.selector import ModelSelector

DEFAULT_CANDIDATES = [
    ModelSpec(VolatilityVariant.GARCH, (0, 0), (1, 1), 'normal'),
    ModelSpec(VolatilityVariant.GARCH, (0, 0), (1, 1), 'studentst'),
    ModelSpec(VolatilityVariant.EGARCH, (0, 0), (1, 1), 'normal'),
    ModelSpec(VolatilityVariant.EGARCH, (0, 0), (1, 1), 'studentst'),
    ModelSpec(VolatilityVariant.GJR_GARCH, (0, 0), (1, 1), 'normal'),
    ModelSpec(VolatilityVariant.GJR_GARCH, (0, 0), (1, 1), 'studentst'),
]


class StageTimer:
    """Wall time and resident memory at the end of each pipeline stage"""
    def __init__(self):
        self.start_time = time.time()
        self.last_checkpoint = self.start_time
        self.checkpoints = {}

    def checkpoint(self, name: str):
        """Record timing for a checkpoint"""
        now = time.time()
        self.checkpoints[name] = {
            'duration': now - self.last_checkpoint,
            'memory': psutil.Process().memory_info().rss / 1024 / 1024  # MB
        }
        self.last_checkpoint = now

    def report(self) -> str:
        report = ["\nPipeline timing:"]
        for name, stats in self.checkpoints.items():
            report.append(f"  {name}: {stats['duration']:.2f}s, {stats['memory']:.0f} MB")
        report.append(f"Total Time: {time.time() - self.start_time:.2f} seconds")
        return "\n".join(report)


def setup_logging(output_dir: Path) -> logging.Logger:
    """
    Configure logging with both file and console handlers

    Parameters:
    -----------
    output_dir : Path
        Directory for log file

    Returns:
    --------
    logging.Logger
        Configured logger
    """
    log_dir = output_dir / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"var_backtest_{timestamp}.log"

    file_handler = logging.FileHandler(log_file)
    file_handler.setLevel(logging.INFO)
    file_handler.setFormatter(
        logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(logging.Formatter('%(message)s'))

    # Component loggers (volatility.*, backtest.*) propagate to the root
    root = logging.getLogger()
    root.setLevel(logging.INFO)
    root.addHandler(file_handler)
    root.addHandler(console_handler)

    return logging.getLogger("var_backtest")


def load_returns(csv_path: Path, column: str, date_column: Optional[str],
                 logger: logging.Logger) -> ReturnSeries:
    """Read an already-cleaned return column from CSV"""
    logger.info(f"Reading returns from: {csv_path}")
    df = pd.read_csv(csv_path)
    if date_column is None:
        date_column = df.columns[0]
    df.index = pd.to_datetime(df[date_column])
    if column not in df.columns:
        raise ValueError(f"Column {column!r} not found; columns are {df.columns.tolist()}")
    series = ReturnSeries(df[column].astype(float), name=column)
    logger.info(f"Loaded {series!r}")
    return series


def initialize_components(config: Optional[BacktestConfig] = None,
                          logger: Optional[logging.Logger] = None) -> Dict[str, Any]:
    """Initialize all analysis components"""
    if config is None:
        config = BacktestConfig()
    if logger is None:
        logger = logging.getLogger('var_backtest')

    logger.info("Creating fit engine...")
    fit_engine = ArchFitEngine(
        min_obs_multiplier=config.min_obs_multiplier,
        scale=config.scale,
        max_iter=config.max_iter
    )
    calibrator = QuantileCalibrator()

    logger.info("Creating rolling engine...")
    rolling = RollingForecastEngine.from_config(config, fit_engine=fit_engine,
                                                calibrator=calibrator)

    return {
        'config': config,
        'fit_engine': fit_engine,
        'calibrator': calibrator,
        'selector': ModelSelector(fit_engine=fit_engine),
        'rolling': rolling,
        'evaluator': BacktestEvaluator(confidence=config.tolerance_confidence),
    }


def summarize(runs: Dict, backtests: Dict) -> pd.DataFrame:
    """One row per (model, level) combination"""
    records = []
    for key, result in backtests.items():
        spec, level = key
        run = runs[key]
        records.append({
            'model': spec.label,
            'level': level,
            'steps': run.requested,
            'completed': run.completed,
            'missing': result.missing_count,
            'breaches': result.breach_count,
            'sample_size': result.sample_size,
            'breach_rate': result.breach_rate,
            'expected_rate': result.expected_rate,
            'p_value': result.p_value,
            'kupiec_pvalue': result.kupiec_pvalue,
            'christoffersen_pvalue': result.christoffersen_pvalue,
            'within_tolerance': result.within_tolerance,
            'traffic_light': result.traffic_light,
            'truncated': run.truncated,
            'degraded': run.degraded,
        })
    return pd.DataFrame(records)


def run_analysis(returns: Union[ReturnSeries, pd.Series],
                 split: Union[int, Any],
                 specs: Optional[Sequence[ModelSpec]] = None,
                 components: Optional[Dict[str, Any]] = None,
                 top_n: int = 1,
                 logger: Optional[logging.Logger] = None,
                 timer: Optional[StageTimer] = None) -> Dict[str, Any]:
    """
    Run selection, rolling forecasts and evaluation.

    Args:
        returns: Full cleaned return history
        split: First test position, or a timestamp marking the test start
        specs: Candidate specs (defaults to GARCH/EGARCH/GJR x normal/t)
        components: Output of initialize_components
        top_n: Number of winning specs to backtest

    Returns:
        Dict with selection, runs and backtests keyed by (spec, level), the
        summary frame, and errors holding the DegradedRun of each degraded run
    """
    if logger is None:
        logger = logging.getLogger('var_backtest')
    if components is None:
        components = initialize_components(logger=logger)
    if not isinstance(returns, ReturnSeries):
        returns = ReturnSeries(returns)
    config: BacktestConfig = components['config']

    if isinstance(split, numbers.Integral):
        split_index = int(split)
    else:
        split_index = returns.position_of(split)
    finish = len(returns) - 1
    if not 1 <= split_index <= finish:
        raise ValueError(f"Split position {split_index} leaves no training or test data")

    logger.info(
        f"Training on {split_index} observations, testing on {finish - split_index + 1} "
        f"({returns.timestamp_at(split_index)} to {returns.timestamp_at(finish)})"
    )

    selection = components['selector'].select(returns.prefix(split_index),
                                              specs or DEFAULT_CANDIDATES)
    logger.info(f"\nInformation criteria:\n{selection.table.to_string()}")
    if timer is not None:
        timer.checkpoint('selection')

    winners: List[ModelSpec] = selection.top(top_n)
    if not winners:
        raise ValueError(f"No candidate could be fitted: {selection.failures}")

    runs = {}
    backtests = {}
    errors = {}
    for spec in winners:
        for level in config.levels:
            run = components['rolling'].run(returns, split_index, finish, spec, level)
            runs[(spec, level)] = run
            backtests[(spec, level)] = components['evaluator'].evaluate_run(returns, run)
            if run.error is not None:
                errors[(spec, level)] = run.error
                logger.warning(f"{spec.label} @ {level:g}: {run.error}")
            if timer is not None:
                timer.checkpoint(f"{spec.label} @ {level:g}")

    summary = summarize(runs, backtests)
    logger.info(f"\nBacktest summary:\n{summary.to_string(index=False)}")

    return {
        'selection': selection,
        'runs': runs,
        'backtests': backtests,
        'summary': summary,
        'errors': errors,
    }


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Walk-forward GARCH VaR backtest")
    parser.add_argument('csv', type=Path, help="CSV with a date column and a return column")
    parser.add_argument('--column', default='returns', help="Return column name")
    parser.add_argument('--date-column', default=None, help="Date column (default: first)")
    parser.add_argument('--split', required=True,
                        help="Test start: integer position or date (YYYY-MM-DD)")
    parser.add_argument('--levels', type=float, nargs='+', default=[0.01, 0.05])
    parser.add_argument('--workers', type=int, default=None)
    parser.add_argument('--backend', choices=['process', 'thread'], default='process')
    parser.add_argument('--top-n', type=int, default=1)
    parser.add_argument('--timeout', type=float, default=None)
    parser.add_argument('--output-dir', type=Path, default=Path('results'))
    parser.add_argument('--checkpoint-dir', type=Path, default=None,
                        help="Persist completed steps here and resume from them")
    parser.add_argument('--progress', action='store_true')
    return parser.parse_args(argv)


def main(argv=None):
    """Main entry point with configuration and setup"""
    args = parse_args(argv)
    args.output_dir.mkdir(parents=True, exist_ok=True)
    logger = setup_logging(args.output_dir)
    logger.info("Starting VaR backtest pipeline...")

    try:
        config = BacktestConfig(
            levels=tuple(args.levels),
            n_workers=args.workers,
            backend=args.backend,
            timeout=args.timeout,
            show_progress=args.progress,
            checkpoint_dir=args.checkpoint_dir
        )
        returns = load_returns(args.csv, args.column, args.date_column, logger)
        split = int(args.split) if args.split.isdigit() else pd.Timestamp(args.split)

        timer = StageTimer()
        components = initialize_components(config, logger)
        results = run_analysis(returns, split, components=components,
                               top_n=args.top_n, logger=logger, timer=timer)

        summary_file = args.output_dir / "backtest_summary.csv"
        results['summary'].to_csv(summary_file, index=False)
        selection_file = args.output_dir / "model_selection.csv"
        results['selection'].table.to_csv(selection_file)
        for (spec, level), run in results['runs'].items():
            run.to_dataframe().to_csv(
                args.output_dir / f"var_{spec.label}_{level:g}.csv", index=False
            )

        logger.info(timer.report())
        logger.info(f"Results written to {args.output_dir}")

    except Exception as e:
        logger.error(f"Pipeline failed: {str(e)}")
        logger.error(f"Traceback: {traceback.format_exc()}")
        raise


if __name__ == '__main__':
    main()
