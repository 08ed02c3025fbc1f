import threading

import pytest
import pandas as pd

from conftest import CancellingFitEngine, RecordingFitEngine, SampleVarianceFitEngine
from backtest.calibrator import QuantileCalibrator
from backtest.checkpoint import CheckpointManager
from backtest.rolling import RollingForecastEngine
from data_manager.return_series import ReturnSeries
from models import ModelSpec, VarEstimate


@pytest.fixture
def manager(tmp_path):
    return CheckpointManager(tmp_path / "checkpoints")


def _engine(fit_engine, manager=None, **kwargs):
    return RollingForecastEngine(fit_engine=fit_engine, n_workers=1, backend='thread',
                                 checkpoint_manager=manager, **kwargs)


def _cancelled_run(manager, series, spec, cancel_at=129):
    event = threading.Event()
    engine = _engine(CancellingFitEngine(event, cancel_at=cancel_at), manager)
    return engine.run(series, 100, 199, spec, 0.01, cancel_event=event)


def test_save_and_load(manager):
    spec = ModelSpec('gjr-garch', (0, 0), (1, 1), 't')
    estimates = {
        i: VarEstimate(timestamp=pd.Timestamp('2024-01-01') + pd.Timedelta(days=i),
                       threshold=-0.01 * i, index=i)
        for i in range(10, 15)
    }
    manager.save_checkpoint(spec, 0.01, 10, 20, estimates, fingerprint='abc')

    assert manager.load_checkpoint(spec, 0.01, 10, 20, fingerprint='abc') == estimates
    # Different level, range or inputs is a different run
    assert manager.load_checkpoint(spec, 0.05, 10, 20, fingerprint='abc') is None
    assert manager.load_checkpoint(spec, 0.01, 10, 21, fingerprint='abc') is None
    assert manager.load_checkpoint(spec, 0.01, 10, 20, fingerprint='abd') is None

    manager.clear_checkpoint(spec, 0.01, 10, 20, fingerprint='abc')
    assert manager.load_checkpoint(spec, 0.01, 10, 20, fingerprint='abc') is None


def test_resume_after_cancellation(manager, white_noise_series, constant_spec):
    partial = _cancelled_run(manager, white_noise_series, constant_spec)
    assert partial.truncated
    assert partial.completed == 30

    recorder = RecordingFitEngine()
    resumed = _engine(recorder, manager).run(white_noise_series, 100, 199, constant_spec, 0.01)

    assert not resumed.truncated
    assert resumed.completed == 100
    assert [length for length, _, _ in recorder.calls] == list(range(130, 200))
    assert resumed.estimates[:30] == partial.estimates

    fresh = _engine(RecordingFitEngine()).run(white_noise_series, 100, 199, constant_spec, 0.01)
    assert resumed.estimates == fresh.estimates


def test_completed_run_clears_its_checkpoint(manager, white_noise_series, constant_spec):
    _cancelled_run(manager, white_noise_series, constant_spec)
    assert list(manager.checkpoint_dir.glob('*.pkl'))

    _engine(SampleVarianceFitEngine(), manager).run(white_noise_series, 100, 199,
                                                    constant_spec, 0.01)
    assert not list(manager.checkpoint_dir.glob('*.pkl'))


def test_checkpoint_not_reused_for_other_series(manager, white_noise_series, constant_spec):
    _cancelled_run(manager, white_noise_series, constant_spec)

    doubled = ReturnSeries(white_noise_series.to_series() * 2)
    recorder = RecordingFitEngine()
    rerun = _engine(recorder, manager).run(doubled, 100, 199, constant_spec, 0.01)
    fresh = _engine(SampleVarianceFitEngine()).run(doubled, 100, 199, constant_spec, 0.01)

    assert len(recorder.calls) == 100
    assert rerun.estimates == fresh.estimates


def test_checkpoint_not_reused_after_settings_change(manager, white_noise_series, constant_spec):
    _cancelled_run(manager, white_noise_series, constant_spec)

    recorder = RecordingFitEngine()
    _engine(recorder, manager, calibrator=QuantileCalibrator(method='lower')).run(
        white_noise_series, 100, 199, constant_spec, 0.01)
    assert len(recorder.calls) == 100

    recorder = RecordingFitEngine()
    _engine(recorder, manager, quantile_source='standardized_residuals').run(
        white_noise_series, 100, 199, constant_spec, 0.01)
    assert len(recorder.calls) == 100


def test_fingerprint_ignores_observations_after_finish(white_noise_series):
    engine = _engine(SampleVarianceFitEngine())
    extended = white_noise_series.to_series().copy()
    extended.iloc[-1] = 0.5

    assert engine.fingerprint(white_noise_series, 199) == \
        engine.fingerprint(ReturnSeries(extended), 199)
    assert engine.fingerprint(white_noise_series, 199) != \
        engine.fingerprint(white_noise_series, 198)


if __name__ == '__main__':
    pytest.main([__file__])
