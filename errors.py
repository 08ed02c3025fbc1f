"""Error taxonomy shared by the fitting, calibration and backtest components."""


class VarBacktestError(Exception):
    """Base class for all recoverable backtest errors"""


class InvalidSpec(VarBacktestError, ValueError):
    """Model specification is structurally malformed"""


class InvalidSeries(VarBacktestError, ValueError):
    """Return series violates ordering or value requirements"""


class InsufficientData(VarBacktestError, ValueError):
    """Too few observations to fit the requested model"""


class DegenerateInput(VarBacktestError, ValueError):
    """Constant, zero-variance or non-finite input"""


class InsufficientSample(VarBacktestError, ValueError):
    """Sample cannot be standardized for quantile calibration"""


class ConvergenceFailure(VarBacktestError, RuntimeError):
    """Optimizer did not reach a valid stationary point"""


class DegradedRun(VarBacktestError, RuntimeError):
    """Too many rolling steps failed for the run to be trusted"""
