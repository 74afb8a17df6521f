# Re-export the public API at the package root
from .core import (
    BoxQPFunc,
    QPBackend,
    QPPerturbation,
    QPProblem,
    QPResult,
    QPStatus,
    solve_qp,
)
from .exceptions import (
    DimensionMismatch,
    HyperparameterDivergence,
    InnerSolveDivergence,
    SensitivityUnavailable,
    TuningError,
)
from .ridge import (
    Dataset,
    evaluation_loss,
    fit_ridge,
    loss_gradient,
    ridge_problem,
    ridge_sensitivity,
    split_dataset,
)
from .tuner import (
    DecayingStep,
    FixedStep,
    OuterTuner,
    TrajectoryPoint,
    TunerConfig,
    TunerState,
    TuningResult,
    sweep_regularization,
    tune_many,
    tune_regularization,
)

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("difftune")
except PackageNotFoundError:  # during dev / uninstalled checkouts
    __version__ = "0.0.0"

# Public surface
__all__ = [
    "BoxQPFunc",
    "QPBackend",
    "QPPerturbation",
    "QPProblem",
    "QPResult",
    "QPStatus",
    "solve_qp",
    "DimensionMismatch",
    "HyperparameterDivergence",
    "InnerSolveDivergence",
    "SensitivityUnavailable",
    "TuningError",
    "Dataset",
    "evaluation_loss",
    "fit_ridge",
    "loss_gradient",
    "ridge_problem",
    "ridge_sensitivity",
    "split_dataset",
    "DecayingStep",
    "FixedStep",
    "OuterTuner",
    "TrajectoryPoint",
    "TunerConfig",
    "TunerState",
    "TuningResult",
    "sweep_regularization",
    "tune_many",
    "tune_regularization",
    "__version__",
]
