class TuningError(Exception):
    """Base class for every failure raised by difftune."""


class InnerSolveDivergence(TuningError):
    """
    The QP backend did not reach optimality for an inner solve.

    Attributes
    ----------
    status : QPStatus
        Termination status reported by the backend.
    alpha : float or None
        Hyperparameter value of the failed solve, when known.
    """

    def __init__(self, status, alpha=None):
        self.status = status
        self.alpha = alpha
        where = "" if alpha is None else f" at alpha={alpha!r}"
        super().__init__(
            f"inner solve terminated with status {getattr(status, 'name', status)}{where}"
        )


class SensitivityUnavailable(TuningError):
    """The linearised KKT system could not be solved at the current optimum."""


class HyperparameterDivergence(TuningError):
    """The outer update produced a non-finite hyperparameter."""

    def __init__(self, alpha, grad=None):
        self.alpha = alpha
        self.grad = grad
        super().__init__(
            f"hyperparameter update is not finite (alpha={alpha!r}, grad={grad!r})"
        )


class DimensionMismatch(TuningError, ValueError):
    """Caller-supplied shapes are inconsistent."""
