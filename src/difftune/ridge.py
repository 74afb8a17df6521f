"""Ridge regression as a parameterized QP, and its sensitivities.

The inner problem for regularization weight ``alpha`` is

    minimize  (1/(2nd)) ||X w - y||² + (alpha/(2d)) ||w||²

written in the backend's ``wᵀ Q w + mᵀ w`` form. Nothing here relies on the
closed-form ridge solution: ``dw/dalpha`` comes from the backend's forward
pass through the KKT system, so the same code path works once bounds are
added to the problem.
"""

import logging
import torch
from typing import NamedTuple

from .core import (
    QPBackend,
    QPPerturbation,
    QPProblem,
    QPStatus,
    to_float64_preserve_grad,
)
from .exceptions import (
    DimensionMismatch,
    InnerSolveDivergence,
    SensitivityUnavailable,
)

logger = logging.getLogger(__name__)


class Dataset(NamedTuple):
    """Feature matrix ``X`` (n, d) and targets ``y`` (n,)."""

    X: torch.Tensor
    y: torch.Tensor

    @property
    def n_samples(self) -> int:
        return self.X.shape[0]

    @property
    def n_features(self) -> int:
        return self.X.shape[1]

    @classmethod
    def create(cls, X, y) -> "Dataset":
        X = to_float64_preserve_grad(X).detach()
        y = to_float64_preserve_grad(y).detach()
        check_data(X, y)
        return cls(X, y)


class RidgeFit(NamedTuple):
    w: torch.Tensor  # (d,)
    status: QPStatus


def check_data(X: torch.Tensor, y: torch.Tensor, name: str = "data") -> None:
    if X.ndim != 2:
        raise DimensionMismatch(
            f"{name}: feature matrix must be 2-D, got shape {tuple(X.shape)}"
        )
    if y.ndim != 1:
        raise DimensionMismatch(
            f"{name}: targets must be 1-D, got shape {tuple(y.shape)}"
        )
    if X.shape[0] != y.shape[0]:
        raise DimensionMismatch(
            f"{name}: {X.shape[0]} feature rows but {y.shape[0]} targets"
        )
    if X.shape[0] == 0 or X.shape[1] == 0:
        raise DimensionMismatch(f"{name}: empty feature matrix {tuple(X.shape)}")


def split_dataset(X, y, n_train: int | None = None) -> tuple[Dataset, Dataset]:
    """
    Split ``(X, y)`` into disjoint contiguous training and evaluation
    partitions: the first ``n_train`` rows train, the rest evaluate.

    Parameters
    ----------
    X : (n, d)
        Feature matrix.
    y : (n,)
        Targets.
    n_train : int, optional
        Size of the training partition; defaults to ``n // 2``.

    Returns
    -------
    train, evaluation : Dataset
    """
    data = Dataset.create(X, y)
    n = data.n_samples
    if n_train is None:
        n_train = n // 2
    if not 0 < n_train < n:
        raise DimensionMismatch(
            f"n_train must leave both partitions non-empty, got {n_train} of {n}"
        )
    train = Dataset(data.X[:n_train].clone(), data.y[:n_train].clone())
    evaluation = Dataset(data.X[n_train:].clone(), data.y[n_train:].clone())
    return train, evaluation


# ----------------------------------------------------------------------
# Inner solve adapter
# ----------------------------------------------------------------------
def ridge_problem(X: torch.Tensor, y: torch.Tensor, alpha: float) -> QPProblem:
    """
    Build the QP of regularized least squares for ``alpha``.

    ``(1/(2nd))||Xw - y||² + (alpha/(2d))||w||²`` expands to
    ``wᵀ Q w + mᵀ w + const`` with ``Q = XᵀX/(2nd) + alpha/(2d) I`` and
    ``m = -Xᵀy/(nd)``.
    """
    n, d = X.shape
    Q = X.T @ X / (2 * n * d)
    Q = Q + (alpha / (2 * d)) * torch.eye(d, dtype=X.dtype, device=X.device)
    m = -(X.T @ y) / (n * d)
    return QPProblem.unconstrained(Q, m)


def fit_ridge(
    backend: QPBackend, X: torch.Tensor, y: torch.Tensor, alpha: float
) -> RidgeFit:
    """
    Solve the ridge problem at ``alpha`` with ``backend``.

    The backend is reused across calls for warm starts and keeps the KKT
    linearisation of this solve for :func:`ridge_sensitivity`.

    Raises
    ------
    InnerSolveDivergence
        If the backend does not report ``OPTIMAL``.
    """
    check_data(X, y, "training data")
    result = backend.solve(ridge_problem(X, y, alpha))
    if result.status != QPStatus.OPTIMAL:
        logger.debug(
            "ridge solve failed at alpha=%r: %s", alpha, result.status.name
        )
        raise InnerSolveDivergence(result.status, alpha)
    return RidgeFit(result.solution, result.status)


def training_loss(w: torch.Tensor, X: torch.Tensor, y: torch.Tensor) -> float:
    n, d = X.shape
    r = X @ w - y
    return float(r @ r) / (2 * n * d)


# ----------------------------------------------------------------------
# Sensitivity engine
# ----------------------------------------------------------------------
def regularization_perturbation(
    n_features: int, dtype=torch.float64, device=None
) -> QPPerturbation:
    """
    Direction in which ``alpha`` moves the problem data: only the quadratic
    term changes, by ``I/(2d)`` per unit of ``alpha``. At the optimum this
    perturbs the stationarity condition by ``w/d``.
    """
    eye = torch.eye(n_features, dtype=dtype, device=device)
    return QPPerturbation(dQ=eye / (2 * n_features))


def solution_sensitivity(
    backend: QPBackend, perturbation: QPPerturbation, n_features: int
) -> torch.Tensor:
    """
    Derivative of the last optimal solution along ``perturbation``.

    Must be called after a successful solve and before the next one; the
    linearisation belongs to that solve only.
    """
    try:
        dw = backend.differentiate_forward(perturbation)
    except torch.linalg.LinAlgError as exc:
        raise SensitivityUnavailable(str(exc)) from exc
    if dw.shape != (n_features,):
        raise DimensionMismatch(
            f"sensitivity has shape {tuple(dw.shape)}, expected ({n_features},)"
        )
    if not bool(torch.isfinite(dw).all()):
        raise SensitivityUnavailable("sensitivity is not finite")
    return dw


def ridge_sensitivity(backend: QPBackend, n_features: int) -> torch.Tensor:
    """dw/dalpha at the backend's last ridge solution."""
    return solution_sensitivity(
        backend, regularization_perturbation(n_features), n_features
    )


# ----------------------------------------------------------------------
# Loss composer
# ----------------------------------------------------------------------
def evaluation_residual(
    w: torch.Tensor, X_eval: torch.Tensor, y_eval: torch.Tensor
) -> torch.Tensor:
    w = to_float64_preserve_grad(w)
    X_eval = to_float64_preserve_grad(X_eval)
    y_eval = to_float64_preserve_grad(y_eval)
    check_data(X_eval, y_eval, "evaluation data")
    if w.shape != (X_eval.shape[1],):
        raise DimensionMismatch(
            f"weights of shape {tuple(w.shape)} do not match "
            f"{X_eval.shape[1]} evaluation features"
        )
    return X_eval @ w - y_eval


def evaluation_loss(
    w: torch.Tensor, X_eval: torch.Tensor, y_eval: torch.Tensor
) -> float:
    """Held-out loss ``||X_eval w - y_eval||² / (2 n_eval d)``."""
    X_eval = to_float64_preserve_grad(X_eval)
    r = evaluation_residual(w, X_eval, y_eval)
    n, d = X_eval.shape
    return float(r @ r) / (2 * n * d)


def loss_gradient(
    dw_dalpha: torch.Tensor, residual: torch.Tensor, X_eval: torch.Tensor
) -> float:
    """
    Chain rule through the inner optimum:

        dloss/dalpha = (1/(n d)) Σ_i (X_eval[i] · dw/dalpha) residual[i]

    Parameters
    ----------
    dw_dalpha : (d,)
        Sensitivity of the inner solution.
    residual : (n,)
        ``X_eval w - y_eval`` at the current solution.
    X_eval : (n, d)
        Evaluation features.

    Raises
    ------
    DimensionMismatch
        If the three shapes are inconsistent.
    """
    dw_dalpha = to_float64_preserve_grad(dw_dalpha)
    residual = to_float64_preserve_grad(residual)
    X_eval = to_float64_preserve_grad(X_eval)
    if X_eval.ndim != 2:
        raise DimensionMismatch(
            f"feature matrix must be 2-D, got shape {tuple(X_eval.shape)}"
        )
    n, d = X_eval.shape
    if dw_dalpha.shape != (d,):
        raise DimensionMismatch(
            f"sensitivity of shape {tuple(dw_dalpha.shape)}, expected ({d},)"
        )
    if residual.shape != (n,):
        raise DimensionMismatch(
            f"residual of shape {tuple(residual.shape)}, expected ({n},)"
        )
    return float((X_eval @ dw_dalpha) @ residual) / (n * d)
