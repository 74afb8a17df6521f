"""Outer gradient descent on the regularization weight.

Each iteration solves the inner ridge problem, records the held-out loss,
differentiates it through the inner optimum and moves ``alpha`` with a
pluggable step policy. Runs end in exactly one of the terminal states of
:class:`TunerState`; a failed run still returns what it recorded.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, NamedTuple, Sequence

import torch

from .core import QPBackend
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
    evaluation_residual,
    fit_ridge,
    loss_gradient,
    ridge_sensitivity,
    training_loss,
)

logger = logging.getLogger(__name__)

StepPolicy = Callable[[int, float, float], float]
StepCallback = Callable[[int, float, float, float], None]


class TunerState(Enum):
    """Lifecycle of a tuning run."""

    RUNNING = "running"
    CONVERGED = "converged"
    BUDGET_EXHAUSTED = "budget_exhausted"
    DIVERGED = "diverged"


class TunerConfig(NamedTuple):
    """
    Settings of the outer loop.

    Attributes
    ----------
    step_size : float
        Step of the default :class:`FixedStep` policy.
    grad_tol : float
        The run converges once ``|dloss/dalpha| <= grad_tol``.
    max_iters : int
        Maximum number of inner solves.
    alpha_min : float or None
        When set, every updated ``alpha`` is clamped from below to this
        value; the starting value is used as given. ``None`` lets ``alpha`` go negative; the inner solve then
        fails once the problem stops being strictly convex.
    """

    step_size: float = 0.01
    grad_tol: float = 1e-3
    max_iters: int = 100
    alpha_min: float | None = None


class TrajectoryPoint(NamedTuple):
    alpha: float
    loss: float


class FixedStep:
    """``alpha <- alpha - step_size * grad``."""

    def __init__(self, step_size: float):
        if not step_size > 0.0:
            raise ValueError(f"step_size must be positive, got {step_size!r}")
        self.step_size = step_size

    def __call__(self, iteration: int, alpha: float, grad: float) -> float:
        return alpha - self.step_size * grad

    def __repr__(self) -> str:
        return f"FixedStep(step_size={self.step_size!r})"


class DecayingStep(FixedStep):
    """Step ``step_size / (1 + decay * (iteration - 1))``."""

    def __init__(self, step_size: float, decay: float = 0.01):
        super().__init__(step_size)
        if decay < 0.0:
            raise ValueError(f"decay must be non-negative, got {decay!r}")
        self.decay = decay

    def __call__(self, iteration: int, alpha: float, grad: float) -> float:
        eta = self.step_size / (1.0 + self.decay * (iteration - 1))
        return alpha - eta * grad

    def __repr__(self) -> str:
        return f"DecayingStep(step_size={self.step_size!r}, decay={self.decay!r})"


@dataclass
class TuningResult:
    """
    Outcome of one tuning run.

    Attributes
    ----------
    trajectory : list of TrajectoryPoint
        ``(alpha, evaluation loss)`` per inner solve, in order; never empty.
    state : TunerState
        Terminal state of the run.
    alpha : float
        Hyperparameter after the last accepted update.
    iterations : int
        Number of inner solves attempted.
    error : TuningError or None
        The failure that ended a ``DIVERGED`` run, else ``None``.
    """

    trajectory: list[TrajectoryPoint] = field(default_factory=list)
    state: TunerState = TunerState.RUNNING
    alpha: float = math.nan
    iterations: int = 0
    error: TuningError | None = None

    @property
    def alphas(self) -> list[float]:
        return [p.alpha for p in self.trajectory]

    @property
    def losses(self) -> list[float]:
        return [p.loss for p in self.trajectory]

    @property
    def complete(self) -> bool:
        """``True`` for runs that ended without a failure."""
        return self.state in (TunerState.CONVERGED, TunerState.BUDGET_EXHAUSTED)

    @property
    def failed(self) -> bool:
        return self.state is TunerState.DIVERGED


class OuterTuner:
    """
    Fixed-policy gradient descent over the regularization weight.

    The tuner owns one :class:`~difftune.core.QPBackend`; the backend keeps
    the warm start and KKT linearisation between the solve and the
    sensitivity query of each iteration, so a tuner must not be run from
    several threads at once. Independent tuners share nothing.

    Example::

        tuner = OuterTuner(train, evaluation, TunerConfig(max_iters=500))
        result = tuner.run(0.10)
        assert result.state in (TunerState.CONVERGED, TunerState.BUDGET_EXHAUSTED)
    """

    def __init__(
        self,
        train: Dataset,
        evaluation: Dataset,
        config: TunerConfig = TunerConfig(),
        step_policy: StepPolicy | None = None,
        backend: QPBackend | None = None,
        callback: StepCallback | None = None,
    ) -> None:
        train = Dataset.create(*train)
        evaluation = Dataset.create(*evaluation)
        if train.n_features != evaluation.n_features:
            raise DimensionMismatch(
                f"training data has {train.n_features} features, "
                f"evaluation data has {evaluation.n_features}"
            )
        if config.max_iters < 1:
            raise ValueError(f"max_iters must be >= 1, got {config.max_iters!r}")
        if config.grad_tol < 0.0:
            raise ValueError(f"grad_tol must be >= 0, got {config.grad_tol!r}")

        self.train = train
        self.evaluation = evaluation
        self.config = config
        self.step_policy = step_policy or FixedStep(config.step_size)
        self.backend = backend if backend is not None else QPBackend()
        self.callback = callback
        self._state = TunerState.RUNNING

    @property
    def state(self) -> TunerState:
        """State of the current (or last) run."""
        return self._state

    def _clamp(self, alpha: float) -> float:
        if self.config.alpha_min is None:
            return alpha
        return max(alpha, self.config.alpha_min)

    def step(self, alpha: float) -> tuple[float, float]:
        """
        Evaluate the held-out loss and its derivative at ``alpha``.

        Returns
        -------
        loss, grad : float
        """
        loss, residual = self._solve_and_score(alpha)
        return loss, self._gradient(residual)

    def _solve_and_score(self, alpha: float) -> tuple[float, torch.Tensor]:
        fit = fit_ridge(self.backend, self.train.X, self.train.y, alpha)
        X_eval, y_eval = self.evaluation
        residual = evaluation_residual(fit.w, X_eval, y_eval)
        n, d = X_eval.shape
        return float(residual @ residual) / (2 * n * d), residual

    def _gradient(self, residual: torch.Tensor) -> float:
        d = self.train.n_features
        dw_dalpha = ridge_sensitivity(self.backend, d)
        return loss_gradient(dw_dalpha, residual, self.evaluation.X)

    def run(self, alpha0: float) -> TuningResult:
        """
        Tune ``alpha`` starting from ``alpha0``.

        The returned trajectory holds between one and ``max_iters`` points.
        Inner-solve and sensitivity failures after the first solve end the
        run as ``DIVERGED`` with the failure in ``result.error``; they are
        not retried.

        Raises
        ------
        ValueError
            If ``alpha0`` is not finite.
        InnerSolveDivergence
            If the inner problem cannot be solved at ``alpha0`` itself, e.g.
            because it is not convex there. No trajectory exists in that
            case, so ``alpha0`` is rejected instead.
        """
        alpha = float(alpha0)
        if not math.isfinite(alpha):
            raise ValueError(f"alpha0 must be finite, got {alpha0!r}")

        result = TuningResult(alpha=alpha)
        self._state = TunerState.RUNNING
        while self._state is TunerState.RUNNING:
            result.iterations += 1
            try:
                loss, residual = self._solve_and_score(alpha)
                result.trajectory.append(TrajectoryPoint(alpha, loss))
                grad = self._gradient(residual)
            except (InnerSolveDivergence, SensitivityUnavailable) as exc:
                self._state = TunerState.DIVERGED
                if not result.trajectory:
                    logger.warning("rejected starting alpha=%.6g: %s", alpha, exc)
                    raise
                result.error = exc
                break

            logger.debug(
                "iteration %d: alpha=%.6g loss=%.6g grad=%.3e",
                result.iterations,
                alpha,
                loss,
                grad,
            )
            if self.callback is not None:
                self.callback(result.iterations, alpha, loss, grad)

            new_alpha = self._clamp(
                float(self.step_policy(result.iterations, alpha, grad))
            )
            if not math.isfinite(new_alpha):
                result.error = HyperparameterDivergence(new_alpha, grad)
                self._state = TunerState.DIVERGED
                break
            alpha = new_alpha

            if abs(grad) <= self.config.grad_tol:
                self._state = TunerState.CONVERGED
            elif result.iterations >= self.config.max_iters:
                self._state = TunerState.BUDGET_EXHAUSTED

        result.state = self._state
        result.alpha = alpha
        if result.failed:
            logger.warning(
                "tuning diverged after %d iteration(s) at alpha=%.6g: %s",
                result.iterations,
                alpha,
                result.error,
            )
        else:
            logger.info(
                "tuning %s after %d iteration(s): alpha=%.6g loss=%.6g",
                self._state.value,
                result.iterations,
                alpha,
                result.trajectory[-1].loss,
            )
        return result


def tune_regularization(
    X_train,
    y_train,
    X_eval,
    y_eval,
    alpha0: float,
    step_size: float = 0.01,
    grad_tol: float = 1e-3,
    max_iters: int = 100,
    alpha_min: float | None = None,
    step_policy: StepPolicy | None = None,
    backend: QPBackend | None = None,
    callback: StepCallback | None = None,
) -> TuningResult:
    """
    Learn the ridge regularization weight by descending the held-out loss.

    Parameters
    ----------
    X_train : (n_train, d)
    y_train : (n_train,)
        Data of the inner regression problem.
    X_eval : (n_eval, d)
    y_eval : (n_eval,)
        Held-out data defining the outer loss.
    alpha0 : float
        Starting regularization weight.
    step_size, grad_tol, max_iters, alpha_min
        See :class:`TunerConfig`.
    step_policy : callable, optional
        ``(iteration, alpha, grad) -> new_alpha``; defaults to
        ``FixedStep(step_size)``.
    backend : QPBackend, optional
        Solver handle owned by this run; a fresh one by default.
    callback : callable, optional
        Called as ``callback(iteration, alpha, loss, grad)`` after every
        completed iteration.

    Returns
    -------
    TuningResult

    Raises
    ------
    InnerSolveDivergence
        If the inner problem cannot be solved at ``alpha0``.

    Examples
    --------
    >>> result = tune_regularization(X_tr, y_tr, X_ev, y_ev, 0.10, max_iters=500)
    >>> result.alphas[-1], result.losses[-1]
    """
    config = TunerConfig(step_size, grad_tol, max_iters, alpha_min)
    tuner = OuterTuner(
        Dataset.create(X_train, y_train),
        Dataset.create(X_eval, y_eval),
        config,
        step_policy=step_policy,
        backend=backend,
        callback=callback,
    )
    return tuner.run(alpha0)


def tune_many(
    alpha_starts: Sequence[float],
    X_train,
    y_train,
    X_eval,
    y_eval,
    config: TunerConfig = TunerConfig(),
    step_policy: StepPolicy | None = None,
) -> list[TuningResult]:
    """
    Run one independent tuning per starting value, each with its own
    backend. Results are returned in the order of ``alpha_starts``.
    """
    train = Dataset.create(X_train, y_train)
    evaluation = Dataset.create(X_eval, y_eval)
    results = []
    for alpha0 in alpha_starts:
        tuner = OuterTuner(
            train,
            evaluation,
            config,
            step_policy=step_policy,
            backend=QPBackend(),
        )
        results.append(tuner.run(alpha0))
    return results


def sweep_regularization(
    alphas: Sequence[float],
    X_train,
    y_train,
    X_eval,
    y_eval,
    backend: QPBackend | None = None,
) -> tuple[torch.Tensor, torch.Tensor]:
    """
    Training and held-out loss of the ridge fit for every value in
    ``alphas``.

    Returns
    -------
    train_losses, eval_losses : (len(alphas),) torch.Tensor

    Raises
    ------
    InnerSolveDivergence
        If any of the inner solves fails.
    """
    train = Dataset.create(X_train, y_train)
    evaluation = Dataset.create(X_eval, y_eval)
    if train.n_features != evaluation.n_features:
        raise DimensionMismatch(
            f"training data has {train.n_features} features, "
            f"evaluation data has {evaluation.n_features}"
        )
    backend = backend if backend is not None else QPBackend()
    train_losses, eval_losses = [], []
    for alpha in alphas:
        fit = fit_ridge(backend, train.X, train.y, float(alpha))
        train_losses.append(training_loss(fit.w, train.X, train.y))
        eval_losses.append(evaluation_loss(fit.w, evaluation.X, evaluation.y))
    return (
        torch.tensor(train_losses, dtype=torch.float64),
        torch.tensor(eval_losses, dtype=torch.float64),
    )
