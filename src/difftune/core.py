import logging
import torch
from enum import IntEnum
from typing import Any, Tuple, Sequence, NamedTuple

from .exceptions import DimensionMismatch, SensitivityUnavailable

logger = logging.getLogger(__name__)


def _as_tuple(x):
    return x if isinstance(x, tuple) else (x,)


class ExplicitADFunction(torch.autograd.Function):
    """
    Base class for stateless, formula-based autograd functions whose
    derivatives are written by hand instead of traced.

    Subclass MUST implement:
      - compute(*inputs) -> outputs
      - compute_primals(*inputs, outputs) -> saved
      - vjp_from_primals(saved, *cotangents, needs_input_grad=None) -> grads_per_input
      - jvp_from_primals(saved, *tangents) -> out_tangents

    Optional in subclass:
      - non_differentiable_output_indices: tuple[int, ...] (class attribute)

    The same hooks are reachable without the autograd engine through
    :meth:`primals`, :meth:`vjp_with_primals` and :meth:`jvp_with_primals`,
    which lets a caller solve once and then ask for any number of
    directional derivatives at that solution.
    """

    non_differentiable_output_indices: Tuple[int, ...] = ()

    # --------- hooks subclasses must provide ----------
    @staticmethod
    def compute(*inputs: torch.Tensor) -> Tuple[torch.Tensor, ...] | torch.Tensor:
        """
        Compute the forward outputs from the given inputs.

        Must be pure: identical inputs give identical outputs, inputs are
        never modified in place. Intermediate data needed for derivatives
        belongs in :meth:`compute_primals`.
        """
        raise NotImplementedError

    @staticmethod
    def compute_primals(
        *inputs: torch.Tensor, outputs: Tuple[torch.Tensor, ...] | torch.Tensor
    ) -> Any:
        """
        Return the auxiliary data ("primals") needed to evaluate derivatives
        at the point (inputs, outputs).

        Called exactly once per forward pass. The returned object is handed
        verbatim to :meth:`vjp_from_primals` and :meth:`jvp_from_primals`
        and must not hold tensors that keep a graph alive.
        """
        raise NotImplementedError

    @staticmethod
    def vjp_from_primals(
        saved: Any,
        *cotangents: torch.Tensor,
        needs_input_grad: Sequence[bool] | None = None,
    ) -> Tuple[torch.Tensor | None, ...]:
        """
        Reverse-mode derivative: map one cotangent per output to one
        gradient (or ``None``) per input.

        Parameters
        ----------
        saved : Any
            Object returned by :meth:`compute_primals`.
        *cotangents : Tensor
            Upstream gradients, shaped like the outputs. Cotangents of
            non-differentiable outputs may be ``None``.
        needs_input_grad : Sequence[bool] or None
            Mask of inputs that require a gradient; ``None`` means all.

        Returns
        -------
        tuple[Tensor or None, ...]
            One entry per forward input.
        """
        raise NotImplementedError

    @staticmethod
    def jvp_from_primals(
        saved: Any, *tangents: torch.Tensor | None
    ) -> Tuple[torch.Tensor, ...]:
        """
        Forward-mode derivative: map one tangent per input (``None`` means
        zero) to the tangents of the outputs.

        Parameters
        ----------
        saved : Any
            Object returned by :meth:`compute_primals`.
        *tangents : Tensor or None
            Infinitesimal change of each input.

        Returns
        -------
        tuple[Tensor or None, ...]
            Output tangents; non-differentiable outputs may yield ``None``.
        """
        raise NotImplementedError

    # --------------- autograd plumbing ----------------
    @classmethod
    def forward(cls, *inputs: torch.Tensor):
        return cls.compute(*inputs)

    @classmethod
    def setup_context(cls, ctx, inputs, output):
        # 1) Mark non-differentiable outputs (if any)
        nd_idx = getattr(cls, "non_differentiable_output_indices", ())
        if nd_idx:
            outs = _as_tuple(output)
            to_mark = [outs[i] for i in nd_idx if i < len(outs)]
            if to_mark:
                ctx.mark_non_differentiable(*to_mark)

        # 2) Compute and stash primals/intermediates once
        ctx._saved = cls.compute_primals(*inputs, outputs=output)

    @classmethod
    def backward(cls, ctx, *cotangents: torch.Tensor):
        needs = ctx.needs_input_grad
        grads = list(
            cls.vjp_from_primals(
                ctx._saved, *cotangents, needs_input_grad=needs
            )
        )
        for i, need in enumerate(needs):
            if not need:
                grads[i] = None
        return tuple(grads)

    @classmethod
    def jvp(cls, ctx, *tangents: torch.Tensor | None):
        return cls.jvp_from_primals(ctx._saved, *tangents)

    # --------------- functional helpers ----------------
    @classmethod
    def primals(cls, *inputs: torch.Tensor):
        """Run the forward computation and cache primals, outside autograd."""
        with torch.no_grad():
            outputs = cls.compute(*inputs)
            saved = cls.compute_primals(*inputs, outputs=outputs)
        return outputs, saved

    @classmethod
    def vjp_with_primals(
        cls, saved: Any, *cotangents: torch.Tensor, needs_input_grad=None
    ):
        return cls.vjp_from_primals(
            saved, *cotangents, needs_input_grad=needs_input_grad
        )

    @classmethod
    def jvp_with_primals(cls, saved: Any, *tangents: torch.Tensor | None):
        return cls.jvp_from_primals(saved, *tangents)


class QPStatus(IntEnum):
    """Termination status of a QP solve."""

    OPTIMAL = 0
    INFEASIBLE = 1
    UNBOUNDED = 2
    NUMERICAL_ERROR = 3
    ITERATION_LIMIT = 4


class QPProblem(NamedTuple):
    """
    Data of a single (unbatched) box-constrained convex QP

        minimize   xᵀ Q x + mᵀ x
        subject to L ≤ x ≤ U

    Attributes
    ----------
    Q : torch.Tensor
        Symmetric quadratic coefficient matrix, shape ``(n, n)``.
    m : torch.Tensor
        Linear coefficients, shape ``(n,)``.
    L : torch.Tensor
        Lower bounds, shape ``(n,)``; ``-inf`` for a free side.
    U : torch.Tensor
        Upper bounds, shape ``(n,)``; ``+inf`` for a free side.
    """

    Q: torch.Tensor  # (n, n)
    m: torch.Tensor  # (n,)
    L: torch.Tensor  # (n,)
    U: torch.Tensor  # (n,)

    @classmethod
    def unconstrained(cls, Q, m):
        m = to_float64_preserve_grad(m)
        return cls(
            to_float64_preserve_grad(Q),
            m,
            torch.full_like(m, -torch.inf),
            torch.full_like(m, torch.inf),
        )


class QPPerturbation(NamedTuple):
    """
    Forward-mode direction in problem-data space. ``None`` entries are
    treated as zero.
    """

    dQ: torch.Tensor | None = None  # (n, n)
    dm: torch.Tensor | None = None  # (n,)
    dL: torch.Tensor | None = None  # (n,)
    dU: torch.Tensor | None = None  # (n,)


class QPResult(NamedTuple):
    solution: torch.Tensor  # (n,)
    status: QPStatus
    iterations: int


class BoxQPPrimals(NamedTuple):
    """
    Intermediate values of one solve under a fixed active set
    """

    H: torch.Tensor  # (B, n, n)
    Lc: torch.Tensor  # (B, n, n), Cholesky factor of the patched system
    x: torch.Tensor  # (B, n)
    info: torch.Tensor  # (B,), nonzero where the factorisation failed


class BoxQPSaved(NamedTuple):
    """
    Complete set of values for forward and reverse differentiation
    """

    L: torch.Tensor  # (B, n)
    U: torch.Tensor  # (B, n)
    active_comp: torch.Tensor  # (B, n), boolean
    active_values: torch.Tensor  # (B, n)
    H: torch.Tensor  # (B, n, n)
    Lc: torch.Tensor  # (B, n, n)
    x: torch.Tensor  # (B, n)
    info: torch.Tensor  # (B,)


# ----------------------------------------------------------------------
# Batched matrix-vector product
# ----------------------------------------------------------------------
def bmv(M: torch.Tensor, x: torch.Tensor) -> torch.Tensor:
    """
    Perform a batched matrix-vector multiplication.

    Parameters
    ----------
    M : torch.Tensor
        Tensor of shape ``(B, M, N)``.
    x : torch.Tensor
        Tensor of shape ``(B, N)``.

    Returns
    -------
    torch.Tensor
        Tensor of shape ``(B, M)`` where ``result[b] = M[b] @ x[b]``.
    """
    return (M @ x.unsqueeze(-1)).squeeze(-1)


def to_float64_preserve_grad(x):
    """Cast to float64 without detaching; create tensor only if needed."""
    if isinstance(x, torch.Tensor):
        return x if x.dtype == torch.float64 else x.to(torch.float64)
    return torch.as_tensor(x, dtype=torch.float64)


def _masked_system(H: torch.Tensor, active_comp: torch.Tensor) -> torch.Tensor:
    # Zero rows and columns at active coordinates, unit diagonal there
    Q1 = H.masked_fill(active_comp.unsqueeze(-1), 0.0)
    Q1 = Q1.masked_fill(active_comp.unsqueeze(-2), 0.0)
    return Q1 + torch.diag_embed(active_comp.to(Q1.dtype))


class BoxQPFunc(ExplicitADFunction):
    """
    Batched active-set solver for box-constrained convex QPs

        minimize   xᵀ Q x + mᵀ x
        subject to L ≤ x ≤ U

    with closed-form derivatives obtained by differentiating the KKT
    stationarity conditions of the free block at the final active set.

    Inputs are ``(Q, m, L, U, x0)`` with shapes ``(B, n, n)``, ``(B, n)``,
    ``(B, n)``, ``(B, n)``, ``(B, n)``; ``x0`` is a starting point that is
    projected onto the box. Outputs are
    ``(x, active_comp, active_values, status, iterations)``; all but ``x``
    are non-differentiable.
    """

    non_differentiable_output_indices = (1, 2, 3, 4)

    _max_iter = 100
    _tol = 1e-10  # relative distance to the working-set optimum
    _eps = 1e-9  # bound-hit distance and multiplier sign tolerance
    _curvature_tol = 1e-12

    @staticmethod
    def _solve_under_active_int(
        Q: torch.Tensor,  # (B, n, n)
        m: torch.Tensor,  # (B, n)
        active_comp: torch.Tensor,  # (B, n)
        active_values: torch.Tensor,  # (B, n)
    ) -> BoxQPPrimals:
        H = 2 * Q
        Q1 = _masked_system(H, active_comp)

        # Move fixed-vars contribution to RHS for FREE rows:
        # v1_free = m + H * x_fixed, and pin ACTIVE rows to their values
        v1 = torch.where(
            active_comp,
            -active_values,
            m + bmv(H, active_values),
        )
        Lc, info = torch.linalg.cholesky_ex(Q1)
        x = torch.cholesky_solve((-v1).unsqueeze(-1), Lc).squeeze(-1)
        return BoxQPPrimals(H, Lc, x, info)

    @staticmethod
    def _line_search_to_bounds(
        x: torch.Tensor,  # (B, n) feasible starting point
        x_target: torch.Tensor,  # (B, n)
        L: torch.Tensor,  # (B, n)
        U: torch.Tensor,  # (B, n)
        active_comp: torch.Tensor,  # (B, n)
    ) -> torch.Tensor:
        """
        Make the largest feasible step from x toward x_target while
        respecting the box [L, U].
        """
        delta = x_target - x
        step_to_U = torch.where(
            (delta > 0.0) & ~active_comp, (U - x) / delta, 1.0
        ).amin(dim=-1)
        step_to_L = torch.where(
            (delta < 0.0) & ~active_comp, (L - x) / delta, 1.0
        ).amin(dim=-1)
        step = torch.minimum(step_to_U, step_to_L).clamp(min=0.0, max=1.0)
        return x + step.unsqueeze(-1) * delta

    @classmethod
    def _active_set_step(
        cls,
        x: torch.Tensor,  # (B, n) feasible iterate
        x_target: torch.Tensor,  # (B, n) optimum under the working set
        Q: torch.Tensor,  # (B, n, n)
        m: torch.Tensor,  # (B, n)
        L: torch.Tensor,  # (B, n)
        U: torch.Tensor,  # (B, n)
        active_comp: torch.Tensor,  # (B, n)
        active_values: torch.Tensor,  # (B, n)
        done: torch.Tensor,  # (B,)
    ) -> tuple[
        torch.Tensor,  # x (B, n)
        torch.Tensor,  # active_comp (B, n)
        torch.Tensor,  # active_values (B, n)
        torch.Tensor,  # optimal (B,)
    ]:
        """
        One primal active-set iteration.

        If x already solves the working-set subproblem, check the KKT sign
        rules: a pinned lower bound needs a non-negative gradient, a pinned
        upper bound a non-positive one, a fixed variable (``L == U``) may
        have any gradient. Bounds that break the rule are
        released; if none do, x is optimal. Otherwise step toward
        x_target as far as the box allows and pin the bounds that block
        the step.
        """
        eps = cls._eps
        delta = x_target - x
        stationary = torch.linalg.vector_norm(delta, dim=-1) <= cls._tol * (
            1.0 + torch.linalg.vector_norm(x, dim=-1)
        )

        g = bmv(2 * Q, x) + m
        at_lower = active_comp & (active_values == L)
        at_upper = active_comp & ~at_lower
        # a fixed variable (L == U) takes a multiplier of either sign
        wrong_sign = ((at_lower & (g < -eps)) | (at_upper & (g > eps))) & (
            L != U
        )
        optimal = stationary & ~wrong_sign.any(dim=-1) & ~done

        x_new = cls._line_search_to_bounds(x, x_target, L, U, active_comp)
        blocking = ~active_comp & (
            ((delta < 0.0) & (x_new <= L + eps))
            | ((delta > 0.0) & (x_new >= U - eps))
        )
        bound = torch.where(delta < 0.0, L, U)
        x_new = torch.where(blocking, bound, x_new)

        released = active_comp & ~wrong_sign
        comp_out = torch.where(
            stationary.unsqueeze(-1), released, active_comp | blocking
        )
        values_out = torch.where(
            stationary.unsqueeze(-1),
            torch.where(released, active_values, 0.0),
            torch.where(blocking, bound, active_values),
        )

        # do not update finished batches
        frozen = done.unsqueeze(-1)
        x_out = torch.where(frozen | stationary.unsqueeze(-1), x, x_new)
        comp_out = torch.where(frozen, active_comp, comp_out)
        values_out = torch.where(frozen, active_values, values_out)
        return x_out, comp_out, values_out, optimal

    @classmethod
    def _classify_failure(
        cls,
        Q: torch.Tensor,
        L: torch.Tensor,
        U: torch.Tensor,
        active_comp: torch.Tensor,
    ) -> torch.Tensor:
        # Negative curvature on the free block with an open direction means
        # the objective has no lower bound; anything else is numerical.
        Q1 = _masked_system(2 * Q, active_comp)
        min_eig = torch.linalg.eigvalsh(Q1).amin(dim=-1)
        open_dir = (~active_comp & (torch.isinf(L) | torch.isinf(U))).any(
            dim=-1
        )
        status = torch.full_like(
            open_dir, int(QPStatus.NUMERICAL_ERROR), dtype=torch.int64
        )
        return torch.where(
            (min_eig < -cls._curvature_tol) & open_dir,
            int(QPStatus.UNBOUNDED),
            status,
        )

    # ------------ Interface methods ------------------
    @classmethod
    def compute(
        cls,
        Q: torch.Tensor,  # (B, n, n)
        m: torch.Tensor,  # (B, n)
        L: torch.Tensor,  # (B, n)
        U: torch.Tensor,  # (B, n)
        x0: torch.Tensor,  # (B, n)
    ) -> tuple[
        torch.Tensor,  # x (B, n)
        torch.Tensor,  # active_comp (B, n)
        torch.Tensor,  # active_values (B, n)
        torch.Tensor,  # status (B,)
        torch.Tensor,  # iterations ()
    ]:
        infeasible = (L > U).any(dim=-1)
        x = torch.maximum(torch.minimum(x0, U), L)
        x = torch.where(infeasible.unsqueeze(-1), 0.0, x)

        active_comp = torch.zeros_like(m, dtype=torch.bool)
        active_values = torch.zeros_like(m)
        failed = torch.zeros_like(infeasible)
        converged = torch.zeros_like(infeasible)
        done = infeasible.clone()

        iterations = 0
        for _ in range(cls._max_iter):
            if bool(done.all()):
                break
            iterations += 1
            primals = cls._solve_under_active_int(
                Q, m, active_comp, active_values
            )
            failed = failed | ((primals.info != 0) & ~done)
            done = done | failed
            x, active_comp, active_values, optimal = cls._active_set_step(
                x, primals.x, Q, m, L, U, active_comp, active_values, done
            )
            converged = converged | optimal
            done = done | optimal

        status = torch.full_like(
            infeasible, int(QPStatus.OPTIMAL), dtype=torch.int64
        )
        status = torch.where(
            converged, status, int(QPStatus.ITERATION_LIMIT)
        )
        if bool(failed.any()):
            status = torch.where(
                failed,
                cls._classify_failure(Q, L, U, active_comp),
                status,
            )
        status = torch.where(infeasible, int(QPStatus.INFEASIBLE), status)
        nonfinite = ~torch.isfinite(x).all(dim=-1)
        status = torch.where(
            nonfinite & (status == int(QPStatus.OPTIMAL)),
            int(QPStatus.NUMERICAL_ERROR),
            status,
        )
        x = torch.where(infeasible.unsqueeze(-1), torch.nan, x)
        return (
            x,
            active_comp,
            active_values,
            status,
            torch.tensor(iterations),
        )

    @staticmethod
    def compute_primals(
        *inputs: torch.Tensor, outputs: Tuple[torch.Tensor, ...] | torch.Tensor
    ) -> BoxQPSaved:
        Q, m, L, U, _ = (t.detach() for t in inputs)
        _, active_comp, active_values, _, _ = outputs

        primals = BoxQPFunc._solve_under_active_int(
            Q, m, active_comp, active_values
        )
        return BoxQPSaved(
            L,
            U,
            active_comp,
            active_values,
            primals.H,
            primals.Lc,
            primals.x,
            primals.info,
        )

    @staticmethod
    def vjp_from_primals(
        saved: BoxQPSaved,
        *cotangents: torch.Tensor,
        needs_input_grad: Sequence[bool] | None = None,
    ) -> Tuple[torch.Tensor | None, ...]:
        L, U, active_comp, active_values, H, Lc, x, _ = saved
        grad_x = cotangents[0]
        if grad_x is None:
            grad_x = torch.zeros_like(x)

        # ---- Backprop through the solve x = Q1^{-1} (-v1) ----
        a = torch.cholesky_solve(grad_x.unsqueeze(-1), Lc).squeeze(-1)
        grad_v1 = -a

        # grad wrt Q1: - sym(Q1^{-1} grad_x x^T)
        S = torch.einsum("bi,bj->bij", a, x)
        grad_Q1 = -0.5 * (S + S.transpose(-1, -2))

        # v1 = where(active_comp, -active_values, m + H @ active_values)
        gv = torch.where(active_comp, 0.0, grad_v1)
        grad_m = gv

        # to active_values: directly on active rows, via H on free rows
        grad_av = torch.where(active_comp, -grad_v1, 0.0) + bmv(
            H.transpose(-1, -2), gv
        )

        # Q1 depends on H only on the free-free block
        grad_H = torch.einsum("bi,bj->bij", gv, active_values)
        grad_H_from_Q1 = grad_Q1.masked_fill(active_comp.unsqueeze(-1), 0.0)
        grad_H = grad_H + grad_H_from_Q1.masked_fill(
            active_comp.unsqueeze(-2), 0.0
        )
        # H = 2Q
        grad_Q = 2.0 * grad_H

        grad_L = torch.where(
            active_comp & (active_values == L), grad_av, 0.0
        )
        grad_U = torch.where(
            active_comp & (active_values == U) & (active_values != L),
            grad_av,
            0.0,
        )
        return (grad_Q, grad_m, grad_L, grad_U, None)

    @staticmethod
    def jvp_from_primals(
        saved: BoxQPSaved, *tangents: torch.Tensor | None
    ) -> Tuple[torch.Tensor | None, ...]:
        L, U, active_comp, active_values, H, Lc, x, _ = saved
        dQ, dm, dL, dU, _ = tangents
        dQ = torch.zeros_like(H) if dQ is None else dQ
        dm = torch.zeros_like(x) if dm is None else dm
        dL = torch.zeros_like(x) if dL is None else dL
        dU = torch.zeros_like(x) if dU is None else dU

        # pinned coordinates follow the bound they sit on
        dav = torch.where(
            active_comp,
            torch.where(active_values == L, dL, dU),
            0.0,
        )

        dH = 2.0 * dQ
        dQ1 = dH.masked_fill(active_comp.unsqueeze(-1), 0.0)
        dQ1 = dQ1.masked_fill(active_comp.unsqueeze(-2), 0.0)

        dv1 = torch.where(
            active_comp,
            -dav,
            dm + bmv(dH, active_values) + bmv(H, dav),
        )

        # Q1 dx + dQ1 x = -dv1   =>   dx = Q1^{-1} ( -dv1 - dQ1 x )
        rhs = -dv1 - bmv(dQ1, x)
        dx = torch.cholesky_solve(rhs.unsqueeze(-1), Lc).squeeze(-1)
        return (dx, None, None, None, None)


def solve_qp(Q, m, L, U, x0=None):
    """
    Solve a single box-constrained QP or a batch of them, differentiably.

    Parameters
    ----------
    Q : (n, n) or (B, n, n)
        Symmetric positive-definite quadratic coefficients.
    m : (n,) or (B, n)
        Linear coefficients.
    L, U : (n,) or (B, n)
        Box bounds; use ``±inf`` for free sides.
    x0 : (n,) or (B, n), optional
        Starting point; projected onto the box. Zeros by default.

    Returns
    -------
    x : (n,) or (B, n) torch.Tensor
        Optimal point. Differentiable w.r.t. ``Q``, ``m``, ``L`` and ``U``
        in both forward and reverse mode.
    status : () or (B,) torch.Tensor
        :class:`QPStatus` codes.
    """
    Q = to_float64_preserve_grad(Q)
    m = to_float64_preserve_grad(m)
    L = to_float64_preserve_grad(L)
    U = to_float64_preserve_grad(U)
    x0 = torch.zeros_like(m) if x0 is None else to_float64_preserve_grad(x0)
    if Q.ndim == 2:
        x, _, _, status, _ = BoxQPFunc.apply(
            Q.unsqueeze(0),
            m.unsqueeze(0),
            L.unsqueeze(0),
            U.unsqueeze(0),
            x0.unsqueeze(0),
        )
        return x[0], status[0]
    x, _, _, status, _ = BoxQPFunc.apply(Q, m, L, U, x0)
    return x, status


class QPBackend:
    """
    Stateful handle around :class:`BoxQPFunc` exposing the two operations
    the tuning core relies on: ``solve`` and ``differentiate_forward``.

    The handle owns the warm-start point and the KKT linearisation of the
    most recent solve, so a single instance must not be shared between
    concurrent tuning runs. Independent runs each get their own instance.
    """

    solver = BoxQPFunc

    def __init__(self, warm_start: bool = True):
        self.warm_start = warm_start
        self._x_prev = None
        self._saved = None
        self._status = None

    @property
    def status(self) -> QPStatus | None:
        """Status of the most recent solve, ``None`` before the first one."""
        return self._status

    def reset(self) -> None:
        self._x_prev = None
        self._saved = None
        self._status = None

    def _start_point(self, m: torch.Tensor) -> torch.Tensor:
        if (
            self.warm_start
            and self._x_prev is not None
            and self._x_prev.shape == m.shape
        ):
            return self._x_prev
        return torch.zeros_like(m)

    @staticmethod
    def _check_problem(Q, m, L, U):
        n = m.shape[-1]
        if m.ndim != 1 or Q.shape != (n, n):
            raise DimensionMismatch(
                f"expected Q of shape ({n}, {n}) and 1-D m, "
                f"got {tuple(Q.shape)} and {tuple(m.shape)}"
            )
        if L.shape != m.shape or U.shape != m.shape:
            raise DimensionMismatch(
                f"bounds must have shape ({n},), got {tuple(L.shape)} "
                f"and {tuple(U.shape)}"
            )

    def solve(self, problem: QPProblem) -> QPResult:
        """
        Solve ``problem`` and keep its KKT linearisation for later
        forward differentiation.

        Parameters
        ----------
        problem : QPProblem
            Unbatched problem data.

        Returns
        -------
        QPResult
            Solution of shape ``(n,)``, termination status and the number
            of active-set iterations.
        """
        Q, m, L, U = (
            to_float64_preserve_grad(t).detach() for t in problem
        )
        self._check_problem(Q, m, L, U)
        Q, m, L, U = (t.unsqueeze(0) for t in (Q, m, L, U))
        x0 = self._start_point(m)

        outputs, saved = self.solver.primals(Q, m, L, U, x0)
        x, _, _, status, iterations = outputs
        self._status = QPStatus(int(status[0]))
        if self._status == QPStatus.OPTIMAL:
            self._saved = saved
            self._x_prev = x
        else:
            self._saved = None
            self._x_prev = None
        logger.debug(
            "QP solve: n=%d status=%s iterations=%d",
            m.shape[-1],
            self._status.name,
            int(iterations),
        )
        return QPResult(x[0], self._status, int(iterations))

    def differentiate_forward(
        self, perturbation: QPPerturbation
    ) -> torch.Tensor:
        """
        Response of the optimal primal solution to a perturbation of the
        problem data, obtained from the linearised KKT system at the last
        optimum.

        Raises
        ------
        SensitivityUnavailable
            If the last solve did not reach optimality, the KKT system is
            singular, or the response is not finite.
        """
        if self._saved is None:
            last = "none" if self._status is None else self._status.name
            raise SensitivityUnavailable(
                f"forward differentiation needs an optimal solve (last status: {last})"
            )
        if bool((self._saved.info != 0).any()):
            raise SensitivityUnavailable("KKT system is singular")

        n = self._saved.x.shape[-1]
        expected = ((n, n), (n,), (n,), (n,))
        tangents = []
        for t, shape in zip(perturbation, expected):
            if t is None:
                tangents.append(None)
                continue
            t = to_float64_preserve_grad(t).detach()
            if tuple(t.shape) != shape:
                raise DimensionMismatch(
                    f"perturbation of shape {tuple(t.shape)}, expected {shape}"
                )
            tangents.append(t.unsqueeze(0))

        dx = self.solver.jvp_with_primals(self._saved, *tangents, None)[0]
        if not bool(torch.isfinite(dx).all()):
            raise SensitivityUnavailable("KKT forward pass produced non-finite values")
        return dx[0]
