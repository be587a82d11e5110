from dataclasses import dataclass
from typing import Callable, Optional, Protocol, runtime_checkable

import numpy as np
from scipy.optimize import minimize

from gscsynth.exceptions import GSCConfigError, OptimizerDivergedError
from gscsynth.utils.datautils import PanelData, weights_to_square

ObjectiveFn = Callable[[np.ndarray], float]
GradientFn = Callable[[np.ndarray], np.ndarray]

# Target accuracy of the restriction at a reported restricted solution.
RESTRICTION_TOL = 1e-6


@dataclass(frozen=True)
class OptimizerOutcome:
    """Result of one call to an optimizer oracle."""
    minimizer: np.ndarray
    converged: bool
    message: str = ""
    n_iterations: int = 0


@runtime_checkable
class OptimizerOracle(Protocol):
    """Contract for the general-purpose nonlinear optimizer.

    Any object with this ``minimize`` method can replace the default
    :class:`ScipyOptimizer`; the estimator never touches the solver otherwise.
    """

    def minimize(
        self,
        objective_fn: ObjectiveFn,
        gradient_fn: GradientFn,
        initial_point: np.ndarray,
        equality_constraint_fn: Optional[ObjectiveFn] = None,
        equality_constraint_grad: Optional[GradientFn] = None,
    ) -> OptimizerOutcome:
        ...


class ScipyOptimizer:
    """
    Optimizer oracle backed by :func:`scipy.optimize.minimize`.

    Unconstrained problems use BFGS; a single equality constraint switches
    to SLSQP, after which a few Newton steps along the constraint gradient
    push the point onto ``g(b) = 0`` to within ``feasibility_tol``.

    Parameters
    ----------
    gtol : float, default 1e-10
        Gradient tolerance passed to BFGS.
    ftol : float, default 1e-14
        Function tolerance passed to SLSQP.
    maxiter : int, default 1000
        Iteration cap for either method.
    stationarity_tol : float, default 1e-7
        Sup-norm of the (projected) gradient below which a run is accepted
        even when scipy flags precision loss.
    feasibility_tol : float, default 1e-9
        Target ``|g(b)|`` for the feasibility projection.
    """

    def __init__(
        self,
        gtol: float = 1e-10,
        ftol: float = 1e-14,
        maxiter: int = 1000,
        stationarity_tol: float = 1e-7,
        feasibility_tol: float = 1e-9,
    ) -> None:
        self.gtol = gtol
        self.ftol = ftol
        self.maxiter = maxiter
        self.stationarity_tol = stationarity_tol
        self.feasibility_tol = feasibility_tol

    def minimize(
        self,
        objective_fn: ObjectiveFn,
        gradient_fn: GradientFn,
        initial_point: np.ndarray,
        equality_constraint_fn: Optional[ObjectiveFn] = None,
        equality_constraint_grad: Optional[GradientFn] = None,
    ) -> OptimizerOutcome:
        x0 = np.asarray(initial_point, dtype=np.float64)

        if equality_constraint_fn is None:
            res = minimize(
                objective_fn, x0, jac=gradient_fn, method="BFGS",
                options={"gtol": self.gtol, "maxiter": self.maxiter},
            )
            x = np.asarray(res.x, dtype=np.float64)
            stationary = np.max(np.abs(gradient_fn(x))) <= self.stationarity_tol
            return OptimizerOutcome(
                minimizer=x,
                converged=bool(res.success or stationary) and np.all(np.isfinite(x)),
                message=str(res.message),
                n_iterations=int(res.get("nit", 0)),
            )

        if equality_constraint_grad is None:
            raise GSCConfigError("An equality constraint requires its gradient.")

        constraint = {
            "type": "eq",
            "fun": lambda x: np.atleast_1d(equality_constraint_fn(x)),
            "jac": lambda x: np.atleast_2d(equality_constraint_grad(x)),
        }
        res = minimize(
            objective_fn, x0, jac=gradient_fn, method="SLSQP",
            constraints=[constraint],
            options={"ftol": self.ftol, "maxiter": self.maxiter},
        )
        x = self._project_feasible(
            np.asarray(res.x, dtype=np.float64), equality_constraint_fn, equality_constraint_grad
        )
        feasible = abs(float(equality_constraint_fn(x))) < RESTRICTION_TOL
        normal = np.asarray(equality_constraint_grad(x), dtype=np.float64)
        grad = np.asarray(gradient_fn(x), dtype=np.float64)
        norm_sq = float(normal @ normal)
        projected = grad - (grad @ normal) / norm_sq * normal if norm_sq > 0 else grad
        stationary = np.max(np.abs(projected)) <= self.stationarity_tol
        return OptimizerOutcome(
            minimizer=x,
            converged=bool((res.success or stationary) and feasible) and np.all(np.isfinite(x)),
            message=str(res.message),
            n_iterations=int(res.get("nit", 0)),
        )

    def _project_feasible(
        self, x: np.ndarray, g: ObjectiveFn, g_grad: GradientFn, max_steps: int = 50
    ) -> np.ndarray:
        for _ in range(max_steps):
            value = float(g(x))
            if abs(value) <= self.feasibility_tol:
                break
            normal = np.asarray(g_grad(x), dtype=np.float64)
            norm_sq = float(normal @ normal)
            if norm_sq == 0.0 or not np.isfinite(norm_sq):
                break
            x = x - value / norm_sq * normal
        return x


@dataclass(frozen=True)
class Restriction:
    """Single equality restriction ``g(b) = 0`` with its analytic gradient."""
    fn: ObjectiveFn
    grad: GradientFn

    def value(self, b: np.ndarray) -> float:
        out = np.asarray(self.fn(b), dtype=np.float64)
        if out.size != 1:
            raise GSCConfigError(
                f"Restriction must return a scalar; got {out.size} values. "
                "Combine several restrictions into one equation (e.g. a sum of squares)."
            )
        return float(out.reshape(()))

    def gradient(self, b: np.ndarray) -> np.ndarray:
        out = np.asarray(self.grad(b), dtype=np.float64).reshape(-1)
        if out.shape != np.shape(b):
            raise GSCConfigError(
                f"Restriction gradient has shape {out.shape}; expected {np.shape(b)}."
            )
        return out


class SyntheticDesign:
    """
    Panel differenced against its synthetic counterfactuals at fixed weights.

    For weights ``W`` (N x N-1) the synthetic residual of unit ``i`` is
    ``u_i = y~_i - X~_i b`` with ``y~ = (I - W) Y`` and ``X~ = (I - W) X``
    (``W`` expanded to N x N with a zero diagonal). The objective is

    .. math::

        J(b) = \\frac{1}{2NT} \\sum_i \\omega_i \\sum_t u_{it}^2

    Parameters
    ----------
    panel : PanelData
        Validated panel.
    W : np.ndarray
        Weight matrix of shape (N, N-1).
    unit_weights : np.ndarray, optional
        Objective weights ``omega`` of shape (N,); ones by default.
    """

    def __init__(self, panel: PanelData, W: np.ndarray, unit_weights: Optional[np.ndarray] = None) -> None:
        n_units, n_periods = panel.n_units, panel.n_periods
        self.weight_matrix = weights_to_square(W)
        differencing = np.eye(n_units) - self.weight_matrix
        self.n_units = n_units
        self.n_periods = n_periods
        self.y_tilde = differencing @ panel.outcome_matrix
        self.X_tilde = np.tensordot(differencing, panel.regressor_array, axes=(1, 0))
        self.unit_weights = np.ones(n_units) if unit_weights is None else np.asarray(unit_weights, dtype=np.float64)
        self._scale = 1.0 / (n_units * n_periods)

    def unit_residuals(self, b: np.ndarray) -> np.ndarray:
        """Synthetic residuals ``u`` of shape (N, T)."""
        return self.y_tilde - self.X_tilde @ b

    def objective(self, b: np.ndarray) -> float:
        u = self.unit_residuals(b)
        return 0.5 * self._scale * float(self.unit_weights @ np.sum(u ** 2, axis=1))

    def gradient(self, b: np.ndarray) -> np.ndarray:
        return -self._scale * self.score_contributions(self.unit_residuals(b)).sum(axis=0)

    def score_contributions(self, u: np.ndarray) -> np.ndarray:
        """Per-unit terms ``omega_i X~_i' u_i`` of shape (N, k)."""
        return self.unit_weights[:, None] * np.einsum("itk,it->ik", self.X_tilde, u)

    def hessian(self) -> np.ndarray:
        return self._scale * np.einsum("i,itk,itl->kl", self.unit_weights, self.X_tilde, self.X_tilde)


def solve_coefficients(
    design: SyntheticDesign,
    b_start: np.ndarray,
    restriction: Optional[Restriction] = None,
    oracle: Optional[OptimizerOracle] = None,
    rng: Optional[np.random.Generator] = None,
    retries: int = 1,
) -> OptimizerOutcome:
    """
    Minimise ``J(b)`` over ``b`` at fixed weights, optionally subject to ``g(b) = 0``.

    Parameters
    ----------
    design : SyntheticDesign
        Synthetic differencing at the current weights.
    b_start : np.ndarray
        Starting point of shape (k,).
    restriction : Restriction, optional
        Equality restriction enforced at the solution.
    oracle : OptimizerOracle, optional
        Optimizer; :class:`ScipyOptimizer` by default.
    rng : np.random.Generator, optional
        Source of the start perturbation used on retries.
    retries : int, default 1
        Number of perturbed restarts after a non-converged run.

    Returns
    -------
    OptimizerOutcome
        Converged outcome.

    Raises
    ------
    OptimizerDivergedError
        If no attempt converges; ``minimizer`` holds the last point.
    """
    oracle = oracle if oracle is not None else ScipyOptimizer()
    rng = rng if rng is not None else np.random.default_rng()
    start = np.asarray(b_start, dtype=np.float64)

    constraint_fn = restriction.value if restriction is not None else None
    constraint_grad = restriction.gradient if restriction is not None else None

    outcome = None
    for attempt in range(retries + 1):
        outcome = oracle.minimize(
            design.objective, design.gradient, start, constraint_fn, constraint_grad
        )
        if outcome.converged:
            return outcome
        scale = 1e-3 * max(1.0, float(np.max(np.abs(start))))
        start = np.asarray(b_start, dtype=np.float64) + scale * rng.standard_normal(start.shape)

    raise OptimizerDivergedError(
        f"Coefficient optimizer did not converge after {retries + 1} attempt(s): {outcome.message}",
        minimizer=outcome.minimizer,
    )


def unit_coefficients(design: SyntheticDesign) -> np.ndarray:
    """Per-unit minimisers of each unit's own squared synthetic residual.

    Row ``i`` solves ``min_b ||y~_i - X~_i b||^2`` (ordinary least squares on
    the synthetic-differenced series of unit ``i``).

    Returns
    -------
    np.ndarray
        Coefficient matrix of shape (N, k).
    """
    return np.vstack([
        np.linalg.lstsq(design.X_tilde[i], design.y_tilde[i], rcond=None)[0]
        for i in range(design.n_units)
    ])
