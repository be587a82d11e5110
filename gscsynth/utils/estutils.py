import warnings
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import numpy as np
import statsmodels.api as sm

from gscsynth.exceptions import (
    GSCConfigError,
    OptimizerDivergedError,
    SingularWeightSystemError,
)
from gscsynth.utils.datautils import PanelData, donor_positions
from gscsynth.utils.optutils import (
    OptimizerOracle,
    Restriction,
    ScipyOptimizer,
    SyntheticDesign,
    solve_coefficients,
    unit_coefficients,
)
from gscsynth.utils.weightutils import leave_two_out_weights, weight_row_with_exclusion

# --- Constants ---
_ROW_SUM_TOL = 1e-8
# Floor on per-unit error variances, relative to their mean, before inversion.
_VARIANCE_FLOOR = 1e-12


class Method(str, Enum):
    """Estimator variants."""
    ONESTEP = "onestep"
    TWOSTEP_AGGTE = "twostep.aggte"
    TWOSTEP_INDIV = "twostep.indiv"


class EstimatorState(Enum):
    INITIALIZING = "initializing"
    COEFFICIENT_STEP = "coefficient_step"
    WEIGHT_STEP = "weight_step"
    CONVERGED = "converged"
    MAX_ITER_EXCEEDED = "max_iter_exceeded"


@dataclass
class AlternationSettings:
    """Options shared by every alternation of one estimation call."""
    tol: float = 1e-6
    max_iter: int = 1000
    nonneg: bool = False
    strict: bool = False
    verbose: bool = False
    restriction: Optional[Restriction] = None
    oracle: OptimizerOracle = field(default_factory=ScipyOptimizer)
    rng: np.random.Generator = field(default_factory=np.random.default_rng)


@dataclass
class AlternationOutcome:
    """Final iterate and bookkeeping of one block-coordinate run."""
    b: np.ndarray
    W: np.ndarray
    unit_weights: np.ndarray
    state: EstimatorState
    iterations: int
    delta: float
    objective_path: List[float]
    optimizer_converged: bool
    n_excluded_rows: int

    @property
    def converged(self) -> bool:
        return self.state is EstimatorState.CONVERGED and self.optimizer_converged


@dataclass
class EstimationOutcome:
    """Output of a full estimator variant (possibly several alternations)."""
    method: Method
    b: np.ndarray
    W: np.ndarray
    unit_weights: np.ndarray
    converged: bool
    iterations: int
    final: AlternationOutcome
    stages: Dict[str, AlternationOutcome]
    unit_coefficients: Optional[np.ndarray] = None
    unit_variances: Optional[np.ndarray] = None
    leave_two_out: Optional[np.ndarray] = None


def uniform_weights(n_units: int) -> np.ndarray:
    """Equal weights ``1/(N-1)`` on every other unit, shape (N, N-1)."""
    return np.full((n_units, n_units - 1), 1.0 / (n_units - 1))


def validate_weight_init(W: Any, n_units: int) -> np.ndarray:
    """Check a user-supplied weight matrix and return it as a float array."""
    W = np.array(W, dtype=np.float64)
    if W.shape != (n_units, n_units - 1):
        raise GSCConfigError(
            f"weight_init must have shape ({n_units}, {n_units - 1}); got {W.shape}."
        )
    if not np.isfinite(W).all():
        raise GSCConfigError("weight_init contains non-finite values.")
    row_sums = W.sum(axis=1)
    if np.max(np.abs(row_sums - 1.0)) > _ROW_SUM_TOL:
        raise GSCConfigError("Every row of weight_init must sum to one.")
    return W


def validate_b_init(b_init: Any, n_regressors: int) -> np.ndarray:
    b = np.array(b_init, dtype=np.float64).reshape(-1)
    if b.shape != (n_regressors,):
        raise GSCConfigError(
            f"b_init must have {n_regressors} entries (treatments then covariates); got {b.size}."
        )
    if not np.isfinite(b).all():
        raise GSCConfigError("b_init contains non-finite values.")
    return b


def twoway_fe(panel: PanelData) -> np.ndarray:
    """
    Two-way fixed-effects regression of the outcome on all regressors.

    The balanced panel is within-transformed (unit and period means removed,
    grand mean added back) and fitted by OLS with statsmodels.

    Returns
    -------
    np.ndarray
        Coefficients of shape (k,), treatments first.
    """
    def within(a: np.ndarray) -> np.ndarray:
        return a - a.mean(axis=1, keepdims=True) - a.mean(axis=0, keepdims=True) + a.mean(axis=(0, 1), keepdims=True)

    y = within(panel.outcome_matrix).reshape(-1)
    X = np.stack(
        [within(panel.regressor_array[:, :, m]).reshape(-1) for m in range(panel.n_regressors)],
        axis=1,
    )
    return np.asarray(sm.OLS(y, X).fit().params, dtype=np.float64)


def update_weights(panel: PanelData, b: np.ndarray, nonneg: bool = False):
    """Weight step: re-solve every leave-one-out row at coefficients ``b``.

    Returns
    -------
    W : np.ndarray
        New weight matrix of shape (N, N-1).
    excluded : Dict[int, np.ndarray]
        Row index -> unit positions excluded from that row's basis.
    """
    residuals = panel.residuals(b)
    n_units = panel.n_units
    W = np.empty((n_units, n_units - 1))
    excluded = {}
    for i in range(n_units):
        W[i], dropped = weight_row_with_exclusion(residuals, i, nonneg=nonneg)
        if dropped.size:
            excluded[i] = donor_positions(n_units, i)[dropped]
    return W, excluded


def alternate(
    panel: PanelData,
    b_init: np.ndarray,
    W_init: np.ndarray,
    settings: AlternationSettings,
    unit_weights: Optional[np.ndarray] = None,
    label: str = "onestep",
) -> AlternationOutcome:
    """
    Block-coordinate descent between the coefficient and weight blocks.

    Each iteration runs a coefficient step (minimise ``J`` over ``b`` at
    fixed ``W``) followed by a weight step (minimise every unit's synthetic
    fit over its row of ``W`` at fixed ``b``). Iteration stops when the
    largest absolute change in ``b`` and ``W`` drops below ``settings.tol``
    or after ``settings.max_iter`` iterations.

    Parameters
    ----------
    panel : PanelData
        Validated panel.
    b_init : np.ndarray
        Starting coefficients, shape (k,).
    W_init : np.ndarray
        Starting weights, shape (N, N-1).
    settings : AlternationSettings
        Tolerances, restriction, optimizer and random generator.
    unit_weights : np.ndarray, optional
        Objective weights ``omega`` of shape (N,); ones by default.
    label : str
        Name used in warnings and progress output.

    Returns
    -------
    AlternationOutcome
        Last iterate, objective after every step, and status flags.

    Raises
    ------
    OptimizerDivergedError
        Only when ``settings.strict`` is set.
    SingularWeightSystemError
        If a weight row stays singular after excluding collinear donors.
    """
    n_units = panel.n_units
    omega = np.ones(n_units) if unit_weights is None else np.asarray(unit_weights, dtype=np.float64)

    state = EstimatorState.INITIALIZING
    b = np.array(b_init, dtype=np.float64)
    W = np.array(W_init, dtype=np.float64)
    objective_path = [SyntheticDesign(panel, W, omega).objective(b)]
    optimizer_converged = True
    n_excluded_rows = 0
    delta = np.inf
    iteration = 0

    while iteration < settings.max_iter:
        iteration += 1

        state = EstimatorState.COEFFICIENT_STEP
        design = SyntheticDesign(panel, W, omega)
        try:
            b_new = solve_coefficients(
                design, b, settings.restriction, settings.oracle, settings.rng
            ).minimizer
            optimizer_converged = True
        except OptimizerDivergedError as e:
            if settings.strict:
                raise
            warnings.warn(
                f"[{label}] iteration {iteration}: {e}. Continuing with the best-effort coefficients.",
                UserWarning,
            )
            b_new = np.asarray(e.minimizer, dtype=np.float64)
            optimizer_converged = False
        objective_path.append(design.objective(b_new))

        state = EstimatorState.WEIGHT_STEP
        W_new, excluded = update_weights(panel, b_new, nonneg=settings.nonneg)
        if excluded:
            n_excluded_rows += len(excluded)
            units = sorted({str(panel.units[j]) for dropped in excluded.values() for j in dropped})
            warnings.warn(
                f"[{label}] iteration {iteration}: collinear units {', '.join(units)} excluded "
                f"from {len(excluded)} weight row(s) for this iteration.",
                UserWarning,
            )
        objective_path.append(SyntheticDesign(panel, W_new, omega).objective(b_new))

        delta = float(max(np.max(np.abs(b_new - b)), np.max(np.abs(W_new - W))))
        b, W = b_new, W_new

        if settings.verbose:
            print(f"[{label}] iter: {iteration}, J: {objective_path[-1]:.8g}, delta: {delta:.3e}")

        if delta < settings.tol:
            state = EstimatorState.CONVERGED
            break
    else:
        state = EstimatorState.MAX_ITER_EXCEEDED
        warnings.warn(
            f"[{label}] maximum number of iterations ({settings.max_iter}) reached "
            f"without convergence (last change {delta:.3e}); returning the last iterate.",
            UserWarning,
        )

    return AlternationOutcome(
        b=b,
        W=W,
        unit_weights=omega,
        state=state,
        iterations=iteration,
        delta=delta,
        objective_path=objective_path,
        optimizer_converged=optimizer_converged,
        n_excluded_rows=n_excluded_rows,
    )


def unit_error_variances(panel: PanelData, outcome: AlternationOutcome) -> np.ndarray:
    """Mean squared synthetic residual of every unit at an alternation's solution."""
    u = SyntheticDesign(panel, outcome.W).unit_residuals(outcome.b)
    return np.mean(u ** 2, axis=1)


def inverse_variance_weights(variances: np.ndarray) -> np.ndarray:
    """Objective weights proportional to ``1 / variance``, normalised to mean one."""
    variances = np.asarray(variances, dtype=np.float64)
    floor = _VARIANCE_FLOOR * max(float(np.mean(variances)), np.finfo(np.float64).tiny)
    inv = 1.0 / np.maximum(variances, floor)
    return inv / inv.mean()


def honest_unit_variances(panel: PanelData, b: np.ndarray, nonneg: bool = False):
    """
    Cross-validated error variance of every unit from leave-two-out weights.

    For unit ``i`` and each held-out donor ``h``, the weights of ``i`` are
    refitted on the remaining N-2 donors and the mean squared residual is
    recorded; the variance of ``i`` is the mean over ``h``. Held-out donors
    whose reduced pool is singular are skipped.

    Returns
    -------
    variances : np.ndarray
        Shape (N,).
    weights : np.ndarray
        Leave-two-out rows, shape (N, N-1, N-2): entry ``[i, k]`` holds the
        row of unit ``i`` with its ``k``-th donor held out (NaN if skipped).
    """
    residuals = panel.residuals(b)
    n_units = panel.n_units
    variances = np.empty(n_units)
    weights = np.full((n_units, n_units - 1, n_units - 2), np.nan)
    for i in range(n_units):
        errors = []
        for k, h in enumerate(donor_positions(n_units, i)):
            try:
                row = leave_two_out_weights(residuals, i, h, nonneg=nonneg)
            except SingularWeightSystemError:
                continue
            pool = donor_positions(n_units, i, h)
            weights[i, k] = row
            errors.append(np.mean((residuals[i] - residuals[pool].T @ row) ** 2))
        if not errors:
            raise SingularWeightSystemError(
                f"No leave-two-out donor pool of unit {panel.units[i]} is of full rank."
            )
        variances[i] = np.mean(errors)
    return variances, weights


def precision_weighted_mean(
    coefficients: np.ndarray, design: SyntheticDesign, variances: np.ndarray
) -> np.ndarray:
    """Aggregate per-unit coefficients with precisions ``X~_i'X~_i / sigma_i^2``."""
    precisions = np.einsum("itk,itl->ikl", design.X_tilde, design.X_tilde) / variances[:, None, None]
    total = precisions.sum(axis=0)
    weighted = np.einsum("ikl,il->k", precisions, coefficients)
    return np.linalg.solve(total, weighted)


# --- Method handlers ---

def _fit_onestep(panel, b_init, W_init, settings) -> EstimationOutcome:
    run = alternate(panel, b_init, W_init, settings, label=Method.ONESTEP.value)
    return EstimationOutcome(
        method=Method.ONESTEP,
        b=run.b,
        W=run.W,
        unit_weights=run.unit_weights,
        converged=run.converged,
        iterations=run.iterations,
        final=run,
        stages={"onestep": run},
    )


def _fit_twostep_aggte(panel, b_init, W_init, settings) -> EstimationOutcome:
    first = alternate(panel, b_init, W_init, settings, label="twostep.aggte/first")
    variances = unit_error_variances(panel, first)
    omega = inverse_variance_weights(variances)
    second = alternate(
        panel, first.b, first.W, settings, unit_weights=omega, label="twostep.aggte/second"
    )
    return EstimationOutcome(
        method=Method.TWOSTEP_AGGTE,
        b=second.b,
        W=second.W,
        unit_weights=omega,
        converged=first.converged and second.converged,
        iterations=first.iterations + second.iterations,
        final=second,
        stages={"first": first, "second": second},
        unit_variances=variances,
    )


def _fit_twostep_indiv(panel, b_init, W_init, settings) -> EstimationOutcome:
    first = alternate(panel, b_init, W_init, settings, label="twostep.indiv/first")
    design = SyntheticDesign(panel, first.W)
    B = unit_coefficients(design)
    variances, lto = honest_unit_variances(panel, first.b, nonneg=settings.nonneg)
    b_agg = precision_weighted_mean(B, design, variances)
    omega = inverse_variance_weights(variances)
    second = alternate(
        panel, b_agg, first.W, settings, unit_weights=omega, label="twostep.indiv/second"
    )
    return EstimationOutcome(
        method=Method.TWOSTEP_INDIV,
        b=second.b,
        W=second.W,
        unit_weights=omega,
        converged=first.converged and second.converged,
        iterations=first.iterations + second.iterations,
        final=second,
        stages={"first": first, "second": second},
        unit_coefficients=B,
        unit_variances=variances,
        leave_two_out=lto,
    )


_METHOD_HANDLERS: Dict[Method, Callable[..., EstimationOutcome]] = {
    Method.ONESTEP: _fit_onestep,
    Method.TWOSTEP_AGGTE: _fit_twostep_aggte,
    Method.TWOSTEP_INDIV: _fit_twostep_indiv,
}


def run_estimator(
    panel: PanelData,
    method: Method,
    b_init: Optional[np.ndarray],
    W_init: Optional[np.ndarray],
    settings: AlternationSettings,
) -> EstimationOutcome:
    """Validate starting values and dispatch to the handler of ``method``."""
    method = Method(method)
    b0 = twoway_fe(panel) if b_init is None else validate_b_init(b_init, panel.n_regressors)
    W0 = uniform_weights(panel.n_units) if W_init is None else validate_weight_init(W_init, panel.n_units)
    return _METHOD_HANDLERS[method](panel, b0, W0, settings)
