import numpy as np
from scipy import linalg
from typing import Tuple

from gscsynth.exceptions import GSCEstimationError, SingularWeightSystemError
from gscsynth.utils.datautils import donor_positions
from gscsynth.utils.opthelpers import OptHelpers

# Relative singular value below which a donor Gram matrix is treated as singular.
_RANK_RTOL = np.finfo(np.float64).eps


def _rank_tolerance(donors: np.ndarray, leading: float) -> float:
    return leading * max(donors.shape) * _RANK_RTOL


def independent_donors(donors: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Split donor columns into a linearly independent set and the rest.

    Uses a column-pivoted QR decomposition; the pivot order keeps the
    columns that contribute most to the span first.

    Parameters
    ----------
    donors : np.ndarray
        Donor residual matrix of shape (T, J).

    Returns
    -------
    keep : np.ndarray
        Sorted positions of a maximal independent subset of columns.
    collinear : np.ndarray
        Sorted positions of the remaining columns.
    """
    if donors.shape[1] == 0:
        return np.array([], dtype=int), np.array([], dtype=int)
    _, R, piv = linalg.qr(donors, mode="economic", pivoting=True)
    diag = np.abs(np.diag(R))
    if diag.size == 0 or diag[0] == 0.0:
        return np.array([], dtype=int), np.sort(piv)
    rank = int(np.sum(diag > _rank_tolerance(donors, diag[0])))
    return np.sort(piv[:rank]), np.sort(piv[rank:])


def check_donor_rank(donors: np.ndarray) -> None:
    """Raise ``SingularWeightSystemError`` if ``donors' donors`` is singular to machine precision."""
    T, J = donors.shape
    singular_values = linalg.svdvals(donors)
    leading = singular_values[0] if singular_values.size else 0.0
    if J > T or leading == 0.0 or singular_values[-1] <= _rank_tolerance(donors, leading):
        _, collinear = independent_donors(donors)
        raise SingularWeightSystemError(
            f"Donor Gram matrix is singular ({J} donors, {T} periods, "
            f"{len(collinear)} collinear donor column(s)).",
            collinear_columns=collinear.tolist(),
        )


def solve_simplex_weights(target: np.ndarray, donors: np.ndarray, nonneg: bool = False) -> np.ndarray:
    """
    Solve the sum-to-one constrained least squares weight problem.

    .. math::

        \\min_{\\mathbf{w}} \\left\\| \\mathbf{e}_i - \\mathbf{E}_{-i} \\mathbf{w} \\right\\|_2^2
        \\quad \\text{s.t.} \\quad \\mathbf{1}^\\top \\mathbf{w} = 1

    Without ``nonneg`` the problem is solved in closed form from the
    Lagrangian normal equations ``G w = c + mu 1`` with ``G = E'E`` and
    ``c = E'e``. With ``nonneg`` the additional ``w >= 0`` constraint is
    imposed and the quadratic program is handed to cvxpy.

    Parameters
    ----------
    target : np.ndarray
        Residualised outcomes of the target unit, shape (T,).
    donors : np.ndarray
        Residualised outcomes of the donor units, shape (T, J).
    nonneg : bool, default False
        Restrict weights to the probability simplex.

    Returns
    -------
    np.ndarray
        Weight row of shape (J,) summing to one.

    Raises
    ------
    SingularWeightSystemError
        If ``donors' donors`` is singular to machine precision.
    GSCEstimationError
        If the nonnegative program fails to solve.
    """
    target = np.asarray(target, dtype=np.float64)
    donors = np.asarray(donors, dtype=np.float64)
    if donors.ndim != 2 or donors.shape[0] != target.shape[0]:
        raise GSCEstimationError(
            f"Donor matrix shape {donors.shape} does not match target length {target.shape[0]}."
        )
    J = donors.shape[1]
    if J == 0:
        raise GSCEstimationError("Weight problem has an empty donor pool.")
    if J == 1:
        return np.ones(1)

    check_donor_rank(donors)

    if nonneg:
        w = OptHelpers.solve_weight_problem(target, donors)
        if w is None:
            raise GSCEstimationError("Nonnegative simplex weight problem did not solve to optimality.")
        w = np.clip(w, 0.0, None)
        return w / w.sum()

    gram = donors.T @ donors
    try:
        factor = linalg.cho_factor(gram, check_finite=True)
    except linalg.LinAlgError as e:
        _, collinear = independent_donors(donors)
        raise SingularWeightSystemError(
            "Donor Gram matrix is not positive definite.",
            collinear_columns=collinear.tolist(),
        ) from e

    ones = np.ones(J)
    z_target = linalg.cho_solve(factor, donors.T @ target)
    z_ones = linalg.cho_solve(factor, ones)
    mu = (1.0 - z_target.sum()) / z_ones.sum()
    w = z_target + mu * z_ones
    # Remove rounding drift from the affine constraint.
    return w + (1.0 - w.sum()) / J


def leave_two_out_weights(
    residuals: np.ndarray, i: int, h: int, nonneg: bool = False
) -> np.ndarray:
    """Weights of unit ``i`` on the N-2 donors left after also holding out unit ``h``.

    Parameters
    ----------
    residuals : np.ndarray
        Residualised outcomes of all units, shape (N, T).
    i : int
        Target unit position.
    h : int
        Held-out donor position, ``h != i``.
    nonneg : bool, default False
        Restrict weights to the probability simplex.

    Returns
    -------
    np.ndarray
        Weight row of shape (N-2,), in unit-index order without ``i`` and ``h``.
    """
    if h == i:
        raise GSCEstimationError("Held-out unit must differ from the target unit.")
    pool = donor_positions(residuals.shape[0], i, h)
    return solve_simplex_weights(residuals[i], residuals[pool].T, nonneg=nonneg)


def weight_row_with_exclusion(
    residuals: np.ndarray, i: int, nonneg: bool = False
) -> Tuple[np.ndarray, np.ndarray]:
    """Leave-one-out weight row of unit ``i`` with collinear donors excluded.

    When the full donor pool is singular, the collinear donors are dropped
    from the basis (weight zero) and the problem is re-solved on the
    remaining independent donors.

    Returns
    -------
    row : np.ndarray
        Weight row of shape (N-1,) summing to one.
    excluded : np.ndarray
        Positions within the row (0..N-2) whose donors were excluded;
        empty when the full pool was usable.
    """
    pool = donor_positions(residuals.shape[0], i)
    donors = residuals[pool].T
    try:
        return solve_simplex_weights(residuals[i], donors, nonneg=nonneg), np.array([], dtype=int)
    except SingularWeightSystemError as e:
        excluded = np.asarray(e.collinear_columns, dtype=int)
        keep = np.setdiff1d(np.arange(donors.shape[1]), excluded)
        if keep.size == 0:
            raise
        row = np.zeros(donors.shape[1])
        row[keep] = solve_simplex_weights(residuals[i], donors[:, keep], nonneg=nonneg)
        return row, excluded
