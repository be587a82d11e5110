import cvxpy as cp
import numpy as np
from typing import List, Optional


class OptHelpers:
    """
    Collection of helpers for the cvxpy weight subproblem.

    The loss and constraint helpers return cvxpy expressions or constraint
    lists; :meth:`solve_weight_problem` assembles and solves them for the
    nonnegative weight step (see ``weightutils.solve_simplex_weights``).
    """

    # =======================
    # Loss helpers
    # =======================

    @staticmethod
    def squared_loss(
        y: np.ndarray,
        X: np.ndarray,
        w: cp.Variable,
        scale: bool = True,
    ) -> cp.Expression:
        """
        Construct a squared-error loss term.

        Parameters
        ----------
        y : np.ndarray
            Target residual vector of shape (T,).
        X : np.ndarray
            Donor residual matrix of shape (T, J).
        w : cp.Variable
            Weight vector of shape (J,).
        scale : bool, default True
            If True, divide the loss by the number of observations T.

        Returns
        -------
        cp.Expression
            A cvxpy expression representing the (scaled) squared loss.
        """
        T = y.shape[0]
        loss = cp.sum_squares(y - X @ w)
        return loss / T if scale else loss

    # =======================
    # Constraint helpers
    # =======================

    @staticmethod
    def simplex_constraints(w: cp.Variable) -> List:
        """
        Construct simplex constraints.

        Parameters
        ----------
        w : cp.Variable
            Weight vector of shape (J,).

        Returns
        -------
        list
            Constraints enforcing w >= 0 and sum(w) == 1.
        """
        return [w >= 0, cp.sum(w) == 1]

    @staticmethod
    def get_solver_opts(tol_abs: float = 1e-10, tol_rel: float = 1e-10) -> dict:
        """Tolerance keywords for the CLARABEL solver."""
        return {"tol_gap_abs": tol_abs, "tol_gap_rel": tol_rel, "tol_feas": tol_abs}

    @staticmethod
    def solve_weight_problem(y: np.ndarray, X: np.ndarray) -> Optional[np.ndarray]:
        """
        Minimise ``||y - X w||^2`` over the probability simplex with CLARABEL.

        Returns ``None`` when the solver does not reach an optimal status.
        """
        w = cp.Variable(X.shape[1])
        problem = cp.Problem(
            cp.Minimize(OptHelpers.squared_loss(y, X, w)),
            OptHelpers.simplex_constraints(w),
        )
        problem.solve(solver=cp.CLARABEL, **OptHelpers.get_solver_opts())
        if problem.status not in (cp.OPTIMAL, cp.OPTIMAL_INACCURATE) or w.value is None:
            return None
        return np.asarray(w.value, dtype=np.float64)
