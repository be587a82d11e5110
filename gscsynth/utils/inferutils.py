from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Optional, Tuple

import numpy as np

from gscsynth.exceptions import DegenerateBootstrapError
from gscsynth.utils.datautils import PanelData
from gscsynth.utils.optutils import Restriction, SyntheticDesign

# Floor on deconvolved error variances, relative to the mean squared residual.
_VARIANCE_FLOOR = 1e-12


def restriction_direction(design: SyntheticDesign, b: np.ndarray, restriction: Restriction) -> np.ndarray:
    """
    Unit-length restriction normal in the curvature metric of ``J``.

    Returns ``a = H^{-1} g'(b) / ||H^{-1} g'(b)||`` where ``H`` is the Hessian
    of ``J`` in ``b`` at the current weights. Along ``a`` the gradient of
    ``J`` is unaffected (to first order) by moving ``b`` within the
    restriction surface.

    Raises
    ------
    DegenerateBootstrapError
        If the restriction gradient vanishes at ``b``.
    """
    normal = restriction.gradient(b)
    if not np.all(np.isfinite(normal)) or not np.any(normal):
        raise DegenerateBootstrapError("Restriction gradient is zero or non-finite at the restricted solution.")
    direction = np.linalg.lstsq(design.hessian(), normal, rcond=None)[0]
    norm = np.linalg.norm(direction)
    if norm == 0.0 or not np.isfinite(norm):
        raise DegenerateBootstrapError("Restriction direction is degenerate in the curvature metric.")
    return direction / norm


def source_loadings(design: SyntheticDesign, direction: np.ndarray) -> np.ndarray:
    """Exposure of the statistic to each unit's own residual series.

    With ``c_i = omega_i X~_i a`` the directional derivative is
    ``-(1/NT) sum_i c_i' u_i`` and, since ``u = (I - W) e``, equally
    ``-(1/NT) sum_j d_j' e_j`` with ``d = (I - W)' c``. Row ``j`` of ``d``
    collects every appearance of unit ``j``: as a target and as a donor in
    the synthetic controls of the other units.

    Returns
    -------
    np.ndarray
        ``d`` of shape (N, T).
    """
    c = design.unit_weights[:, None] * (design.X_tilde @ direction)
    return c - design.weight_matrix.T @ c


def idiosyncratic_variances(design: SyntheticDesign, u: np.ndarray) -> np.ndarray:
    """Per-unit error variances recovered from the synthetic residuals.

    A synthetic residual mixes the unit's own error with its donors' errors,
    ``u_i = eps_i - sum_k w_ik eps_k``, so with errors independent across
    units ``E[u_i^2] = sigma_i^2 + sum_k w_ik^2 sigma_k^2``. The linear system
    ``(I + W o W) sigma^2 = mean_t u^2`` is solved for ``sigma^2`` and floored
    at a small positive value.
    """
    mean_sq = np.mean(u ** 2, axis=1)
    mixing = np.eye(design.n_units) + design.weight_matrix ** 2
    variances = np.linalg.lstsq(mixing, mean_sq, rcond=None)[0]
    floor = _VARIANCE_FLOOR * max(float(mean_sq.mean()), np.finfo(np.float64).tiny)
    return np.maximum(variances, floor)


def gradient_statistic(design: SyntheticDesign, b: np.ndarray, direction: np.ndarray) -> Tuple[float, np.ndarray]:
    """Directional derivative of ``J`` along ``direction`` and its per-unit parts.

    The statistic is split by source unit (see :func:`source_loadings`) so
    that the parts are independent across units when the idiosyncratic
    errors are. Each part is ``kappa_j u_j' d_j``, where the synthetic
    residual ``u_j`` is rescaled by ``kappa_j = sigma_j / rms(u_j)`` to the
    size of unit ``j``'s own error (see :func:`idiosyncratic_variances`).

    Returns
    -------
    statistic : float
        ``direction' grad J(b)``.
    unit_terms : np.ndarray
        Per-unit parts of shape (N,); the bootstrap flips their signs.
    """
    u = design.unit_residuals(b)
    scale = 1.0 / (design.n_units * design.n_periods)
    statistic = -scale * float(np.sum(design.score_contributions(u) @ direction))

    loadings = source_loadings(design, direction)
    mean_sq = np.mean(u ** 2, axis=1)
    variances = idiosyncratic_variances(design, u)
    kappa = np.zeros(design.n_units)
    fitted = mean_sq > 0.0
    kappa[fitted] = np.sqrt(variances[fitted] / mean_sq[fitted])
    unit_terms = kappa * np.sum(u * loadings, axis=1)
    return statistic, unit_terms


def _replicate_chunk(signs: np.ndarray, unit_terms: np.ndarray, scale: float) -> np.ndarray:
    return -scale * (signs @ unit_terms)


def sign_flip_bootstrap(
    unit_terms: np.ndarray,
    n_periods: int,
    n_boot: int,
    rng: np.random.Generator,
    n_jobs: int = 1,
) -> np.ndarray:
    """
    Symmetric (Rademacher) wild bootstrap of the gradient statistic.

    Every replicate multiplies the rescaled own-error series of each unit
    by an independent random sign, which keeps the within-unit time
    dependence and leaves the weights and coefficients untouched. The parts
    are split by source unit, so a unit that is flipped is flipped
    everywhere it enters the statistic, as a target and as a donor. The
    signs are drawn up front, so the replicates are identical for any
    ``n_jobs``.

    Parameters
    ----------
    unit_terms : np.ndarray
        Per-unit contributions from :func:`gradient_statistic`, shape (N,).
    n_periods : int
        Number of periods T.
    n_boot : int
        Number of replicates.
    rng : np.random.Generator
        Source of the sign draws.
    n_jobs : int, default 1
        Worker threads; replicates are split into contiguous chunks.

    Returns
    -------
    np.ndarray
        Replicate statistics, shape (n_boot,).
    """
    n_units = unit_terms.shape[0]
    scale = 1.0 / (n_units * n_periods)
    signs = rng.choice(np.array([-1.0, 1.0]), size=(n_boot, n_units))

    if n_jobs <= 1:
        return _replicate_chunk(signs, unit_terms, scale)

    chunks = np.array_split(signs, min(n_jobs, n_boot))
    with ThreadPoolExecutor(max_workers=n_jobs) as executor:
        parts = list(executor.map(lambda chunk: _replicate_chunk(chunk, unit_terms, scale), chunks))
    return np.concatenate(parts)


def wald_bootstrap(
    panel: PanelData,
    b_restricted: np.ndarray,
    W_restricted: np.ndarray,
    restriction: Restriction,
    n_boot: int,
    unit_weights: Optional[np.ndarray] = None,
    random_state: Any = None,
    n_jobs: int = 1,
) -> Dict[str, Any]:
    """
    Bootstrap Wald test of ``g(b) = 0`` at a restricted solution.

    The observed statistic is the derivative of ``J`` along the restriction
    direction at ``(b_r, W_r)``. Under the null its expectation is zero; its
    variance is estimated from sign-flip replicates computed at the same
    fixed ``(b_r, W_r)``, so no replicate re-solves the restricted problem.

    Parameters
    ----------
    panel : PanelData
        Panel the restricted fit was computed on.
    b_restricted : np.ndarray
        Restricted coefficients, shape (k,).
    W_restricted : np.ndarray
        Restricted weights, shape (N, N-1).
    restriction : Restriction
        The tested restriction.
    n_boot : int
        Number of replicates (at least 2).
    unit_weights : np.ndarray, optional
        Objective weights of the restricted fit.
    random_state : int or np.random.Generator, optional
        Seed or generator for the sign draws.
    n_jobs : int, default 1
        Worker threads for the replicates.

    Returns
    -------
    dict
        Dictionary containing:
        - 'gradient_statistic': observed directional derivative
        - 'direction': restriction direction used
        - 'bootstrap_gradients': replicate directional derivatives
        - 'bootstrap_variance': variance of the replicates
        - 'statistic': Wald statistic
        - 'bootstrap_distribution': replicate Wald statistics
        - 'p_value': share of replicate statistics at least as large

    Raises
    ------
    DegenerateBootstrapError
        If ``n_boot < 2`` or the replicate variance is zero or non-finite.
    """
    if n_boot < 2:
        raise DegenerateBootstrapError(f"At least 2 bootstrap replicates are required; got {n_boot}.")

    rng = np.random.default_rng(random_state)
    b_restricted = np.asarray(b_restricted, dtype=np.float64)
    design = SyntheticDesign(panel, W_restricted, unit_weights)

    direction = restriction_direction(design, b_restricted, restriction)
    observed, unit_terms = gradient_statistic(design, b_restricted, direction)
    replicates = sign_flip_bootstrap(unit_terms, panel.n_periods, n_boot, rng, n_jobs=n_jobs)

    variance = float(np.var(replicates, ddof=1))
    if not np.isfinite(variance) or variance <= 0.0:
        raise DegenerateBootstrapError(
            f"Bootstrap variance of the gradient statistic is {variance!r}; "
            "increase n_boot or check that the restriction is identified."
        )

    statistic = observed ** 2 / variance
    distribution = replicates ** 2 / variance
    p_value = float(np.mean(distribution >= statistic))

    return {
        "gradient_statistic": observed,
        "direction": direction,
        "bootstrap_gradients": replicates,
        "bootstrap_variance": variance,
        "statistic": float(statistic),
        "bootstrap_distribution": distribution,
        "p_value": p_value,
    }
