from typing import Any, Sequence

import numpy as np
import pandas as pd

from gscsynth.exceptions import GSCConfigError


def simulate_panel(
    n_units: int = 15,
    n_periods: int = 50,
    b: Sequence[float] = (1.0, 2.0),
    n_factors: int = 2,
    loading_scale: float = 1.0,
    treatment_loading: float = 1.0,
    noise_scale: float = 1.0,
    noise_dispersion: float = 0.0,
    covariate_coefs: Sequence[float] = (),
    random_state: Any = None,
) -> pd.DataFrame:
    """
    Simulate a long-format panel from an interactive fixed-effects factor model.

    .. math::

        Y_{it} = b' D_{it} + c' X_{it} + \\alpha_i + \\delta_t
                 + \\lambda_i' F_t + \\varepsilon_{it}

        D_{itm} = \\gamma \\, \\lambda_i' F_t + a_{im} + \\nu_{itm}

    Factors ``F_t`` and loadings ``lambda_i`` are standard normal, the
    latter scaled by ``loading_scale``. Because the treatments load on the
    same factors as the outcome, two-way fixed effects are biased whenever
    ``loading_scale`` and ``treatment_loading`` are non-zero. With
    ``loading_scale=0`` there is no omitted confounding.

    Parameters
    ----------
    n_units, n_periods : int
        Panel dimensions N and T.
    b : Sequence[float]
        True treatment coefficients; their number sets M.
    n_factors : int
        Number of latent factors.
    loading_scale : float
        Standard deviation of the factor loadings.
    treatment_loading : float
        Loading ``gamma`` of every treatment on the common component.
    noise_scale : float
        Standard deviation of the outcome noise.
    noise_dispersion : float
        Spread of the noise level across units: unit ``i`` has noise standard
        deviation ``noise_scale * exp(noise_dispersion * z_i)`` with ``z_i``
        standard normal. Zero gives homoskedastic noise.
    covariate_coefs : Sequence[float]
        Coefficients of independent standard normal covariates.
    random_state : int or np.random.Generator, optional
        Seed or generator; no global random state is used.

    Returns
    -------
    pd.DataFrame
        Columns ``unit``, ``time``, ``y``, ``d1..dM`` and ``x1..xR``. The true
        coefficients are stored in ``df.attrs["b"]`` (and covariate
        coefficients in ``df.attrs["c"]``).
    """
    b = np.asarray(b, dtype=np.float64).reshape(-1)
    c = np.asarray(covariate_coefs, dtype=np.float64).reshape(-1)
    if n_units < 3 or n_periods < 2:
        raise GSCConfigError("Need at least 3 units and 2 periods.")
    if b.size == 0:
        raise GSCConfigError("At least one treatment coefficient is required.")

    rng = np.random.default_rng(random_state)
    n_treat, n_cov = b.size, c.size

    factors = rng.standard_normal((n_periods, n_factors))
    loadings = loading_scale * rng.standard_normal((n_units, n_factors))
    common = loadings @ factors.T

    unit_effects = rng.standard_normal(n_units)
    time_effects = rng.standard_normal(n_periods)

    D = (
        treatment_loading * common[:, :, None]
        + rng.standard_normal((n_units, 1, n_treat))
        + rng.standard_normal((n_units, n_periods, n_treat))
    )
    X = rng.standard_normal((n_units, n_periods, n_cov))

    noise = noise_scale * rng.standard_normal((n_units, n_periods))
    if noise_dispersion:
        noise *= np.exp(noise_dispersion * rng.standard_normal(n_units))[:, None]

    y = (
        D @ b
        + (X @ c if n_cov else 0.0)
        + unit_effects[:, None]
        + time_effects[None, :]
        + common
        + noise
    )

    df = pd.DataFrame({
        "unit": np.repeat(np.arange(1, n_units + 1), n_periods),
        "time": np.tile(np.arange(1, n_periods + 1), n_units),
        "y": y.reshape(-1),
    })
    for m in range(n_treat):
        df[f"d{m + 1}"] = D[:, :, m].reshape(-1)
    for r in range(n_cov):
        df[f"x{r + 1}"] = X[:, :, r].reshape(-1)
    df.attrs["b"] = b.tolist()
    df.attrs["c"] = c.tolist()
    return df
