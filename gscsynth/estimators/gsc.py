import warnings
from typing import Any, Callable, Dict, Optional, Sequence, Union

import numpy as np
import pandas as pd

from ..config_models import GSCConfig, GSCResults
from ..exceptions import (
    GSCConfigError,
    GSCEstimationError,
    GSCError,
    GSCPlottingError,
)
from ..utils.datautils import PanelData
from ..utils.estutils import AlternationSettings, Method, run_estimator
from ..utils.optutils import Restriction, ScipyOptimizer
from ..utils.resultutils import _build_gsc_results, plot_unit_fit


class GSC:
    """
    Generalized Synthetic Control (GSC) estimator for continuous treatments.

    Every unit gets its own synthetic counterfactual, a weighted combination
    of all other units with weights summing to one. The treatment
    coefficients ``b`` and the weight matrix ``W`` jointly minimise

    .. math::

        J(b, W) = \\frac{1}{2NT} \\sum_i \\omega_i \\sum_t
        \\Big[ Y_{it} - b' D_{it} - \\sum_{j \\neq i} w_{ij} (Y_{jt} - b' D_{jt}) \\Big]^2

    by alternating between a coefficient step (nonlinear optimizer at fixed
    ``W``) and a weight step (closed-form sum-to-one least squares per unit
    at fixed ``b``). This absorbs unobserved, spatially correlated
    time-varying factors that two-way fixed effects leave in the error.

    Methods
    -------
    - ``onestep``: a single alternation with equal unit weights.
    - ``twostep.aggte``: re-runs the alternation with units weighted by the
      inverse of their onestep error variance.
    - ``twostep.indiv``: estimates a coefficient vector per unit, aggregates
      them with precision weights based on cross-validated (leave-two-out)
      error variances, and re-runs the alternation from that aggregate.

    An equality restriction ``g(b) = 0`` may be supplied through
    ``restriction_fn`` and ``restriction_grad``; the reported ``b`` then
    satisfies ``|g(b)| < 1e-6``. Restricted fits feed :class:`GSCWaldTest`.

    Parameters
    ----------
    config : GSCConfig or dict
        See :class:`gscsynth.config_models.GSCConfig`.

    References
    ----------
    Powell, David. 2022. "Synthetic Control Estimation Beyond Comparative
    Case Studies: Does the Minimum Wage Reduce Employment?" Journal of
    Business & Economic Statistics 40 (3): 1302-1314.

    Examples
    --------
    >>> from gscsynth import GSC
    >>> from gscsynth.utils.simutils import simulate_panel
    >>> df = simulate_panel(n_units=10, n_periods=40, random_state=0)
    >>> res = GSC({"df": df, "outcome": "y", "treatments": ["d1", "d2"],
    ...            "unitid": "unit", "time": "time", "b_init": [0.0, 0.0]}).fit()  # doctest: +SKIP
    >>> res.coefficients.treatment_effects  # doctest: +SKIP
    """

    def __init__(self, config: GSCConfig) -> None:
        if isinstance(config, dict):
            config = GSCConfig(**config)
        self.config = config
        self.df: pd.DataFrame = config.df
        self.outcome: str = config.outcome
        self.treatments = list(config.treatments)
        self.covariates = list(config.covariates)
        self.unitid: str = config.unitid
        self.time: str = config.time
        self.method = Method(config.method)
        self.display_graphs: bool = config.display_graphs
        self.save: Union[bool, str, Dict[str, Any]] = config.save
        self.verbose: bool = config.verbose

        self.restriction: Optional[Restriction] = None
        if config.restriction_fn is not None:
            self.restriction = Restriction(fn=config.restriction_fn, grad=config.restriction_grad)

    def _settings(self) -> AlternationSettings:
        return AlternationSettings(
            tol=self.config.tol,
            max_iter=self.config.max_iter,
            nonneg=self.config.nonneg,
            strict=self.config.strict,
            verbose=self.verbose,
            restriction=self.restriction,
            oracle=self.config.optimizer if self.config.optimizer is not None else ScipyOptimizer(),
            rng=np.random.default_rng(self.config.random_state),
        )

    def fit(self) -> GSCResults:
        """
        Fit the GSC estimator.

        Returns
        -------
        GSCResults
            Coefficients ``b``, weights ``W``, ``converged`` and
            ``iterations``, with named estimates and diagnostics.

        Raises
        ------
        MalformedPanelError
            If the panel violates the data contract.
        GSCConfigError
            On invalid starting values or restrictions.
        OptimizerDivergedError
            If the optimizer fails and ``strict`` is set.
        SingularWeightSystemError
            If a weight row stays singular after excluding collinear units.
        GSCEstimationError
            For any other failure during estimation.
        """
        panel = PanelData.from_frame(
            self.df, self.unitid, self.time, self.outcome, self.treatments, self.covariates
        )

        try:
            with warnings.catch_warnings(record=True) as caught:
                warnings.simplefilter("always")
                outcome = run_estimator(
                    panel, self.method, self.config.b_init, self.config.weight_init, self._settings()
                )
        except GSCError:
            raise
        except Exception as e:
            raise GSCEstimationError(f"Unexpected error during GSC fit: {type(e).__name__}: {e}") from e

        for record in caught:
            warnings.warn(str(record.message), record.category)

        results = _build_gsc_results(
            panel,
            outcome,
            restriction=self.restriction,
            parameters_used={
                "tol": self.config.tol,
                "max_iter": self.config.max_iter,
                "nonneg": self.config.nonneg,
                "strict": self.config.strict,
                "restricted": self.restriction is not None,
            },
            panel_spec={
                "outcome": self.outcome,
                "treatments": self.treatments,
                "covariates": self.covariates,
                "unitid": self.unitid,
                "time": self.time,
            },
            captured_warnings=[str(record.message) for record in caught],
        )

        if self.display_graphs:
            try:
                plot_unit_fit(
                    results.fit_diagnostics.rmse_by_unit,
                    estimation_method_name=f"GSC ({self.method.value})",
                    save_plot_config=self.save,
                )
            except GSCPlottingError as e:
                warnings.warn(f"Plotting failed: {str(e)}", UserWarning)

        return results


def estimate(
    data: pd.DataFrame,
    dependent_var: str,
    independent_vars: Sequence[str],
    b_init: Optional[Sequence[float]] = None,
    method: str = "onestep",
    weight_init: Optional[np.ndarray] = None,
    restriction_fn: Optional[Callable[[np.ndarray], float]] = None,
    restriction_grad: Optional[Callable[[np.ndarray], np.ndarray]] = None,
    tolerance: float = 1e-6,
    max_iter: int = 1000,
    unitid: str = "unit",
    time: str = "time",
    covariates: Sequence[str] = (),
    **kwargs: Any,
) -> GSCResults:
    """
    Functional entry point to the GSC estimator.

    ``independent_vars`` are the treatment columns; observed covariates go
    in ``covariates`` and are appended to ``b`` after the treatments, so
    ``b_init`` must cover both. Remaining keyword arguments are passed to
    :class:`GSCConfig` (e.g. ``nonneg``, ``strict``, ``random_state``,
    ``optimizer``, ``verbose``).
    """
    if isinstance(independent_vars, str):
        independent_vars = [independent_vars]
    if method not in {m.value for m in Method}:
        raise GSCConfigError(
            f"method must be one of {sorted(m.value for m in Method)}; got '{method}'"
        )
    config = GSCConfig(
        df=data,
        outcome=dependent_var,
        treatments=list(independent_vars),
        covariates=list(covariates),
        unitid=unitid,
        time=time,
        b_init=b_init,
        method=method,
        weight_init=weight_init,
        restriction_fn=restriction_fn,
        restriction_grad=restriction_grad,
        tol=tolerance,
        max_iter=max_iter,
        **kwargs,
    )
    return GSC(config).fit()
