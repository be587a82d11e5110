import warnings
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence, Union

import numpy as np
import pandas as pd

from ..config_models import GSCResults, WaldTestConfig
from ..exceptions import GSCConfigError, GSCError, GSCEstimationError, GSCPlottingError
from ..utils.datautils import PanelData
from ..utils.inferutils import wald_bootstrap
from ..utils.resultutils import plot_bootstrap_distribution, wald_summary


@dataclass(frozen=True)
class WaldTestResult:
    """
    Outcome of the bootstrap Wald test of a single restriction.

    Attributes
    ----------
    statistic : float
        Wald statistic, squared gradient statistic over its bootstrap variance.
    p_value : float
        Share of bootstrap replicate statistics at least as large as ``statistic``.
    gradient_statistic : float
        Directional derivative of the objective at the restricted solution.
    bootstrap_variance : float
        Variance of the replicate gradient statistics.
    bootstrap_distribution : np.ndarray
        Replicate Wald statistics.
    bootstrap_gradients : np.ndarray
        Replicate gradient statistics.
    n_boot : int
        Number of replicates.
    restriction_value : float
        ``g(b)`` at the restricted solution.
    unrestricted_restriction_value : float, optional
        ``g(b)`` at the unrestricted solution, when one was supplied.
    """
    statistic: float
    p_value: float
    gradient_statistic: float
    bootstrap_variance: float
    bootstrap_distribution: np.ndarray
    bootstrap_gradients: np.ndarray
    n_boot: int
    restriction_value: float
    unrestricted_restriction_value: Optional[float] = None

    def summary(self) -> pd.DataFrame:
        return wald_summary(self)

    def plot(self, save: Union[bool, str, Dict[str, Any]] = False) -> None:
        plot_bootstrap_distribution(
            self.bootstrap_distribution, self.statistic, p_value=self.p_value, save_plot_config=save
        )


class GSCWaldTest:
    """
    Bootstrap Wald test of an equality restriction on GSC coefficients.

    The restricted fit must come from :class:`GSC` with ``restriction_fn`` and
    ``restriction_grad``. The test measures how strongly the restriction
    binds (the derivative of the objective along the restriction direction
    at the restricted solution) and compares it with its sign-flip bootstrap
    distribution under the null, holding the restricted weights fixed.

    Only a single scalar restriction is supported; several restrictions can
    be combined into one equation (for example a sum of squares).

    Parameters
    ----------
    config : WaldTestConfig or dict
        See :class:`gscsynth.config_models.WaldTestConfig`.
    """

    def __init__(self, config: WaldTestConfig) -> None:
        if isinstance(config, dict):
            config = WaldTestConfig(**config)
        self.config = config
        self.restricted: GSCResults = config.restricted_result
        self.unrestricted: Optional[GSCResults] = config.unrestricted_result
        self.display_graphs: bool = config.display_graphs
        self.save = config.save

    def fit(self) -> WaldTestResult:
        """
        Run the test.

        Raises
        ------
        MalformedPanelError
            If the panel is malformed.
        GSCConfigError
            If the panel does not match the restricted fit or the restriction
            is not scalar.
        DegenerateBootstrapError
            If the bootstrap variance is zero or non-finite.
        """
        config = self.config
        panel = PanelData.from_frame(
            config.df, config.unitid, config.time, config.outcome, config.treatments, config.covariates
        )
        restricted = self.restricted
        if [str(u) for u in panel.units] != [str(u) for u in restricted.weights.units]:
            raise GSCConfigError("Panel units do not match the units of the restricted fit.")
        if panel.n_regressors != restricted.b.shape[0]:
            raise GSCConfigError(
                f"Panel has {panel.n_regressors} regressors but the restricted fit has {restricted.b.shape[0]}."
            )

        restriction = restricted.restriction
        try:
            raw = wald_bootstrap(
                panel,
                restricted.b,
                restricted.W,
                restriction,
                n_boot=config.n_boot,
                unit_weights=restricted.unit_weights,
                random_state=config.random_state,
                n_jobs=config.n_jobs,
            )
        except GSCError:
            raise
        except Exception as e:
            raise GSCEstimationError(f"Unexpected error during Wald test: {type(e).__name__}: {e}") from e

        result = WaldTestResult(
            statistic=raw["statistic"],
            p_value=raw["p_value"],
            gradient_statistic=raw["gradient_statistic"],
            bootstrap_variance=raw["bootstrap_variance"],
            bootstrap_distribution=raw["bootstrap_distribution"],
            bootstrap_gradients=raw["bootstrap_gradients"],
            n_boot=config.n_boot,
            restriction_value=restriction.value(restricted.b),
            unrestricted_restriction_value=(
                restriction.value(self.unrestricted.b) if self.unrestricted is not None else None
            ),
        )
        for array in (result.bootstrap_distribution, result.bootstrap_gradients):
            array.setflags(write=False)

        if self.display_graphs:
            try:
                result.plot(save=self.save)
            except GSCPlottingError as e:
                warnings.warn(f"Plotting failed: {str(e)}", UserWarning)

        return result


def wald_test(
    data: pd.DataFrame,
    dependent_var: str,
    independent_vars: Sequence[str],
    restricted_result: GSCResults,
    n_boot: int = 999,
    random_state: Any = None,
    n_jobs: int = 1,
    unrestricted_result: Optional[GSCResults] = None,
    **kwargs: Any,
) -> WaldTestResult:
    """
    Functional entry point to the bootstrap Wald test.

    Unit, time and covariate columns default to those the restricted fit
    was estimated with; pass ``unitid``, ``time`` or ``covariates`` to
    override them.
    """
    if isinstance(independent_vars, str):
        independent_vars = [independent_vars]
    if not isinstance(restricted_result, GSCResults):
        raise GSCConfigError("restricted_result must be a GSCResults instance.")
    panel_spec = restricted_result.method_details.panel_spec
    kwargs.setdefault("unitid", panel_spec.get("unitid", "unit"))
    kwargs.setdefault("time", panel_spec.get("time", "time"))
    kwargs.setdefault("covariates", list(panel_spec.get("covariates", [])))
    config = WaldTestConfig(
        df=data,
        outcome=dependent_var,
        treatments=list(independent_vars),
        restricted_result=restricted_result,
        unrestricted_result=unrestricted_result,
        n_boot=n_boot,
        random_state=random_state,
        n_jobs=n_jobs,
        **kwargs,
    )
    return GSCWaldTest(config).fit()
