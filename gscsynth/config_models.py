from typing import Any, Callable, Dict, List, Literal, Optional, Union
import pandas as pd
import numpy as np
from pydantic import BaseModel, Field, model_validator
from gscsynth.exceptions import GSCConfigError, MalformedPanelError


class BaseEstimatorConfig(BaseModel):
    """
    Base Pydantic model for estimator configurations.
    Includes the panel layout shared by the estimator and the Wald test.
    """
    df: pd.DataFrame = Field(..., description="Input panel data in long format (one row per unit and period).")
    outcome: str = Field(..., description="Name of the outcome variable column in the DataFrame.")
    treatments: List[str] = Field(..., description="Names of the continuous treatment columns.")
    covariates: List[str] = Field(default_factory=list, description="Names of observed covariate columns, entered after the treatments.")
    unitid: str = Field(..., description="Name of the unit identifier column in the DataFrame.")
    time: str = Field(..., description="Name of the time period column in the DataFrame.")
    display_graphs: bool = Field(default=False, description="Whether to display plots of results.")
    save: Union[bool, str, Dict[str, Any]] = Field(default=False, description="Configuration for saving plots. If False (default), plots are not saved. If True, plots are saved with default names. If a string, it's used as the base filename for saved plots. A dict may set 'filename', 'extension', 'directory' and 'display'.")
    verbose: bool = Field(default=False, description="Print progress of the iterations.")

    class Config:
        arbitrary_types_allowed = True
        extra = 'forbid'

    @model_validator(mode='before')
    @classmethod
    def coerce_column_lists(cls, values: Any) -> Any:
        if isinstance(values, dict):
            values = dict(values)
            for key in ("treatments", "covariates"):
                if isinstance(values.get(key), str):
                    values[key] = [values[key]]
                elif values.get(key) is not None and not isinstance(values.get(key), list):
                    values[key] = list(values[key])
        return values

    @model_validator(mode='after')
    def check_df_and_columns(self) -> "BaseEstimatorConfig":
        df = self.df
        if df.empty:
            raise MalformedPanelError("Input DataFrame 'df' cannot be empty.")
        if not self.treatments:
            raise GSCConfigError("At least one treatment column must be given.")

        required_columns = {self.outcome, self.unitid, self.time, *self.treatments, *self.covariates}
        missing_columns = required_columns - set(df.columns)
        if missing_columns:
            raise MalformedPanelError(
                f"Missing required columns in DataFrame 'df': {', '.join(sorted(missing_columns))}"
            )
        return self


class GSCConfig(BaseEstimatorConfig):
    """Configuration for the Generalized Synthetic Control (GSC) estimator."""
    b_init: Optional[Any] = Field(default=None, description="Starting coefficients (treatments then covariates). Defaults to the two-way fixed-effects estimate.")
    method: Literal["onestep", "twostep.aggte", "twostep.indiv"] = Field(default="onestep", description="Estimator variant.")
    weight_init: Optional[Any] = Field(default=None, description="Starting (N, N-1) weight matrix with rows summing to one. Defaults to uniform weights.")
    restriction_fn: Optional[Callable[..., Any]] = Field(default=None, description="Equality restriction g(b) returning a scalar.")
    restriction_grad: Optional[Callable[..., Any]] = Field(default=None, description="Analytic gradient g'(b) of the restriction.")
    tol: float = Field(default=1e-6, gt=0, description="Convergence tolerance on the largest change in b and W.")
    max_iter: int = Field(default=1000, ge=1, description="Maximum number of alternating iterations.")
    nonneg: bool = Field(default=False, description="Restrict synthetic control weights to be nonnegative.")
    strict: bool = Field(default=False, description="Raise OptimizerDivergedError instead of warning when the optimizer fails.")
    random_state: Optional[Any] = Field(default=None, description="Seed or numpy Generator used for optimizer restarts.")
    optimizer: Optional[Any] = Field(default=None, description="Optimizer oracle with a `minimize` method. Defaults to the scipy-backed oracle.")

    @model_validator(mode='after')
    def check_restriction_pair(self) -> "GSCConfig":
        if (self.restriction_fn is None) != (self.restriction_grad is None):
            raise GSCConfigError("restriction_fn and restriction_grad must be supplied together.")
        if self.optimizer is not None and not callable(getattr(self.optimizer, "minimize", None)):
            raise GSCConfigError("optimizer must provide a `minimize` method.")
        return self


class WaldTestConfig(BaseEstimatorConfig):
    """Configuration for the bootstrap Wald test of a restricted GSC fit."""
    restricted_result: Any = Field(..., description="GSCResults of a restricted fit.")
    unrestricted_result: Optional[Any] = Field(default=None, description="Optional GSCResults of the unrestricted fit, reported for context.")
    n_boot: int = Field(default=999, ge=2, description="Number of sign-flip bootstrap replicates.")
    n_jobs: int = Field(default=1, ge=1, description="Worker threads for the bootstrap replicates.")
    random_state: Optional[Any] = Field(default=None, description="Seed or numpy Generator for the sign draws.")

    @model_validator(mode='after')
    def check_restricted_result(self) -> "WaldTestConfig":
        result = self.restricted_result
        if not isinstance(result, GSCResults):
            raise GSCConfigError("restricted_result must be a GSCResults instance.")
        if result.restriction is None:
            raise GSCConfigError("restricted_result was fitted without a restriction.")
        return self


# --- Pydantic Models for Standardized Estimator Results ---

class CoefficientResults(BaseModel):
    """Point estimates keyed by regressor name."""
    estimates: Dict[str, float] = Field(..., description="Coefficient by regressor name, treatments first.")
    treatment_effects: Dict[str, float] = Field(..., description="Coefficients of the treatment columns only.")
    unit_estimates: Optional[pd.DataFrame] = Field(default=None, description="Per-unit first-stage coefficients (twostep.indiv).")

    class Config:
        arbitrary_types_allowed = True


class WeightsResults(BaseModel):
    """Synthetic control weights."""
    matrix: np.ndarray = Field(..., description="Weight matrix of shape (N, N-1); row i excludes unit i.")
    units: List[Any] = Field(..., description="Unit identifiers in row order.")
    unit_objective_weights: Optional[Dict[str, float]] = Field(default=None, description="Objective weight of each unit (ones for onestep).")

    class Config:
        arbitrary_types_allowed = True

    def donor_weights(self, unit: Any) -> Dict[str, float]:
        """Weights that ``unit`` places on every other unit."""
        i = self.units.index(unit)
        donors = [u for k, u in enumerate(self.units) if k != i]
        return {str(u): float(w) for u, w in zip(donors, self.matrix[i])}


class FitDiagnosticsResults(BaseModel):
    """Goodness-of-fit and iteration diagnostics."""
    objective: float = Field(..., description="Objective J(b, W) at the solution.")
    rmse_by_unit: Dict[str, float] = Field(..., description="Root mean squared synthetic residual of every unit.")
    objective_path: List[float] = Field(default_factory=list, description="Objective after initialisation and after every step of the final alternation.")
    delta: Optional[float] = Field(default=None, description="Largest change in b and W at the last iteration.")
    state: Optional[str] = Field(default=None, description="Terminal state of the final alternation.")
    optimizer_converged: bool = Field(default=True, description="Whether the last coefficient step converged.")
    excluded_weight_rows: int = Field(default=0, description="Weight rows re-solved after excluding collinear units.")
    stage_iterations: Dict[str, int] = Field(default_factory=dict, description="Iterations used by each alternation.")
    unit_variances: Optional[Dict[str, float]] = Field(default=None, description="Per-unit error variances used for re-weighting (two-step methods).")


class MethodDetailsResults(BaseModel):
    """Details about the estimator variant."""
    method_name: str
    parameters_used: Dict[str, Any] = Field(default_factory=dict)
    panel_spec: Dict[str, Any] = Field(default_factory=dict, description="Columns used to build the panel.")


class GSCResults(BaseModel):
    """
    Result of a GSC fit.

    ``b``, ``W``, ``converged`` and ``iterations`` are the primary outputs;
    the nested models carry named estimates and diagnostics.
    """
    b: np.ndarray
    W: np.ndarray
    converged: bool
    iterations: int
    coefficients: CoefficientResults
    weights: WeightsResults
    fit_diagnostics: FitDiagnosticsResults
    method_details: MethodDetailsResults
    restriction: Optional[Any] = Field(default=None, exclude=True, description="Restriction enforced during estimation.")
    restriction_value: Optional[float] = Field(default=None, description="g(b) at the reported solution.")
    additional_outputs: Optional[Dict[str, Any]] = Field(default=None, description="Estimator internals, e.g. leave-two-out weights.")
    execution_summary: Optional[Dict[str, Any]] = Field(default=None, description="Warnings captured during fitting.")

    class Config:
        arbitrary_types_allowed = True
        extra = 'forbid'

    @property
    def unit_weights(self) -> np.ndarray:
        objective = self.weights.unit_objective_weights
        if objective is None:
            return np.ones(len(self.weights.units))
        return np.array([objective[str(u)] for u in self.weights.units])

    def summary(self) -> pd.DataFrame:
        """Coefficient table with the fit context attached as ``DataFrame.attrs``."""
        from gscsynth.utils.resultutils import estimator_summary
        return estimator_summary(self)

    def plot(self, save: Union[bool, str, Dict[str, Any]] = False) -> None:
        """Histogram of the per-unit synthetic-fit RMSE."""
        from gscsynth.utils.resultutils import plot_unit_fit
        plot_unit_fit(
            self.fit_diagnostics.rmse_by_unit,
            estimation_method_name=self.method_details.method_name,
            save_plot_config=save,
        )
