import os
from typing import Any, Dict, List, Optional, Union

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from matplotlib import rc_context

from gscsynth.exceptions import GSCPlottingError
from gscsynth.config_models import (
    CoefficientResults,
    FitDiagnosticsResults,
    GSCResults,
    MethodDetailsResults,
    WeightsResults,
)
from gscsynth.utils.datautils import PanelData
from gscsynth.utils.optutils import SyntheticDesign

# Shared plot theme.
PLOT_THEME = {
    "figure.facecolor": "white",
    "figure.figsize": (11, 5),
    "figure.dpi": 100,
    "figure.titlesize": 16,
    "figure.titleweight": "bold",
    "lines.linewidth": 1.2,
    "patch.facecolor": "#0072B2",
    "xtick.direction": "out",
    "ytick.direction": "out",
    "font.size": 14,
    "font.family": "sans-serif",
    "font.sans-serif": ["DejaVu Sans"],
    "axes.grid": True,
    "axes.facecolor": "white",
    "axes.linewidth": 0.1,
    "axes.titlesize": "large",
    "axes.titleweight": "bold",
    "axes.labelsize": "medium",
    "axes.labelweight": "bold",
    "axes.spines.top": False,
    "axes.spines.right": False,
    "axes.spines.left": False,
    "axes.spines.bottom": False,
    "axes.titlepad": 25,
    "axes.labelpad": 20,
    "grid.alpha": 0.1,
    "grid.linewidth": 0.5,
    "grid.color": "#000000",
    "legend.framealpha": 0.5,
    "legend.fancybox": True,
    "legend.borderpad": 0.5,
    "legend.loc": "best",
    "legend.fontsize": "small",
}


def _save_or_show(save_plot_config: Union[bool, str, Dict[str, Any]], default_filename: str) -> None:
    """Save the current figure and/or show it, following the ``save`` option.

    ``save_plot_config`` may be ``False`` (show only), ``True`` (save under
    ``default_filename`` in the working directory), a string (base filename),
    or a dict with optional ``filename``, ``extension``, ``directory`` and
    ``display`` keys.
    """
    if save_plot_config:
        if isinstance(save_plot_config, dict):
            filename = save_plot_config.get("filename", default_filename)
            extension = save_plot_config.get("extension", "png")
            directory = save_plot_config.get("directory", os.getcwd())
        elif isinstance(save_plot_config, str):
            filename, extension, directory = save_plot_config, "png", os.getcwd()
        else:
            filename, extension, directory = default_filename, "png", os.getcwd()

        os.makedirs(directory, exist_ok=True)
        filepath = os.path.join(directory, f"{filename}.{extension}")
        try:
            plt.savefig(filepath)
            print(f"Plot saved to: {filepath}")
        except OSError as e:
            raise GSCPlottingError(f"Failed to save plot to {filepath}. Original error: {e}") from e

    if not save_plot_config or (isinstance(save_plot_config, dict) and save_plot_config.get("display", True)):
        plt.show()

    plt.close()


def plot_bootstrap_distribution(
    bootstrap_distribution: np.ndarray,
    observed_statistic: float,
    p_value: Optional[float] = None,
    title: str = "Bootstrap distribution of the Wald statistic",
    bins: Union[int, str] = "auto",
    save_plot_config: Union[bool, str, Dict[str, Any]] = False,
) -> None:
    """
    Histogram of bootstrap replicate statistics with the observed statistic marked.

    Parameters
    ----------
    bootstrap_distribution : np.ndarray
        Replicate statistics.
    observed_statistic : float
        Observed statistic, drawn as a vertical line.
    p_value : float, optional
        Shown in the legend when given.
    title : str
        Plot title.
    bins : int or str, default "auto"
        Passed to ``plt.hist``.
    save_plot_config : bool, str or dict, default False
        See :func:`_save_or_show`.

    Raises
    ------
    GSCPlottingError
        If the distribution is empty or non-finite, or saving fails.
    """
    replicates = np.asarray(bootstrap_distribution, dtype=np.float64)
    if replicates.size == 0 or not np.all(np.isfinite(replicates)):
        raise GSCPlottingError("Bootstrap distribution must be a non-empty array of finite values.")
    if not np.isfinite(observed_statistic):
        raise GSCPlottingError("Observed statistic must be finite.")

    with rc_context(rc=PLOT_THEME):
        plt.hist(replicates, bins=bins, color="#0072B2", alpha=0.6, label="Bootstrap replicates")
        label = f"Observed = {observed_statistic:.3f}"
        if p_value is not None:
            label += f" (p = {p_value:.3f})"
        plt.axvline(observed_statistic, color="red", linestyle="--", linewidth=1.5, label=label)
        plt.xlabel("Statistic")
        plt.ylabel("Frequency")
        plt.title(title)
        plt.legend()
        plt.grid(True, linestyle="--", alpha=0.5)
        _save_or_show(save_plot_config, "wald_bootstrap")


def plot_unit_fit(
    rmse_by_unit: Dict[str, float],
    estimation_method_name: str = "GSC",
    bins: Union[int, str] = "auto",
    save_plot_config: Union[bool, str, Dict[str, Any]] = False,
) -> None:
    """Histogram of per-unit synthetic-fit RMSE."""
    values = np.asarray(list(rmse_by_unit.values()), dtype=np.float64)
    if values.size == 0 or not np.all(np.isfinite(values)):
        raise GSCPlottingError("rmse_by_unit must hold finite values.")

    with rc_context(rc=PLOT_THEME):
        plt.hist(values, bins=bins, color="#0072B2", alpha=0.6, label="Units")
        plt.axvline(float(np.mean(values)), color="black", linestyle="--", linewidth=1.5,
                    label=f"Mean RMSE = {np.mean(values):.3f}")
        plt.xlabel("RMSE of synthetic fit")
        plt.ylabel("Number of units")
        plt.title(f"{estimation_method_name}: synthetic fit by unit")
        plt.legend()
        plt.grid(True, linestyle="--", alpha=0.5)
        _save_or_show(save_plot_config, f"{estimation_method_name}_unit_fit")


def estimator_summary(result: GSCResults) -> pd.DataFrame:
    """Coefficient table of a GSC fit; fit context is stored in ``attrs``."""
    estimates = result.coefficients.estimates
    treatments = set(result.coefficients.treatment_effects)
    table = pd.DataFrame(
        {
            "coefficient": list(estimates.values()),
            "role": ["treatment" if name in treatments else "covariate" for name in estimates],
        },
        index=pd.Index(list(estimates.keys()), name="regressor"),
    )
    table.attrs.update({
        "method": result.method_details.method_name,
        "converged": result.converged,
        "iterations": result.iterations,
        "objective": result.fit_diagnostics.objective,
        "n_units": len(result.weights.units),
        "restriction_value": result.restriction_value,
    })
    return table


def wald_summary(result: Any) -> pd.DataFrame:
    """One-row table of a Wald test result."""
    table = pd.DataFrame(
        {
            "statistic": [result.statistic],
            "p_value": [result.p_value],
            "gradient_statistic": [result.gradient_statistic],
            "bootstrap_variance": [result.bootstrap_variance],
            "n_boot": [result.n_boot],
        },
        index=pd.Index(["g(b) = 0"], name="restriction"),
    )
    table.attrs.update({
        "restriction_value": result.restriction_value,
        "unrestricted_restriction_value": result.unrestricted_restriction_value,
    })
    return table


def _build_gsc_results(
    panel: PanelData,
    outcome: Any,
    restriction: Any = None,
    parameters_used: Optional[Dict[str, Any]] = None,
    panel_spec: Optional[Dict[str, Any]] = None,
    captured_warnings: Optional[List[str]] = None,
) -> GSCResults:
    """Assemble :class:`GSCResults` from an estimation outcome."""
    names = panel.regressor_names
    unit_labels = [str(u) for u in panel.units]
    b = np.asarray(outcome.b, dtype=np.float64)
    W = np.asarray(outcome.W, dtype=np.float64)

    design = SyntheticDesign(panel, W, outcome.unit_weights)
    u = design.unit_residuals(b)
    rmse = np.sqrt(np.mean(u ** 2, axis=1))

    unit_estimates = None
    if outcome.unit_coefficients is not None:
        unit_estimates = pd.DataFrame(outcome.unit_coefficients, index=pd.Index(unit_labels, name="unit"), columns=names)

    unit_variances = None
    if outcome.unit_variances is not None:
        unit_variances = dict(zip(unit_labels, map(float, outcome.unit_variances)))

    final = outcome.final
    additional = {}
    if outcome.leave_two_out is not None:
        additional["leave_two_out_weights"] = outcome.leave_two_out
    if outcome.unit_coefficients is not None:
        additional["unit_coefficients"] = outcome.unit_coefficients

    return GSCResults(
        b=b,
        W=W,
        converged=bool(outcome.converged),
        iterations=int(outcome.iterations),
        coefficients=CoefficientResults(
            estimates=dict(zip(names, map(float, b))),
            treatment_effects=dict(zip(panel.treatment_names, map(float, b[: panel.n_treatments]))),
            unit_estimates=unit_estimates,
        ),
        weights=WeightsResults(
            matrix=W,
            units=list(panel.units),
            unit_objective_weights=dict(zip(unit_labels, map(float, outcome.unit_weights))),
        ),
        fit_diagnostics=FitDiagnosticsResults(
            objective=design.objective(b),
            rmse_by_unit=dict(zip(unit_labels, map(float, rmse))),
            objective_path=[float(v) for v in final.objective_path],
            delta=float(final.delta),
            state=final.state.value,
            optimizer_converged=bool(final.optimizer_converged),
            excluded_weight_rows=int(sum(stage.n_excluded_rows for stage in outcome.stages.values())),
            stage_iterations={name: int(stage.iterations) for name, stage in outcome.stages.items()},
            unit_variances=unit_variances,
        ),
        method_details=MethodDetailsResults(
            method_name=outcome.method.value,
            parameters_used=parameters_used or {},
            panel_spec=panel_spec or {},
        ),
        restriction=restriction,
        restriction_value=restriction.value(b) if restriction is not None else None,
        additional_outputs=additional or None,
        execution_summary={"warnings": list(captured_warnings or [])},
    )
