from unittest.mock import patch

import numpy as np
import pandas as pd
import pytest

from gscsynth import GSC, GSCConfig, GSCResults, estimate
from gscsynth.exceptions import GSCConfigError, MalformedPanelError, OptimizerDivergedError
from gscsynth.utils.datautils import PanelData
from gscsynth.utils.estutils import twoway_fe
from gscsynth.utils.optutils import OptimizerOutcome
from gscsynth.utils.simutils import simulate_panel


class NeverConverges:
    def minimize(self, objective_fn, gradient_fn, initial_point,
                 equality_constraint_fn=None, equality_constraint_grad=None):
        return OptimizerOutcome(minimizer=np.asarray(initial_point, dtype=float), converged=False, message="stub")


def base_config(df, **kwargs) -> dict:
    config = {"df": df, "outcome": "y", "treatments": ["d1", "d2"], "unitid": "unit", "time": "time"}
    config.update(kwargs)
    return config


# ======================
# Construction
# ======================

def test_gsc_creation(small_panel_df):
    estimator = GSC(GSCConfig(**base_config(small_panel_df)))
    assert isinstance(estimator, GSC)
    assert estimator.restriction is None


def test_gsc_accepts_dict(small_panel_df):
    estimator = GSC(base_config(small_panel_df, method="twostep.aggte"))
    assert estimator.method.value == "twostep.aggte"


# ======================
# Fitting
# ======================

@pytest.mark.parametrize("method", ["onestep", "twostep.aggte", "twostep.indiv"])
def test_fit_smoke(small_panel_df, method):
    res = estimate(small_panel_df, "y", ["d1", "d2"], method=method)
    assert isinstance(res, GSCResults)
    N = small_panel_df["unit"].nunique()
    assert res.b.shape == (2,)
    assert res.W.shape == (N, N - 1)
    assert np.max(np.abs(res.W.sum(axis=1) - 1.0)) < 1e-8
    assert res.converged
    assert res.iterations >= 1
    assert res.method_details.method_name == method
    assert set(res.coefficients.treatment_effects) == {"d1", "d2"}


def test_converged_solution_is_fixed_point(small_panel_df):
    first = estimate(small_panel_df, "y", ["d1", "d2"])
    assert first.converged
    second = estimate(small_panel_df, "y", ["d1", "d2"], b_init=first.b, weight_init=first.W)
    assert second.converged
    assert second.iterations == 1
    np.testing.assert_allclose(second.b, first.b, atol=1e-6)


def test_objective_path_monotone(small_panel_df):
    res = estimate(small_panel_df, "y", ["d1", "d2"], b_init=[0.0, 0.0])
    path = np.asarray(res.fit_diagnostics.objective_path)
    assert np.all(np.diff(path) <= 1e-10 * max(1.0, path[0]))


def test_recovers_coefficients_without_confounding():
    df = simulate_panel(n_units=10, n_periods=60, b=(1.0, 2.0), loading_scale=0.0,
                        noise_scale=1e-3, random_state=8)
    res = estimate(df, "y", ["d1", "d2"])
    assert res.converged
    np.testing.assert_allclose(res.b, [1.0, 2.0], atol=1e-3)


def test_beats_two_way_fixed_effects(e2e_panel_df):
    """N=15, T=50, two treatments loading on the outcome's factors."""
    truth = np.array([1.0, 2.0])
    panel = PanelData.from_frame(e2e_panel_df, "unit", "time", "y", ["d1", "d2"])
    twfe_error = np.linalg.norm(twoway_fe(panel) - truth)

    onestep = estimate(e2e_panel_df, "y", ["d1", "d2"], method="onestep")
    indiv = estimate(e2e_panel_df, "y", ["d1", "d2"], method="twostep.indiv")

    for res in (onestep, indiv):
        assert res.converged
        assert np.all(np.isfinite(res.b))
        assert np.linalg.norm(res.b - truth) < twfe_error

    assert indiv.coefficients.unit_estimates.shape == (15, 2)
    assert set(indiv.fit_diagnostics.stage_iterations) == {"first", "second"}
    assert indiv.additional_outputs["leave_two_out_weights"].shape == (15, 14, 13)


def test_individual_weighting_beats_onestep_under_heteroskedasticity():
    truth = np.array([1.0, 2.0])
    onestep_sse = indiv_sse = 0.0
    for seed in range(2024, 2032):
        df = simulate_panel(n_units=15, n_periods=50, b=truth, noise_dispersion=1.0, random_state=seed)
        onestep = estimate(df, "y", ["d1", "d2"], method="onestep")
        indiv = estimate(df, "y", ["d1", "d2"], method="twostep.indiv")
        onestep_sse += np.sum((onestep.b - truth) ** 2)
        indiv_sse += np.sum((indiv.b - truth) ** 2)
    assert indiv_sse < onestep_sse


def test_covariates_follow_treatments():
    df = simulate_panel(n_units=8, n_periods=30, b=(1.0,), covariate_coefs=(0.5,), random_state=5)
    res = estimate(df, "y", ["d1"], covariates=["x1"], b_init=[0.0, 0.0])
    assert list(res.coefficients.estimates) == ["d1", "x1"]
    assert list(res.coefficients.treatment_effects) == ["d1"]
    summary = res.summary()
    assert list(summary["role"]) == ["treatment", "covariate"]


def test_nonneg_weights(small_panel_df):
    res = estimate(small_panel_df, "y", ["d1", "d2"], nonneg=True, max_iter=200)
    assert np.all(res.W >= 0.0)
    assert np.max(np.abs(res.W.sum(axis=1) - 1.0)) < 1e-8


def test_weights_lookup(small_panel_df):
    res = estimate(small_panel_df, "y", ["d1", "d2"])
    donors = res.weights.donor_weights(1)
    assert "1" not in donors
    assert abs(sum(donors.values()) - 1.0) < 1e-8


# ======================
# Restrictions
# ======================

def test_linear_restriction_holds(small_panel_df):
    res = estimate(
        small_panel_df, "y", ["d1", "d2"],
        restriction_fn=lambda b: b[0] - b[1] + 1.0,
        restriction_grad=lambda b: np.array([1.0, -1.0]),
    )
    assert abs(res.b[0] - res.b[1] + 1.0) < 1e-6
    assert abs(res.restriction_value) < 1e-6


def test_nonlinear_restriction_holds(small_panel_df):
    res = estimate(
        small_panel_df, "y", ["d1", "d2"],
        b_init=[1.0, 2.0],
        restriction_fn=lambda b: b[0] * b[1] - 2.0,
        restriction_grad=lambda b: np.array([b[1], b[0]]),
    )
    assert abs(res.b[0] * res.b[1] - 2.0) < 1e-6


def test_vector_restriction_rejected(small_panel_df):
    with pytest.raises(GSCConfigError, match="scalar"):
        estimate(
            small_panel_df, "y", ["d1", "d2"],
            restriction_fn=lambda b: b - 1.0,
            restriction_grad=lambda b: np.eye(2),
        )


def test_restriction_needs_gradient(small_panel_df):
    with pytest.raises(GSCConfigError, match="together"):
        estimate(small_panel_df, "y", ["d1", "d2"], restriction_fn=lambda b: b[0])


# ======================
# Failure modes
# ======================

def test_unknown_method(small_panel_df):
    with pytest.raises(GSCConfigError, match="method must be one of"):
        estimate(small_panel_df, "y", ["d1", "d2"], method="threestep")


def test_wrong_b_init_length(small_panel_df):
    with pytest.raises(GSCConfigError, match="b_init"):
        estimate(small_panel_df, "y", ["d1", "d2"], b_init=[1.0])


def test_weight_init_rows_must_sum_to_one(small_panel_df):
    N = small_panel_df["unit"].nunique()
    with pytest.raises(GSCConfigError, match="sum to one"):
        estimate(small_panel_df, "y", ["d1", "d2"], weight_init=np.full((N, N - 1), 0.5))


def test_unbalanced_panel(small_panel_df):
    with pytest.raises(MalformedPanelError, match="not strongly balanced"):
        estimate(small_panel_df.iloc[1:], "y", ["d1", "d2"])


def test_max_iter_reached(small_panel_df):
    with pytest.warns(UserWarning, match="maximum number of iterations"):
        res = estimate(small_panel_df, "y", ["d1", "d2"], max_iter=1)
    assert not res.converged
    assert res.iterations == 1
    assert res.fit_diagnostics.state == "max_iter_exceeded"
    assert any("maximum number" in w for w in res.execution_summary["warnings"])


def test_strict_optimizer_failure(small_panel_df):
    with pytest.raises(OptimizerDivergedError):
        estimate(small_panel_df, "y", ["d1", "d2"], optimizer=NeverConverges(), strict=True)


def test_lenient_optimizer_failure(small_panel_df):
    with pytest.warns(UserWarning, match="best-effort"):
        res = estimate(small_panel_df, "y", ["d1", "d2"], optimizer=NeverConverges(), max_iter=3)
    assert not res.converged
    assert not res.fit_diagnostics.optimizer_converged


def test_optimizer_without_minimize(small_panel_df):
    with pytest.raises(GSCConfigError, match="minimize"):
        GSC(base_config(small_panel_df, optimizer=object()))


# ======================
# Output helpers
# ======================

def test_summary_frame(small_panel_df):
    res = estimate(small_panel_df, "y", ["d1", "d2"])
    summary = res.summary()
    assert isinstance(summary, pd.DataFrame)
    assert list(summary.index) == ["d1", "d2"]
    assert summary.attrs["converged"] is True


def test_display_graphs_calls_show(small_panel_df):
    with patch("matplotlib.pyplot.show") as mock_show:
        GSC(base_config(small_panel_df, display_graphs=True)).fit()
    mock_show.assert_called_once()


def test_save_plot_to_directory(small_panel_df, tmp_path):
    save = {"filename": "fit", "extension": "png", "directory": str(tmp_path), "display": False}
    with patch("matplotlib.pyplot.show") as mock_show:
        GSC(base_config(small_panel_df, display_graphs=True, save=save)).fit()
    mock_show.assert_not_called()
    assert (tmp_path / "fit.png").exists()
