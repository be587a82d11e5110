import numpy as np
import pytest

from gscsynth.exceptions import GSCConfigError, OptimizerDivergedError
from gscsynth.utils.datautils import PanelData
from gscsynth.utils.estutils import (
    AlternationSettings,
    EstimatorState,
    Method,
    alternate,
    honest_unit_variances,
    inverse_variance_weights,
    precision_weighted_mean,
    run_estimator,
    twoway_fe,
    uniform_weights,
    update_weights,
    validate_b_init,
    validate_weight_init,
)
from gscsynth.utils.optutils import OptimizerOutcome, SyntheticDesign
from gscsynth.utils.simutils import simulate_panel

from conftest import identical_units_df


class NeverConverges:
    def minimize(self, objective_fn, gradient_fn, initial_point,
                 equality_constraint_fn=None, equality_constraint_grad=None):
        return OptimizerOutcome(minimizer=np.asarray(initial_point, dtype=float), converged=False, message="stub")


def settings(**kwargs):
    kwargs.setdefault("rng", np.random.default_rng(0))
    return AlternationSettings(**kwargs)


# ======================
# Starting values
# ======================

def test_uniform_weights():
    W = uniform_weights(5)
    assert W.shape == (5, 4)
    np.testing.assert_allclose(W.sum(axis=1), 1.0)


@pytest.mark.parametrize("W, match", [
    (np.full((4, 4), 0.25), "shape"),
    (np.full((4, 3), 0.3), "sum to one"),
    (np.full((4, 3), np.nan), "non-finite"),
])
def test_validate_weight_init_rejects(W, match):
    with pytest.raises(GSCConfigError, match=match):
        validate_weight_init(W, 4)


def test_validate_weight_init_accepts_negative_entries():
    W = np.tile([1.5, -0.25, -0.25], (4, 1))
    np.testing.assert_allclose(validate_weight_init(W, 4), W)


@pytest.mark.parametrize("b", [[1.0], [1.0, 2.0, 3.0], [np.inf, 1.0]])
def test_validate_b_init_rejects(b):
    with pytest.raises(GSCConfigError):
        validate_b_init(b, 2)


def test_method_values():
    assert Method("twostep.indiv") is Method.TWOSTEP_INDIV
    with pytest.raises(ValueError):
        Method("threestep")


# ======================
# Two-way fixed effects
# ======================

def test_twoway_fe_without_confounding():
    df = simulate_panel(n_units=10, n_periods=40, loading_scale=0.0, noise_scale=0.1, random_state=4)
    panel = PanelData.from_frame(df, "unit", "time", "y", ["d1", "d2"])
    np.testing.assert_allclose(twoway_fe(panel), [1.0, 2.0], atol=0.05)


# ======================
# Alternation
# ======================

def test_update_weights_rows_sum_to_one(small_panel):
    W, excluded = update_weights(small_panel, np.array([1.0, 2.0]))
    assert W.shape == (small_panel.n_units, small_panel.n_units - 1)
    np.testing.assert_allclose(W.sum(axis=1), 1.0, atol=1e-10)
    assert excluded == {}


def test_alternation_objective_never_increases(small_panel):
    out = alternate(small_panel, np.zeros(2), uniform_weights(small_panel.n_units), settings())
    path = np.asarray(out.objective_path)
    assert len(path) == 2 * out.iterations + 1
    assert np.all(np.diff(path) <= 1e-10 * max(1.0, path[0]))


def test_alternation_converges(small_panel):
    out = alternate(small_panel, np.zeros(2), uniform_weights(small_panel.n_units), settings())
    assert out.state is EstimatorState.CONVERGED
    assert out.converged
    assert out.delta < 1e-6
    np.testing.assert_allclose(out.W.sum(axis=1), 1.0, atol=1e-8)


def test_alternation_max_iter_warning(small_panel):
    with pytest.warns(UserWarning, match="maximum number of iterations"):
        out = alternate(small_panel, np.zeros(2), uniform_weights(small_panel.n_units), settings(max_iter=1))
    assert out.state is EstimatorState.MAX_ITER_EXCEEDED
    assert out.iterations == 1
    assert not out.converged


def test_optimizer_failure_warns_when_not_strict(small_panel):
    with pytest.warns(UserWarning, match="best-effort"):
        out = alternate(
            small_panel, np.zeros(2), uniform_weights(small_panel.n_units),
            settings(oracle=NeverConverges(), max_iter=3),
        )
    assert not out.optimizer_converged
    assert not out.converged


def test_optimizer_failure_raises_when_strict(small_panel):
    with pytest.raises(OptimizerDivergedError):
        alternate(
            small_panel, np.zeros(2), uniform_weights(small_panel.n_units),
            settings(oracle=NeverConverges(), strict=True),
        )


def test_verbose_prints_progress(small_panel, capsys):
    alternate(small_panel, np.zeros(2), uniform_weights(small_panel.n_units), settings(verbose=True, max_iter=50))
    assert "iter: 1" in capsys.readouterr().out


def test_identical_units_are_excluded_with_warning():
    panel = PanelData.from_frame(identical_units_df(), "unit", "time", "y", ["d1"])
    with pytest.warns(UserWarning, match="collinear units"):
        out = alternate(panel, np.zeros(1), uniform_weights(panel.n_units), settings(max_iter=5))
    assert out.n_excluded_rows > 0
    assert np.all(np.isfinite(out.b))
    np.testing.assert_allclose(out.W.sum(axis=1), 1.0, atol=1e-8)


def test_objective_never_increases_with_collinear_units_excluded():
    panel = PanelData.from_frame(identical_units_df(), "unit", "time", "y", ["d1"])
    with pytest.warns(UserWarning, match="collinear units"):
        out = alternate(panel, np.zeros(1), uniform_weights(panel.n_units), settings(max_iter=5))
    path = np.asarray(out.objective_path)
    assert len(path) == 2 * out.iterations + 1
    assert np.all(np.diff(path) <= 1e-10 * max(1.0, path[0]))


# ======================
# Re-weighting
# ======================

def test_inverse_variance_weights():
    omega = inverse_variance_weights(np.array([1.0, 2.0, 4.0]))
    assert abs(omega.mean() - 1.0) < 1e-12
    np.testing.assert_allclose(omega[0] / omega[2], 4.0)


def test_inverse_variance_weights_floor_zero_variance():
    omega = inverse_variance_weights(np.array([0.0, 1.0, 1.0]))
    assert np.all(np.isfinite(omega))


def test_honest_unit_variances(small_panel):
    variances, lto = honest_unit_variances(small_panel, np.array([1.0, 2.0]))
    N = small_panel.n_units
    assert variances.shape == (N,)
    assert np.all(variances > 0)
    assert lto.shape == (N, N - 1, N - 2)
    np.testing.assert_allclose(lto.sum(axis=2), 1.0, atol=1e-8)


def test_honest_variances_exceed_in_sample_fit(small_panel):
    b = np.array([1.0, 2.0])
    W, _ = update_weights(small_panel, b)
    in_sample = np.mean(SyntheticDesign(small_panel, W).unit_residuals(b) ** 2, axis=1)
    honest, _ = honest_unit_variances(small_panel, b)
    assert np.all(honest >= in_sample - 1e-12)


def test_precision_weighted_mean_of_equal_rows(small_panel):
    design = SyntheticDesign(small_panel, uniform_weights(small_panel.n_units))
    B = np.tile([0.5, -1.5], (small_panel.n_units, 1))
    agg = precision_weighted_mean(B, design, np.linspace(0.5, 2.0, small_panel.n_units))
    np.testing.assert_allclose(agg, [0.5, -1.5])


# ======================
# Dispatch
# ======================

@pytest.mark.parametrize("method", list(Method))
def test_run_estimator_all_methods(small_panel, method):
    out = run_estimator(small_panel, method, None, None, settings())
    assert out.method is method
    assert out.W.shape == (small_panel.n_units, small_panel.n_units - 1)
    np.testing.assert_allclose(out.W.sum(axis=1), 1.0, atol=1e-8)
    assert np.all(np.isfinite(out.b))
    assert out.converged
    if method is Method.ONESTEP:
        np.testing.assert_allclose(out.unit_weights, 1.0)
    else:
        assert abs(out.unit_weights.mean() - 1.0) < 1e-10
        assert set(out.stages) == {"first", "second"}
    if method is Method.TWOSTEP_INDIV:
        assert out.unit_coefficients.shape == (small_panel.n_units, 2)
        assert out.leave_two_out.shape[1:] == (small_panel.n_units - 1, small_panel.n_units - 2)


@pytest.mark.parametrize("method", [Method.TWOSTEP_AGGTE, Method.TWOSTEP_INDIV])
def test_reweighted_stage_objective_never_increases(small_panel, method):
    out = run_estimator(small_panel, method, None, None, settings())
    second = out.stages["second"]
    assert not np.allclose(second.unit_weights, 1.0)
    path = np.asarray(second.objective_path)
    assert len(path) == 2 * second.iterations + 1
    assert np.all(np.diff(path) <= 1e-10 * max(1.0, path[0]))
