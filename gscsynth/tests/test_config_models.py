import numpy as np
import pandas as pd
import pytest
from pydantic import ValidationError

from gscsynth.config_models import GSCConfig, WaldTestConfig
from gscsynth.exceptions import GSCConfigError, MalformedPanelError


@pytest.fixture
def base_kwargs(small_panel_df):
    return {"df": small_panel_df, "outcome": "y", "treatments": ["d1", "d2"], "unitid": "unit", "time": "time"}


def test_defaults(base_kwargs):
    config = GSCConfig(**base_kwargs)
    assert config.method == "onestep"
    assert config.tol == 1e-6
    assert config.max_iter == 1000
    assert config.covariates == []
    assert not config.nonneg


def test_treatment_string_is_coerced(base_kwargs):
    base_kwargs["treatments"] = "d1"
    assert GSCConfig(**base_kwargs).treatments == ["d1"]


def test_missing_column(base_kwargs):
    base_kwargs["treatments"] = ["d1", "dz"]
    with pytest.raises(MalformedPanelError, match="dz"):
        GSCConfig(**base_kwargs)


def test_empty_frame(base_kwargs):
    base_kwargs["df"] = pd.DataFrame()
    with pytest.raises(MalformedPanelError, match="empty"):
        GSCConfig(**base_kwargs)


def test_no_treatments(base_kwargs):
    base_kwargs["treatments"] = []
    with pytest.raises(GSCConfigError, match="treatment"):
        GSCConfig(**base_kwargs)


@pytest.mark.parametrize("field, value", [
    ("tol", 0.0),
    ("max_iter", 0),
    ("method", "threestep"),
    ("unknown_option", 1),
])
def test_invalid_fields(base_kwargs, field, value):
    base_kwargs[field] = value
    with pytest.raises(ValidationError):
        GSCConfig(**base_kwargs)


def test_restriction_pair(base_kwargs):
    base_kwargs["restriction_grad"] = lambda b: np.ones(2)
    with pytest.raises(GSCConfigError, match="together"):
        GSCConfig(**base_kwargs)


def test_wald_config_requires_results(base_kwargs):
    with pytest.raises(GSCConfigError, match="GSCResults"):
        WaldTestConfig(**base_kwargs, restricted_result={"b": [1.0, 2.0]})


@pytest.mark.parametrize("n_boot", [0, 1])
def test_wald_config_needs_two_replicates(base_kwargs, n_boot):
    with pytest.raises(ValidationError, match="n_boot"):
        WaldTestConfig(**base_kwargs, restricted_result=None, n_boot=n_boot)
