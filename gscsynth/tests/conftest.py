# gscsynth/tests/conftest.py
import numpy as np
import pandas as pd
import pytest

from gscsynth.utils.datautils import PanelData
from gscsynth.utils.simutils import simulate_panel


@pytest.fixture
def small_panel_df() -> pd.DataFrame:
    """Eight units, thirty periods, two treatments with factor confounding."""
    return simulate_panel(n_units=8, n_periods=30, b=(1.0, 2.0), random_state=123)


@pytest.fixture
def small_panel(small_panel_df) -> PanelData:
    return PanelData.from_frame(small_panel_df, "unit", "time", "y", ["d1", "d2"])


@pytest.fixture
def e2e_panel_df() -> pd.DataFrame:
    """N=15, T=50, M=2 panel from the documented factor model, noise level varying by unit."""
    return simulate_panel(
        n_units=15, n_periods=50, b=(1.0, 2.0), n_factors=2, noise_dispersion=1.0, random_state=2024
    )


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(0)


def identical_units_df(n_units: int = 6, n_periods: int = 25, seed: int = 7) -> pd.DataFrame:
    """Panel in which units 1 and 2 share identical outcome and treatment series."""
    df = simulate_panel(n_units=n_units, n_periods=n_periods, b=(1.0,), random_state=seed)
    twin = df.loc[df["unit"] == 1, ["y", "d1"]].to_numpy()
    df.loc[df["unit"] == 2, ["y", "d1"]] = twin
    return df
