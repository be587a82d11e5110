from unittest.mock import patch

import numpy as np
import pytest

from gscsynth.exceptions import GSCPlottingError
from gscsynth.utils.resultutils import (
    _save_or_show,
    plot_bootstrap_distribution,
    plot_unit_fit,
)


def test_bootstrap_plot_shows_by_default():
    with patch("matplotlib.pyplot.show") as mock_show:
        plot_bootstrap_distribution(np.random.default_rng(0).chisquare(1, 100), 2.5, p_value=0.1)
    mock_show.assert_called_once()


@pytest.mark.parametrize("values", [np.array([]), np.array([1.0, np.nan])])
def test_bootstrap_plot_rejects_bad_input(values):
    with pytest.raises(GSCPlottingError, match="non-empty"):
        plot_bootstrap_distribution(values, 1.0)


def test_bootstrap_plot_rejects_non_finite_statistic():
    with pytest.raises(GSCPlottingError, match="Observed statistic"):
        plot_bootstrap_distribution(np.ones(10), np.inf)


def test_unit_fit_plot_saves_and_shows(tmp_path):
    save = {"filename": "units", "directory": str(tmp_path)}
    with patch("matplotlib.pyplot.show") as mock_show:
        plot_unit_fit({"a": 0.5, "b": 0.7, "c": 1.1}, save_plot_config=save)
    assert (tmp_path / "units.png").exists()
    mock_show.assert_called_once()


def test_unit_fit_plot_rejects_empty():
    with pytest.raises(GSCPlottingError):
        plot_unit_fit({})


def test_save_failure_raises(tmp_path):
    import matplotlib.pyplot as plt

    plt.plot([0, 1], [0, 1])
    with patch("matplotlib.pyplot.savefig", side_effect=OSError("disk full")):
        with pytest.raises(GSCPlottingError, match="Failed to save plot"):
            _save_or_show({"directory": str(tmp_path), "display": False}, "failing")
    plt.close("all")


def test_save_with_string_name(tmp_path, monkeypatch):
    import matplotlib.pyplot as plt

    monkeypatch.chdir(tmp_path)
    plt.plot([0, 1], [1, 0])
    with patch("matplotlib.pyplot.show") as mock_show:
        _save_or_show("named", "ignored")
    assert (tmp_path / "named.png").exists()
    mock_show.assert_not_called()
