import warnings
from dataclasses import dataclass
from typing import Any, Iterable, List, Sequence, Tuple

import numpy as np
import pandas as pd

from gscsynth.exceptions import MalformedPanelError

# Smallest panel for which every unit still has a two-unit donor pool.
_MIN_UNITS = 3


def balance(df: pd.DataFrame, unit_id_column_name: str, time_period_column_name: str) -> None:
    """Check if the panel is strongly balanced.

    A strongly balanced panel means every unit has an observation for every
    time period, and there are no duplicate unit-time observations.

    Parameters
    ----------
    df : pd.DataFrame
        The input panel data. Must contain columns specified by `unit_id_column_name`
        and `time_period_column_name`.
    unit_id_column_name : str
        The name of the column in `df` that identifies the units.
    time_period_column_name : str
        The name of the column in `df` that identifies the time periods.

    Raises
    ------
    MalformedPanelError
        If duplicate unit-time observations are found.
        If the panel is not strongly balanced (i.e., not all units have
        observations for all time periods).
    """
    duplicated = df.duplicated([unit_id_column_name, time_period_column_name])
    if duplicated.any():
        raise MalformedPanelError(
            f"Duplicate (unit, time) pairs found: {int(duplicated.sum())}. "
            "Ensure each combination of unit and time is unique."
        )

    total_unique_time_periods = df[time_period_column_name].nunique()
    observations_per_unit = df.groupby(unit_id_column_name)[time_period_column_name].nunique()

    if not (observations_per_unit == total_unique_time_periods).all():
        short_units = observations_per_unit[observations_per_unit < total_unique_time_periods]
        raise MalformedPanelError(
            "The panel is not strongly balanced. Units missing periods: "
            f"{', '.join(str(u) for u in short_units.index[:10])}"
            + (" ..." if len(short_units) > 10 else "")
        )


def _as_name_list(columns: Any) -> List[str]:
    if columns is None:
        return []
    if isinstance(columns, str):
        return [columns]
    return list(columns)


@dataclass(frozen=True)
class PanelData:
    """
    Balanced long-format panel held as dense, read-only arrays.

    Rows of every array follow the sorted unit index and columns the sorted
    time index, so ``outcome_matrix[i, t]`` is the outcome of ``units[i]`` at
    ``times[t]``. Regressors are the treatment columns followed by the
    covariate columns.

    Attributes
    ----------
    units : np.ndarray
        Sorted distinct unit identifiers, shape (N,).
    times : np.ndarray
        Sorted distinct time identifiers, shape (T,).
    outcome_name : str
        Name of the outcome column.
    treatment_names : Tuple[str, ...]
        Names of the M treatment columns.
    covariate_names : Tuple[str, ...]
        Names of the R covariate columns.
    outcome_matrix : np.ndarray
        Outcomes, shape (N, T).
    regressor_array : np.ndarray
        Treatments then covariates, shape (N, T, M + R).
    """

    units: np.ndarray
    times: np.ndarray
    outcome_name: str
    treatment_names: Tuple[str, ...]
    covariate_names: Tuple[str, ...]
    outcome_matrix: np.ndarray
    regressor_array: np.ndarray

    @classmethod
    def from_frame(
        cls,
        df: pd.DataFrame,
        unitid: str,
        time: str,
        outcome: str,
        treatments: Sequence[str],
        covariates: Iterable[str] = (),
    ) -> "PanelData":
        """Validate a long-format DataFrame and build the panel arrays.

        Parameters
        ----------
        df : pd.DataFrame
            One row per (unit, time) observation.
        unitid, time : str
            Key columns.
        outcome : str
            Outcome column.
        treatments : Sequence[str]
            Treatment columns (at least one).
        covariates : Iterable[str], optional
            Observed covariate columns.

        Returns
        -------
        PanelData

        Raises
        ------
        MalformedPanelError
            On an empty frame, missing or non-numeric columns, missing or
            non-finite values, duplicated keys, unbalanced panels, fewer than
            three units, or fewer periods than regressors.
        """
        if not isinstance(df, pd.DataFrame):
            raise MalformedPanelError("Input data must be a pandas DataFrame.")
        if df.empty:
            raise MalformedPanelError("Input DataFrame cannot be empty.")

        treatment_names = _as_name_list(treatments)
        covariate_names = _as_name_list(covariates)
        if not treatment_names:
            raise MalformedPanelError("At least one treatment column is required.")
        overlap = set(treatment_names) & set(covariate_names)
        if overlap:
            raise MalformedPanelError(
                f"Columns listed as both treatment and covariate: {', '.join(sorted(overlap))}"
            )
        if outcome in treatment_names or outcome in covariate_names:
            raise MalformedPanelError(f"Outcome column '{outcome}' cannot also be a regressor.")

        value_columns = [outcome] + treatment_names + covariate_names
        required_columns = [unitid, time] + value_columns
        missing_columns = set(required_columns) - set(df.columns)
        if missing_columns:
            raise MalformedPanelError(
                f"Missing required columns in DataFrame: {', '.join(sorted(missing_columns))}"
            )

        key_missing = {col: int(df[col].isna().sum()) for col in (unitid, time) if df[col].isna().any()}
        if key_missing:
            details = ", ".join(f"{col}: {count}" for col, count in key_missing.items())
            raise MalformedPanelError(f"Missing values detected in key columns -> {details}.")

        non_numeric = [col for col in value_columns if not pd.api.types.is_numeric_dtype(df[col])]
        if non_numeric:
            raise MalformedPanelError(
                f"Non-numeric columns cannot be used in estimation: {', '.join(non_numeric)}"
            )

        values = df[value_columns].to_numpy(dtype=np.float64)
        if not np.isfinite(values).all():
            bad = [col for col, ok in zip(value_columns, np.isfinite(values).all(axis=0)) if not ok]
            raise MalformedPanelError(
                f"Missing or non-finite values detected in columns: {', '.join(bad)}"
            )

        balance(df, unitid, time)

        if not df.sort_values([unitid, time]).index.equals(df.index):
            warnings.warn(
                f"DataFrame was not sorted by [{unitid}, {time}]; sorting applied.",
                UserWarning,
            )
        ordered = df.sort_values([unitid, time], kind="mergesort")

        units = np.asarray(pd.unique(ordered[unitid]))
        times = np.sort(np.asarray(pd.unique(ordered[time])))
        n_units, n_periods = len(units), len(times)
        n_regressors = len(treatment_names) + len(covariate_names)

        if n_units < _MIN_UNITS:
            raise MalformedPanelError(
                f"At least {_MIN_UNITS} units are required; found {n_units}."
            )
        if n_periods <= n_regressors:
            raise MalformedPanelError(
                f"Number of periods ({n_periods}) must exceed the number of regressors ({n_regressors})."
            )

        outcome_matrix = ordered[outcome].to_numpy(dtype=np.float64).reshape(n_units, n_periods)
        regressor_array = (
            ordered[treatment_names + covariate_names]
            .to_numpy(dtype=np.float64)
            .reshape(n_units, n_periods, n_regressors)
        )
        outcome_matrix.setflags(write=False)
        regressor_array.setflags(write=False)

        return cls(
            units=units,
            times=times,
            outcome_name=outcome,
            treatment_names=tuple(treatment_names),
            covariate_names=tuple(covariate_names),
            outcome_matrix=outcome_matrix,
            regressor_array=regressor_array,
        )

    @property
    def n_units(self) -> int:
        return self.outcome_matrix.shape[0]

    @property
    def n_periods(self) -> int:
        return self.outcome_matrix.shape[1]

    @property
    def n_treatments(self) -> int:
        return len(self.treatment_names)

    @property
    def n_regressors(self) -> int:
        return self.regressor_array.shape[2]

    @property
    def regressor_names(self) -> List[str]:
        return list(self.treatment_names) + list(self.covariate_names)

    def unit(self, i: int) -> Tuple[np.ndarray, np.ndarray]:
        """Return ``(y_i, X_i)`` for the unit at position ``i``, in time order."""
        return self.outcome_matrix[i], self.regressor_array[i]

    def residuals(self, b: np.ndarray) -> np.ndarray:
        """Residualised outcomes ``Y_it - b'X_it`` as an (N, T) matrix."""
        return self.outcome_matrix - self.regressor_array @ np.asarray(b, dtype=np.float64)


def donor_positions(n_units: int, i: int, *excluded: int) -> np.ndarray:
    """Unit positions forming the donor pool of unit ``i``.

    Returns all positions except ``i`` and any further ``excluded`` ones, in
    unit-index order.
    """
    drop = {i, *excluded}
    return np.array([j for j in range(n_units) if j not in drop], dtype=int)


def expand_weight_row(n_units: int, i: int, row: np.ndarray) -> np.ndarray:
    """Place a length N-1 weight row of unit ``i`` into a length N vector with a zero at ``i``."""
    full = np.zeros(n_units)
    full[donor_positions(n_units, i)] = row
    return full


def weights_to_square(W: np.ndarray) -> np.ndarray:
    """Expand an (N, N-1) weight matrix into (N, N) with a zero diagonal."""
    n_units = W.shape[0]
    return np.vstack([expand_weight_row(n_units, i, W[i]) for i in range(n_units)])
