"""Custom exception classes for the gscsynth library."""

from typing import Optional, Sequence


class GSCError(Exception):
    """Base class for all custom exceptions in the gscsynth library."""
    pass

class GSCConfigError(GSCError):
    """Exception raised for errors in configuration."""
    pass

class MalformedPanelError(GSCError):
    """Exception raised when the input panel violates the data contract."""
    pass

class GSCEstimationError(GSCError):
    """Exception raised for errors during the estimation process."""
    pass

class SingularWeightSystemError(GSCEstimationError):
    """Exception raised when a weight subproblem has a singular Gram matrix.

    Parameters
    ----------
    message : str
        Human readable description.
    collinear_columns : Sequence[int], optional
        Donor columns (positions in the donor matrix handed to the solver)
        that are linear combinations of the remaining columns.
    """

    def __init__(self, message: str, collinear_columns: Optional[Sequence[int]] = None):
        super().__init__(message)
        self.collinear_columns = tuple(collinear_columns) if collinear_columns is not None else ()

class OptimizerDivergedError(GSCEstimationError):
    """Exception raised when the nonlinear optimizer reports non-convergence.

    The last point returned by the optimizer is kept on ``minimizer`` so
    callers can fall back to a best-effort estimate.
    """

    def __init__(self, message: str, minimizer=None):
        super().__init__(message)
        self.minimizer = minimizer

class DegenerateBootstrapError(GSCEstimationError):
    """Exception raised when the bootstrap variance is zero or non-finite."""
    pass

class GSCPlottingError(GSCError):
    """Exception raised for errors during plot generation."""
    pass
