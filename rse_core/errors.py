"""
Exception taxonomy for radio source estimation.

Callers branch on the error kind:
- NotReadyError / InvalidArgumentError: fix the inputs
- RobustEstimationError / NumericalError: this batch of data is unsolvable
- LockedError: estimator used while an estimation is running
"""


class RadioSourceEstimationError(Exception):
    """Base class for all estimation errors."""


class LockedError(RadioSourceEstimationError):
    """Raised when a mutator or estimate() is called while locked."""

    def __init__(self, message: str = "estimator is locked while estimating"):
        super().__init__(message)


class NotReadyError(RadioSourceEstimationError):
    """Raised when estimate() is called without valid readings or scores."""

    def __init__(self, message: str = "estimator is not ready"):
        super().__init__(message)


class InvalidArgumentError(RadioSourceEstimationError, ValueError):
    """Raised on malformed setter or constructor input."""


class NumericalError(RadioSourceEstimationError):
    """Raised when a linear-algebra or non-linear solve fails."""


class RobustEstimationError(RadioSourceEstimationError):
    """Raised when robust estimation cannot produce any usable candidate."""
