"""
Radio Source Estimation (RSE) Core Package.

Robust estimation of an emitter's position, transmitted power and path-loss
exponent from mixed ranging and RSSI readings taken at known anchors.

Package structure:
- proto: Reading and estimate data types
- estimation: Reading classification, inner solvers, robust engine,
  refinement, mixed and sequential estimators
- metrics: Diagnostics, counters, histograms
- errors: Exception taxonomy
"""

__version__ = "0.1.0"
__author__ = "RSE Team"

from .errors import (
    RadioSourceEstimationError,
    LockedError,
    NotReadyError,
    InvalidArgumentError,
    NumericalError,
    RobustEstimationError,
)

__all__ = [
    'RadioSourceEstimationError',
    'LockedError',
    'NotReadyError',
    'InvalidArgumentError',
    'NumericalError',
    'RobustEstimationError',
]
