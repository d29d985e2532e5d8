"""
Ranging Position Solver (Lateration).

Estimates the radio source position from distances measured at known
anchors. Two stages:
1. Linear lateration (homogeneous SVD or inhomogeneous least squares)
2. Optional weighted non-linear refinement (Levenberg-Marquardt) that also
   yields the position covariance

The linear stage is skipped when an initial position is supplied and the
non-linear stage is enabled. A linear-only fit has no covariance.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from rse_core.errors import InvalidArgumentError, NumericalError
from rse_core.estimation.config import (
    SolverConfig,
    DEFAULT_USE_HOMOGENEOUS_LINEAR_SOLVER,
    DEFAULT_USE_READING_POSITION_COVARIANCES,
)
from rse_core.estimation.least_squares import levenberg_marquardt
from rse_core.proto.readings import RangingReading, anchor_positions
from rse_core.metrics import get_metrics

logger = logging.getLogger(__name__)

# Minimum distance between source and anchor for a defined gradient
MIN_RANGE = 1e-12


@dataclass
class RangingFit:
    """
    Ranging solver output.

    Attributes:
        position: Estimated position
        covariance: Position covariance (None for linear-only fits)
        chi_square: Weighted residual sum (None for linear-only fits)
    """

    position: np.ndarray
    covariance: Optional[np.ndarray] = None
    chi_square: Optional[float] = None


def effective_distance_std(
    reading: RangingReading,
    default_std: float,
    use_position_covariance: bool,
) -> float:
    """
    Distance standard deviation inflated by anchor position uncertainty.

    Assumes distance and anchor errors are independent; anchor variance is
    projected along an arbitrary line of sight, i.e. trace(cov) / dims.
    """
    std = reading.distance_std if reading.distance_std is not None else default_std
    if use_position_covariance and reading.position_covariance is not None:
        position_variance = float(np.trace(reading.position_covariance)) / reading.dims
        return float(np.sqrt(std * std + position_variance))
    return std


def homogeneous_lateration(anchors: np.ndarray, distances: np.ndarray) -> np.ndarray:
    """
    Linear lateration through the null space of the homogeneous system.

    Each reading contributes |x|^2 - 2 a.x + |a|^2 - d^2 = 0, written as
    [-2a, 1, |a|^2 - d^2] . [x, |x|^2, 1] = 0.
    """
    n, dims = anchors.shape
    design = np.empty((n, dims + 2))
    design[:, :dims] = -2.0 * anchors
    design[:, dims] = 1.0
    design[:, dims + 1] = np.sum(anchors * anchors, axis=1) - distances * distances

    try:
        _, _, vt = np.linalg.svd(design)
    except np.linalg.LinAlgError as e:
        raise NumericalError("SVD failed in homogeneous lateration") from e

    v = vt[-1]
    if abs(v[-1]) < 1e-15:
        raise NumericalError("degenerate homogeneous lateration solution")
    return v[:dims] / v[-1]


def inhomogeneous_lateration(anchors: np.ndarray, distances: np.ndarray) -> np.ndarray:
    """
    Linear lateration subtracting the first reading's equation from the rest.

    2 (a_i - a_0).x = |a_i|^2 - |a_0|^2 - d_i^2 + d_0^2
    """
    dims = anchors.shape[1]
    a0 = anchors[0]
    design = 2.0 * (anchors[1:] - a0)
    rhs = (np.sum(anchors[1:] ** 2, axis=1) - np.dot(a0, a0)
           - distances[1:] ** 2 + distances[0] ** 2)

    solution, _, rank, _ = np.linalg.lstsq(design, rhs, rcond=None)
    if rank < dims:
        raise NumericalError("anchors are collinear, lateration is ill-posed")
    return solution


class RangingSolver:
    """
    Solve source position from ranging readings.

    Usage:
        solver = RangingSolver(nonlinear_enabled=True)
        fit = solver.solve(readings)
        print(fit.position, fit.covariance)
    """

    def __init__(
        self,
        config: Optional[SolverConfig] = None,
        nonlinear_enabled: bool = True,
        use_homogeneous_linear_solver: bool = DEFAULT_USE_HOMOGENEOUS_LINEAR_SOLVER,
        use_reading_position_covariances: bool = DEFAULT_USE_READING_POSITION_COVARIANCES,
    ):
        self.config = config or SolverConfig()
        self.nonlinear_enabled = nonlinear_enabled
        self.use_homogeneous_linear_solver = use_homogeneous_linear_solver
        self.use_reading_position_covariances = use_reading_position_covariances
        self.metrics = get_metrics()

    @staticmethod
    def min_readings(dims: int) -> int:
        return dims + 1

    def solve(
        self,
        readings: Sequence[RangingReading],
        initial_position: Optional[Sequence[float]] = None,
    ) -> RangingFit:
        """
        Estimate position from ranging readings.

        Args:
            readings: Ranging readings sharing one dimensionality
            initial_position: Starting point for the non-linear stage

        Returns:
            RangingFit

        Raises:
            InvalidArgumentError: if there are too few readings
            NumericalError: if the geometry or the solve is degenerate
        """
        if not readings:
            raise InvalidArgumentError("no ranging readings")
        anchors = anchor_positions(readings)
        dims = anchors.shape[1]
        if len(readings) < self.min_readings(dims):
            raise InvalidArgumentError(
                f"need at least {self.min_readings(dims)} ranging readings, got {len(readings)}"
            )
        distances = np.array([r.distance for r in readings], dtype=float)

        if self.nonlinear_enabled and initial_position is not None:
            position = np.asarray(initial_position, dtype=float)
            if position.shape != (dims,):
                raise InvalidArgumentError(f"initial position must have {dims} coordinates")
        elif self.use_homogeneous_linear_solver:
            position = homogeneous_lateration(anchors, distances)
        else:
            position = inhomogeneous_lateration(anchors, distances)

        if not self.nonlinear_enabled:
            if not np.all(np.isfinite(position)):
                raise NumericalError("non-finite linear lateration result")
            self.metrics.increment('ranging_solver_success')
            return RangingFit(position=position)

        sigmas = np.array([
            effective_distance_std(
                r, self.config.default_distance_std, self.use_reading_position_covariances
            )
            for r in readings
        ])

        def residuals(x):
            return np.linalg.norm(x - anchors, axis=1) - distances

        def jacobian(x):
            diff = x - anchors
            ranges = np.linalg.norm(diff, axis=1)
            jac = np.zeros_like(diff)
            mask = ranges > MIN_RANGE
            jac[mask] = diff[mask] / ranges[mask, None]
            return jac

        result = levenberg_marquardt(residuals, jacobian, position, sigmas, self.config)

        self.metrics.increment('ranging_solver_success')
        self.metrics.record_histogram('ranging_solver_iterations', result.iterations)
        logger.debug("Ranging fit converged in %d iterations, chi2=%.3g",
                     result.iterations, result.chi_square)

        return RangingFit(
            position=result.x,
            covariance=result.covariance,
            chi_square=result.chi_square,
        )
