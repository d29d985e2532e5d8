"""
Weighted Levenberg-Marquardt least squares.

Shared non-linear fitting primitive of the ranging and RSSI solvers.
Minimises chi2 = sum(((f(x) - y) / sigma)^2) and returns the parameter
covariance (J^T W J)^-1 evaluated at the solution.
"""

from dataclasses import dataclass
from typing import Callable

import numpy as np

from rse_core.errors import NumericalError
from rse_core.estimation.config import SolverConfig

MAX_DAMPING = 1e16


@dataclass
class LeastSquaresResult:
    """
    Result of a weighted least squares fit.

    Attributes:
        x: Fitted parameters
        covariance: Parameter covariance (J^T W J)^-1
        chi_square: Weighted sum of squared residuals at x
        iterations: LM iterations performed
    """

    x: np.ndarray
    covariance: np.ndarray
    chi_square: float
    iterations: int


def _check_finite(*arrays):
    for a in arrays:
        if not np.all(np.isfinite(a)):
            raise NumericalError("non-finite values during least squares fit")


def levenberg_marquardt(
    residual_fn: Callable[[np.ndarray], np.ndarray],
    jacobian_fn: Callable[[np.ndarray], np.ndarray],
    x0: np.ndarray,
    sigmas: np.ndarray,
    config: SolverConfig,
) -> LeastSquaresResult:
    """
    Fit parameters by weighted Levenberg-Marquardt.

    Args:
        residual_fn: x -> model(x) - measurements, shape (m,)
        jacobian_fn: x -> d model / d x, shape (m, k)
        x0: Initial parameters, shape (k,)
        sigmas: Measurement standard deviations, shape (m,)
        config: Iteration limits and damping

    Returns:
        LeastSquaresResult

    Raises:
        NumericalError: on non-finite values or a singular normal matrix
    """
    x = np.array(x0, dtype=float)
    weights = 1.0 / np.square(np.asarray(sigmas, dtype=float))
    k = len(x)
    if len(weights) < k:
        raise NumericalError(f"underdetermined fit: {len(weights)} equations, {k} unknowns")

    r = residual_fn(x)
    jac = jacobian_fn(x)
    _check_finite(r, jac)
    chi2 = float(np.sum(weights * r * r))
    damping = config.initial_damping

    iteration = 0
    for iteration in range(1, config.max_iterations + 1):
        jtw = jac.T * weights
        jtj = jtw @ jac
        g = jtw @ r

        # Marquardt scaling; identity term keeps zero diagonals solvable
        scale = np.diag(np.diag(jtj)) + 1e-12 * np.eye(k)
        improved = False
        while damping < MAX_DAMPING:
            try:
                delta = np.linalg.solve(jtj + damping * scale, -g)
            except np.linalg.LinAlgError:
                delta = np.linalg.lstsq(jtj + damping * scale, -g, rcond=None)[0]

            x_new = x + delta
            r_new = residual_fn(x_new)
            if np.all(np.isfinite(r_new)):
                chi2_new = float(np.sum(weights * r_new * r_new))
                if chi2_new <= chi2:
                    improved = True
                    break
            damping *= 10.0

        if not improved:
            break

        step = np.linalg.norm(delta)
        decrease = chi2 - chi2_new
        x, r, chi2 = x_new, r_new, chi2_new
        jac = jacobian_fn(x)
        _check_finite(jac)
        damping = max(damping / 10.0, 1e-15)

        if (chi2 <= config.tolerance
                or decrease <= config.tolerance * chi2
                or step <= config.tolerance * (np.linalg.norm(x) + config.tolerance)):
            break

    normal = (jac.T * weights) @ jac
    if np.linalg.matrix_rank(normal) < k:
        raise NumericalError("singular normal matrix, parameters not observable")
    try:
        covariance = np.linalg.inv(normal)
    except np.linalg.LinAlgError as e:
        raise NumericalError("failed to invert normal matrix") from e
    _check_finite(x, covariance)

    return LeastSquaresResult(x=x, covariance=covariance, chi_square=chi2, iterations=iteration)
