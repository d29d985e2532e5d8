"""
RSSI Solver (Log-distance Path-loss Fit).

Fits any non-empty subset of {position, transmitted power, path-loss
exponent} to received signal strength readings with weighted
Levenberg-Marquardt. Parameters that are not estimated are held at their
initial values.

Parameter vector layout: [position (dims)] + [power] + [path-loss exponent],
each block present only if estimated. The covariance follows that layout.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from rse_core.errors import InvalidArgumentError, NumericalError
from rse_core.estimation.config import SolverConfig
from rse_core.estimation.least_squares import levenberg_marquardt
from rse_core.path_loss import DEFAULT_PATH_LOSS_EXPONENT, path_loss_constant_db
from rse_core.proto.readings import RssiReading, anchor_positions
from rse_core.metrics import get_metrics

logger = logging.getLogger(__name__)

LN10 = np.log(10.0)


@dataclass
class RssiFit:
    """
    RSSI solver output.

    Attributes:
        position: Estimated (or fixed initial) position
        transmitted_power_dbm: Estimated (or fixed initial) power
        path_loss_exponent: Estimated (or fixed initial) exponent
        covariance: Covariance of the estimated parameters
        position_covariance: Position block (None if position fixed)
        transmitted_power_variance: Power variance (None if power fixed)
        path_loss_exponent_variance: Exponent variance (None if exponent fixed)
        chi_square: Weighted residual sum
    """

    position: np.ndarray
    transmitted_power_dbm: float
    path_loss_exponent: float
    covariance: np.ndarray
    position_covariance: Optional[np.ndarray] = None
    transmitted_power_variance: Optional[float] = None
    path_loss_exponent_variance: Optional[float] = None
    chi_square: float = 0.0


def expected_rssi(
    anchors: np.ndarray,
    position: np.ndarray,
    transmitted_power_dbm: float,
    path_loss_exponent: float,
    k_db: np.ndarray,
) -> np.ndarray:
    """Received power predicted at each anchor by the log-distance model."""
    sq_dist = np.sum((position - anchors) ** 2, axis=1)
    with np.errstate(divide='ignore'):
        return (transmitted_power_dbm + path_loss_exponent * k_db
                - 5.0 * path_loss_exponent * np.log10(sq_dist))


class RssiSolver:
    """
    Solve transmitted power, path-loss exponent and/or position from RSSI.

    Usage:
        solver = RssiSolver(position_estimation_enabled=False)
        fit = solver.solve(readings, initial_position=(1.0, 1.0))
        print(fit.transmitted_power_dbm)
    """

    def __init__(
        self,
        config: Optional[SolverConfig] = None,
        position_estimation_enabled: bool = True,
        transmitted_power_estimation_enabled: bool = True,
        path_loss_estimation_enabled: bool = False,
    ):
        if not (position_estimation_enabled or transmitted_power_estimation_enabled
                or path_loss_estimation_enabled):
            raise InvalidArgumentError("at least one parameter must be estimated")
        self.config = config or SolverConfig()
        self.position_estimation_enabled = position_estimation_enabled
        self.transmitted_power_estimation_enabled = transmitted_power_estimation_enabled
        self.path_loss_estimation_enabled = path_loss_estimation_enabled
        self.metrics = get_metrics()

    def num_parameters(self, dims: int) -> int:
        return ((dims if self.position_estimation_enabled else 0)
                + (1 if self.transmitted_power_estimation_enabled else 0)
                + (1 if self.path_loss_estimation_enabled else 0))

    def min_readings(self, dims: int) -> int:
        return self.num_parameters(dims) + 1

    def is_ready(
        self,
        readings: Sequence[RssiReading],
        dims: int,
        has_initial_position: bool,
        has_initial_power: bool,
    ) -> bool:
        """True if enough readings and all fixed parameters are known."""
        if len(readings) < self.min_readings(dims):
            return False
        if not self.position_estimation_enabled and not has_initial_position:
            return False
        if not self.transmitted_power_estimation_enabled and not has_initial_power:
            return False
        return True

    def solve(
        self,
        readings: Sequence[RssiReading],
        initial_position: Optional[Sequence[float]] = None,
        initial_transmitted_power_dbm: Optional[float] = None,
        initial_path_loss_exponent: float = DEFAULT_PATH_LOSS_EXPONENT,
    ) -> RssiFit:
        """
        Fit the enabled parameters to RSSI readings.

        Args:
            readings: RSSI readings sharing one dimensionality
            initial_position: Initial (or fixed) position; anchor centroid if None
            initial_transmitted_power_dbm: Initial (or fixed) power; mean RSSI if None
            initial_path_loss_exponent: Initial (or fixed) exponent

        Returns:
            RssiFit

        Raises:
            InvalidArgumentError: if inputs are insufficient
            NumericalError: if the fit fails
        """
        if not readings:
            raise InvalidArgumentError("no RSSI readings")
        anchors = anchor_positions(readings)
        dims = anchors.shape[1]
        if len(readings) < self.min_readings(dims):
            raise InvalidArgumentError(
                f"need at least {self.min_readings(dims)} RSSI readings, got {len(readings)}"
            )
        if initial_position is None and not self.position_estimation_enabled:
            raise InvalidArgumentError("position is fixed but no initial position given")
        if initial_transmitted_power_dbm is None and not self.transmitted_power_estimation_enabled:
            raise InvalidArgumentError("power is fixed but no initial power given")

        rssi = np.array([r.rssi for r in readings], dtype=float)
        sigmas = np.array([
            r.rssi_std if r.rssi_std is not None else self.config.default_rssi_std_db
            for r in readings
        ])
        k_db = np.array([path_loss_constant_db(r.source.frequency_hz) for r in readings])

        position0 = (anchors.mean(axis=0) if initial_position is None
                     else np.asarray(initial_position, dtype=float))
        if position0.shape != (dims,):
            raise InvalidArgumentError(f"initial position must have {dims} coordinates")
        power0 = (float(np.mean(rssi)) if initial_transmitted_power_dbm is None
                  else float(initial_transmitted_power_dbm))
        exponent0 = float(initial_path_loss_exponent)

        est_pos = self.position_estimation_enabled
        est_power = self.transmitted_power_estimation_enabled
        est_exp = self.path_loss_estimation_enabled

        def unpack(x):
            i = 0
            position = position0
            if est_pos:
                position = x[:dims]
                i = dims
            power = power0
            if est_power:
                power = x[i]
                i += 1
            exponent = x[i] if est_exp else exponent0
            return position, power, exponent

        def residuals(x):
            position, power, exponent = unpack(x)
            return expected_rssi(anchors, position, power, exponent, k_db) - rssi

        def jacobian(x):
            position, _, exponent = unpack(x)
            diff = position - anchors
            sq_dist = np.sum(diff * diff, axis=1)
            columns = []
            if est_pos:
                columns.append(-10.0 * exponent * diff / (LN10 * sq_dist[:, None]))
            if est_power:
                columns.append(np.ones((len(anchors), 1)))
            if est_exp:
                columns.append((k_db - 5.0 * np.log10(sq_dist))[:, None])
            return np.hstack(columns)

        x0 = []
        if est_pos:
            x0.extend(position0)
        if est_power:
            x0.append(power0)
        if est_exp:
            x0.append(exponent0)

        if np.any(np.sum((position0 - anchors) ** 2, axis=1) == 0.0):
            raise NumericalError("initial position coincides with an anchor")

        with np.errstate(divide='ignore', invalid='ignore'):
            result = levenberg_marquardt(
                residuals, jacobian, np.array(x0), sigmas, self.config
            )

        position, power, exponent = unpack(result.x)
        cov = result.covariance
        i = 0
        position_cov = None
        if est_pos:
            position_cov = cov[:dims, :dims]
            i = dims
        power_var = None
        if est_power:
            power_var = float(cov[i, i])
            i += 1
        exponent_var = float(cov[i, i]) if est_exp else None

        self.metrics.increment('rssi_solver_success')
        self.metrics.record_histogram('rssi_solver_iterations', result.iterations)
        logger.debug("RSSI fit converged in %d iterations, chi2=%.3g",
                     result.iterations, result.chi_square)

        return RssiFit(
            position=np.array(position, dtype=float),
            transmitted_power_dbm=float(power),
            path_loss_exponent=float(exponent),
            covariance=cov,
            position_covariance=position_cov,
            transmitted_power_variance=power_var,
            path_loss_exponent_variance=exponent_var,
            chi_square=result.chi_square,
        )
