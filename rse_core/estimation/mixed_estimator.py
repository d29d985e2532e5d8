"""
Mixed Radio Source Estimator (non-robust).

Estimates position from ranging readings (or from RSSI readings when too
few ranging readings exist) and transmitted power / path-loss exponent from
RSSI readings, without outlier rejection.

Pipeline:
1. Classify readings into ranging and RSSI views
2. Ranging solver -> position + position covariance (skipped in fallback)
3. RSSI solver seeded with that position -> power / path loss (+ position in fallback)
4. Block-diagonal covariance assembly
"""

import logging

from rse_core.errors import NotReadyError, NumericalError
from rse_core.estimation.base import BaseMixedRadioSourceEstimator
from rse_core.estimation.ranging_solver import RangingSolver
from rse_core.estimation.rssi_solver import RssiSolver
from rse_core.proto.estimate import RadioSourceEstimate

logger = logging.getLogger(__name__)


class MixedRadioSourceEstimator(BaseMixedRadioSourceEstimator):
    """
    Estimate a radio source from mixed ranging and RSSI readings.

    Usage:
        estimator = MixedRadioSourceEstimator(
            readings, path_loss_estimation_enabled=True,
        )
        estimate = estimator.estimate()
        print(estimate.position, estimate.transmitted_power_dbm)
    """

    metrics_prefix = 'mixed'

    def is_ready(self) -> bool:
        if not self.are_valid_readings(self._readings):
            return False
        return self._fixed_power_known(self.classify().rssi_position_fallback)

    def estimate(self) -> RadioSourceEstimate:
        """
        Estimate position, transmitted power and path-loss exponent.

        Returns:
            RadioSourceEstimate (also stored on the estimator)

        Raises:
            LockedError: if already estimating
            NotReadyError: if readings are insufficient
            NumericalError: if a solver fails
        """
        self._check_not_locked()
        self.metrics.increment(f'{self.metrics_prefix}_estimate_attempts')
        if not self.is_ready():
            self.metrics.increment_drop('not_ready')
            raise NotReadyError()

        self._locked = True
        try:
            if self._listener is not None:
                self._listener.on_estimate_start(self)

            classification = self.classify()
            fallback = classification.rssi_position_fallback

            position = None
            position_covariance = None
            if not fallback:
                ranging = RangingSolver(
                    self._solver_config,
                    nonlinear_enabled=True,
                    use_homogeneous_linear_solver=self._use_homogeneous_ranging_linear_solver,
                    use_reading_position_covariances=self._use_reading_position_covariances,
                )
                fit = ranging.solve(classification.ranging_readings, self._initial_position)
                position = fit.position
                position_covariance = fit.covariance
                logger.debug("Ranging position from %d readings: %s",
                             classification.num_ranging, position)

            rssi = None
            if self._rssi_phase_needed(fallback):
                solver = RssiSolver(
                    self._solver_config,
                    position_estimation_enabled=fallback,
                    transmitted_power_estimation_enabled=self._transmitted_power_estimation_enabled,
                    path_loss_estimation_enabled=self._path_loss_estimation_enabled,
                )
                rssi = solver.solve(
                    classification.rssi_readings,
                    initial_position=self._initial_position if fallback else position,
                    initial_transmitted_power_dbm=self._initial_transmitted_power_dbm,
                    initial_path_loss_exponent=self._initial_path_loss_exponent,
                )

            estimate = self._combine(fallback, position, position_covariance, rssi)

            self.metrics.increment(f'{self.metrics_prefix}_estimate_success')
            if self._listener is not None:
                self._listener.on_estimate_end(self)
            return estimate

        except NumericalError:
            self.metrics.increment_drop('solver_failed')
            raise
        finally:
            self._locked = False
