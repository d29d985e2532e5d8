"""
Sequential Robust Mixed Radio Source Estimator.

Two robust phases sharing one progress scale:
1. Ranging phase (progress 0 -> 0.5): robust position from ranging readings;
   skipped when too few ranging readings exist (RSSI position fallback)
2. RSSI phase (progress 0.5 -> 1): robust power / path-loss exponent seeded
   with the phase 1 position, or with position too in fallback

Then the combined covariance is assembled from both phases' refined
covariances. Sub-estimators are built per call; nothing is reused between
estimate() invocations.
"""

import logging
from dataclasses import replace
from typing import Optional, Sequence

import numpy as np

from rse_core.errors import (
    InvalidArgumentError,
    NotReadyError,
    NumericalError,
    RobustEstimationError,
)
from rse_core.estimation.base import BaseMixedRadioSourceEstimator
from rse_core.estimation.config import (
    DEFAULT_PROGRESS_DELTA,
    RobustPhaseConfig,
    validate_progress_delta,
)
from rse_core.estimation.listener import ScaledProgressListener
from rse_core.estimation.locking import LockedAttribute
from rse_core.estimation.reading_classifier import ReadingClassification
from rse_core.estimation.robust_engine import RobustMethod
from rse_core.estimation.robust_estimators import (
    DEFAULT_ROBUST_METHOD,
    RobustRangingEstimator,
    RobustRssiEstimator,
    validate_method,
)
from rse_core.proto.estimate import RadioSourceEstimate
from rse_core.proto.readings import Reading

logger = logging.getLogger(__name__)


def _phase_setting(config_name: str, field_name: str, doc: str) -> property:
    """Property reading and replacing one field of a phase configuration."""

    def getter(self):
        return getattr(getattr(self, config_name), field_name)

    def setter(self, value):
        setattr(self, config_name, replace(getattr(self, config_name), **{field_name: value}))

    return property(getter, setter, doc=doc)


def _shared_setting(field_name: str, doc: str) -> property:
    """Property applying one field to both phase configurations."""

    def getter(self):
        return getattr(self.ranging_config, field_name)

    def setter(self, value):
        self._check_not_locked()
        ranging = replace(self.ranging_config, **{field_name: value})
        rssi = replace(self.rssi_config, **{field_name: value})
        self.ranging_config = ranging
        self.rssi_config = rssi

    return property(getter, setter, doc=doc)


class SequentialRobustMixedRadioSourceEstimator(BaseMixedRadioSourceEstimator):
    """
    Robustly estimate a radio source from mixed readings in two phases.

    Usage:
        estimator = SequentialRobustMixedRadioSourceEstimator(
            readings,
            ranging_method=RobustMethod.RANSAC,
            rssi_method=RobustMethod.LMEDS,
        )
        estimator.ranging_threshold = 0.5
        estimate = estimator.estimate()
        print(estimate.position, estimate.transmitted_power_dbm)
    """

    metrics_prefix = 'sequential'

    def _validate_phase_config(self, config):
        return config if config is not None else RobustPhaseConfig()

    def _validate_quality_scores(self, quality_scores):
        if quality_scores is None:
            return None
        scores = np.asarray(quality_scores, dtype=float)
        if len(scores) < self.min_readings:
            raise InvalidArgumentError(
                f"need at least {self.min_readings} quality scores, got {len(scores)}"
            )
        return scores

    ranging_method = LockedAttribute(validate_method)
    rssi_method = LockedAttribute(validate_method)
    ranging_config = LockedAttribute(_validate_phase_config)
    rssi_config = LockedAttribute(_validate_phase_config)
    quality_scores = LockedAttribute(_validate_quality_scores)

    ranging_threshold = _phase_setting('ranging_config', 'threshold', "Ranging inlier threshold (distance units)")
    rssi_threshold = _phase_setting('rssi_config', 'threshold', "RSSI inlier threshold (dB)")
    ranging_confidence = _phase_setting('ranging_config', 'confidence', "Ranging phase confidence")
    rssi_confidence = _phase_setting('rssi_config', 'confidence', "RSSI phase confidence")
    ranging_max_iterations = _phase_setting('ranging_config', 'max_iterations', "Ranging phase iteration cap")
    rssi_max_iterations = _phase_setting('rssi_config', 'max_iterations', "RSSI phase iteration cap")
    ranging_preliminary_subset_size = _phase_setting(
        'ranging_config', 'preliminary_subset_size', "Ranging subset size per hypothesis")
    rssi_preliminary_subset_size = _phase_setting(
        'rssi_config', 'preliminary_subset_size', "RSSI subset size per hypothesis")
    refine_result = _shared_setting('refine_result', "Refine each phase over its inliers")
    keep_covariance = _shared_setting('keep_covariance', "Keep refined covariances")

    def __init__(
        self,
        readings: Optional[Sequence[Reading]] = None,
        quality_scores: Optional[Sequence[float]] = None,
        ranging_method: RobustMethod = DEFAULT_ROBUST_METHOD,
        rssi_method: RobustMethod = DEFAULT_ROBUST_METHOD,
        ranging_config: Optional[RobustPhaseConfig] = None,
        rssi_config: Optional[RobustPhaseConfig] = None,
        progress_delta: float = DEFAULT_PROGRESS_DELTA,
        **kwargs,
    ):
        self._progress_delta = validate_progress_delta(progress_delta)
        self.ranging_method = ranging_method
        self.rssi_method = rssi_method
        self.ranging_config = ranging_config
        self.rssi_config = rssi_config
        super().__init__(readings, **kwargs)
        self.quality_scores = quality_scores

    @property
    def progress_delta(self) -> float:
        return self._progress_delta

    @progress_delta.setter
    def progress_delta(self, value: float):
        self._check_not_locked()
        self._progress_delta = validate_progress_delta(value)

    # -------------------------------------------------------------------------
    # Sub-estimator construction
    # -------------------------------------------------------------------------

    def _phase_config(self, config: RobustPhaseConfig) -> RobustPhaseConfig:
        # Each phase covers half of the progress scale
        return replace(config, progress_delta=min(1.0, 2.0 * self._progress_delta))

    def _build_ranging_estimator(self, classification: ReadingClassification) -> RobustRangingEstimator:
        ranging_scores, _ = self._partition_scores(classification)
        listener = None
        if self._listener is not None:
            listener = ScaledProgressListener(self, self._listener, 0.0, 0.5)
        return RobustRangingEstimator(
            classification.ranging_readings,
            method=self._ranging_method,
            config=self._phase_config(self._ranging_config),
            quality_scores=ranging_scores,
            initial_position=self._initial_position,
            dims=classification.dims,
            use_reading_position_covariances=self._use_reading_position_covariances,
            use_homogeneous_linear_solver=self._use_homogeneous_ranging_linear_solver,
            listener=listener,
            solver_config=self._solver_config,
        )

    def _build_rssi_estimator(self, classification: ReadingClassification) -> RobustRssiEstimator:
        _, rssi_scores = self._partition_scores(classification)
        listener = None
        if self._listener is not None:
            listener = ScaledProgressListener(self, self._listener, 0.5, 0.5)
        return RobustRssiEstimator(
            classification.rssi_readings,
            method=self._rssi_method,
            config=self._phase_config(self._rssi_config),
            quality_scores=rssi_scores,
            initial_transmitted_power_dbm=self._initial_transmitted_power_dbm,
            initial_path_loss_exponent=self._initial_path_loss_exponent,
            dims=classification.dims,
            position_estimation_enabled=classification.rssi_position_fallback,
            transmitted_power_estimation_enabled=self._transmitted_power_estimation_enabled,
            path_loss_estimation_enabled=self._path_loss_estimation_enabled,
            listener=listener,
            solver_config=self._solver_config,
        )

    def _partition_scores(self, classification: ReadingClassification):
        scores = self._quality_scores
        if scores is None or len(scores) != len(self._readings):
            return None, None
        return classification.partition_quality_scores(scores)

    # -------------------------------------------------------------------------
    # Estimation
    # -------------------------------------------------------------------------

    def is_ready(self) -> bool:
        """
        Check readings, quality scores and both phases.

        Fallback: only the RSSI phase must be ready. Otherwise the ranging
        phase must be ready, and the RSSI phase too if power or path loss is
        requested.
        """
        if not self.are_valid_readings(self._readings):
            return False
        classification = self.classify()
        fallback = classification.rssi_position_fallback
        if not self._fixed_power_known(fallback):
            return False

        if fallback:
            return self._build_rssi_estimator(classification).is_ready()

        if not self._build_ranging_estimator(classification).is_ready():
            return False
        if not (self._transmitted_power_estimation_enabled or self._path_loss_estimation_enabled):
            return True
        return self._build_rssi_estimator(classification).is_ready(position_seeded=True)

    def estimate(self) -> RadioSourceEstimate:
        """
        Robustly estimate position, transmitted power and path-loss exponent.

        Returns:
            RadioSourceEstimate (also stored on the estimator)

        Raises:
            LockedError: if already estimating
            NotReadyError: if readings or quality scores are insufficient
            RobustEstimationError: if a phase fails or results cannot be combined
        """
        self._check_not_locked()
        self.metrics.increment(f'{self.metrics_prefix}_estimate_attempts')

        self._locked = True
        try:
            if not self.is_ready():
                self.metrics.increment_drop('not_ready')
                raise NotReadyError()

            if self._listener is not None:
                self._listener.on_estimate_start(self)

            classification = self.classify()
            fallback = classification.rssi_position_fallback

            position = None
            position_covariance = None
            inliers_data = None
            if not fallback:
                logger.debug("Ranging phase over %d readings (%s)",
                             classification.num_ranging, self._ranging_method.value)
                ranging = self._build_ranging_estimator(classification)
                ranging_estimate = self._run_phase(ranging)
                position = ranging_estimate.position
                position_covariance = ranging_estimate.position_covariance
                inliers_data = ranging_estimate.inliers_data

            rssi_estimate = None
            if self._rssi_phase_needed(fallback):
                logger.debug("RSSI phase over %d readings (%s), fallback=%s",
                             classification.num_rssi, self._rssi_method.value, fallback)
                rssi = self._build_rssi_estimator(classification)
                rssi.initial_position = self._initial_position if fallback else position
                rssi_estimate = self._run_phase(rssi)
                inliers_data = rssi_estimate.inliers_data
            elif self._listener is not None:
                self._listener.on_estimate_progress_change(self, 1.0)

            try:
                estimate = self._combine(
                    fallback, position, position_covariance, rssi_estimate, inliers_data
                )
            except NumericalError as e:
                raise RobustEstimationError("failed to assemble covariance") from e

            self.metrics.increment(f'{self.metrics_prefix}_estimate_success')
            if self._listener is not None:
                self._listener.on_estimate_end(self)
            return estimate
        finally:
            self._locked = False

    def _run_phase(self, estimator) -> RadioSourceEstimate:
        try:
            return estimator.estimate()
        except NotReadyError as e:
            raise RobustEstimationError(f"{type(estimator).__name__} not ready") from e


def create_robust_mixed_estimator(
    method: RobustMethod,
    readings: Optional[Sequence[Reading]] = None,
    **kwargs,
) -> SequentialRobustMixedRadioSourceEstimator:
    """
    Create a robust mixed estimator using one robust method for both the
    ranging and the RSSI sub-problems.

    Args:
        method: Robust method for both phases
        readings: Mixed readings
        **kwargs: Forwarded to SequentialRobustMixedRadioSourceEstimator

    Returns:
        SequentialRobustMixedRadioSourceEstimator
    """
    return SequentialRobustMixedRadioSourceEstimator(
        readings, ranging_method=method, rssi_method=method, **kwargs
    )
