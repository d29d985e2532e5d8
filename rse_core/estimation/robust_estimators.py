"""
Robust Ranging and RSSI Sub-Estimators.

Wrap the robust engine around one homogeneous sub-problem each:
- RobustRangingEstimator: position from ranging readings, scored by
  distance residual |dist(x, anchor) - d|
- RobustRssiEstimator: power / path-loss exponent / position from RSSI
  readings, scored by signal residual |Pr_expected - rssi|

Pipeline per estimate():
1. Robust search over minimal subsets (preliminary linear or LM fits)
2. Refinement over inliers with the full non-linear solver
3. Results stored on the estimator and returned as RadioSourceEstimate
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, List, Optional, Sequence

import numpy as np

from rse_core.errors import (
    InvalidArgumentError,
    NotReadyError,
    RadioSourceEstimationError,
)
from rse_core.estimation.config import (
    RobustPhaseConfig,
    SolverConfig,
    DEFAULT_USE_HOMOGENEOUS_LINEAR_SOLVER,
    DEFAULT_USE_READING_POSITION_COVARIANCES,
    DEFAULT_TRANSMITTED_POWER_ESTIMATION_ENABLED,
    DEFAULT_PATH_LOSS_ESTIMATION_ENABLED,
)
from rse_core.estimation.listener import EstimatorListener
from rse_core.estimation.locking import Lockable, LockedAttribute
from rse_core.estimation.ranging_solver import RangingSolver
from rse_core.estimation.refinement import refine_result
from rse_core.estimation.robust_engine import (
    FittingStrategy,
    RobustEngine,
    RobustEngineConfig,
    RobustMethod,
)
from rse_core.estimation.rssi_solver import RssiFit, RssiSolver, expected_rssi
from rse_core.path_loss import (
    DEFAULT_PATH_LOSS_EXPONENT,
    dbm_to_mw,
    mw_to_dbm,
    path_loss_constant_db,
)
from rse_core.proto.estimate import InliersData, RadioSourceEstimate
from rse_core.proto.readings import (
    RangingAndRssiReading,
    RangingReading,
    RssiReading,
    anchor_positions,
    readings_dimensions,
)
from rse_core.metrics import get_metrics

logger = logging.getLogger(__name__)

DEFAULT_ROBUST_METHOD = RobustMethod.PROMEDS


def validate_method(owner, method) -> RobustMethod:
    """LockedAttribute validator accepting a RobustMethod or its name."""
    if isinstance(method, RobustMethod):
        return method
    try:
        return RobustMethod(method)
    except ValueError as e:
        raise InvalidArgumentError(f"unknown robust method: {method!r}") from e


def _validate_position(position, dims: Optional[int]) -> Optional[np.ndarray]:
    if position is None:
        return None
    position = np.asarray(position, dtype=float)
    if dims is None and position.shape in ((2,), (3,)):
        return position
    dims = dims or 2
    if position.shape != (dims,):
        raise InvalidArgumentError(f"position must have {dims} coordinates, got {position.shape}")
    return position


# =============================================================================
# Fitting strategies
# =============================================================================

class RangingFitting(FittingStrategy):
    """Minimal-subset lateration over ranging readings."""

    def __init__(
        self,
        readings: Sequence[RangingReading],
        solver: RangingSolver,
        initial_position: Optional[np.ndarray] = None,
    ):
        self.readings = list(readings)
        self.solver = solver
        self.initial_position = initial_position
        self.anchors = anchor_positions(self.readings)
        self.distances = np.array([r.distance for r in self.readings], dtype=float)
        self.metrics = get_metrics()

    @property
    def total_samples(self) -> int:
        return len(self.readings)

    @property
    def min_subset_size(self) -> int:
        return RangingSolver.min_readings(self.anchors.shape[1])

    def fit_subset(self, indices: Sequence[int]) -> List[np.ndarray]:
        subset = [self.readings[i] for i in indices]
        try:
            fit = self.solver.solve(subset, self.initial_position)
        except (RadioSourceEstimationError, np.linalg.LinAlgError) as e:
            logger.debug("Ranging subset %s discarded: %s", list(indices), e)
            self.metrics.increment_drop('preliminary_fit_failed')
            return []
        return [fit.position]

    def residuals(self, solution: np.ndarray) -> np.ndarray:
        return np.abs(np.linalg.norm(solution - self.anchors, axis=1) - self.distances)


class RssiFitting(FittingStrategy):
    """Minimal-subset path-loss fits over RSSI readings."""

    def __init__(
        self,
        readings: Sequence[RssiReading],
        solver: RssiSolver,
        initial_position: Optional[np.ndarray],
        initial_transmitted_power_dbm: Optional[float],
        initial_path_loss_exponent: float,
    ):
        self.readings = list(readings)
        self.solver = solver
        self.initial_position = initial_position
        self.initial_transmitted_power_dbm = initial_transmitted_power_dbm
        self.initial_path_loss_exponent = initial_path_loss_exponent
        self.anchors = anchor_positions(self.readings)
        self.rssi = np.array([r.rssi for r in self.readings], dtype=float)
        self.k_db = np.array([path_loss_constant_db(r.source.frequency_hz) for r in self.readings])
        self.metrics = get_metrics()

    @property
    def total_samples(self) -> int:
        return len(self.readings)

    @property
    def min_subset_size(self) -> int:
        return self.solver.min_readings(self.anchors.shape[1])

    def fit_subset(self, indices: Sequence[int]) -> List[RssiFit]:
        subset = [self.readings[i] for i in indices]
        try:
            fit = self.solver.solve(
                subset,
                initial_position=self.initial_position,
                initial_transmitted_power_dbm=self.initial_transmitted_power_dbm,
                initial_path_loss_exponent=self.initial_path_loss_exponent,
            )
        except (RadioSourceEstimationError, np.linalg.LinAlgError) as e:
            logger.debug("RSSI subset %s discarded: %s", list(indices), e)
            self.metrics.increment_drop('preliminary_fit_failed')
            return []
        return [fit]

    def residuals(self, solution: RssiFit) -> np.ndarray:
        with np.errstate(divide='ignore', invalid='ignore'):
            expected = expected_rssi(
                self.anchors, solution.position, solution.transmitted_power_dbm,
                solution.path_loss_exponent, self.k_db,
            )
        return np.abs(expected - self.rssi)


# =============================================================================
# Sub-estimators
# =============================================================================

class _RobustSubEstimator(Lockable, ABC):
    """Shared state and lifecycle of the robust sub-estimators."""

    def _validate_config(self, config):
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

    method = LockedAttribute(validate_method)
    config = LockedAttribute(_validate_config)
    quality_scores = LockedAttribute(_validate_quality_scores)
    listener = LockedAttribute()
    solver_config = LockedAttribute()

    def __init__(self, method, config, dims, listener, solver_config):
        if dims is not None and dims not in (2, 3):
            raise InvalidArgumentError(f"dimensions must be 2 or 3: {dims}")
        self._dims = dims
        self._readings = []
        self.method = method
        self.config = config
        self.listener = listener
        self.solver_config = solver_config or SolverConfig()
        self._quality_scores = None
        self.metrics = get_metrics()

        self.inliers_data: Optional[InliersData] = None
        self.covariance: Optional[np.ndarray] = None

    def _known_dims(self) -> Optional[int]:
        if self._dims is not None:
            return self._dims
        return readings_dimensions(self._readings)

    @property
    def dims(self) -> int:
        dims = self._known_dims()
        return dims if dims is not None else 2

    def _check_dims(self, readings):
        dims = readings_dimensions(readings)
        if dims is None:
            return
        if self._dims is not None and dims != self._dims:
            raise InvalidArgumentError(f"expected {self._dims}D readings, got {dims}D")
        position = getattr(self, '_initial_position', None)
        if position is not None and position.shape != (dims,):
            raise InvalidArgumentError(
                f"{dims}D readings do not match the {position.shape[0]}D initial position"
            )

    @property
    def readings(self) -> list:
        return self._readings

    @property
    @abstractmethod
    def min_readings(self) -> int:
        """Readings needed by one minimal fit."""

    def is_ready(self) -> bool:
        n = len(self._readings)
        if n < self.min_readings:
            return False
        subset_size = self.config.preliminary_subset_size
        if subset_size is not None and subset_size > n:
            return False
        if self.method.requires_quality_scores:
            return self._quality_scores is not None and len(self._quality_scores) == n
        return True

    def _engine_config(self) -> RobustEngineConfig:
        cfg = self.config
        return RobustEngineConfig(
            threshold=cfg.effective_threshold,
            stop_threshold=cfg.stop_threshold,
            confidence=cfg.confidence,
            max_iterations=cfg.max_iterations,
            progress_delta=cfg.progress_delta,
            subset_size=cfg.preliminary_subset_size,
            seed=cfg.seed,
        )

    @abstractmethod
    def _make_strategy(self) -> FittingStrategy:
        """Fitting strategy over the current readings."""

    @abstractmethod
    def _refit(self, inlier_indices: List[int], solution: Any):
        """Full fit over the inliers, returning (solution, covariance)."""

    @abstractmethod
    def _store(self, solution: Any, covariance: Optional[np.ndarray]):
        """Keep a solution as the estimator's result."""

    @abstractmethod
    def _result(self) -> RadioSourceEstimate:
        """Stored result as a RadioSourceEstimate."""

    def estimate(self) -> RadioSourceEstimate:
        """
        Run the robust search and refinement.

        Returns:
            RadioSourceEstimate

        Raises:
            LockedError: if already estimating
            NotReadyError: if readings or quality scores are insufficient
            RobustEstimationError: if no candidate could be found
        """
        self._check_not_locked()
        if not self.is_ready():
            self.metrics.increment_drop('not_ready')
            raise NotReadyError()

        self._locked = True
        try:
            listener = self._listener
            if listener is not None:
                listener.on_estimate_start(self)

            engine = RobustEngine(
                self._make_strategy(),
                self.method,
                self._engine_config(),
                quality_scores=self._quality_scores,
                on_iteration=None if listener is None else (
                    lambda i: listener.on_estimate_next_iteration(self, i)),
                on_progress=None if listener is None else (
                    lambda p: listener.on_estimate_progress_change(self, p)),
            )
            result = engine.run()

            outcome = refine_result(
                result.solution,
                result.inliers_data,
                self._refit,
                refine=self.config.refine_result,
                keep_covariance=self.config.keep_covariance,
            )
            self.inliers_data = result.inliers_data
            self._store(outcome.solution, outcome.covariance)

            if listener is not None:
                listener.on_estimate_end(self)
            return self._result()
        finally:
            self._locked = False


class RobustRangingEstimator(_RobustSubEstimator):
    """
    Robustly estimate a radio source position from ranging readings.

    Usage:
        estimator = RobustRangingEstimator(
            readings, method=RobustMethod.RANSAC,
            config=RobustPhaseConfig(threshold=0.5, seed=1),
        )
        estimate = estimator.estimate()
        print(estimate.position, estimator.inliers_data.inlier_indices())
    """

    def _validate_readings(self, readings):
        converted = []
        for reading in readings or []:
            if isinstance(reading, RangingAndRssiReading):
                reading = reading.to_ranging_reading()
            elif not isinstance(reading, RangingReading):
                raise InvalidArgumentError(f"not a ranging reading: {type(reading).__name__}")
            converted.append(reading)
        self._check_dims(converted)
        return converted

    def _validate_initial_position(self, position):
        return _validate_position(position, self._known_dims())

    readings = LockedAttribute(_validate_readings)
    initial_position = LockedAttribute(_validate_initial_position)
    use_reading_position_covariances = LockedAttribute()
    use_homogeneous_linear_solver = LockedAttribute()

    def __init__(
        self,
        readings: Optional[Sequence[RangingReading]] = None,
        method: RobustMethod = DEFAULT_ROBUST_METHOD,
        config: Optional[RobustPhaseConfig] = None,
        quality_scores: Optional[Sequence[float]] = None,
        initial_position: Optional[Sequence[float]] = None,
        dims: Optional[int] = None,
        use_reading_position_covariances: bool = DEFAULT_USE_READING_POSITION_COVARIANCES,
        use_homogeneous_linear_solver: bool = DEFAULT_USE_HOMOGENEOUS_LINEAR_SOLVER,
        listener: Optional[EstimatorListener] = None,
        solver_config: Optional[SolverConfig] = None,
    ):
        super().__init__(method, config, dims, listener, solver_config)
        self.readings = readings
        self.initial_position = initial_position
        self.use_reading_position_covariances = use_reading_position_covariances
        self.use_homogeneous_linear_solver = use_homogeneous_linear_solver
        self.quality_scores = quality_scores

        self.estimated_position: Optional[np.ndarray] = None

    @property
    def min_readings(self) -> int:
        return RangingSolver.min_readings(self.dims)

    @property
    def estimated_position_covariance(self) -> Optional[np.ndarray]:
        return self.covariance

    def _solver(self, nonlinear_enabled: bool) -> RangingSolver:
        return RangingSolver(
            self.solver_config,
            nonlinear_enabled=nonlinear_enabled,
            use_homogeneous_linear_solver=self._use_homogeneous_linear_solver,
            use_reading_position_covariances=self._use_reading_position_covariances,
        )

    def _make_strategy(self) -> RangingFitting:
        # Linear-only preliminary fits unless a starting point is known
        return RangingFitting(
            self._readings,
            self._solver(nonlinear_enabled=self._initial_position is not None),
            self._initial_position,
        )

    def _refit(self, inlier_indices, solution):
        fit = self._solver(nonlinear_enabled=True).solve(
            [self._readings[i] for i in inlier_indices], initial_position=solution
        )
        return fit.position, fit.covariance

    def _store(self, solution, covariance):
        self.estimated_position = np.asarray(solution, dtype=float)
        self.covariance = covariance

    def _result(self) -> RadioSourceEstimate:
        return RadioSourceEstimate(
            position=self.estimated_position,
            transmitted_power_dbm=None,
            path_loss_exponent=DEFAULT_PATH_LOSS_EXPONENT,
            covariance=self.covariance,
            position_covariance=self.covariance,
            inliers_data=self.inliers_data,
        )


class RobustRssiEstimator(_RobustSubEstimator):
    """
    Robustly estimate transmitted power, path-loss exponent and/or position
    from RSSI readings.

    Usage:
        estimator = RobustRssiEstimator(
            readings, method=RobustMethod.LMEDS,
            initial_position=(1.0, 1.0), position_estimation_enabled=False,
        )
        estimate = estimator.estimate()
        print(estimate.transmitted_power_dbm)
    """

    def _validate_readings(self, readings):
        converted = []
        for reading in readings or []:
            if isinstance(reading, RangingAndRssiReading):
                reading = reading.to_rssi_reading()
            elif not isinstance(reading, RssiReading):
                raise InvalidArgumentError(f"not an RSSI reading: {type(reading).__name__}")
            converted.append(reading)
        self._check_dims(converted)
        return converted

    def _validate_initial_position(self, position):
        return _validate_position(position, self._known_dims())

    def _validate_initial_power(self, power_dbm):
        return None if power_dbm is None else float(power_dbm)

    readings = LockedAttribute(_validate_readings)
    initial_position = LockedAttribute(_validate_initial_position)
    initial_transmitted_power_dbm = LockedAttribute(_validate_initial_power)
    initial_path_loss_exponent = LockedAttribute()
    position_estimation_enabled = LockedAttribute()
    transmitted_power_estimation_enabled = LockedAttribute()
    path_loss_estimation_enabled = LockedAttribute()

    def __init__(
        self,
        readings: Optional[Sequence[RssiReading]] = None,
        method: RobustMethod = DEFAULT_ROBUST_METHOD,
        config: Optional[RobustPhaseConfig] = None,
        quality_scores: Optional[Sequence[float]] = None,
        initial_position: Optional[Sequence[float]] = None,
        initial_transmitted_power_dbm: Optional[float] = None,
        initial_path_loss_exponent: float = DEFAULT_PATH_LOSS_EXPONENT,
        dims: Optional[int] = None,
        position_estimation_enabled: bool = True,
        transmitted_power_estimation_enabled: bool = DEFAULT_TRANSMITTED_POWER_ESTIMATION_ENABLED,
        path_loss_estimation_enabled: bool = DEFAULT_PATH_LOSS_ESTIMATION_ENABLED,
        listener: Optional[EstimatorListener] = None,
        solver_config: Optional[SolverConfig] = None,
    ):
        super().__init__(method, config, dims, listener, solver_config)
        self.readings = readings
        self.initial_position = initial_position
        self.initial_transmitted_power_dbm = initial_transmitted_power_dbm
        self.initial_path_loss_exponent = initial_path_loss_exponent
        self.position_estimation_enabled = position_estimation_enabled
        self.transmitted_power_estimation_enabled = transmitted_power_estimation_enabled
        self.path_loss_estimation_enabled = path_loss_estimation_enabled
        self.quality_scores = quality_scores

        self.estimated_position: Optional[np.ndarray] = None
        self.estimated_position_covariance: Optional[np.ndarray] = None
        self.estimated_transmitted_power_dbm: Optional[float] = None
        self.estimated_transmitted_power_variance: Optional[float] = None
        self.estimated_path_loss_exponent: float = initial_path_loss_exponent
        self.estimated_path_loss_exponent_variance: Optional[float] = None

    @property
    def initial_transmitted_power_mw(self) -> Optional[float]:
        if self._initial_transmitted_power_dbm is None:
            return None
        return dbm_to_mw(self._initial_transmitted_power_dbm)

    @initial_transmitted_power_mw.setter
    def initial_transmitted_power_mw(self, power_mw: Optional[float]):
        self.initial_transmitted_power_dbm = None if power_mw is None else mw_to_dbm(power_mw)

    @property
    def estimated_transmitted_power_mw(self) -> Optional[float]:
        if self.estimated_transmitted_power_dbm is None:
            return None
        return dbm_to_mw(self.estimated_transmitted_power_dbm)

    def _solver(self) -> RssiSolver:
        return RssiSolver(
            self.solver_config,
            position_estimation_enabled=self._position_estimation_enabled,
            transmitted_power_estimation_enabled=self._transmitted_power_estimation_enabled,
            path_loss_estimation_enabled=self._path_loss_estimation_enabled,
        )

    @property
    def min_readings(self) -> int:
        return self._solver().min_readings(self.dims)

    def is_ready(self, position_seeded: bool = False) -> bool:
        """
        Check readings, quality scores and fixed parameters.

        Args:
            position_seeded: Treat the initial position as known even if unset
                (it will be supplied before estimating)
        """
        if not super().is_ready():
            return False
        return self._solver().is_ready(
            self._readings,
            self.dims,
            has_initial_position=self._initial_position is not None or position_seeded,
            has_initial_power=self._initial_transmitted_power_dbm is not None,
        )

    def _make_strategy(self) -> RssiFitting:
        return RssiFitting(
            self._readings,
            self._solver(),
            self._initial_position,
            self._initial_transmitted_power_dbm,
            self._initial_path_loss_exponent,
        )

    def _refit(self, inlier_indices, solution: RssiFit):
        fit = self._solver().solve(
            [self._readings[i] for i in inlier_indices],
            initial_position=solution.position,
            initial_transmitted_power_dbm=solution.transmitted_power_dbm,
            initial_path_loss_exponent=solution.path_loss_exponent,
        )
        return fit, fit.covariance

    def _store(self, solution: RssiFit, covariance):
        self.estimated_position = solution.position
        self.estimated_transmitted_power_dbm = solution.transmitted_power_dbm
        self.estimated_path_loss_exponent = solution.path_loss_exponent
        self.covariance = covariance

        self.estimated_position_covariance = None
        self.estimated_transmitted_power_variance = None
        self.estimated_path_loss_exponent_variance = None
        if covariance is None:
            return
        i = 0
        if self._position_estimation_enabled:
            self.estimated_position_covariance = covariance[:self.dims, :self.dims]
            i = self.dims
        if self._transmitted_power_estimation_enabled:
            self.estimated_transmitted_power_variance = float(covariance[i, i])
            i += 1
        if self._path_loss_estimation_enabled:
            self.estimated_path_loss_exponent_variance = float(covariance[i, i])

    def _result(self) -> RadioSourceEstimate:
        return RadioSourceEstimate(
            position=self.estimated_position,
            transmitted_power_dbm=self.estimated_transmitted_power_dbm,
            path_loss_exponent=self.estimated_path_loss_exponent,
            covariance=self.covariance,
            position_covariance=self.estimated_position_covariance,
            transmitted_power_variance=self.estimated_transmitted_power_variance,
            path_loss_exponent_variance=self.estimated_path_loss_exponent_variance,
            inliers_data=self.inliers_data,
            rssi_position_enabled=self._position_estimation_enabled,
        )
