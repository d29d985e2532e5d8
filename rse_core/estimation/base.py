"""
Shared base of the mixed radio source estimators.

Holds readings, initial values, estimation flags, the lock and listener,
reading classification, result accessors and covariance assembly.

Combined covariance layout: {position} + {power if estimated} + {path loss
if estimated}. With ranging-based position the position block comes from
the ranging fit and the trailing block from the RSSI fit; if either is
missing the combined covariance is None, never partially filled. In RSSI
position fallback the RSSI covariance is used as-is.
"""

import logging
from typing import Optional, Sequence

import numpy as np

from rse_core.errors import InvalidArgumentError, NumericalError
from rse_core.estimation.config import (
    SolverConfig,
    DEFAULT_PATH_LOSS_ESTIMATION_ENABLED,
    DEFAULT_TRANSMITTED_POWER_ESTIMATION_ENABLED,
    DEFAULT_USE_HOMOGENEOUS_LINEAR_SOLVER,
    DEFAULT_USE_READING_POSITION_COVARIANCES,
)
from rse_core.estimation.listener import EstimatorListener
from rse_core.estimation.locking import Lockable, LockedAttribute
from rse_core.estimation.reading_classifier import (
    ReadingClassification,
    classify_readings,
    min_ranging_readings,
)
from rse_core.path_loss import DEFAULT_PATH_LOSS_EXPONENT, dbm_to_mw, mw_to_dbm
from rse_core.proto.estimate import InliersData, RadioSourceEstimate
from rse_core.proto.readings import Reading, readings_dimensions
from rse_core.metrics import get_metrics

logger = logging.getLogger(__name__)


def assemble_covariance(
    dims: int,
    position_covariance: Optional[np.ndarray],
    rssi_covariance: Optional[np.ndarray],
    transmitted_power_estimated: bool,
    path_loss_estimated: bool,
) -> Optional[np.ndarray]:
    """
    Build the block-diagonal combined covariance.

    Returns:
        (dims + k) x (dims + k) matrix, or None if either block is missing

    Raises:
        NumericalError: if a block does not match the expected size
    """
    if position_covariance is None or rssi_covariance is None:
        return None

    k = int(transmitted_power_estimated) + int(path_loss_estimated)
    n = dims + k
    position_covariance = np.asarray(position_covariance, dtype=float)
    rssi_covariance = np.asarray(rssi_covariance, dtype=float)
    if position_covariance.shape != (dims, dims):
        raise NumericalError(f"position covariance must be {dims}x{dims}, got {position_covariance.shape}")
    if rssi_covariance.shape != (k, k):
        raise NumericalError(f"RSSI covariance must be {k}x{k}, got {rssi_covariance.shape}")

    covariance = np.zeros((n, n))
    covariance[:dims, :dims] = position_covariance
    covariance[dims:, dims:] = rssi_covariance
    return covariance


class BaseMixedRadioSourceEstimator(Lockable):
    """
    Common state of estimators consuming mixed ranging and RSSI readings.

    Subclasses implement estimate().
    """

    metrics_prefix = 'mixed'

    def _validate_readings(self, readings):
        readings = list(readings or [])
        if not readings:
            return readings
        classification = self.classify(readings)
        if not classification.are_valid(
            self._transmitted_power_estimation_enabled, self._path_loss_estimation_enabled
        ):
            raise InvalidArgumentError(
                "not enough ranging / RSSI readings for the requested estimation"
            )
        position = getattr(self, '_initial_position', None)
        if position is not None and position.shape != (classification.dims,):
            raise InvalidArgumentError(
                f"{classification.dims}D readings do not match the "
                f"{position.shape[0]}D initial position"
            )
        return readings

    def _validate_initial_position(self, position):
        if position is None:
            return None
        position = np.asarray(position, dtype=float)
        if self._known_dims() is None and position.shape in ((2,), (3,)):
            return position
        if position.shape != (self.dims,):
            raise InvalidArgumentError(f"initial position must have {self.dims} coordinates")
        return position

    def _validate_initial_power(self, power_dbm):
        return None if power_dbm is None else float(power_dbm)

    def _validate_path_loss_exponent(self, exponent):
        return float(exponent)

    readings = LockedAttribute(_validate_readings)
    initial_position = LockedAttribute(_validate_initial_position)
    initial_transmitted_power_dbm = LockedAttribute(_validate_initial_power)
    initial_path_loss_exponent = LockedAttribute(_validate_path_loss_exponent)
    transmitted_power_estimation_enabled = LockedAttribute()
    path_loss_estimation_enabled = LockedAttribute()
    use_reading_position_covariances = LockedAttribute()
    use_homogeneous_ranging_linear_solver = LockedAttribute()
    listener = LockedAttribute()
    solver_config = LockedAttribute()

    def __init__(
        self,
        readings: Optional[Sequence[Reading]] = None,
        initial_position: Optional[Sequence[float]] = None,
        initial_transmitted_power_dbm: Optional[float] = None,
        initial_path_loss_exponent: float = DEFAULT_PATH_LOSS_EXPONENT,
        dims: Optional[int] = None,
        transmitted_power_estimation_enabled: bool = DEFAULT_TRANSMITTED_POWER_ESTIMATION_ENABLED,
        path_loss_estimation_enabled: bool = DEFAULT_PATH_LOSS_ESTIMATION_ENABLED,
        use_reading_position_covariances: bool = DEFAULT_USE_READING_POSITION_COVARIANCES,
        use_homogeneous_ranging_linear_solver: bool = DEFAULT_USE_HOMOGENEOUS_LINEAR_SOLVER,
        listener: Optional[EstimatorListener] = None,
        solver_config: Optional[SolverConfig] = None,
    ):
        if dims is not None and dims not in (2, 3):
            raise InvalidArgumentError(f"dimensions must be 2 or 3: {dims}")
        # None: follow the dimensionality of the current readings
        self._dims = dims
        self._readings = []
        self.metrics = get_metrics()

        self.transmitted_power_estimation_enabled = transmitted_power_estimation_enabled
        self.path_loss_estimation_enabled = path_loss_estimation_enabled
        self.use_reading_position_covariances = use_reading_position_covariances
        self.use_homogeneous_ranging_linear_solver = use_homogeneous_ranging_linear_solver
        self.listener = listener
        self.solver_config = solver_config or SolverConfig()
        self.readings = readings
        self.initial_position = initial_position
        self.initial_transmitted_power_dbm = initial_transmitted_power_dbm
        self.initial_path_loss_exponent = initial_path_loss_exponent

        # Results of the last successful estimate()
        self.estimated_position: Optional[np.ndarray] = None
        self.estimated_position_covariance: Optional[np.ndarray] = None
        self.estimated_transmitted_power_dbm: Optional[float] = None
        self.estimated_transmitted_power_variance: Optional[float] = None
        self.estimated_path_loss_exponent: float = self._initial_path_loss_exponent
        self.estimated_path_loss_exponent_variance: Optional[float] = None
        self.estimated_covariance: Optional[np.ndarray] = None
        self.inliers_data: Optional[InliersData] = None

    # -------------------------------------------------------------------------
    # Classification and validity
    # -------------------------------------------------------------------------

    def _known_dims(self) -> Optional[int]:
        if self._dims is not None:
            return self._dims
        return readings_dimensions(self._readings)

    @property
    def dims(self) -> int:
        """Explicit dimensionality, else that of the readings (2 without readings)."""
        dims = self._known_dims()
        return dims if dims is not None else 2

    def classify(self, readings: Optional[Sequence[Reading]] = None) -> ReadingClassification:
        return classify_readings(self._readings if readings is None else readings, self._dims)

    def are_valid_readings(self, readings: Optional[Sequence[Reading]]) -> bool:
        """True if readings support the requested estimation (see ReadingClassification.are_valid)."""
        if not readings:
            return False
        return self.classify(readings).are_valid(
            self._transmitted_power_estimation_enabled, self._path_loss_estimation_enabled
        )

    @property
    def rssi_position_enabled(self) -> bool:
        """True if position must be estimated from RSSI readings."""
        return self.classify().rssi_position_fallback

    @property
    def min_ranging_readings(self) -> int:
        return min_ranging_readings(self.dims)

    @property
    def min_rssi_readings(self) -> int:
        return self.classify().min_rssi_readings(
            self._transmitted_power_estimation_enabled, self._path_loss_estimation_enabled
        )

    @property
    def min_readings(self) -> int:
        """Readings needed to estimate position plus every enabled RSSI parameter."""
        return (self.dims
                + int(self._transmitted_power_estimation_enabled)
                + int(self._path_loss_estimation_enabled)
                + 1)

    def _rssi_phase_needed(self, fallback: bool) -> bool:
        return (self._transmitted_power_estimation_enabled
                or self._path_loss_estimation_enabled
                or fallback)

    def _fixed_power_known(self, fallback: bool) -> bool:
        """A fixed transmitted power must be supplied if the RSSI phase runs without estimating it."""
        return (not self._rssi_phase_needed(fallback)
                or self._transmitted_power_estimation_enabled
                or self._initial_transmitted_power_dbm is not None)

    # -------------------------------------------------------------------------
    # Power units
    # -------------------------------------------------------------------------

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

    # -------------------------------------------------------------------------
    # Result assembly
    # -------------------------------------------------------------------------

    def _combine(
        self,
        fallback: bool,
        position: Optional[np.ndarray],
        position_covariance: Optional[np.ndarray],
        rssi,
        inliers_data: Optional[InliersData] = None,
    ) -> RadioSourceEstimate:
        """
        Merge the ranging and RSSI phase outputs and store them.

        Args:
            fallback: Position was estimated from RSSI readings
            position: Ranging phase position (None in fallback)
            position_covariance: Ranging phase position covariance
            rssi: RSSI phase output (RssiFit or RadioSourceEstimate), None if skipped
            inliers_data: Consensus of the last robust phase

        Raises:
            NumericalError: if covariance blocks have unexpected sizes
        """
        power_on = self._transmitted_power_estimation_enabled
        path_loss_on = self._path_loss_estimation_enabled

        power = self._initial_transmitted_power_dbm
        power_variance = None
        exponent = self._initial_path_loss_exponent
        exponent_variance = None

        if rssi is not None:
            if fallback:
                position = rssi.position
                position_covariance = rssi.position_covariance
            if power_on:
                power = rssi.transmitted_power_dbm
                power_variance = rssi.transmitted_power_variance
            if path_loss_on:
                exponent = rssi.path_loss_exponent
                exponent_variance = rssi.path_loss_exponent_variance

            if fallback:
                covariance = rssi.covariance
            else:
                covariance = assemble_covariance(
                    self.dims, position_covariance, rssi.covariance, power_on, path_loss_on
                )
                if covariance is None:
                    self.metrics.increment_drop('covariance_dropped')
        else:
            covariance = position_covariance

        estimate = RadioSourceEstimate(
            position=None if position is None else np.asarray(position, dtype=float),
            transmitted_power_dbm=power,
            path_loss_exponent=exponent,
            covariance=covariance,
            position_covariance=position_covariance,
            transmitted_power_variance=power_variance,
            path_loss_exponent_variance=exponent_variance,
            inliers_data=inliers_data,
            rssi_position_enabled=fallback,
        )

        self.estimated_position = estimate.position
        self.estimated_position_covariance = position_covariance
        self.estimated_transmitted_power_dbm = power
        self.estimated_transmitted_power_variance = power_variance
        self.estimated_path_loss_exponent = exponent
        self.estimated_path_loss_exponent_variance = exponent_variance
        self.estimated_covariance = covariance
        self.inliers_data = inliers_data
        return estimate
