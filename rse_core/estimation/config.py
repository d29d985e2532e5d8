"""
Configuration value objects for radio source estimation.

Defaults are documented once here and passed explicitly to the solvers and
robust estimators that need them.
"""

from dataclasses import dataclass
from typing import Optional

from rse_core.errors import InvalidArgumentError

# Inner solver defaults
DEFAULT_DISTANCE_STD = 1.0e-3
DEFAULT_RSSI_STD_DB = 1.0
DEFAULT_SOLVER_MAX_ITERATIONS = 100
DEFAULT_SOLVER_TOLERANCE = 1e-12

# Robust estimation defaults
DEFAULT_THRESHOLD = 0.1
DEFAULT_STOP_THRESHOLD = 1e-4
DEFAULT_CONFIDENCE = 0.99
DEFAULT_MAX_ITERATIONS = 5000
DEFAULT_PROGRESS_DELTA = 0.05
MIN_CONFIDENCE = 0.0
MAX_CONFIDENCE = 1.0
MIN_ITERATIONS = 1
MIN_PROGRESS_DELTA = 0.0
MAX_PROGRESS_DELTA = 1.0

# Estimator defaults
DEFAULT_REFINE_RESULT = True
DEFAULT_KEEP_COVARIANCE = True
DEFAULT_USE_READING_POSITION_COVARIANCES = True
DEFAULT_USE_HOMOGENEOUS_LINEAR_SOLVER = True
DEFAULT_TRANSMITTED_POWER_ESTIMATION_ENABLED = True
DEFAULT_PATH_LOSS_ESTIMATION_ENABLED = False


def validate_confidence(confidence: float) -> float:
    if not MIN_CONFIDENCE <= confidence <= MAX_CONFIDENCE:
        raise InvalidArgumentError(f"Confidence must be in [0, 1]: {confidence}")
    return confidence


def validate_max_iterations(max_iterations: int) -> int:
    if max_iterations < MIN_ITERATIONS:
        raise InvalidArgumentError(f"Max iterations must be >= 1: {max_iterations}")
    return max_iterations


def validate_progress_delta(progress_delta: float) -> float:
    if not MIN_PROGRESS_DELTA <= progress_delta <= MAX_PROGRESS_DELTA:
        raise InvalidArgumentError(f"Progress delta must be in [0, 1]: {progress_delta}")
    return progress_delta


def validate_threshold(threshold: Optional[float], name: str = "Threshold") -> Optional[float]:
    if threshold is not None and threshold <= 0.0:
        raise InvalidArgumentError(f"{name} must be positive: {threshold}")
    return threshold


@dataclass
class SolverConfig:
    """
    Configuration for the inner Levenberg-Marquardt model solvers.

    Attributes:
        max_iterations: Maximum LM iterations
        tolerance: Relative cost / step size convergence threshold
        initial_damping: Initial LM damping factor
        default_distance_std: Distance std used when a reading has none
        default_rssi_std_db: RSSI std (dB) used when a reading has none
    """

    max_iterations: int = DEFAULT_SOLVER_MAX_ITERATIONS
    tolerance: float = DEFAULT_SOLVER_TOLERANCE
    initial_damping: float = 1e-3
    default_distance_std: float = DEFAULT_DISTANCE_STD
    default_rssi_std_db: float = DEFAULT_RSSI_STD_DB

    def __post_init__(self):
        """Validate configuration."""
        validate_max_iterations(self.max_iterations)
        if self.tolerance <= 0:
            raise InvalidArgumentError("tolerance must be positive")
        if self.initial_damping <= 0:
            raise InvalidArgumentError("initial_damping must be positive")
        if self.default_distance_std <= 0 or self.default_rssi_std_db <= 0:
            raise InvalidArgumentError("default standard deviations must be positive")


@dataclass
class RobustPhaseConfig:
    """
    Configuration for one robust sub-problem (ranging or RSSI).

    Attributes:
        threshold: Inlier/outlier boundary for RANSAC, MSAC and PROSAC
            (distance error for ranging, dB for RSSI); None uses DEFAULT_THRESHOLD
        stop_threshold: Median residual below which LMedS/PROMedS stop early
        confidence: Probability of having sampled an outlier-free subset
        max_iterations: Iteration cap of the robust search
        progress_delta: Minimum progress change between notifications
        refine_result: Refit over inliers after the robust search
        keep_covariance: Keep the covariance of the refined fit
        preliminary_subset_size: Subset size per hypothesis; None uses the minimum
        seed: Random seed for reproducible sampling, None for entropy
    """

    threshold: Optional[float] = None
    stop_threshold: float = DEFAULT_STOP_THRESHOLD
    confidence: float = DEFAULT_CONFIDENCE
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    progress_delta: float = DEFAULT_PROGRESS_DELTA
    refine_result: bool = DEFAULT_REFINE_RESULT
    keep_covariance: bool = DEFAULT_KEEP_COVARIANCE
    preliminary_subset_size: Optional[int] = None
    seed: Optional[int] = None

    def __post_init__(self):
        """Validate configuration."""
        validate_threshold(self.threshold)
        validate_threshold(self.stop_threshold, "Stop threshold")
        validate_confidence(self.confidence)
        validate_max_iterations(self.max_iterations)
        validate_progress_delta(self.progress_delta)
        if self.preliminary_subset_size is not None and self.preliminary_subset_size < 1:
            raise InvalidArgumentError(
                f"Preliminary subset size must be >= 1: {self.preliminary_subset_size}"
            )

    @property
    def effective_threshold(self) -> float:
        return self.threshold if self.threshold is not None else DEFAULT_THRESHOLD
