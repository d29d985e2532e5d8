"""
Estimation Module: Radio source position, power and path-loss estimation.

Components:
- Reading classifier: ranging / RSSI split, fallback and validity rules
- Inner solvers: lateration + LM (ranging), log-distance LM fit (RSSI)
- Robust engine: RANSAC, MSAC, LMedS, PROSAC, PROMedS over a fitting strategy
- Refinement: inlier refit with fallback to the robust candidate
- Estimators: non-robust mixed baseline, robust sub-estimators and the
  sequential robust mixed estimator
"""

# Configuration
from .config import (
    SolverConfig,
    RobustPhaseConfig,
)

# Reading classification
from .reading_classifier import (
    ReadingClassification,
    classify_readings,
    is_rssi_position_fallback,
    min_ranging_readings,
    min_rssi_readings,
)

# Inner solvers
from .least_squares import LeastSquaresResult, levenberg_marquardt
from .ranging_solver import (
    RangingFit,
    RangingSolver,
    effective_distance_std,
    homogeneous_lateration,
    inhomogeneous_lateration,
)
from .rssi_solver import RssiFit, RssiSolver, expected_rssi

# Robust engine
from .robust_engine import (
    FittingStrategy,
    RobustEngine,
    RobustEngineConfig,
    RobustMethod,
    RobustResult,
    iteration_bound,
)
from .refinement import RefinementOutcome, refine_result

# Estimators
from .listener import EstimatorListener, ScaledProgressListener
from .robust_estimators import (
    RangingFitting,
    RssiFitting,
    RobustRangingEstimator,
    RobustRssiEstimator,
)
from .base import BaseMixedRadioSourceEstimator, assemble_covariance
from .mixed_estimator import MixedRadioSourceEstimator
from .sequential_estimator import (
    SequentialRobustMixedRadioSourceEstimator,
    create_robust_mixed_estimator,
)

__all__ = [
    # Configuration
    'SolverConfig',
    'RobustPhaseConfig',
    # Reading classification
    'ReadingClassification',
    'classify_readings',
    'is_rssi_position_fallback',
    'min_ranging_readings',
    'min_rssi_readings',
    # Inner solvers
    'LeastSquaresResult',
    'levenberg_marquardt',
    'RangingFit',
    'RangingSolver',
    'effective_distance_std',
    'homogeneous_lateration',
    'inhomogeneous_lateration',
    'RssiFit',
    'RssiSolver',
    'expected_rssi',
    # Robust engine
    'FittingStrategy',
    'RobustEngine',
    'RobustEngineConfig',
    'RobustMethod',
    'RobustResult',
    'iteration_bound',
    'RefinementOutcome',
    'refine_result',
    # Estimators
    'EstimatorListener',
    'ScaledProgressListener',
    'RangingFitting',
    'RssiFitting',
    'RobustRangingEstimator',
    'RobustRssiEstimator',
    'BaseMixedRadioSourceEstimator',
    'assemble_covariance',
    'MixedRadioSourceEstimator',
    'SequentialRobustMixedRadioSourceEstimator',
    'create_robust_mixed_estimator',
]
