"""
Inlier Refinement Stage.

Refits a robust candidate over its inliers with the full non-linear solver.
Refinement never aborts an estimation: any failure falls back to the
unrefined candidate with covariance cleared.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Tuple

import numpy as np

from rse_core.proto.estimate import InliersData
from rse_core.metrics import get_metrics

logger = logging.getLogger(__name__)

# refit(inlier_indices, initial_solution) -> (refined_solution, covariance)
RefitFunction = Callable[[List[int], Any], Tuple[Any, Optional[np.ndarray]]]


@dataclass
class RefinementOutcome:
    """
    Result of the refinement stage.

    Attributes:
        solution: Refined solution, or the robust candidate on fallback
        covariance: Refined covariance if kept, else None
        refined: True if the refit succeeded
    """

    solution: Any
    covariance: Optional[np.ndarray]
    refined: bool


def refine_result(
    solution: Any,
    inliers_data: Optional[InliersData],
    refit: RefitFunction,
    refine: bool = True,
    keep_covariance: bool = True,
) -> RefinementOutcome:
    """
    Refine a robust candidate over its inliers.

    Args:
        solution: Best robust candidate, used as initial guess
        inliers_data: Consensus of the candidate
        refit: Non-linear fit over a subset of readings
        refine: Refinement enabled
        keep_covariance: Keep the refined covariance

    Returns:
        RefinementOutcome
    """
    if not refine:
        return RefinementOutcome(solution=solution, covariance=None, refined=False)

    metrics = get_metrics()
    if inliers_data is None or inliers_data.num_inliers == 0:
        metrics.increment_drop('refinement_skipped')
        return RefinementOutcome(solution=solution, covariance=None, refined=False)

    try:
        refined, covariance = refit(inliers_data.inlier_indices(), solution)
    except Exception as e:
        logger.warning("Refinement over %d inliers failed, keeping robust estimate: %s",
                       inliers_data.num_inliers, e)
        metrics.increment_drop('refinement_failed')
        return RefinementOutcome(solution=solution, covariance=None, refined=False)

    return RefinementOutcome(
        solution=refined,
        covariance=covariance if keep_covariance else None,
        refined=True,
    )
