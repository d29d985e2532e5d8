"""
Robust Minimal-Solver Engine (RANSAC family).

Generic hypothesize-and-score estimator. Repeatedly draws minimal subsets
of samples, asks a FittingStrategy for candidate solutions, scores every
sample against each candidate and keeps the best one.

Methods:
- RANSAC: maximise inlier count (|r| <= threshold)
- MSAC: minimise sum(min(r^2, threshold^2))
- LMEDS: minimise median(r^2)
- PROSAC: RANSAC scoring, progressive sampling by quality score
- PROMEDS: LMEDS scoring, progressive sampling by quality score

Termination:
- Adaptive iteration bound log(1 - confidence) / log(1 - w^s)
- Iteration cap (returns best candidate found so far)
- Median residual below stop threshold (LMEDS / PROMEDS)
- Sample space depleted (PROSAC / PROMEDS)

If no candidate was ever produced the engine raises RobustEstimationError.
"""

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, List, Optional, Sequence, Tuple

import numpy as np

from rse_core.errors import NotReadyError, RobustEstimationError
from rse_core.estimation.config import (
    DEFAULT_CONFIDENCE,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_PROGRESS_DELTA,
    DEFAULT_STOP_THRESHOLD,
    DEFAULT_THRESHOLD,
    validate_confidence,
    validate_max_iterations,
    validate_progress_delta,
    validate_threshold,
)
from rse_core.proto.estimate import InliersData
from rse_core.metrics import get_metrics

logger = logging.getLogger(__name__)

# Robust standard deviation scale for median based inlier thresholds
LMEDS_INLIER_FACTOR = 1.5
MAD_TO_STD = 1.4826
# Median scoring only vouches for half of the samples
MEDIAN_BREAKDOWN_RATIO = 0.5


class RobustMethod(Enum):
    """Robust estimation method."""

    RANSAC = "ransac"
    MSAC = "msac"
    LMEDS = "lmeds"
    PROSAC = "prosac"
    PROMEDS = "promeds"

    @property
    def requires_quality_scores(self) -> bool:
        return self in (RobustMethod.PROSAC, RobustMethod.PROMEDS)

    @property
    def uses_median_score(self) -> bool:
        return self in (RobustMethod.LMEDS, RobustMethod.PROMEDS)


class FittingStrategy(ABC):
    """
    Domain side of a robust search.

    Implementations fit candidate solutions to sample subsets and compute
    per-sample residuals of a candidate.
    """

    @property
    @abstractmethod
    def total_samples(self) -> int:
        """Number of samples available."""

    @property
    @abstractmethod
    def min_subset_size(self) -> int:
        """Smallest subset that determines a candidate."""

    @abstractmethod
    def fit_subset(self, indices: Sequence[int]) -> List[Any]:
        """Fit candidates to a subset; empty list if the fit failed."""

    @abstractmethod
    def residuals(self, solution: Any) -> np.ndarray:
        """Residual of every sample against a candidate."""


@dataclass
class RobustEngineConfig:
    """
    Configuration for one robust search.

    Attributes:
        threshold: Inlier boundary for RANSAC, MSAC and PROSAC
        stop_threshold: Median residual for early stop in LMEDS and PROMEDS
        confidence: Probability of drawing at least one clean subset
        max_iterations: Hard iteration cap
        progress_delta: Minimum progress change between notifications
        subset_size: Samples per subset; None or smaller than minimum uses the minimum
        seed: Random seed, None for entropy
    """

    threshold: float = DEFAULT_THRESHOLD
    stop_threshold: float = DEFAULT_STOP_THRESHOLD
    confidence: float = DEFAULT_CONFIDENCE
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    progress_delta: float = DEFAULT_PROGRESS_DELTA
    subset_size: Optional[int] = None
    seed: Optional[int] = None

    def __post_init__(self):
        """Validate configuration."""
        validate_threshold(self.threshold)
        validate_threshold(self.stop_threshold, "Stop threshold")
        validate_confidence(self.confidence)
        validate_max_iterations(self.max_iterations)
        validate_progress_delta(self.progress_delta)


@dataclass
class RobustResult:
    """
    Best candidate of a robust search.

    Attributes:
        solution: Best candidate as produced by the strategy
        inliers_data: Consensus of the best candidate over all samples
        method: Method used
        iterations: Subsets drawn
        score: Method specific score (inlier count, MSAC cost or median r^2)
    """

    solution: Any
    inliers_data: InliersData
    method: RobustMethod
    iterations: int
    score: float


def iteration_bound(inlier_ratio: float, subset_size: int, confidence: float, max_iterations: int) -> int:
    """Subsets needed to draw an all-inlier subset with the given confidence."""
    if inlier_ratio >= 1.0:
        return 1
    if inlier_ratio <= 0.0 or confidence >= 1.0:
        return max_iterations
    if confidence <= 0.0:
        return 1
    clean = inlier_ratio ** subset_size
    if clean <= 0.0:
        return max_iterations
    denominator = math.log(1.0 - clean)
    if denominator >= 0.0:
        return max_iterations
    needed = math.ceil(math.log(1.0 - confidence) / denominator)
    return int(min(max_iterations, max(1, needed)))


class _ProgressiveSampler:
    """
    PROSAC sampler drawing subsets from a growing prefix of samples ordered
    by decreasing quality.
    """

    def __init__(self, order: np.ndarray, subset_size: int, max_draws: int, rng: np.random.Generator):
        self.order = order
        self.s = subset_size
        self.rng = rng
        self.N = len(order)
        self.n = subset_size

        # Average number of draws from the top-n samples (T_n) and its integer growth (T'_n)
        t_n = float(max_draws)
        for i in range(subset_size):
            t_n *= (self.n - i) / (self.N - i)
        self.t_n = t_n
        self.t_n_prime = 1
        self.t = 0

    def draw(self) -> np.ndarray:
        self.t += 1
        if self.t > self.t_n_prime and self.n < self.N:
            t_next = self.t_n * (self.n + 1) / (self.n + 1 - self.s)
            self.n += 1
            self.t_n_prime += int(math.ceil(t_next - self.t_n))
            self.t_n = t_next

        if self.t_n_prime >= self.t:
            # Top n-1 samples plus the n-th one
            head = self.rng.choice(self.n - 1, self.s - 1, replace=False) if self.s > 1 else []
            positions = np.append(np.asarray(head, dtype=int), self.n - 1)
        else:
            positions = self.rng.choice(self.n, self.s, replace=False)
        return self.order[positions]


class RobustEngine:
    """
    Hypothesize-and-score robust estimator over a FittingStrategy.

    Usage:
        engine = RobustEngine(strategy, RobustMethod.RANSAC, RobustEngineConfig(threshold=0.5))
        result = engine.run()
        print(result.solution, result.inliers_data.num_inliers)
    """

    def __init__(
        self,
        strategy: FittingStrategy,
        method: RobustMethod,
        config: Optional[RobustEngineConfig] = None,
        quality_scores: Optional[Sequence[float]] = None,
        on_iteration: Optional[Callable[[int], None]] = None,
        on_progress: Optional[Callable[[float], None]] = None,
    ):
        self.strategy = strategy
        self.method = method
        self.config = config or RobustEngineConfig()
        self.quality_scores = None if quality_scores is None else np.asarray(quality_scores, dtype=float)
        self.on_iteration = on_iteration
        self.on_progress = on_progress
        self.metrics = get_metrics()

    @property
    def subset_size(self) -> int:
        return max(self.config.subset_size or 0, self.strategy.min_subset_size)

    def is_ready(self) -> bool:
        n = self.strategy.total_samples
        if n < self.subset_size:
            return False
        if self.method.requires_quality_scores:
            return self.quality_scores is not None and len(self.quality_scores) == n
        return True

    def run(self) -> RobustResult:
        """
        Run the robust search.

        Returns:
            RobustResult of the best candidate

        Raises:
            NotReadyError: too few samples or missing quality scores
            RobustEstimationError: no candidate could be fitted
        """
        if not self.is_ready():
            self.metrics.increment_drop('not_ready')
            raise NotReadyError(
                f"{self.method.value}: {self.strategy.total_samples} samples, "
                f"subset size {self.subset_size}"
            )

        n = self.strategy.total_samples
        s = self.subset_size
        cfg = self.config
        rng = np.random.default_rng(cfg.seed)

        max_iterations = cfg.max_iterations
        sampler = None
        if self.method.requires_quality_scores:
            order = np.argsort(-self.quality_scores, kind='stable')
            sampler = _ProgressiveSampler(order, s, max_iterations, rng)
            max_iterations = min(max_iterations, math.comb(n, s))

        needed = max_iterations
        best = None  # (score, solution, residuals)
        last_progress = 0.0
        iteration = 0

        self._notify_progress(0.0)
        while iteration < needed:
            iteration += 1
            if sampler is not None:
                indices = sampler.draw()
            else:
                indices = rng.choice(n, s, replace=False)

            for solution in self.strategy.fit_subset([int(i) for i in indices]):
                residuals = np.abs(np.asarray(self.strategy.residuals(solution), dtype=float))
                residuals = np.where(np.isfinite(residuals), residuals, np.inf)
                score = self._score(residuals)
                if best is None or self._is_better(score, residuals, best):
                    best = (score, solution, residuals)
                    inlier_ratio = np.count_nonzero(self._inlier_mask(score, residuals)) / n
                    if self.method.uses_median_score:
                        inlier_ratio = min(inlier_ratio, MEDIAN_BREAKDOWN_RATIO)
                    needed = min(needed, iteration_bound(inlier_ratio, s, cfg.confidence, max_iterations))

            if self.on_iteration is not None:
                self.on_iteration(iteration)

            progress = min(1.0, iteration / needed)
            if progress - last_progress >= cfg.progress_delta:
                last_progress = progress
                self._notify_progress(progress)

            if (best is not None and self.method.uses_median_score
                    and math.sqrt(best[0]) <= cfg.stop_threshold):
                break

        self.metrics.increment('robust_iterations', iteration)

        if best is None:
            self.metrics.increment_drop('robust_no_solution')
            raise RobustEstimationError(
                f"{self.method.value}: no candidate found after {iteration} iterations"
            )

        score, solution, residuals = best
        inliers = self._inlier_mask(score, residuals)

        if last_progress < 1.0:
            self._notify_progress(1.0)

        self.metrics.increment('robust_estimates')
        self.metrics.record_histogram('robust_inlier_ratio', np.count_nonzero(inliers) / n)
        logger.debug("%s converged after %d iterations with %d/%d inliers",
                     self.method.value, iteration, np.count_nonzero(inliers), n)

        return RobustResult(
            solution=solution,
            inliers_data=InliersData(inliers=inliers, residuals=residuals),
            method=self.method,
            iterations=iteration,
            score=float(score),
        )

    def _notify_progress(self, progress: float):
        if self.on_progress is not None:
            self.on_progress(progress)

    def _score(self, residuals: np.ndarray) -> float:
        t = self.config.threshold
        if self.method.uses_median_score:
            return float(np.median(residuals ** 2))
        if self.method is RobustMethod.MSAC:
            return float(np.sum(np.minimum(residuals ** 2, t * t)))
        return float(np.count_nonzero(residuals <= t))

    def _is_better(self, score: float, residuals: np.ndarray, best: Tuple) -> bool:
        best_score, _, best_residuals = best
        if self.method.uses_median_score or self.method is RobustMethod.MSAC:
            return score < best_score
        if score != best_score:
            return score > best_score
        # Equal consensus: prefer the tighter fit over inliers
        t = self.config.threshold
        return (np.sum(residuals[residuals <= t] ** 2)
                < np.sum(best_residuals[best_residuals <= t] ** 2))

    def _inlier_mask(self, score: float, residuals: np.ndarray) -> np.ndarray:
        if self.method.uses_median_score:
            return residuals <= self._median_threshold(score)
        return residuals <= self.config.threshold

    def _median_threshold(self, median_sq: float) -> float:
        n = self.strategy.total_samples
        s = self.subset_size
        factor = 1.0 + 5.0 / (n - s) if n > s else 1.0
        threshold = LMEDS_INLIER_FACTOR * MAD_TO_STD * factor * math.sqrt(median_sq)
        return max(threshold, self.config.stop_threshold)
