"""
Estimator counters, drop reasons and histograms.

Every failure an estimator absorbs instead of raising (a discarded subset
fit, a refinement that falls back to the robust candidate, a covariance
that cannot be combined) is counted under one of DROP_REASONS.
"""

import logging
import threading
import time
from typing import Dict, List, Optional
from dataclasses import dataclass
from collections import defaultdict
import statistics

logger = logging.getLogger(__name__)


@dataclass
class CounterSnapshot:
    """Copy of the collector state taken under its lock."""

    timestamp: float
    counters: Dict[str, int]
    drop_reasons: Dict[str, int]
    histograms: Dict[str, List[float]]

    def total_dropped(self) -> int:
        return sum(self.drop_reasons.values())


class MetricsCollector:
    """
    Thread-safe counters shared by all estimators.

    Usage:
        collector = MetricsCollector()
        collector.increment('mixed_estimate_attempts')
        collector.increment_drop('preliminary_fit_failed')
        collector.record_histogram('robust_inlier_ratio', 0.75)

        snapshot = collector.snapshot()
        print(f"Absorbed failures: {snapshot.total_dropped()}")
    """

    DROP_REASONS = {
        'preliminary_fit_failed': 'Minimal subset fit raised a numerical failure',
        'refinement_failed': 'Inlier refinement failed, unrefined estimate kept',
        'refinement_skipped': 'No inliers available for refinement',
        'robust_no_solution': 'Robust search produced no candidate',
        'solver_failed': 'Inner model solver failed on the main solve',
        'not_ready': 'Estimation requested with insufficient readings',
        'covariance_dropped': 'Combined covariance unavailable, dropped',
    }

    STANDARD_COUNTERS = (
        'ranging_solver_success',
        'rssi_solver_success',
        'robust_iterations',
        'robust_estimates',
        'mixed_estimate_attempts',
        'mixed_estimate_success',
        'sequential_estimate_attempts',
        'sequential_estimate_success',
    )

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = defaultdict(int)
        self._drop_reasons: Dict[str, int] = defaultdict(int)
        self._histograms: Dict[str, List[float]] = defaultdict(list)
        self._init_standard_counters()

    def _init_standard_counters(self):
        # Known keys report 0 instead of being absent from snapshots
        with self._lock:
            for counter in self.STANDARD_COUNTERS:
                self._counters.setdefault(counter, 0)
            for reason in self.DROP_REASONS:
                self._drop_reasons.setdefault(reason, 0)

    def increment(self, counter_name: str, value: int = 1):
        with self._lock:
            self._counters[counter_name] += value

    def increment_drop(self, reason: str, value: int = 1):
        """
        Count an absorbed failure.

        Args:
            reason: One of DROP_REASONS; unknown codes are counted and logged
            value: Number of failures
        """
        if reason not in self.DROP_REASONS:
            logger.warning("Unknown drop reason '%s'", reason)

        with self._lock:
            self._drop_reasons[reason] += value
            self._counters['candidates_dropped'] += value

    def get_counter(self, counter_name: str) -> int:
        with self._lock:
            return self._counters.get(counter_name, 0)

    def get_drop_count(self, reason: str) -> int:
        with self._lock:
            return self._drop_reasons.get(reason, 0)

    def record_histogram(self, histogram_name: str, value: float, max_samples: int = 10000):
        """
        Record one sample, such as an inlier ratio or a residual.

        Once max_samples is exceeded only the newest half is kept.
        """
        with self._lock:
            samples = self._histograms[histogram_name]
            samples.append(value)
            if len(samples) > max_samples:
                self._histograms[histogram_name] = samples[-max_samples // 2:]

    def get_histogram_stats(self, histogram_name: str) -> Optional[Dict[str, float]]:
        """
        Summarise a histogram.

        Returns:
            Dict with count, min, max, mean, median and p95, or None if empty
        """
        with self._lock:
            samples = sorted(self._histograms.get(histogram_name, []))

        if not samples:
            return None
        count = len(samples)
        return {
            'count': count,
            'min': samples[0],
            'max': samples[-1],
            'mean': statistics.mean(samples),
            'median': statistics.median(samples),
            'p95': samples[int(count * 0.95)] if count > 1 else samples[0],
        }

    def snapshot(self) -> CounterSnapshot:
        with self._lock:
            return CounterSnapshot(
                timestamp=time.time(),
                counters=dict(self._counters),
                drop_reasons=dict(self._drop_reasons),
                histograms={k: list(v) for k, v in self._histograms.items()},
            )

    def reset(self):
        with self._lock:
            self._counters.clear()
            self._drop_reasons.clear()
            self._histograms.clear()
        self._init_standard_counters()
