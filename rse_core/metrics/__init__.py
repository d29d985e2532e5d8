"""
Metrics Module: Diagnostics, counters, histograms.

Every absorbed failure (discarded subset fit, refinement fallback) is
counted under a drop reason code, so nothing fails silently.

Usage:
    from rse_core.metrics import get_metrics
    
    metrics = get_metrics()
    metrics.increment('robust_iterations')
    metrics.increment_drop('preliminary_fit_failed')
    metrics.record_histogram('robust_inlier_ratio', 0.8)
"""

from .counters import MetricsCollector

# Global singleton for easy access
_global_metrics = None


def get_metrics() -> MetricsCollector:
    """
    Get the global metrics collector singleton.
    
    Returns:
        MetricsCollector instance
    """
    global _global_metrics
    if _global_metrics is None:
        _global_metrics = MetricsCollector()
    return _global_metrics


def reset_metrics():
    """Reset global metrics (for testing)."""
    global _global_metrics
    _global_metrics = MetricsCollector()


__all__ = ['MetricsCollector', 'get_metrics', 'reset_metrics']
