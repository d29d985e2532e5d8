"""
Estimation lifecycle listener.

Listeners are notified synchronously from the thread running estimate().
Notifications are pure: estimators never depend on listener side effects.
"""


class EstimatorListener:
    """
    Base listener with no-op callbacks; override the ones you need.

    Usage:
        class PrintProgress(EstimatorListener):
            def on_estimate_progress_change(self, estimator, progress):
                print(f"{progress:.0%}")

        estimator.listener = PrintProgress()
    """

    def on_estimate_start(self, estimator):
        pass

    def on_estimate_end(self, estimator):
        pass

    def on_estimate_next_iteration(self, estimator, iteration: int):
        pass

    def on_estimate_progress_change(self, estimator, progress: float):
        pass


class ScaledProgressListener(EstimatorListener):
    """
    Forwards a sub-estimator's progress to a parent listener, mapped to
    [offset, offset + scale] and reported on behalf of the parent estimator.
    """

    def __init__(self, parent, listener: EstimatorListener, offset: float, scale: float):
        self.parent = parent
        self.listener = listener
        self.offset = offset
        self.scale = scale

    def on_estimate_progress_change(self, estimator, progress: float):
        self.listener.on_estimate_progress_change(self.parent, self.offset + self.scale * progress)
