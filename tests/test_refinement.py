"""
Unit tests for the inlier refinement stage.
"""

import logging

import numpy as np
import pytest

from rse_core.errors import NumericalError
from rse_core.estimation import refine_result
from rse_core.metrics import get_metrics
from rse_core.proto import InliersData


@pytest.fixture
def inliers():
    return InliersData(inliers=np.array([True, False, True, True]), residuals=np.array([0.0, 5.0, 0.1, 0.0]))


def averaging_refit(indices, initial):
    return initial + len(indices), np.eye(2) * 0.5


def failing_refit(indices, initial):
    raise NumericalError("singular normal matrix")


class TestRefineResult:
    """Tests for refine_result."""

    def test_refit_over_inlier_indices(self, inliers):
        seen = {}

        def refit(indices, initial):
            seen['indices'] = indices
            seen['initial'] = initial
            return averaging_refit(indices, initial)

        outcome = refine_result(10.0, inliers, refit)

        assert seen == {'indices': [0, 2, 3], 'initial': 10.0}
        assert outcome.refined
        assert outcome.solution == 13.0
        np.testing.assert_array_equal(outcome.covariance, np.eye(2) * 0.5)

    def test_refinement_disabled(self, inliers):
        outcome = refine_result(10.0, inliers, averaging_refit, refine=False)

        assert not outcome.refined
        assert outcome.solution == 10.0
        assert outcome.covariance is None
        assert get_metrics().snapshot().total_dropped() == 0

    def test_covariance_discarded_when_not_kept(self, inliers):
        outcome = refine_result(10.0, inliers, averaging_refit, keep_covariance=False)

        assert outcome.refined
        assert outcome.solution == 13.0
        assert outcome.covariance is None

    @pytest.mark.parametrize("data", [
        None,
        InliersData(inliers=np.zeros(3, dtype=bool), residuals=np.ones(3)),
    ])
    def test_no_inliers_skips_refit(self, data):
        outcome = refine_result(10.0, data, failing_refit)

        assert not outcome.refined
        assert outcome.solution == 10.0
        assert outcome.covariance is None
        assert get_metrics().get_drop_count('refinement_skipped') == 1

    def test_failed_refit_falls_back(self, inliers, caplog):
        with caplog.at_level(logging.WARNING, logger='rse_core.estimation.refinement'):
            outcome = refine_result(10.0, inliers, failing_refit)

        assert not outcome.refined
        assert outcome.solution == 10.0
        assert outcome.covariance is None
        assert get_metrics().get_drop_count('refinement_failed') == 1
        assert 'singular' in caplog.text
