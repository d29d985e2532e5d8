"""
Unit tests for the inner model solvers.

Tests cover:
- Weighted Levenberg-Marquardt core
- Linear lateration (homogeneous and inhomogeneous)
- RangingSolver stages and covariance
- RssiSolver parameter subsets
"""

import numpy as np
import pytest

from rse_core.errors import InvalidArgumentError, NumericalError
from rse_core.estimation import (
    RangingSolver,
    RssiSolver,
    SolverConfig,
    effective_distance_std,
    homogeneous_lateration,
    inhomogeneous_lateration,
    levenberg_marquardt,
)
from rse_core.proto import RangingReading, anchor_positions

from tests.conftest import (
    TRUE_PATH_LOSS_EXPONENT,
    TRUE_POSITION_2D,
    TRUE_POSITION_3D,
    TRUE_POWER_DBM,
    make_ranging_readings,
    make_rssi_readings,
)


# =============================================================================
# Levenberg-Marquardt
# =============================================================================


class TestLevenbergMarquardt:
    """Tests for the weighted LM core."""

    def test_fits_straight_line(self):
        t = np.linspace(0.0, 10.0, 11)
        y = 3.0 * t - 2.0
        sigmas = np.full_like(t, 0.5)

        result = levenberg_marquardt(
            lambda x: x[0] * t + x[1] - y,
            lambda x: np.column_stack([t, np.ones_like(t)]),
            np.array([0.0, 0.0]),
            sigmas,
            SolverConfig(),
        )

        np.testing.assert_allclose(result.x, [3.0, -2.0], atol=1e-8)
        assert result.chi_square < 1e-12
        jac = np.column_stack([t, np.ones_like(t)])
        expected_cov = np.linalg.inv(jac.T @ jac / 0.25)
        np.testing.assert_allclose(result.covariance, expected_cov, rtol=1e-9)

    def test_unobservable_parameter_raises(self):
        t = np.linspace(0.0, 1.0, 5)
        with pytest.raises(NumericalError):
            levenberg_marquardt(
                lambda x: (x[0] + x[1]) * t - t,
                lambda x: np.column_stack([t, t]),
                np.array([0.0, 0.0]),
                np.ones_like(t),
                SolverConfig(),
            )

    def test_underdetermined_raises(self):
        with pytest.raises(NumericalError):
            levenberg_marquardt(
                lambda x: x - 1.0,
                lambda x: np.eye(2)[:1],
                np.zeros(2),
                np.ones(1),
                SolverConfig(),
            )


# =============================================================================
# Ranging
# =============================================================================


class TestLateration:
    """Tests for the linear lateration stage."""

    def test_homogeneous_exact(self, source, square_anchors_2d):
        readings = make_ranging_readings(source, square_anchors_2d)
        anchors = anchor_positions(readings)
        distances = np.array([r.distance for r in readings])

        np.testing.assert_allclose(homogeneous_lateration(anchors, distances), TRUE_POSITION_2D, atol=1e-9)

    def test_inhomogeneous_exact(self, source, square_anchors_2d):
        readings = make_ranging_readings(source, square_anchors_2d)
        anchors = anchor_positions(readings)
        distances = np.array([r.distance for r in readings])

        np.testing.assert_allclose(inhomogeneous_lateration(anchors, distances), TRUE_POSITION_2D, atol=1e-9)

    def test_collinear_anchors_raise(self, source):
        readings = make_ranging_readings(source, [(0.0, 0.0), (1.0, 0.0), (2.0, 0.0)])
        anchors = anchor_positions(readings)
        distances = np.array([r.distance for r in readings])

        with pytest.raises(NumericalError):
            inhomogeneous_lateration(anchors, distances)


class TestRangingSolver:
    """Tests for RangingSolver."""

    @pytest.mark.parametrize("homogeneous", [True, False])
    def test_linear_only_has_no_covariance(self, source, square_anchors_2d, homogeneous):
        solver = RangingSolver(nonlinear_enabled=False, use_homogeneous_linear_solver=homogeneous)

        fit = solver.solve(make_ranging_readings(source, square_anchors_2d))

        np.testing.assert_allclose(fit.position, TRUE_POSITION_2D, atol=1e-9)
        assert fit.covariance is None

    def test_nonlinear_returns_covariance(self, source, square_anchors_2d):
        fit = RangingSolver().solve(make_ranging_readings(source, square_anchors_2d, distance_std=0.1))

        np.testing.assert_allclose(fit.position, TRUE_POSITION_2D, atol=1e-6)
        assert fit.covariance.shape == (2, 2)
        np.testing.assert_allclose(fit.covariance, fit.covariance.T, atol=1e-12)
        assert np.all(np.linalg.eigvalsh(fit.covariance) > 0)

    def test_starts_from_initial_position(self, source, square_anchors_2d):
        fit = RangingSolver().solve(
            make_ranging_readings(source, square_anchors_2d), initial_position=(1.4, 0.7)
        )
        np.testing.assert_allclose(fit.position, TRUE_POSITION_2D, atol=1e-6)

    def test_3d(self, source, cube_anchors_3d):
        readings = make_ranging_readings(source, cube_anchors_3d, position=TRUE_POSITION_3D)

        fit = RangingSolver().solve(readings)

        np.testing.assert_allclose(fit.position, TRUE_POSITION_3D, atol=1e-6)
        assert fit.covariance.shape == (3, 3)

    def test_too_few_readings_raise(self, source, square_anchors_2d):
        with pytest.raises(InvalidArgumentError):
            RangingSolver().solve(make_ranging_readings(source, square_anchors_2d[:2]))

    def test_wrong_initial_position_size_raises(self, source, square_anchors_2d):
        with pytest.raises(InvalidArgumentError):
            RangingSolver().solve(
                make_ranging_readings(source, square_anchors_2d), initial_position=(1.0, 1.0, 1.0)
            )


class TestPositionCovariancePropagation:
    """Anchor uncertainty inflates the distance standard deviation."""

    def test_variance_added_along_line_of_sight(self, source):
        reading = RangingReading(
            source, 2.0, (0.0, 0.0), distance_std=0.1,
            position_covariance=np.diag([0.02, 0.04]),
        )

        assert effective_distance_std(reading, 1e-3, True) == pytest.approx(np.sqrt(0.01 + 0.03))
        assert effective_distance_std(reading, 1e-3, False) == pytest.approx(0.1)

    def test_default_std_when_missing(self, source):
        reading = RangingReading(source, 2.0, (0.0, 0.0))
        assert effective_distance_std(reading, 1e-3, True) == pytest.approx(1e-3)

    def test_uncertain_anchors_widen_covariance(self, source, square_anchors_2d):
        plain = make_ranging_readings(source, square_anchors_2d, distance_std=0.1)
        uncertain = [
            RangingReading(source, r.distance, r.position, distance_std=0.1,
                           position_covariance=np.eye(2) * 0.05)
            for r in plain
        ]

        tight = RangingSolver().solve(plain).covariance
        wide = RangingSolver(use_reading_position_covariances=True).solve(uncertain).covariance
        ignored = RangingSolver(use_reading_position_covariances=False).solve(uncertain).covariance

        assert np.trace(wide) > np.trace(tight)
        np.testing.assert_allclose(ignored, tight, rtol=1e-6)


# =============================================================================
# RSSI
# =============================================================================


class TestRssiSolver:
    """Tests for RssiSolver."""

    def test_power_and_path_loss_with_known_position(self, source, rssi_anchors_2d):
        solver = RssiSolver(
            position_estimation_enabled=False,
            transmitted_power_estimation_enabled=True,
            path_loss_estimation_enabled=True,
        )

        fit = solver.solve(make_rssi_readings(source, rssi_anchors_2d), initial_position=TRUE_POSITION_2D)

        assert fit.transmitted_power_dbm == pytest.approx(TRUE_POWER_DBM, abs=1e-6)
        assert fit.path_loss_exponent == pytest.approx(TRUE_PATH_LOSS_EXPONENT, abs=1e-6)
        assert fit.covariance.shape == (2, 2)
        assert fit.transmitted_power_variance > 0
        assert fit.path_loss_exponent_variance > 0
        assert fit.position_covariance is None
        np.testing.assert_array_equal(fit.position, TRUE_POSITION_2D)

    def test_power_only_keeps_exponent(self, source, rssi_anchors_2d):
        solver = RssiSolver(position_estimation_enabled=False)

        fit = solver.solve(
            make_rssi_readings(source, rssi_anchors_2d),
            initial_position=TRUE_POSITION_2D,
            initial_path_loss_exponent=2.0,
        )

        assert fit.transmitted_power_dbm == pytest.approx(TRUE_POWER_DBM, abs=1e-6)
        assert fit.path_loss_exponent == 2.0
        assert fit.path_loss_exponent_variance is None
        assert fit.covariance.shape == (1, 1)

    def test_position_and_power_from_centroid(self, source, surrounding_anchors_2d):
        solver = RssiSolver(position_estimation_enabled=True)

        fit = solver.solve(make_rssi_readings(source, surrounding_anchors_2d))

        np.testing.assert_allclose(fit.position, TRUE_POSITION_2D, atol=1e-4)
        assert fit.transmitted_power_dbm == pytest.approx(TRUE_POWER_DBM, abs=1e-3)
        assert fit.covariance.shape == (3, 3)
        assert fit.position_covariance.shape == (2, 2)

    def test_min_readings(self):
        assert RssiSolver(position_estimation_enabled=False).min_readings(2) == 2
        assert RssiSolver(path_loss_estimation_enabled=True).min_readings(3) == 6

    def test_readiness_needs_fixed_values(self, source, rssi_anchors_2d):
        readings = make_rssi_readings(source, rssi_anchors_2d)
        solver = RssiSolver(position_estimation_enabled=False, transmitted_power_estimation_enabled=False,
                            path_loss_estimation_enabled=True)

        assert not solver.is_ready(readings, 2, has_initial_position=False, has_initial_power=True)
        assert not solver.is_ready(readings, 2, has_initial_position=True, has_initial_power=False)
        assert solver.is_ready(readings, 2, has_initial_position=True, has_initial_power=True)

    def test_nothing_to_estimate_raises(self):
        with pytest.raises(InvalidArgumentError):
            RssiSolver(
                position_estimation_enabled=False,
                transmitted_power_estimation_enabled=False,
                path_loss_estimation_enabled=False,
            )

    def test_position_on_anchor_raises(self, source, rssi_anchors_2d):
        solver = RssiSolver(position_estimation_enabled=False)
        with pytest.raises(NumericalError):
            solver.solve(make_rssi_readings(source, rssi_anchors_2d), initial_position=rssi_anchors_2d[0])
