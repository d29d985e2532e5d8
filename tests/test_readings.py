"""
Unit tests for reading and estimate schemas.
"""

import numpy as np
import pytest

from rse_core.errors import InvalidArgumentError
from rse_core.proto import (
    InliersData,
    RadioSource,
    RadioSourceEstimate,
    RangingAndRssiReading,
    RangingReading,
    RssiReading,
    anchor_positions,
    readings_dimensions,
)


# =============================================================================
# Readings
# =============================================================================


class TestRadioSource:
    """Tests for RadioSource."""

    def test_default_frequency(self, source):
        assert source.frequency_hz == 2.4e9

    def test_non_positive_frequency_raises(self):
        with pytest.raises(InvalidArgumentError):
            RadioSource("beacon", frequency_hz=0.0)


class TestRangingReading:
    """Tests for RangingReading."""

    def test_position_normalised_to_float_tuple(self, source):
        reading = RangingReading(source, 3.0, [1, 2])
        assert reading.position == (1.0, 2.0)
        assert reading.dims == 2

    def test_negative_distance_raises(self, source):
        with pytest.raises(InvalidArgumentError, match="negative"):
            RangingReading(source, -1.0, (0.0, 0.0))

    def test_unsupported_dimension_raises(self, source):
        with pytest.raises(InvalidArgumentError):
            RangingReading(source, 1.0, (0.0, 0.0, 0.0, 0.0))

    def test_covariance_shape_checked(self, source):
        with pytest.raises(InvalidArgumentError):
            RangingReading(source, 1.0, (0.0, 0.0), position_covariance=np.eye(3))

    def test_non_positive_std_raises(self, source):
        with pytest.raises(InvalidArgumentError):
            RangingReading(source, 1.0, (0.0, 0.0), distance_std=0.0)


class TestRssiReading:
    """Tests for RssiReading."""

    def test_create(self, source):
        reading = RssiReading(source, -60.0, (1.0, 2.0, 3.0), rssi_std=2.0)
        assert reading.dims == 3
        assert reading.rssi_std == 2.0

    def test_non_positive_std_raises(self, source):
        with pytest.raises(InvalidArgumentError):
            RssiReading(source, -60.0, (1.0, 2.0), rssi_std=-1.0)


class TestRangingAndRssiReading:
    """Tests for dual readings and their views."""

    def test_views_share_anchor(self, source):
        cov = np.diag([0.1, 0.2])
        dual = RangingAndRssiReading(
            source, distance=5.0, rssi=-70.0, position=(1.0, 2.0),
            distance_std=0.5, rssi_std=3.0, position_covariance=cov,
        )

        ranging = dual.to_ranging_reading()
        rssi = dual.to_rssi_reading()

        assert isinstance(ranging, RangingReading)
        assert ranging.distance == 5.0
        assert ranging.distance_std == 0.5
        assert isinstance(rssi, RssiReading)
        assert rssi.rssi == -70.0
        assert rssi.rssi_std == 3.0
        assert ranging.position == rssi.position == dual.position
        np.testing.assert_array_equal(ranging.position_covariance, cov)
        np.testing.assert_array_equal(rssi.position_covariance, cov)
        assert ranging.source is source


class TestBatchHelpers:
    """Tests for batch dimension and anchor helpers."""

    def test_dimensions_of_empty_batch(self):
        assert readings_dimensions([]) is None

    def test_mixed_dimensions_raise(self, source):
        readings = [
            RangingReading(source, 1.0, (0.0, 0.0)),
            RssiReading(source, -50.0, (0.0, 0.0, 0.0)),
        ]
        with pytest.raises(InvalidArgumentError, match="mix"):
            readings_dimensions(readings)

    def test_anchor_positions(self, source):
        readings = [
            RangingReading(source, 1.0, (0.0, 1.0)),
            RssiReading(source, -50.0, (2.0, 3.0)),
        ]
        np.testing.assert_array_equal(anchor_positions(readings), [[0.0, 1.0], [2.0, 3.0]])


# =============================================================================
# Estimates
# =============================================================================


class TestRadioSourceEstimate:
    """Tests for RadioSourceEstimate and InliersData."""

    def test_power_in_milliwatts(self):
        estimate = RadioSourceEstimate(
            position=np.array([1.0, 1.0]), transmitted_power_dbm=-30.0, path_loss_exponent=2.0
        )
        assert estimate.transmitted_power_mw == pytest.approx(0.001)
        assert estimate.dims == 2

    def test_to_dict(self):
        inliers = InliersData(inliers=np.array([True, False, True]), residuals=np.zeros(3))
        estimate = RadioSourceEstimate(
            position=np.array([1.0, 2.0]),
            transmitted_power_dbm=None,
            path_loss_exponent=2.0,
            covariance=np.eye(2),
            inliers_data=inliers,
        )

        data = estimate.to_dict()
        assert data['position'] == [1.0, 2.0]
        assert data['transmitted_power_mw'] is None
        assert data['covariance'] == [[1.0, 0.0], [0.0, 1.0]]
        assert data['num_inliers'] == 2

    def test_inlier_indices(self):
        inliers = InliersData(inliers=np.array([False, True, True, False]), residuals=np.zeros(4))
        assert inliers.num_inliers == 2
        assert inliers.inlier_indices() == [1, 2]
