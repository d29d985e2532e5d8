"""
Pytest configuration and shared fixtures for radio source estimation tests.

Provides anchor layouts, a radio source and synthetic reading factories
built from the log-distance path-loss model.
"""

import sys
import math
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import numpy as np
import pytest

# Add project root to path for imports
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from rse_core.metrics import reset_metrics
from rse_core.path_loss import received_power_dbm
from rse_core.proto import (
    RadioSource,
    RangingReading,
    RssiReading,
    RangingAndRssiReading,
)

# Ground truth used across scenarios
TRUE_POSITION_2D = (1.0, 1.0)
TRUE_POSITION_3D = (1.0, 1.0, 1.0)
TRUE_POWER_DBM = -50.0
TRUE_PATH_LOSS_EXPONENT = 2.0


# =============================================================================
# Global State
# =============================================================================


@pytest.fixture(autouse=True)
def fresh_metrics():
    """Give every test its own metrics collector."""
    reset_metrics()
    yield


# =============================================================================
# Radio Source and Anchor Fixtures
# =============================================================================


@pytest.fixture
def source() -> RadioSource:
    """Wi-Fi access point at 2.4 GHz."""
    return RadioSource(source_id="00:11:22:33:44:55")


@pytest.fixture
def square_anchors_2d() -> List[Tuple[float, float]]:
    """
    Ranging anchors on a square centred at the true position (1, 1).

    Returns:
        List of (x, y) tuples.
    """
    return [(0.0, 0.0), (2.0, 0.0), (0.0, 2.0), (2.0, 2.0)]


@pytest.fixture
def rssi_anchors_2d() -> List[Tuple[float, float]]:
    """
    RSSI anchors at distinct distances from (1, 1).

    Distinct distances keep transmitted power and path-loss exponent
    separable.
    """
    return [(4.0, 1.0), (1.0, -3.0), (-3.0, 3.0), (6.0, 6.0)]


@pytest.fixture
def surrounding_anchors_2d() -> List[Tuple[float, float]]:
    """Six anchors around (1, 1) whose centroid is not an anchor."""
    return [(-2.0, -2.0), (5.0, -1.0), (4.0, 5.0), (-3.0, 4.0), (1.0, 6.0), (6.0, 2.0)]


@pytest.fixture
def ten_anchors_2d() -> List[Tuple[float, float]]:
    """Ten well spread anchors for robust ranging scenarios."""
    return [
        (0.0, 0.0), (5.0, 0.0), (0.0, 5.0), (5.0, 5.0), (-3.0, 2.0),
        (2.0, -4.0), (7.0, 3.0), (3.0, 8.0), (-2.0, -3.0), (8.0, -2.0),
    ]


@pytest.fixture
def cube_anchors_3d() -> List[Tuple[float, float, float]]:
    """Non-coplanar 3D anchors around (1, 1, 1)."""
    return [
        (0.0, 0.0, 0.0), (3.0, 0.0, 0.5), (0.0, 3.0, 1.0),
        (3.0, 3.0, 2.5), (1.0, -1.0, 3.0), (-1.0, 2.0, 2.0),
    ]


# =============================================================================
# Reading Factories
# =============================================================================


def distance(p1: Sequence[float], p2: Sequence[float]) -> float:
    """Euclidean distance between two points of equal dimension."""
    return math.sqrt(sum((a - b) ** 2 for a, b in zip(p1, p2)))


def expected_rssi_dbm(
    source: RadioSource,
    anchor: Sequence[float],
    position: Sequence[float] = TRUE_POSITION_2D,
    power_dbm: float = TRUE_POWER_DBM,
    path_loss_exponent: float = TRUE_PATH_LOSS_EXPONENT,
) -> float:
    """Noise-free received power at an anchor."""
    return float(received_power_dbm(
        power_dbm, distance(anchor, position), path_loss_exponent, source.frequency_hz
    ))


def make_ranging_readings(
    source: RadioSource,
    anchors: Sequence[Sequence[float]],
    position: Sequence[float] = TRUE_POSITION_2D,
    noise_std: float = 0.0,
    seed: Optional[int] = None,
    distance_std: Optional[float] = None,
) -> List[RangingReading]:
    """Ranging readings to a source at position, with optional gaussian noise."""
    rng = np.random.default_rng(seed)
    readings = []
    for anchor in anchors:
        d = distance(anchor, position) + (rng.normal(0.0, noise_std) if noise_std else 0.0)
        readings.append(RangingReading(
            source=source, distance=max(d, 0.0), position=anchor, distance_std=distance_std
        ))
    return readings


def make_rssi_readings(
    source: RadioSource,
    anchors: Sequence[Sequence[float]],
    position: Sequence[float] = TRUE_POSITION_2D,
    power_dbm: float = TRUE_POWER_DBM,
    path_loss_exponent: float = TRUE_PATH_LOSS_EXPONENT,
) -> List[RssiReading]:
    """Noise-free RSSI readings from the log-distance model."""
    return [
        RssiReading(
            source=source,
            rssi=expected_rssi_dbm(source, anchor, position, power_dbm, path_loss_exponent),
            position=anchor,
        )
        for anchor in anchors
    ]


def make_dual_readings(
    source: RadioSource,
    anchors: Sequence[Sequence[float]],
    position: Sequence[float] = TRUE_POSITION_2D,
    power_dbm: float = TRUE_POWER_DBM,
    path_loss_exponent: float = TRUE_PATH_LOSS_EXPONENT,
) -> List[RangingAndRssiReading]:
    """Noise-free ranging + RSSI readings taken at the same anchors."""
    return [
        RangingAndRssiReading(
            source=source,
            distance=distance(anchor, position),
            rssi=expected_rssi_dbm(source, anchor, position, power_dbm, path_loss_exponent),
            position=anchor,
        )
        for anchor in anchors
    ]


@pytest.fixture
def scenario_a_readings(source, square_anchors_2d, rssi_anchors_2d):
    """4 ranging + 4 RSSI noise-free readings, source at (1, 1), -50 dBm, n = 2."""
    return (make_ranging_readings(source, square_anchors_2d)
            + make_rssi_readings(source, rssi_anchors_2d))


@pytest.fixture
def scenario_b_readings(source, square_anchors_2d, surrounding_anchors_2d):
    """Only 2 ranging readings (fallback) + 6 RSSI readings."""
    return (make_ranging_readings(source, square_anchors_2d[:2])
            + make_rssi_readings(source, surrounding_anchors_2d))
