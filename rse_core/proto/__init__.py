"""
Protocol Module: Reading and estimate schemas.

- Readings: ranging, RSSI and dual observations tied to one anchor
- Estimates: estimated radio source plus robust inliers data
"""

from .readings import (
    RadioSource,
    RangingReading,
    RssiReading,
    RangingAndRssiReading,
    Reading,
    readings_dimensions,
    anchor_positions,
    DEFAULT_FREQUENCY_HZ,
)
from .estimate import (
    InliersData,
    RadioSourceEstimate,
)

__all__ = [
    # Readings
    'RadioSource',
    'RangingReading',
    'RssiReading',
    'RangingAndRssiReading',
    'Reading',
    'readings_dimensions',
    'anchor_positions',
    'DEFAULT_FREQUENCY_HZ',
    # Estimates
    'InliersData',
    'RadioSourceEstimate',
]
