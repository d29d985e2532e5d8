"""
Reading Classifier.

Splits a heterogeneous reading batch into ranging-capable and RSSI-capable
homogeneous lists, decides whether position must fall back to RSSI data and
validates that enough readings exist for the requested estimation.

Dual readings (ranging + RSSI) contribute a ranging view and an RSSI view
sharing the anchor position and covariance.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np

from rse_core.errors import InvalidArgumentError
from rse_core.proto.readings import (
    RangingReading,
    RssiReading,
    RangingAndRssiReading,
    Reading,
    readings_dimensions,
)


def min_ranging_readings(dims: int) -> int:
    """Minimum ranging readings for a geometric position fix."""
    return dims + 1


def min_rssi_readings(
    dims: int,
    position_estimated: bool,
    transmitted_power_estimated: bool,
    path_loss_estimated: bool,
) -> int:
    """Minimum RSSI readings: one more than the number of fitted parameters."""
    return ((dims if position_estimated else 0)
            + (1 if transmitted_power_estimated else 0)
            + (1 if path_loss_estimated else 0)
            + 1)


def is_rssi_position_fallback(num_ranging: int, dims: int) -> bool:
    """True if too few ranging readings exist to fix position geometrically."""
    return num_ranging < min_ranging_readings(dims)


@dataclass
class ReadingClassification:
    """
    Result of splitting a reading batch.

    Attributes:
        dims: Anchor dimensionality (2 or 3)
        ranging_readings: Ranging readings and ranging views of dual readings
        rssi_readings: RSSI readings and RSSI views of dual readings
        ranging_indices: Index in the original batch of each ranging reading
        rssi_indices: Index in the original batch of each RSSI reading
    """

    dims: int
    ranging_readings: List[RangingReading] = field(default_factory=list)
    rssi_readings: List[RssiReading] = field(default_factory=list)
    ranging_indices: List[int] = field(default_factory=list)
    rssi_indices: List[int] = field(default_factory=list)

    @property
    def num_ranging(self) -> int:
        return len(self.ranging_readings)

    @property
    def num_rssi(self) -> int:
        return len(self.rssi_readings)

    @property
    def rssi_position_fallback(self) -> bool:
        return is_rssi_position_fallback(self.num_ranging, self.dims)

    def min_rssi_readings(self, transmitted_power_estimated: bool, path_loss_estimated: bool) -> int:
        return min_rssi_readings(
            self.dims, self.rssi_position_fallback,
            transmitted_power_estimated, path_loss_estimated,
        )

    def are_valid(self, transmitted_power_estimated: bool, path_loss_estimated: bool) -> bool:
        """
        Check the batch supports the requested estimation.

        Valid iff ranging and RSSI are both sufficient (normal case), RSSI is
        sufficient alone (fallback case), or ranging is sufficient and only
        position is requested.
        """
        ranging_ok = self.num_ranging >= min_ranging_readings(self.dims)
        rssi_ok = self.num_rssi >= self.min_rssi_readings(
            transmitted_power_estimated, path_loss_estimated
        )
        fallback = self.rssi_position_fallback
        return ((not fallback and ranging_ok and rssi_ok)
                or (fallback and rssi_ok)
                or (not transmitted_power_estimated and not path_loss_estimated and ranging_ok))

    def partition_quality_scores(
        self, quality_scores: Optional[Sequence[float]]
    ) -> Tuple[Optional[np.ndarray], Optional[np.ndarray]]:
        """
        Split per-reading quality scores between the two sub-problems.

        A dual reading contributes its score to both.
        """
        if quality_scores is None:
            return None, None
        scores = np.asarray(quality_scores, dtype=float)
        ranging = scores[self.ranging_indices] if self.ranging_indices else None
        rssi = scores[self.rssi_indices] if self.rssi_indices else None
        return ranging, rssi


def classify_readings(readings: Sequence[Reading], dims: Optional[int] = None) -> ReadingClassification:
    """
    Split a heterogeneous batch into homogeneous ranging and RSSI lists.

    Args:
        readings: Mixed readings of one radio source
        dims: Expected dimensionality; inferred from readings if None

    Raises:
        InvalidArgumentError: on unsupported reading types or mixed or
            unexpected dimensionality
    """
    for reading in readings:
        if not isinstance(reading, (RangingReading, RssiReading, RangingAndRssiReading)):
            raise InvalidArgumentError(f"unsupported reading type: {type(reading).__name__}")

    batch_dims = readings_dimensions(readings)
    if dims is None:
        dims = batch_dims if batch_dims is not None else 2
    elif batch_dims is not None and batch_dims != dims:
        raise InvalidArgumentError(f"expected {dims}D readings, got {batch_dims}D")

    classification = ReadingClassification(dims=dims)
    for i, reading in enumerate(readings):
        if isinstance(reading, RangingAndRssiReading):
            classification.ranging_readings.append(reading.to_ranging_reading())
            classification.ranging_indices.append(i)
            classification.rssi_readings.append(reading.to_rssi_reading())
            classification.rssi_indices.append(i)
        elif isinstance(reading, RangingReading):
            classification.ranging_readings.append(reading)
            classification.ranging_indices.append(i)
        else:
            classification.rssi_readings.append(reading)
            classification.rssi_indices.append(i)

    return classification
