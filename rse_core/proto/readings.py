"""
Reading Schemas.

Defines observations taken at known anchors for a single radio source:
- RangingReading: distance estimate to the source
- RssiReading: received signal strength from the source
- RangingAndRssiReading: both, taken at the same anchor

All readings in one estimation batch reference the same radio source and
share the same anchor dimensionality (2 or 3).
"""

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple, Union

import numpy as np

from rse_core.errors import InvalidArgumentError

# Default carrier frequency (2.4 GHz Wi-Fi / BLE band)
DEFAULT_FREQUENCY_HZ = 2.4e9

SUPPORTED_DIMENSIONS = (2, 3)


@dataclass(frozen=True)
class RadioSource:
    """
    Radio source identity (Wi-Fi access point or beacon).

    Carried through estimation unchanged; only the frequency enters the
    path-loss model.

    Attributes:
        source_id: Identifier (BSSID, beacon UUID, etc.)
        frequency_hz: Carrier frequency in Hz
    """

    source_id: str
    frequency_hz: float = DEFAULT_FREQUENCY_HZ

    def __post_init__(self):
        if self.frequency_hz <= 0:
            raise InvalidArgumentError(f"Frequency must be positive: {self.frequency_hz}")


def _validate_position(position: Sequence[float]) -> Tuple[float, ...]:
    coords = tuple(float(c) for c in position)
    if len(coords) not in SUPPORTED_DIMENSIONS:
        raise InvalidArgumentError(f"Anchor position must be 2D or 3D, got {len(coords)} coordinates")
    return coords


def _validate_covariance(covariance, dims: int) -> Optional[np.ndarray]:
    if covariance is None:
        return None
    cov = np.asarray(covariance, dtype=float)
    if cov.shape != (dims, dims):
        raise InvalidArgumentError(
            f"Position covariance must be {dims}x{dims}, got {cov.shape}"
        )
    return cov


def _validate_std(value: Optional[float], name: str) -> Optional[float]:
    if value is not None and value <= 0:
        raise InvalidArgumentError(f"{name} must be positive: {value}")
    return value


@dataclass(frozen=True, eq=False)
class RangingReading:
    """
    Distance measured between an anchor and the radio source.

    Attributes:
        source: Radio source the reading belongs to
        distance: Measured distance (same unit as anchor positions)
        position: Anchor position (x, y) or (x, y, z)
        distance_std: Distance standard deviation, if known
        position_covariance: Anchor position covariance (dims x dims), if known
    """

    source: RadioSource
    distance: float
    position: Tuple[float, ...]
    distance_std: Optional[float] = None
    position_covariance: Optional[np.ndarray] = None

    def __post_init__(self):
        if self.distance < 0:
            raise InvalidArgumentError(f"Distance cannot be negative: {self.distance}")
        position = _validate_position(self.position)
        object.__setattr__(self, 'position', position)
        object.__setattr__(
            self, 'position_covariance',
            _validate_covariance(self.position_covariance, len(position))
        )
        _validate_std(self.distance_std, "Distance standard deviation")

    @property
    def dims(self) -> int:
        return len(self.position)


@dataclass(frozen=True, eq=False)
class RssiReading:
    """
    Received signal strength measured at an anchor.

    Attributes:
        source: Radio source the reading belongs to
        rssi: Received power (dBm)
        position: Anchor position (x, y) or (x, y, z)
        rssi_std: RSSI standard deviation (dB), if known
        position_covariance: Anchor position covariance (dims x dims), if known
    """

    source: RadioSource
    rssi: float
    position: Tuple[float, ...]
    rssi_std: Optional[float] = None
    position_covariance: Optional[np.ndarray] = None

    def __post_init__(self):
        position = _validate_position(self.position)
        object.__setattr__(self, 'position', position)
        object.__setattr__(
            self, 'position_covariance',
            _validate_covariance(self.position_covariance, len(position))
        )
        _validate_std(self.rssi_std, "RSSI standard deviation")

    @property
    def dims(self) -> int:
        return len(self.position)


@dataclass(frozen=True, eq=False)
class RangingAndRssiReading:
    """
    Distance and received signal strength measured at the same anchor.

    Attributes:
        source: Radio source the reading belongs to
        distance: Measured distance
        rssi: Received power (dBm)
        position: Anchor position (x, y) or (x, y, z)
        distance_std: Distance standard deviation, if known
        rssi_std: RSSI standard deviation (dB), if known
        position_covariance: Anchor position covariance (dims x dims), if known
    """

    source: RadioSource
    distance: float
    rssi: float
    position: Tuple[float, ...]
    distance_std: Optional[float] = None
    rssi_std: Optional[float] = None
    position_covariance: Optional[np.ndarray] = None

    def __post_init__(self):
        if self.distance < 0:
            raise InvalidArgumentError(f"Distance cannot be negative: {self.distance}")
        position = _validate_position(self.position)
        object.__setattr__(self, 'position', position)
        object.__setattr__(
            self, 'position_covariance',
            _validate_covariance(self.position_covariance, len(position))
        )
        _validate_std(self.distance_std, "Distance standard deviation")
        _validate_std(self.rssi_std, "RSSI standard deviation")

    @property
    def dims(self) -> int:
        return len(self.position)

    def to_ranging_reading(self) -> RangingReading:
        """Ranging view sharing this reading's anchor position and covariance."""
        return RangingReading(
            source=self.source,
            distance=self.distance,
            position=self.position,
            distance_std=self.distance_std,
            position_covariance=self.position_covariance,
        )

    def to_rssi_reading(self) -> RssiReading:
        """RSSI view sharing this reading's anchor position and covariance."""
        return RssiReading(
            source=self.source,
            rssi=self.rssi,
            position=self.position,
            rssi_std=self.rssi_std,
            position_covariance=self.position_covariance,
        )


Reading = Union[RangingReading, RssiReading, RangingAndRssiReading]


def readings_dimensions(readings: Sequence[Reading]) -> Optional[int]:
    """
    Get the common anchor dimensionality of a reading batch.

    Returns:
        2 or 3, or None for an empty batch

    Raises:
        InvalidArgumentError: if readings mix 2D and 3D anchors
    """
    dims = {r.dims for r in readings}
    if not dims:
        return None
    if len(dims) > 1:
        raise InvalidArgumentError(f"Readings mix anchor dimensionalities: {sorted(dims)}")
    return dims.pop()


def anchor_positions(readings: Sequence[Reading]) -> np.ndarray:
    """Stack anchor positions into an (n, dims) array."""
    return np.array([r.position for r in readings], dtype=float)
