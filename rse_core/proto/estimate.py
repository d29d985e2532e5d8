"""
Radio Source Estimate Output Schema.

Defines the output of radio source estimators and the inliers data produced
by the robust engine.
"""

from dataclasses import dataclass
from typing import List, Optional

import numpy as np

from rse_core.path_loss import dbm_to_mw


@dataclass
class InliersData:
    """
    Consensus membership over all readings of a robust search.

    Attributes:
        inliers: Boolean mask, True for readings consistent with the best model
        residuals: Raw per-reading residuals against the best model
    """

    inliers: np.ndarray
    residuals: np.ndarray

    @property
    def num_inliers(self) -> int:
        return int(np.count_nonzero(self.inliers))

    def inlier_indices(self) -> List[int]:
        """Indices of readings marked as inliers."""
        return [int(i) for i in np.flatnonzero(self.inliers)]


@dataclass(frozen=True)
class RadioSourceEstimate:
    """
    Estimated radio source.

    Attributes:
        position: Estimated position (2 or 3 coordinates)
        transmitted_power_dbm: Transmitted power (dBm), None if unknown
        path_loss_exponent: Path-loss exponent (2.0 = free space)
        covariance: Combined covariance, layout {position} + {power} + {path loss}
        position_covariance: Position covariance block
        transmitted_power_variance: Power variance (dBm^2), if estimated
        path_loss_exponent_variance: Path-loss exponent variance, if estimated
        inliers_data: Consensus of the last robust phase (robust estimators only)
        rssi_position_enabled: True if position came from RSSI readings

    Notes:
        - covariance is None whenever any of its blocks was unavailable
    """

    position: Optional[np.ndarray]
    transmitted_power_dbm: Optional[float]
    path_loss_exponent: float
    covariance: Optional[np.ndarray] = None
    position_covariance: Optional[np.ndarray] = None
    transmitted_power_variance: Optional[float] = None
    path_loss_exponent_variance: Optional[float] = None
    inliers_data: Optional[InliersData] = None
    rssi_position_enabled: bool = False

    @property
    def transmitted_power_mw(self) -> Optional[float]:
        """Transmitted power in milliwatts."""
        if self.transmitted_power_dbm is None:
            return None
        return dbm_to_mw(self.transmitted_power_dbm)

    @property
    def dims(self) -> int:
        return 0 if self.position is None else len(self.position)

    def to_dict(self) -> dict:
        """Convert to dictionary of plain Python values."""
        return {
            'position': None if self.position is None else self.position.tolist(),
            'transmitted_power_dbm': self.transmitted_power_dbm,
            'transmitted_power_mw': self.transmitted_power_mw,
            'path_loss_exponent': self.path_loss_exponent,
            'covariance': None if self.covariance is None else self.covariance.tolist(),
            'transmitted_power_variance': self.transmitted_power_variance,
            'path_loss_exponent_variance': self.path_loss_exponent_variance,
            'num_inliers': None if self.inliers_data is None else self.inliers_data.num_inliers,
            'rssi_position_enabled': self.rssi_position_enabled,
        }
