"""
Log-distance path-loss model and power unit conversions.

Received power for an emitter with transmitted power P (dBm), path-loss
exponent n and carrier frequency f, observed at distance d:

    Pr = P + n * 10*log10(c / (4*pi*f)) - 10 * n * log10(d)

Typical path-loss exponents:
- Free space: 2.0
- Urban cellular: 2.7 - 3.5
- Shadowed urban / suburban: 3 - 5
- Indoor line-of-sight: 1.6 - 1.8
"""

import math

import numpy as np

from rse_core.errors import InvalidArgumentError

SPEED_OF_LIGHT = 299792458.0  # m/s

DEFAULT_PATH_LOSS_EXPONENT = 2.0


def dbm_to_mw(dbm: float) -> float:
    """Convert power in dBm to milliwatts."""
    return math.pow(10.0, dbm / 10.0)


def mw_to_dbm(mw: float) -> float:
    """
    Convert power in milliwatts to dBm.

    Raises:
        InvalidArgumentError: if power is negative
    """
    if mw < 0.0:
        raise InvalidArgumentError(f"Power cannot be negative: {mw}")
    if mw == 0.0:
        return -math.inf
    return 10.0 * math.log10(mw)


def path_loss_constant_db(frequency_hz: float) -> float:
    """Free-space constant 10*log10(c / (4*pi*f)) in dB (per unit exponent)."""
    return 10.0 * math.log10(SPEED_OF_LIGHT / (4.0 * math.pi * frequency_hz))


def received_power_dbm(transmitted_power_dbm, distance, path_loss_exponent, frequency_hz):
    """
    Expected received power (dBm) at a given distance.

    Works on scalars or numpy arrays of distances.
    """
    k_db = path_loss_constant_db(frequency_hz)
    return (transmitted_power_dbm + path_loss_exponent * k_db
            - 10.0 * path_loss_exponent * np.log10(distance))
