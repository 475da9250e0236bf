"""Pinhole camera relations between true size, apparent size and distance.

Apparent width is proportional to focal length and true width and inversely
proportional to distance:  w_px = f_px * W_cm / D_cm.
"""

import math

from calibration.errors import InvalidInput


def require_positive(name: str, value: float) -> float:
    value = float(value)
    if not (math.isfinite(value) and value > 0):
        raise InvalidInput(f"{name} must be a positive finite number, got {value}")
    return value


def _finite_result(name: str, value: float) -> float:
    # tiny divisors overflow to inf even when every input is finite
    if not math.isfinite(value):
        raise InvalidInput(f"{name} is out of range for the given inputs")
    return value


def focal_length_from_width(apparent_width_px: float, known_distance_cm: float, known_width_cm: float) -> float:
    w = require_positive("apparent_width_px", apparent_width_px)
    d = require_positive("known_distance_cm", known_distance_cm)
    W = require_positive("known_width_cm", known_width_cm)
    return _finite_result("focal_length_px", (w * d) / W)


def distance_from_width(focal_length_px: float, known_width_cm: float, apparent_width_px: float) -> float:
    f = require_positive("focal_length_px", focal_length_px)
    W = require_positive("known_width_cm", known_width_cm)
    w = require_positive("apparent_width_px", apparent_width_px)
    return _finite_result("distance_cm", (W * f) / w)
