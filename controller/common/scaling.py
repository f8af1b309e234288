"""
Engineering-Unit Scaling

Linear interpolation from raw protocol values to engineering values.
"""

from .config import Calibration

# Decimal places kept on scaled values
SCALE_PRECISION = 3


def scale_value(raw: int | float | bool, calibration: Calibration | None = None) -> int | float | bool:
    """
    Convert a raw sample to its engineering value.

    Without calibration the raw value passes through unchanged. With one,
    the value is interpolated between (raw_min, scale_min) and
    (raw_max, scale_max). Values outside the raw range extrapolate unless
    the calibration asks for clamping. A zero-width raw range returns
    scale_min.

    Examples:
        # 4-20 mA card, 8000..20000 counts -> 0..120 bar
        # raw=14000 -> 60.0
    """
    if calibration is None:
        return raw

    if calibration.raw_max == calibration.raw_min:
        return round(calibration.scale_min, SCALE_PRECISION)

    span = calibration.scale_max - calibration.scale_min
    scaled = calibration.scale_min + (float(raw) - calibration.raw_min) * span / (
        calibration.raw_max - calibration.raw_min
    )

    if calibration.clamp:
        low = min(calibration.scale_min, calibration.scale_max)
        high = max(calibration.scale_min, calibration.scale_max)
        scaled = min(max(scaled, low), high)

    return round(scaled, SCALE_PRECISION)
