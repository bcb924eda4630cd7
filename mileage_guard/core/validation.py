"""
Mileage validation rules.

Evaluates a start/end/GPS triple and reports data-quality warnings. Warnings
never block persistence; only an out-of-range reading is a hard error.

Rules (applied independently, several may fire):
1. Meter reversal - end reading below start reading
2. Excessive distance - more than the daily ceiling
3. GPS/manual mismatch - odometer and GPS distance disagree beyond
   max(ratio * odometer distance, floor)
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from mileage_guard.config.loader import ValidationThresholds

DEFAULT_THRESHOLDS = ValidationThresholds()


class ValidationFlag(str, Enum):
    """Machine-readable validation findings."""
    METER_REVERSAL = "METER_REVERSAL"
    EXCESSIVE_DISTANCE = "EXCESSIVE_DISTANCE"
    GPS_MILEAGE_MISMATCH = "GPS_MILEAGE_MISMATCH"


class MileageRangeError(ValueError):
    """Raised when a single odometer reading is outside the accepted range."""
    def __init__(self, value: float, minimum: float, maximum: float):
        super().__init__(
            f"Mileage value out of range: {value} (allowed: {minimum:g} - {maximum:g})"
        )
        self.value = value
        self.minimum = minimum
        self.maximum = maximum


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of validate_mileage."""
    is_valid: bool
    warnings: List[str] = field(default_factory=list)
    flags: List[ValidationFlag] = field(default_factory=list)

    @property
    def has_warnings(self) -> bool:
        return bool(self.warnings)


def check_mileage_range(value: float, thresholds: ValidationThresholds = DEFAULT_THRESHOLDS) -> None:
    """Reject an odometer reading outside [min_mileage_km, max_mileage_km].

    Raises:
        MileageRangeError: If the value is out of range
    """
    if value < thresholds.min_mileage_km or value > thresholds.max_mileage_km:
        raise MileageRangeError(value, thresholds.min_mileage_km, thresholds.max_mileage_km)


def mismatch_threshold(manual_distance: float, thresholds: ValidationThresholds = DEFAULT_THRESHOLDS) -> float:
    """Largest tolerated gap between odometer and GPS distance."""
    return max(manual_distance * thresholds.mismatch_ratio, thresholds.mismatch_floor_km)


def validate_mileage(
    start: float,
    end: Optional[float] = None,
    gps_distance: Optional[float] = None,
    thresholds: ValidationThresholds = DEFAULT_THRESHOLDS,
) -> ValidationResult:
    """Validate a day's readings.

    Args:
        start: Start odometer reading (km)
        end: End odometer reading (km), if recorded
        gps_distance: GPS-measured distance (km), if available
        thresholds: Business thresholds to apply

    Returns:
        ValidationResult with one warning per raised flag
    """
    warnings: List[str] = []
    flags: List[ValidationFlag] = []

    if end is None:
        return ValidationResult(is_valid=True)

    manual_distance = end - start

    if manual_distance < 0:
        warnings.append(
            f"End mileage {end:g} km is below start mileage {start:g} km "
            f"(possible odometer replacement)"
        )
        flags.append(ValidationFlag.METER_REVERSAL)

    if manual_distance > thresholds.max_daily_distance_km:
        warnings.append(
            f"Daily distance {manual_distance:.1f} km exceeds "
            f"{thresholds.max_daily_distance_km:g} km"
        )
        flags.append(ValidationFlag.EXCESSIVE_DISTANCE)

    if gps_distance is not None:
        threshold = mismatch_threshold(manual_distance, thresholds)
        difference = abs(manual_distance - gps_distance)
        if difference > threshold:
            warnings.append(
                f"GPS distance {gps_distance:.1f} km differs from odometer distance "
                f"{manual_distance:.1f} km by {difference:.1f} km (tolerance {threshold:.1f} km)"
            )
            flags.append(ValidationFlag.GPS_MILEAGE_MISMATCH)

    return ValidationResult(is_valid=not flags, warnings=warnings, flags=flags)
