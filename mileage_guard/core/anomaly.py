"""
Anomaly detection over stored mileage records.

Scans historical records and classifies data-quality problems for review.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Iterable, List, Optional, Tuple

from .validation import DEFAULT_THRESHOLDS, mismatch_threshold
from mileage_guard.config.loader import ValidationThresholds
from mileage_guard.storage.models import MileageRecord, MileageSource


class AnomalyType(Enum):
    """Kinds of anomaly a record can carry."""
    EXCESSIVE_DISTANCE = "excessiveDistance"
    METER_REVERSAL = "meterReversal"
    GPS_MISMATCH = "gpsMismatch"


class AnomalySeverity(Enum):
    """Severity levels for detected anomalies, ordered low to high."""
    LOW = 1
    MEDIUM = 2
    HIGH = 3


_SEVERITY_BY_TYPE = {
    AnomalyType.METER_REVERSAL: AnomalySeverity.HIGH,
    AnomalyType.EXCESSIVE_DISTANCE: AnomalySeverity.MEDIUM,
}


@dataclass(frozen=True)
class AnomalyReport:
    """Anomalies found on one record."""
    record: MileageRecord
    anomaly_types: Tuple[AnomalyType, ...]
    severity: AnomalySeverity
    detected_at: datetime


def classify_record(
    record: MileageRecord,
    thresholds: ValidationThresholds = DEFAULT_THRESHOLDS,
) -> List[AnomalyType]:
    """List the anomaly types present on a record, without duplicates."""
    types: List[AnomalyType] = []

    distance = record.calculated_distance
    if record.has_meter_reversal or (distance is not None and distance < 0):
        types.append(AnomalyType.METER_REVERSAL)
    if distance is not None and distance > thresholds.max_daily_distance_km:
        types.append(AnomalyType.EXCESSIVE_DISTANCE)

    if (record.source != MileageSource.MANUAL
            and record.end_mileage is not None
            and record.distance is not None):
        manual_distance = record.end_mileage - record.start_mileage
        if abs(manual_distance - record.distance) > mismatch_threshold(manual_distance, thresholds):
            types.append(AnomalyType.GPS_MISMATCH)

    return types


def severity_for(anomaly_types: Iterable[AnomalyType]) -> AnomalySeverity:
    """Highest severity across the given anomaly types."""
    severity = AnomalySeverity.LOW
    for anomaly_type in anomaly_types:
        candidate = _SEVERITY_BY_TYPE.get(anomaly_type, AnomalySeverity.LOW)
        if candidate.value > severity.value:
            severity = candidate
    return severity


def detect_anomalies(
    records: Iterable[MileageRecord],
    thresholds: ValidationThresholds = DEFAULT_THRESHOLDS,
    detected_at: Optional[datetime] = None,
) -> List[AnomalyReport]:
    """Scan records and report every one that carries an anomaly.

    Severity rules:
    - Meter reversal: HIGH
    - Excessive distance: MEDIUM
    - Anything else: LOW

    Args:
        records: Records to scan, in the order they should be reported
        thresholds: Business thresholds to apply
        detected_at: Timestamp stamped on the reports (defaults to now)

    Returns:
        One report per anomalous record (empty if none)
    """
    detected_at = detected_at or datetime.now()
    reports = []
    for record in records:
        types = classify_record(record, thresholds)
        if not types:
            continue
        reports.append(AnomalyReport(
            record=record,
            anomaly_types=tuple(types),
            severity=severity_for(types),
            detected_at=detected_at,
        ))
    return reports
