"""
Data models for storage layer.

Defines mileage records, GPS tracking records and the audit ledger entries,
together with their persisted (JSON-compatible) shape.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

# Hard business ceiling for a single working day
MAX_DAILY_DISTANCE_KM = 1000.0


class MileageSource(Enum):
    """How a day's distance was recorded."""
    MANUAL = "manual"
    GPS = "gps"
    HYBRID = "hybrid"  # GPS with a manual correction


class AuditAction(Enum):
    """Kinds of state transition recorded in the audit ledger."""
    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"
    GPS_START = "gpsStart"
    GPS_STOP = "gpsStop"
    VALIDATE = "validate"


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def _parse_date(value: str) -> date:
    # Older exports stored the day as a midnight timestamp
    if "T" in value:
        return datetime.fromisoformat(value).date()
    return date.fromisoformat(value)


def _optional_float(value: Any) -> Optional[float]:
    return None if value is None else float(value)


@dataclass(frozen=True)
class LocationPoint:
    """A single position fix reported by the location provider."""
    timestamp: datetime
    latitude: float
    longitude: float
    accuracy: Optional[float] = None  # meters
    speed: Optional[float] = None  # m/s

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "latitude": self.latitude,
            "longitude": self.longitude,
            "accuracy": self.accuracy,
            "speed": self.speed,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LocationPoint":
        return cls(
            timestamp=datetime.fromisoformat(data["timestamp"]),
            latitude=float(data["latitude"]),
            longitude=float(data["longitude"]),
            accuracy=_optional_float(data.get("accuracy")),
            speed=_optional_float(data.get("speed")),
        )


@dataclass(frozen=True)
class GPSQualityMetrics:
    """Aggregate reliability statistics for one tracking session."""
    accuracy_percentage: float
    signal_quality: float
    battery_impact: float
    total_location_points: int
    valid_location_points: int

    def __post_init__(self):
        """Validate ratios and counters."""
        if not 0.0 <= self.signal_quality <= 1.0:
            raise ValueError("signal_quality must be within [0, 1]")
        if not 0.0 <= self.battery_impact <= 1.0:
            raise ValueError("battery_impact must be within [0, 1]")
        if self.total_location_points < 0 or self.valid_location_points < 0:
            raise ValueError("location point counts cannot be negative")
        if self.valid_location_points > self.total_location_points:
            raise ValueError("valid_location_points cannot exceed total_location_points")

    @property
    def quality_score(self) -> float:
        """Overall score on a 0-100 scale."""
        return (self.accuracy_percentage + self.signal_quality * 100) / 2

    @property
    def validity_rate(self) -> float:
        """Share of samples that were accepted for distance accumulation."""
        if self.total_location_points == 0:
            return 0.0
        return self.valid_location_points / self.total_location_points

    @classmethod
    def empty(cls) -> "GPSQualityMetrics":
        return cls(
            accuracy_percentage=0.0,
            signal_quality=0.0,
            battery_impact=0.0,
            total_location_points=0,
            valid_location_points=0,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accuracyPercentage": self.accuracy_percentage,
            "signalQuality": self.signal_quality,
            "batteryImpact": self.battery_impact,
            "totalLocationPoints": self.total_location_points,
            "validLocationPoints": self.valid_location_points,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GPSQualityMetrics":
        return cls(
            accuracy_percentage=float(data["accuracyPercentage"]),
            signal_quality=float(data["signalQuality"]),
            battery_impact=float(data["batteryImpact"]),
            total_location_points=int(data["totalLocationPoints"]),
            valid_location_points=int(data["validLocationPoints"]),
        )


@dataclass(frozen=True)
class GPSTrackingRecord:
    """Result of one GPS tracking session.

    ``end_time`` stays ``None`` while the session is active. ``total_distance``
    is expressed in kilometers.
    """
    tracking_id: str
    start_time: datetime
    end_time: Optional[datetime]
    total_distance: float
    is_complete: bool
    quality_metrics: GPSQualityMetrics
    location_points: Tuple[LocationPoint, ...] = ()

    @property
    def tracking_duration(self) -> Optional[timedelta]:
        if self.end_time is None:
            return None
        return self.end_time - self.start_time

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trackingId": self.tracking_id,
            "startTime": self.start_time.isoformat(),
            "endTime": self.end_time.isoformat() if self.end_time else None,
            "totalDistance": self.total_distance,
            "isComplete": self.is_complete,
            "qualityMetrics": self.quality_metrics.to_dict(),
            "locationPoints": [point.to_dict() for point in self.location_points],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GPSTrackingRecord":
        return cls(
            tracking_id=data["trackingId"],
            start_time=datetime.fromisoformat(data["startTime"]),
            end_time=_parse_datetime(data.get("endTime")),
            total_distance=float(data["totalDistance"]),
            is_complete=bool(data["isComplete"]),
            quality_metrics=GPSQualityMetrics.from_dict(data["qualityMetrics"]),
            location_points=tuple(
                LocationPoint.from_dict(item) for item in data.get("locationPoints") or []
            ),
        )


@dataclass(frozen=True)
class MileageAuditEntry:
    """Immutable ledger row describing one change to a mileage record.

    Entries are append-only: once written they are never edited or removed,
    so replaying them in order explains how a record reached its state.
    """
    id: str
    record_id: str
    timestamp: datetime
    action: AuditAction
    reason: str
    old_value: Optional[float] = None
    new_value: Optional[float] = None
    user_id: Optional[str] = None
    device_info: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "recordId": self.record_id,
            "timestamp": self.timestamp.isoformat(),
            "action": self.action.value,
            "oldValue": self.old_value,
            "newValue": self.new_value,
            "userId": self.user_id,
            "deviceInfo": self.device_info,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MileageAuditEntry":
        try:
            action = AuditAction(data.get("action"))
        except ValueError:
            action = AuditAction.MODIFY
        return cls(
            id=data["id"],
            record_id=data["recordId"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            action=action,
            reason=data.get("reason") or "",
            old_value=_optional_float(data.get("oldValue")),
            new_value=_optional_float(data.get("newValue")),
            user_id=data.get("userId"),
            device_info=data.get("deviceInfo"),
        )


@dataclass(frozen=True)
class ManualDistance:
    """Distance taken from the odometer readings."""
    km: float


@dataclass(frozen=True)
class GpsDistance:
    """Distance measured by GPS only; no end reading exists."""
    km: float


@dataclass(frozen=True)
class HybridDistance:
    """Both an odometer distance and a GPS distance are known."""
    manual_km: float
    gps_km: float


DistanceSource = Union[ManualDistance, GpsDistance, HybridDistance]


@dataclass(frozen=True)
class MileageRecord:
    """One calendar day's odometer readings for the device.

    The audit log is kept in a separate ledger keyed by ``record_id``;
    ``audit_log`` holds the entries hydrated from that ledger.
    """
    id: str
    date: date
    start_mileage: float
    source: MileageSource
    created_at: datetime
    updated_at: datetime
    end_mileage: Optional[float] = None
    distance: Optional[float] = None
    audit_log: Tuple[MileageAuditEntry, ...] = field(default_factory=tuple)
    gps_tracking: Optional[GPSTrackingRecord] = None

    @property
    def distance_source(self) -> Optional[DistanceSource]:
        """Where the day's distance comes from.

        An end reading always takes precedence over the GPS distance.
        """
        if self.end_mileage is not None:
            manual_km = self.end_mileage - self.start_mileage
            if self.distance is not None and self.source != MileageSource.MANUAL:
                return HybridDistance(manual_km=manual_km, gps_km=self.distance)
            return ManualDistance(km=manual_km)
        if self.distance is not None:
            return GpsDistance(km=self.distance)
        return None

    @property
    def calculated_distance(self) -> Optional[float]:
        source = self.distance_source
        if source is None:
            return None
        if isinstance(source, HybridDistance):
            return source.manual_km
        return source.km

    @property
    def is_complete(self) -> bool:
        return self.end_mileage is not None or (
            self.source == MileageSource.GPS and self.distance is not None
        )

    @property
    def has_anomalies(self) -> bool:
        distance = self.calculated_distance
        if distance is None:
            return False
        return distance > MAX_DAILY_DISTANCE_KM or distance < 0

    @property
    def has_meter_reversal(self) -> bool:
        return self.end_mileage is not None and self.end_mileage < self.start_mileage

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the persisted JSON shape."""
        return {
            "id": self.id,
            "date": self.date.isoformat(),
            "startMileage": self.start_mileage,
            "endMileage": self.end_mileage,
            "distance": self.distance,
            "source": self.source.value,
            "gpsTrackingData": self.gps_tracking.to_dict() if self.gps_tracking else None,
            "auditLog": [entry.to_dict() for entry in self.audit_log],
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MileageRecord":
        try:
            source = MileageSource(data.get("source"))
        except ValueError:
            source = MileageSource.MANUAL
        gps_data = data.get("gpsTrackingData")
        return cls(
            id=data["id"],
            date=_parse_date(data["date"]),
            start_mileage=float(data["startMileage"]),
            end_mileage=_optional_float(data.get("endMileage")),
            distance=_optional_float(data.get("distance")),
            source=source,
            gps_tracking=GPSTrackingRecord.from_dict(gps_data) if gps_data else None,
            audit_log=tuple(
                MileageAuditEntry.from_dict(item) for item in data.get("auditLog") or []
            ),
            created_at=datetime.fromisoformat(data["createdAt"]),
            updated_at=datetime.fromisoformat(data["updatedAt"]),
        )
