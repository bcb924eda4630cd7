"""
Distance and quality accumulation for a GPS tracking session.

Consumes position fixes in arrival order, filters implausible jumps and
keeps the running distance plus the statistics behind GPSQualityMetrics.
"""

from dataclasses import dataclass
from typing import Optional

from .geo import haversine_m
from mileage_guard.storage.models import GPSQualityMetrics, LocationPoint

DEFAULT_MAX_SPEED_MPS = 100.0  # 360 km/h
DEFAULT_GOOD_ACCURACY_M = 20.0
DEFAULT_WEAK_SIGNAL_ACCURACY_M = 100.0


@dataclass(frozen=True)
class AccumulatorUpdate:
    """Outcome of feeding one sample."""
    accepted: bool
    delta_meters: float
    total_meters: float
    implied_speed_mps: Optional[float] = None

    @property
    def total_km(self) -> float:
        return self.total_meters / 1000.0


class DistanceAccumulator:
    """Running distance over a stream of location samples.

    Samples must be fed in timestamp order. A sample whose implied speed
    from the previous one reaches ``max_speed_mps`` is rejected, but it
    still becomes the new reference point so one bad fix cannot poison
    every following delta.
    """

    def __init__(
        self,
        max_speed_mps: float = DEFAULT_MAX_SPEED_MPS,
        good_accuracy_m: float = DEFAULT_GOOD_ACCURACY_M,
        weak_signal_accuracy_m: float = DEFAULT_WEAK_SIGNAL_ACCURACY_M,
    ):
        if max_speed_mps <= 0:
            raise ValueError("max_speed_mps must be > 0")
        self.max_speed_mps = max_speed_mps
        self.good_accuracy_m = good_accuracy_m
        self.weak_signal_accuracy_m = weak_signal_accuracy_m

        self.total_meters = 0.0
        self.total_location_points = 0
        self.valid_location_points = 0
        self.last_point: Optional[LocationPoint] = None
        self.first_point: Optional[LocationPoint] = None

        self._good_accuracy_points = 0
        self._signal_sum = 0.0
        self._signal_samples = 0

    @property
    def total_km(self) -> float:
        return self.total_meters / 1000.0

    def feed(self, point: LocationPoint) -> AccumulatorUpdate:
        """Apply one sample and return the resulting update."""
        self.total_location_points += 1
        if self.first_point is None:
            self.first_point = point
        self._record_signal(point)

        previous = self.last_point
        self.last_point = point

        if previous is None:
            self._accept(point)
            return AccumulatorUpdate(accepted=True, delta_meters=0.0, total_meters=self.total_meters)

        distance = haversine_m(previous.latitude, previous.longitude, point.latitude, point.longitude)
        elapsed = (point.timestamp - previous.timestamp).total_seconds()
        if elapsed <= 0:
            elapsed = 1.0
        speed = distance / elapsed

        if speed >= self.max_speed_mps:
            return AccumulatorUpdate(
                accepted=False,
                delta_meters=0.0,
                total_meters=self.total_meters,
                implied_speed_mps=speed,
            )

        self.total_meters += distance
        self._accept(point)
        return AccumulatorUpdate(
            accepted=True,
            delta_meters=distance,
            total_meters=self.total_meters,
            implied_speed_mps=speed,
        )

    def quality_metrics(self) -> GPSQualityMetrics:
        """Snapshot of the quality statistics gathered so far."""
        total = self.total_location_points
        if total == 0:
            return GPSQualityMetrics.empty()

        accuracy_percentage = 100.0 * self._good_accuracy_points / total
        signal_quality = self._signal_sum / self._signal_samples if self._signal_samples else 0.0

        battery_impact = 0.0
        if total >= 2 and self.first_point is not None and self.last_point is not None:
            window = (self.last_point.timestamp - self.first_point.timestamp).total_seconds()
            if window > 0:
                samples_per_minute = (total - 1) / (window / 60.0)
                battery_impact = min(1.0, samples_per_minute / 60.0)

        return GPSQualityMetrics(
            accuracy_percentage=accuracy_percentage,
            signal_quality=signal_quality,
            battery_impact=battery_impact,
            total_location_points=total,
            valid_location_points=self.valid_location_points,
        )

    def _accept(self, point: LocationPoint) -> None:
        self.valid_location_points += 1
        if point.accuracy is None or point.accuracy <= self.good_accuracy_m:
            self._good_accuracy_points += 1

    def _record_signal(self, point: LocationPoint) -> None:
        if point.accuracy is None:
            return
        strength = 1.0 - point.accuracy / self.weak_signal_accuracy_m
        self._signal_sum += min(1.0, max(0.0, strength))
        self._signal_samples += 1
