"""
GPS tracking sessions.

A session measures one continuous driving interval. It moves through
IDLE -> ACTIVE -> STOPPED and never re-enters ACTIVE; a new recording needs
a new session. At most one session may be ACTIVE per ActiveSessionGuard.

The location provider pushes fixes into a bounded queue from a producer
task; a consumer task applies them to the DistanceAccumulator in arrival
order. Stopping cancels both tasks, applies whatever was already queued and
always leaves the session STOPPED.
"""

import asyncio
import uuid
from collections import deque
from datetime import datetime
from enum import Enum
from typing import AsyncIterator, Deque, Optional, Protocol

import structlog

from .accumulator import AccumulatorUpdate, DistanceAccumulator
from .clock import Clock, SystemClock
from .recovery import (
    GPSPermissionDeniedError,
    GPSServiceDisabledError,
    GPSSignalWeakError,
    GPSTimeoutError,
    GPSTrackingError,
    GPSUnknownError,
)
from mileage_guard.config.loader import TrackingConfig
from mileage_guard.storage.models import GPSQualityMetrics, GPSTrackingRecord, LocationPoint

logger = structlog.get_logger(__name__)


class PermissionStatus(Enum):
    """Result of the location provider's permission check."""
    GRANTED = "granted"
    DENIED = "denied"
    SERVICE_DISABLED = "serviceDisabled"


class LocationProvider(Protocol):
    """Device positioning collaborator."""

    async def check_permission(self) -> PermissionStatus:
        ...

    async def current_position(self) -> LocationPoint:
        ...

    def position_stream(self) -> AsyncIterator[LocationPoint]:
        ...


class SessionState(Enum):
    IDLE = "idle"
    ACTIVE = "active"
    STOPPED = "stopped"


class AlreadyActiveError(Exception):
    """Raised when a session starts while another one is active."""


class SessionStateError(Exception):
    """Raised when a session operation is invalid in its current state."""


class ActiveSessionGuard:
    """Holds the single active-session slot."""

    def __init__(self):
        self._active: Optional["GPSTrackingSession"] = None

    @property
    def active(self) -> Optional["GPSTrackingSession"]:
        return self._active

    def acquire(self, session: "GPSTrackingSession") -> None:
        if self._active is not None and self._active is not session:
            raise AlreadyActiveError(
                f"GPS tracking session {self._active.tracking_id or '<starting>'} is already active"
            )
        self._active = session

    def release(self, session: "GPSTrackingSession") -> None:
        if self._active is session:
            self._active = None


class GPSTrackingSession:
    """One GPS distance measurement from start() to stop()."""

    def __init__(
        self,
        provider: LocationProvider,
        guard: ActiveSessionGuard,
        clock: Optional[Clock] = None,
        config: Optional[TrackingConfig] = None,
    ):
        self._provider = provider
        self._guard = guard
        self._clock = clock or SystemClock()
        self._config = config or TrackingConfig()

        self._accumulator = DistanceAccumulator(
            max_speed_mps=self._config.max_speed_mps,
            good_accuracy_m=self._config.good_accuracy_m,
            weak_signal_accuracy_m=self._config.weak_signal_accuracy_m,
        )
        self._points: Deque[LocationPoint] = deque(maxlen=self._config.max_location_points)

        self.state = SessionState.IDLE
        self.tracking_id: Optional[str] = None
        self.start_time: Optional[datetime] = None
        self.stream_error: Optional[BaseException] = None

        self._queue: Optional[asyncio.Queue] = None
        self._producer: Optional[asyncio.Task] = None
        self._consumer: Optional[asyncio.Task] = None
        self._final_record: Optional[GPSTrackingRecord] = None

    @property
    def is_active(self) -> bool:
        return self.state == SessionState.ACTIVE

    @property
    def current_distance_km(self) -> float:
        return self._accumulator.total_km

    @property
    def quality_metrics(self) -> GPSQualityMetrics:
        return self._accumulator.quality_metrics()

    async def start(self, timeout: Optional[float] = None) -> str:
        """Begin tracking.

        Args:
            timeout: Seconds to wait for the first fix (defaults to config)

        Returns:
            The new tracking id

        Raises:
            SessionStateError: If the session is not IDLE
            AlreadyActiveError: If another session holds the active slot
            GPSTrackingError: If permission, service, signal or first fix fail
        """
        if self.state != SessionState.IDLE:
            raise SessionStateError(f"Cannot start a session in state {self.state.value}")

        self._guard.acquire(self)
        try:
            first_fix = await self._acquire_first_fix(
                timeout if timeout is not None else self._config.first_fix_timeout_s
            )
        except BaseException:
            self._guard.release(self)
            raise

        self.tracking_id = f"gps_{uuid.uuid4().hex}"
        self.start_time = self._clock.now()
        self.state = SessionState.ACTIVE
        self.on_sample(first_fix)

        self._queue = asyncio.Queue(maxsize=self._config.queue_size)
        self._producer = asyncio.create_task(self._produce())
        self._consumer = asyncio.create_task(self._consume())

        logger.info("gps_session_started", tracking_id=self.tracking_id)
        return self.tracking_id

    def on_sample(self, point: LocationPoint) -> Optional[AccumulatorUpdate]:
        """Apply one location fix; returns None for an out-of-order fix."""
        if self.state != SessionState.ACTIVE:
            raise SessionStateError(f"Cannot accept samples in state {self.state.value}")

        last = self._accumulator.last_point
        if last is not None and point.timestamp < last.timestamp:
            logger.warning(
                "gps_sample_out_of_order",
                tracking_id=self.tracking_id,
                sample_time=point.timestamp.isoformat(),
                last_time=last.timestamp.isoformat(),
            )
            return None

        update = self._accumulator.feed(point)
        if self._config.keep_location_points:
            self._points.append(point)
        if not update.accepted:
            logger.debug(
                "gps_sample_rejected",
                tracking_id=self.tracking_id,
                implied_speed_mps=update.implied_speed_mps,
            )
        return update

    async def wait_closed(self) -> None:
        """Wait until the position stream has been fully consumed."""
        if self._consumer is not None:
            await asyncio.wait({self._consumer})

    async def stop(self, end_mileage: Optional[float] = None) -> Optional[GPSTrackingRecord]:
        """Finish tracking and return the finalized record.

        Outside the ACTIVE state this returns the last known record without
        doing anything, so repeated calls are safe.
        """
        if self.state != SessionState.ACTIVE:
            return self._final_record

        try:
            await self._cancel_tasks()
            self._drain_queue()
        finally:
            self._final_record = self._build_record(end_time=self._clock.now())
            self.state = SessionState.STOPPED
            self._guard.release(self)

        logger.info(
            "gps_session_stopped",
            tracking_id=self.tracking_id,
            total_distance_km=self._final_record.total_distance,
            end_mileage=end_mileage,
            valid_points=self._accumulator.valid_location_points,
        )
        return self._final_record

    def snapshot(self) -> Optional[GPSTrackingRecord]:
        """Current view of the session as a tracking record."""
        if self.state == SessionState.STOPPED:
            return self._final_record
        if self.state == SessionState.IDLE:
            return None
        return self._build_record(end_time=None)

    async def _acquire_first_fix(self, timeout: float) -> LocationPoint:
        try:
            status = await self._provider.check_permission()
            if status == PermissionStatus.DENIED:
                raise GPSPermissionDeniedError("Location permission denied")
            if status == PermissionStatus.SERVICE_DISABLED:
                raise GPSServiceDisabledError("Location service is disabled")

            try:
                first_fix = await asyncio.wait_for(self._provider.current_position(), timeout)
            except asyncio.TimeoutError:
                raise GPSTimeoutError(f"No GPS fix within {timeout:g} seconds")
        except GPSTrackingError:
            raise
        except Exception as e:
            raise GPSUnknownError(f"Location provider failed: {e}") from e

        if first_fix.accuracy is not None and first_fix.accuracy > self._config.weak_signal_accuracy_m:
            raise GPSSignalWeakError(
                f"First fix accuracy {first_fix.accuracy:.0f} m exceeds "
                f"{self._config.weak_signal_accuracy_m:.0f} m"
            )
        return first_fix

    async def _produce(self) -> None:
        stream = self._provider.position_stream()
        try:
            async for point in stream:
                await self._queue.put(point)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.stream_error = e
            logger.error("gps_stream_failed", tracking_id=self.tracking_id, error=str(e))
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
        # End of stream marker
        await self._queue.put(None)

    async def _consume(self) -> None:
        while True:
            point = await self._queue.get()
            if point is None:
                break
            self.on_sample(point)

    async def _cancel_tasks(self) -> None:
        tasks = [task for task in (self._consumer, self._producer) if task is not None]
        for task in tasks:
            task.cancel()
        # Children report their cancellation as results; a cancel of the
        # caller still raises here.
        await asyncio.gather(*tasks, return_exceptions=True)

    def _drain_queue(self) -> None:
        if self._queue is None:
            return
        while not self._queue.empty():
            point = self._queue.get_nowait()
            if point is not None:
                self.on_sample(point)

    def _build_record(self, end_time: Optional[datetime]) -> GPSTrackingRecord:
        return GPSTrackingRecord(
            tracking_id=self.tracking_id,
            start_time=self.start_time,
            end_time=end_time,
            total_distance=self._accumulator.total_km,
            is_complete=end_time is not None,
            quality_metrics=self._accumulator.quality_metrics(),
            location_points=tuple(self._points),
        )
