"""
Shared fixtures and fakes for the test suite.
"""

import asyncio
import math
from datetime import datetime, timedelta
from typing import Optional

import pytest

from mileage_guard.core.geo import EARTH_RADIUS_M
from mileage_guard.core.tracking import PermissionStatus
from mileage_guard.storage.models import LocationPoint
from mileage_guard.storage.repository import SqliteRecordStore

BASE_TIME = datetime(2024, 5, 1, 8, 0, 0)


def north_of(meters: float, latitude: float = 35.0) -> float:
    """Latitude lying exactly ``meters`` north of ``latitude`` on a meridian."""
    return latitude + math.degrees(meters / EARTH_RADIUS_M)


def make_point(
    seconds: float,
    meters_north: float = 0.0,
    accuracy: Optional[float] = None,
) -> LocationPoint:
    """Location fix ``seconds`` after BASE_TIME, ``meters_north`` from the origin."""
    return LocationPoint(
        timestamp=BASE_TIME + timedelta(seconds=seconds),
        latitude=north_of(meters_north),
        longitude=139.0,
        accuracy=accuracy,
    )


class FakeClock:
    """Clock whose time only moves when told to."""

    def __init__(self, now: datetime = BASE_TIME):
        self.current = now

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current = self.current + timedelta(**kwargs)


class QueueLocationProvider:
    """Provider whose position stream is fed by the test through ``queue``.

    Put ``None`` on the queue to end the stream.
    """

    def __init__(self, first_fix: LocationPoint, permission: PermissionStatus = PermissionStatus.GRANTED):
        self.first_fix = first_fix
        self.permission = permission
        self.queue: asyncio.Queue = asyncio.Queue()
        self.stream_closed = False

    async def check_permission(self) -> PermissionStatus:
        return self.permission

    async def current_position(self) -> LocationPoint:
        return self.first_fix

    async def position_stream(self):
        try:
            while True:
                point = await self.queue.get()
                if point is None:
                    return
                yield point
        finally:
            self.stream_closed = True


class HangingLocationProvider:
    """Provider that grants permission but never produces a fix."""

    async def check_permission(self) -> PermissionStatus:
        return PermissionStatus.GRANTED

    async def current_position(self) -> LocationPoint:
        await asyncio.Event().wait()

    async def position_stream(self):
        await asyncio.Event().wait()
        yield  # pragma: no cover


class FailingLocationProvider:
    """Provider whose first fix raises an unexpected error."""

    async def check_permission(self) -> PermissionStatus:
        return PermissionStatus.GRANTED

    async def current_position(self) -> LocationPoint:
        raise RuntimeError("location hardware unavailable")

    async def position_stream(self):
        raise RuntimeError("location hardware unavailable")
        yield  # pragma: no cover


async def wait_for_distance(session_or_service, minimum_km: float, timeout: float = 1.0) -> None:
    """Wait until the tracked distance reaches ``minimum_km``."""
    async def _poll():
        while _distance(session_or_service) < minimum_km:
            await asyncio.sleep(0.001)
    await asyncio.wait_for(_poll(), timeout)


def _distance(obj) -> float:
    if hasattr(obj, "current_distance_km"):
        return obj.current_distance_km
    return obj.current_distance


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path) -> SqliteRecordStore:
    record_store = SqliteRecordStore(str(tmp_path / "mileage.db"))
    record_store.initialize()
    return record_store
