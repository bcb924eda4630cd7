"""
Unit tests for GPS tracking sessions.

Tests the session lifecycle, single-active enforcement, start failures and
sample handling.
"""

import asyncio

import pytest

from conftest import (
    FailingLocationProvider,
    HangingLocationProvider,
    QueueLocationProvider,
    make_point,
    wait_for_distance,
)
from mileage_guard.config.loader import TrackingConfig
from mileage_guard.core.providers import ReplayLocationProvider
from mileage_guard.core.recovery import (
    GPSFallbackAction,
    GPSPermissionDeniedError,
    GPSServiceDisabledError,
    GPSSignalWeakError,
    GPSTimeoutError,
    GPSUnknownError,
)
from mileage_guard.core.tracking import (
    ActiveSessionGuard,
    AlreadyActiveError,
    GPSTrackingSession,
    PermissionStatus,
    SessionState,
    SessionStateError,
)


class BrokenStreamProvider(QueueLocationProvider):
    """Provider whose position stream fails after the first fix."""

    async def position_stream(self):
        raise RuntimeError("position updates lost")
        yield  # pragma: no cover


class SlowClosingProvider(QueueLocationProvider):
    """Provider whose stream does not finish closing until ``closed`` is set."""

    def __init__(self, first_fix):
        super().__init__(first_fix)
        self.closed = asyncio.Event()

    async def position_stream(self):
        try:
            while True:
                yield await self.queue.get()
        finally:
            await self.closed.wait()


@pytest.mark.asyncio
class TestSessionLifecycle:
    """Test start, sampling and stop of a session."""

    async def test_start_and_stop(self, clock):
        provider = QueueLocationProvider(make_point(0))
        guard = ActiveSessionGuard()
        session = GPSTrackingSession(provider, guard, clock=clock)

        tracking_id = await session.start()

        assert tracking_id.startswith("gps_")
        assert session.state == SessionState.ACTIVE
        assert session.start_time == clock.now()
        assert guard.active is session

        await provider.queue.put(make_point(5, meters_north=50))
        await wait_for_distance(session, 0.049)

        clock.advance(minutes=10)
        record = await session.stop()

        assert session.state == SessionState.STOPPED
        assert guard.active is None
        assert provider.stream_closed is True
        assert record.tracking_id == tracking_id
        assert record.total_distance == pytest.approx(0.05)
        assert record.is_complete is True
        assert record.end_time == clock.now()
        assert record.quality_metrics.total_location_points == 2

    async def test_stop_is_idempotent(self, clock):
        session = GPSTrackingSession(QueueLocationProvider(make_point(0)), ActiveSessionGuard(), clock=clock)
        await session.start()

        first = await session.stop()
        second = await session.stop()

        assert second is first

    async def test_stop_without_start(self):
        session = GPSTrackingSession(QueueLocationProvider(make_point(0)), ActiveSessionGuard())

        assert await session.stop() is None
        assert session.state == SessionState.IDLE

    async def test_restart_after_stop_rejected(self, clock):
        session = GPSTrackingSession(QueueLocationProvider(make_point(0)), ActiveSessionGuard(), clock=clock)
        await session.start()
        await session.stop()

        with pytest.raises(SessionStateError):
            await session.start()

    async def test_snapshot_while_active(self, clock):
        session = GPSTrackingSession(QueueLocationProvider(make_point(0)), ActiveSessionGuard(), clock=clock)
        assert session.snapshot() is None

        await session.start()
        snapshot = session.snapshot()

        assert snapshot.end_time is None
        assert snapshot.is_complete is False
        await session.stop()

    async def test_replay_until_stream_ends(self, clock):
        points = [make_point(0), make_point(5, meters_north=50), make_point(10, meters_north=100)]
        session = GPSTrackingSession(ReplayLocationProvider(points), ActiveSessionGuard(), clock=clock)

        await session.start()
        await session.wait_closed()
        record = await session.stop()

        assert record.total_distance == pytest.approx(0.1)
        assert record.quality_metrics.total_location_points == 3
        assert record.quality_metrics.valid_location_points == 3

    async def test_location_points_are_bounded(self, clock):
        points = [make_point(i * 5, meters_north=i * 50) for i in range(4)]
        config = TrackingConfig(keep_location_points=True, max_location_points=2)
        session = GPSTrackingSession(ReplayLocationProvider(points), ActiveSessionGuard(), clock=clock, config=config)

        await session.start()
        await session.wait_closed()
        record = await session.stop()

        assert record.location_points == tuple(points[-2:])

    async def test_location_points_not_kept_by_default(self, clock):
        points = [make_point(0), make_point(5, meters_north=50)]
        session = GPSTrackingSession(ReplayLocationProvider(points), ActiveSessionGuard(), clock=clock)

        await session.start()
        await session.wait_closed()
        record = await session.stop()

        assert record.location_points == ()

    async def test_stream_failure_keeps_distance(self, clock):
        session = GPSTrackingSession(BrokenStreamProvider(make_point(0)), ActiveSessionGuard(), clock=clock)

        await session.start()
        await session.wait_closed()

        assert isinstance(session.stream_error, RuntimeError)
        assert session.is_active is True
        record = await session.stop()
        assert record.total_distance == 0.0


@pytest.mark.asyncio
class TestCallerCancellation:
    """Test that cancelling the caller of stop() or wait_closed() takes effect."""

    async def test_cancelled_stop_raises_and_still_stops(self, clock):
        provider = SlowClosingProvider(make_point(0))
        guard = ActiveSessionGuard()
        session = GPSTrackingSession(provider, guard, clock=clock)
        await session.start()

        stopper = asyncio.create_task(session.stop())
        await asyncio.sleep(0.01)
        assert not stopper.done()

        stopper.cancel()
        with pytest.raises(asyncio.CancelledError):
            await stopper

        assert session.state == SessionState.STOPPED
        assert guard.active is None
        assert session.snapshot().is_complete is True
        provider.closed.set()

    async def test_cancelled_wait_closed_raises(self, clock):
        session = GPSTrackingSession(QueueLocationProvider(make_point(0)), ActiveSessionGuard(), clock=clock)
        await session.start()

        waiter = asyncio.create_task(session.wait_closed())
        await asyncio.sleep(0.01)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter

        assert session.is_active is True
        await session.stop()


@pytest.mark.asyncio
class TestSingleActiveSession:
    """Test that only one session can be active per guard."""

    async def test_second_session_rejected(self, clock):
        guard = ActiveSessionGuard()
        first = GPSTrackingSession(QueueLocationProvider(make_point(0)), guard, clock=clock)
        second = GPSTrackingSession(QueueLocationProvider(make_point(0)), guard, clock=clock)
        await first.start()

        with pytest.raises(AlreadyActiveError):
            await second.start()

        assert first.is_active is True
        assert second.state == SessionState.IDLE
        assert guard.active is first
        await first.stop()

    async def test_concurrent_starts(self, clock):
        guard = ActiveSessionGuard()
        sessions = [
            GPSTrackingSession(QueueLocationProvider(make_point(0)), guard, clock=clock)
            for _ in range(2)
        ]

        results = await asyncio.gather(*(s.start() for s in sessions), return_exceptions=True)

        assert sum(isinstance(r, AlreadyActiveError) for r in results) == 1
        assert sum(isinstance(r, str) for r in results) == 1
        await guard.active.stop()

    async def test_new_session_after_stop(self, clock):
        guard = ActiveSessionGuard()
        first = GPSTrackingSession(QueueLocationProvider(make_point(0)), guard, clock=clock)
        await first.start()
        await first.stop()

        second = GPSTrackingSession(QueueLocationProvider(make_point(0)), guard, clock=clock)
        await second.start()

        assert guard.active is second
        await second.stop()


@pytest.mark.asyncio
class TestStartFailures:
    """Test that failed starts leave the session IDLE and the slot free."""

    async def _assert_start_fails(self, provider, error_class, timeout=None):
        guard = ActiveSessionGuard()
        session = GPSTrackingSession(provider, guard)

        with pytest.raises(error_class) as exc_info:
            await session.start(timeout=timeout)

        assert session.state == SessionState.IDLE
        assert session.tracking_id is None
        assert guard.active is None
        return exc_info.value

    async def test_permission_denied(self):
        provider = QueueLocationProvider(make_point(0), permission=PermissionStatus.DENIED)

        error = await self._assert_start_fails(provider, GPSPermissionDeniedError)

        assert error.recovery.fallback_action == GPSFallbackAction.REQUEST_PERMISSION_AGAIN

    async def test_service_disabled(self):
        provider = QueueLocationProvider(make_point(0), permission=PermissionStatus.SERVICE_DISABLED)

        await self._assert_start_fails(provider, GPSServiceDisabledError)

    async def test_first_fix_timeout(self):
        error = await self._assert_start_fails(HangingLocationProvider(), GPSTimeoutError, timeout=0.01)

        assert error.recovery.fallback_action == GPSFallbackAction.RETRY

    async def test_weak_first_fix(self):
        provider = QueueLocationProvider(make_point(0, accuracy=500.0))

        error = await self._assert_start_fails(provider, GPSSignalWeakError)

        assert error.recovery.fallback_action == GPSFallbackAction.SWITCH_TO_MANUAL_MODE

    async def test_unexpected_provider_error(self):
        error = await self._assert_start_fails(FailingLocationProvider(), GPSUnknownError)

        assert isinstance(error.__cause__, RuntimeError)

    async def test_failed_start_can_be_retried(self, clock):
        provider = QueueLocationProvider(make_point(0), permission=PermissionStatus.DENIED)
        session = GPSTrackingSession(provider, ActiveSessionGuard(), clock=clock)
        with pytest.raises(GPSPermissionDeniedError):
            await session.start()

        provider.permission = PermissionStatus.GRANTED
        await session.start()

        assert session.is_active is True
        await session.stop()


@pytest.mark.asyncio
class TestSampleHandling:
    """Test direct sample application."""

    async def test_sample_rejected_outside_active(self):
        session = GPSTrackingSession(QueueLocationProvider(make_point(0)), ActiveSessionGuard())

        with pytest.raises(SessionStateError):
            session.on_sample(make_point(1))

    async def test_out_of_order_sample_dropped(self, clock):
        session = GPSTrackingSession(QueueLocationProvider(make_point(10)), ActiveSessionGuard(), clock=clock)
        await session.start()

        update = session.on_sample(make_point(5, meters_north=50))

        assert update is None
        assert session.current_distance_km == 0.0
        assert session.quality_metrics.total_location_points == 1
        await session.stop()

    async def test_implausible_sample_not_counted(self, clock):
        session = GPSTrackingSession(QueueLocationProvider(make_point(0)), ActiveSessionGuard(), clock=clock)
        await session.start()

        session.on_sample(make_point(5, meters_north=50))
        session.on_sample(make_point(6, meters_north=5000))
        record = await session.stop()

        assert record.total_distance == pytest.approx(0.05)
        assert record.quality_metrics.valid_location_points == 2
