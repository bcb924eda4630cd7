"""
Mileage service.

Public entry point for recording a day's start and end odometer readings.
Coordinates the record store, GPS tracking sessions and the validation
rules, and writes an audit entry for every change.

Every mutation appends its audit entries before the record itself is
written, so an interrupted operation still leaves a trace of intent in the
ledger. The ledger is the source of truth for reconciliation.
"""

import asyncio
import uuid
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import date
from typing import Dict, List, Optional

import structlog

from .anomaly import AnomalyReport, detect_anomalies
from .clock import Clock, SystemClock
from .recovery import GPSServiceDisabledError, GPSTrackingError
from .tracking import ActiveSessionGuard, GPSTrackingSession, LocationProvider
from .validation import ValidationResult, check_mileage_range, validate_mileage
from mileage_guard.config.loader import DEFAULT_CONFIG, MileageConfig
from mileage_guard.storage.models import (
    AuditAction,
    GPSQualityMetrics,
    GPSTrackingRecord,
    MileageAuditEntry,
    MileageRecord,
    MileageSource,
)
from mileage_guard.storage.repository import RecordStore

logger = structlog.get_logger(__name__)


class NoStartRecordError(Exception):
    """Raised when an end reading is recorded before any start reading."""


class MileageService:
    """Records, validates and audits daily mileage.

    The service assumes a single writer (one device, one user). Start and
    end recordings for the same date are serialized by a per-date lock.
    """

    def __init__(
        self,
        store: RecordStore,
        location_provider: Optional[LocationProvider] = None,
        clock: Optional[Clock] = None,
        config: Optional[MileageConfig] = None,
        guard: Optional[ActiveSessionGuard] = None,
    ):
        self._store = store
        self._provider = location_provider
        self._clock = clock or SystemClock()
        self._config = config or DEFAULT_CONFIG
        self._guard = guard or ActiveSessionGuard()
        self._session: Optional[GPSTrackingSession] = None
        self._date_locks: Dict[date, asyncio.Lock] = {}
        self._date_lock_users: Dict[date, int] = {}

    # ---- GPS introspection ----

    @property
    def is_tracking(self) -> bool:
        return self._session is not None and self._session.is_active

    @property
    def current_distance(self) -> float:
        """Distance of the active (or last) GPS session in km."""
        if self._session is None:
            return 0.0
        return self._session.current_distance_km

    @property
    def current_quality_metrics(self) -> Optional[GPSQualityMetrics]:
        if self._session is None:
            return None
        return self._session.quality_metrics

    @property
    def current_tracking(self) -> Optional[GPSTrackingRecord]:
        if self._session is None:
            return None
        return self._session.snapshot()

    # ---- Recording ----

    async def record_start(
        self,
        mileage: float,
        gps_enabled: bool = False,
        related_record_id: Optional[str] = None,
    ) -> MileageRecord:
        """Record the start-of-day odometer reading.

        A second call on the same date updates the existing record.

        Args:
            mileage: Odometer reading in km
            gps_enabled: Start a GPS tracking session as well
            related_record_id: Identifier of the caller's related record
                (e.g. the day's roll-call), kept in the audit trail

        Returns:
            The persisted record

        Raises:
            MileageRangeError: If the reading is out of range
            GPSTrackingError: If GPS was requested but could not start; the
                record has already been persisted in manual mode
        """
        check_mileage_range(mileage, self._config.thresholds)

        now = self._clock.now()
        today = now.date()
        log = logger.bind(date=today.isoformat(), mileage=mileage, gps_enabled=gps_enabled)
        log.info("record_start_begin")

        async with self._date_lock(today):
            existing = await self._store.get_by_date(today)
            source = MileageSource.GPS if gps_enabled else MileageSource.MANUAL

            if existing is not None:
                entry = self._audit_entry(
                    existing.id,
                    AuditAction.MODIFY,
                    reason=self._with_reference("Start mileage updated", related_record_id),
                    old_value=existing.start_mileage,
                    new_value=mileage,
                )
                await self._store.append_audit(entry)
                record = replace(
                    existing,
                    start_mileage=mileage,
                    source=source,
                    updated_at=now,
                    audit_log=existing.audit_log + (entry,),
                )
            else:
                record_id = f"mileage_{uuid.uuid4().hex}"
                entry = self._audit_entry(
                    record_id,
                    AuditAction.CREATE,
                    reason=self._with_reference("Start mileage recorded", related_record_id),
                    new_value=mileage,
                )
                await self._store.append_audit(entry)
                record = MileageRecord(
                    id=record_id,
                    date=today,
                    start_mileage=mileage,
                    source=source,
                    created_at=now,
                    updated_at=now,
                    audit_log=(entry,),
                )
            await self._store.upsert(record)

            if gps_enabled:
                record = await self._start_gps(record, mileage)

        log.info("record_start_complete", record_id=record.id, source=record.source.value)
        return record

    async def record_end(
        self,
        mileage: float,
        source: MileageSource,
        gps_distance: Optional[float] = None,
        related_record_id: Optional[str] = None,
    ) -> MileageRecord:
        """Record the end-of-day odometer reading.

        Validation findings are written to the audit log and never block the
        update. An active GPS session is stopped; a failure to stop it is
        logged and the manual reading still stands.

        Args:
            mileage: Odometer reading in km
            source: How the day's distance was obtained
            gps_distance: GPS-measured distance in km, if known; stored as the
                day's distance only for a GPS source
            related_record_id: Identifier of the caller's related record

        Returns:
            The updated record

        Raises:
            MileageRangeError: If the reading is out of range
            NoStartRecordError: If no start reading exists for today
        """
        check_mileage_range(mileage, self._config.thresholds)

        now = self._clock.now()
        today = now.date()
        log = logger.bind(date=today.isoformat(), mileage=mileage, source=source.value)
        log.info("record_end_begin")

        async with self._date_lock(today):
            existing = await self._store.get_by_date(today)
            if existing is None:
                raise NoStartRecordError(f"No start mileage recorded for {today.isoformat()}")

            if gps_distance is None and source == MileageSource.GPS and self.is_tracking:
                gps_distance = self._session.current_distance_km

            # Only a pure GPS day stores the GPS distance; hybrid keeps the odometer
            if source == MileageSource.GPS and gps_distance is not None:
                distance = gps_distance
            else:
                distance = mileage - existing.start_mileage

            validation = validate_mileage(
                existing.start_mileage, mileage, gps_distance, self._config.thresholds
            )

            new_entries = []
            for flag, warning in zip(validation.flags, validation.warnings):
                new_entries.append(self._audit_entry(
                    existing.id,
                    AuditAction.VALIDATE,
                    reason=f"{flag.value}: {warning}",
                    new_value=mileage,
                ))
            new_entries.append(self._audit_entry(
                existing.id,
                AuditAction.MODIFY,
                reason=self._with_reference("End mileage recorded", related_record_id),
                old_value=existing.end_mileage,
                new_value=mileage,
            ))
            for entry in new_entries:
                await self._store.append_audit(entry)

            record = replace(
                existing,
                end_mileage=mileage,
                distance=distance,
                source=source,
                updated_at=now,
                audit_log=existing.audit_log + tuple(new_entries),
            )
            await self._store.upsert(record)

            if validation.has_warnings:
                log.warning(
                    "mileage_validation_warnings",
                    record_id=record.id,
                    flags=[flag.value for flag in validation.flags],
                    warnings=validation.warnings,
                )

            if self.is_tracking:
                record = await self._stop_gps(record, mileage)

        log.info("record_end_complete", record_id=record.id, distance_km=distance)
        return record

    # ---- Queries ----

    async def get_current_day_record(self, day: Optional[date] = None) -> Optional[MileageRecord]:
        """Record for the given day (default today), or None."""
        target = day or self._clock.now().date()
        return await self._store.get_by_date(target)

    async def get_mileage_history(self, start: date, end: date) -> List[MileageRecord]:
        """Records between start and end (inclusive), ascending by date."""
        records = await self._store.query_range(start, end)
        logger.info(
            "mileage_history_loaded",
            start=start.isoformat(),
            end=end.isoformat(),
            count=len(records),
        )
        return records

    async def detect_anomalies(self, start: date, end: date) -> List[AnomalyReport]:
        records = await self.get_mileage_history(start, end)
        reports = detect_anomalies(records, self._config.thresholds, detected_at=self._clock.now())
        logger.info("anomaly_scan_complete", records=len(records), anomalies=len(reports))
        return reports

    async def get_audit_log(self, record_id: str) -> List[MileageAuditEntry]:
        return await self._store.get_audit_log(record_id)

    def validate_mileage_data(
        self,
        start: float,
        end: Optional[float] = None,
        gps_distance: Optional[float] = None,
    ) -> ValidationResult:
        return validate_mileage(start, end, gps_distance, self._config.thresholds)

    async def close(self) -> None:
        """Stop any active GPS session."""
        if self.is_tracking:
            await self._session.stop()

    # ---- Internals ----

    async def _start_gps(self, record: MileageRecord, mileage: float) -> MileageRecord:
        try:
            if self._provider is None:
                raise GPSServiceDisabledError("No location provider configured")
            session = GPSTrackingSession(
                self._provider, self._guard, clock=self._clock, config=self._config.tracking
            )
            tracking_id = await session.start()
        except GPSTrackingError as e:
            logger.error(
                "gps_start_failed",
                record_id=record.id,
                error_type=e.error_type.value,
                fallback=e.recovery.fallback_action.value,
                error=str(e),
            )
            entry = self._audit_entry(
                record.id,
                AuditAction.MODIFY,
                reason=f"GPS tracking failed to start ({e.error_type.value}): switched to manual mode",
            )
            await self._store.append_audit(entry)
            record = replace(
                record,
                source=MileageSource.MANUAL,
                updated_at=self._clock.now(),
                audit_log=record.audit_log + (entry,),
            )
            await self._store.upsert(record)
            raise

        self._session = session
        entry = self._audit_entry(
            record.id,
            AuditAction.GPS_START,
            reason=f"GPS tracking started: {tracking_id}",
            new_value=mileage,
        )
        await self._store.append_audit(entry)
        return replace(record, audit_log=record.audit_log + (entry,))

    async def _stop_gps(self, record: MileageRecord, mileage: float) -> MileageRecord:
        try:
            tracking = await self._session.stop(end_mileage=mileage)
        except Exception:
            logger.exception("gps_stop_failed", record_id=record.id)
            return record
        if tracking is None:
            return record

        entry = self._audit_entry(
            record.id,
            AuditAction.GPS_STOP,
            reason=f"GPS tracking stopped: {tracking.tracking_id}",
            new_value=tracking.total_distance,
        )
        await self._store.append_audit(entry)
        record = replace(
            record,
            gps_tracking=tracking,
            audit_log=record.audit_log + (entry,),
        )
        await self._store.upsert(record)
        return record

    @asynccontextmanager
    async def _date_lock(self, day: date):
        """Hold the lock for ``day``; the lock is dropped once nobody needs it."""
        lock = self._date_locks.setdefault(day, asyncio.Lock())
        self._date_lock_users[day] = self._date_lock_users.get(day, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._date_lock_users[day] -= 1
            if not self._date_lock_users[day]:
                del self._date_lock_users[day]
                del self._date_locks[day]

    def _audit_entry(
        self,
        record_id: str,
        action: AuditAction,
        reason: str,
        old_value: Optional[float] = None,
        new_value: Optional[float] = None,
    ) -> MileageAuditEntry:
        return MileageAuditEntry(
            id=f"audit_{uuid.uuid4().hex}",
            record_id=record_id,
            timestamp=self._clock.now(),
            action=action,
            reason=reason,
            old_value=old_value,
            new_value=new_value,
            user_id=self._config.device.user_id,
            device_info=self._config.device.device_info,
        )

    @staticmethod
    def _with_reference(reason: str, related_record_id: Optional[str]) -> str:
        if related_record_id:
            return f"{reason} (related record {related_record_id})"
        return reason
