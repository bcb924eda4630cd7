"""
Unit tests for storage layer.

Tests schema creation, record upserts, range queries and the append-only
audit ledger.
"""

import sqlite3
from dataclasses import replace
from datetime import date, datetime, timedelta

import pytest

from mileage_guard.storage.db import get_connection
from mileage_guard.storage.models import (
    AuditAction,
    GPSQualityMetrics,
    GPSTrackingRecord,
    MileageAuditEntry,
    MileageRecord,
    MileageSource,
)
from mileage_guard.storage.repository import initialize_schema


def create_record(record_id: str = "mileage_1", day: date = date(2024, 5, 1), **kwargs) -> MileageRecord:
    """Create a mileage record for testing."""
    created = datetime.combine(day, datetime.min.time()) + timedelta(hours=8)
    values = dict(
        id=record_id,
        date=day,
        start_mileage=100.0,
        source=MileageSource.MANUAL,
        created_at=created,
        updated_at=created,
    )
    values.update(kwargs)
    return MileageRecord(**values)


def create_entry(entry_id: str, record_id: str = "mileage_1", action: AuditAction = AuditAction.CREATE,
                 minutes: int = 0) -> MileageAuditEntry:
    """Create an audit entry for testing."""
    return MileageAuditEntry(
        id=entry_id,
        record_id=record_id,
        timestamp=datetime(2024, 5, 1, 8, 0, 0) + timedelta(minutes=minutes),
        action=action,
        reason=f"{action.value} entry",
        new_value=100.0,
        device_info="test-device",
    )


class TestStorageSchema:
    """Test database schema creation and structure."""

    def test_schema_creation(self, tmp_path):
        """Verify tables and triggers are created."""
        db_path = str(tmp_path / "test.db")
        initialize_schema(db_path)

        conn = get_connection(db_path)
        try:
            cursor = conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
            tables = {row[0] for row in cursor.fetchall()}
            assert {"mileage_record", "mileage_audit_entry"} <= tables

            cursor = conn.execute("SELECT name FROM sqlite_master WHERE type='trigger'")
            triggers = {row[0] for row in cursor.fetchall()}
            assert triggers == {"mileage_audit_no_update", "mileage_audit_no_delete"}
        finally:
            conn.close()

    def test_schema_creation_is_idempotent(self, tmp_path):
        db_path = str(tmp_path / "test.db")

        initialize_schema(db_path)
        initialize_schema(db_path)

    def test_database_directory_created(self, tmp_path):
        db_path = str(tmp_path / "data" / "fleet" / "test.db")

        initialize_schema(db_path)

        assert (tmp_path / "data" / "fleet" / "test.db").exists()


@pytest.mark.asyncio
class TestRecordStore:
    """Test record persistence."""

    async def test_upsert_and_get(self, store):
        record = create_record()

        await store.upsert(record)

        assert await store.get_by_id("mileage_1") == record
        assert await store.get_by_date(date(2024, 5, 1)) == record

    async def test_missing_record(self, store):
        assert await store.get_by_date(date(2024, 5, 1)) is None
        assert await store.get_by_id("mileage_missing") is None

    async def test_upsert_replaces_existing_row(self, store):
        record = create_record()
        await store.upsert(record)

        updated = replace(record, end_mileage=180.0, distance=80.0, updated_at=record.updated_at + timedelta(hours=9))
        await store.upsert(updated)

        assert await store.get_by_id("mileage_1") == updated

    async def test_one_record_per_date(self, store):
        await store.upsert(create_record("mileage_1"))

        with pytest.raises(sqlite3.IntegrityError):
            await store.upsert(create_record("mileage_2"))

    async def test_gps_tracking_persisted(self, store):
        tracking = GPSTrackingRecord(
            tracking_id="gps_1",
            start_time=datetime(2024, 5, 1, 8, 0, 0),
            end_time=datetime(2024, 5, 1, 17, 0, 0),
            total_distance=48.5,
            is_complete=True,
            quality_metrics=GPSQualityMetrics(
                accuracy_percentage=90.0,
                signal_quality=0.8,
                battery_impact=0.3,
                total_location_points=10,
                valid_location_points=9,
            ),
        )
        record = create_record(source=MileageSource.GPS, distance=48.5, gps_tracking=tracking)

        await store.upsert(record)

        assert (await store.get_by_id("mileage_1")).gps_tracking == tracking

    async def test_query_range_inclusive_ascending(self, store):
        for day in (3, 1, 5, 2):
            await store.upsert(create_record(f"mileage_{day}", date(2024, 5, day)))

        records = await store.query_range(date(2024, 5, 2), date(2024, 5, 5))

        assert [r.date.day for r in records] == [2, 3, 5]

    async def test_query_range_empty(self, store):
        assert await store.query_range(date(2024, 1, 1), date(2024, 1, 31)) == []


@pytest.mark.asyncio
class TestAuditLedger:
    """Test the append-only audit ledger."""

    async def test_entries_in_append_order(self, store):
        await store.upsert(create_record())
        # Appended out of timestamp order on purpose
        await store.append_audit(create_entry("audit_b", minutes=10))
        await store.append_audit(create_entry("audit_a", action=AuditAction.MODIFY, minutes=5))

        entries = await store.get_audit_log("mileage_1")

        assert [e.id for e in entries] == ["audit_b", "audit_a"]
        assert entries[1].action == AuditAction.MODIFY
        assert entries[0].device_info == "test-device"

    async def test_record_hydrated_with_audit_log(self, store):
        await store.upsert(create_record())
        await store.append_audit(create_entry("audit_1"))
        await store.append_audit(create_entry("audit_2", record_id="mileage_other"))

        record = await store.get_by_date(date(2024, 5, 1))

        assert [e.id for e in record.audit_log] == ["audit_1"]

    async def test_entries_cannot_be_updated(self, store):
        await store.append_audit(create_entry("audit_1"))

        conn = get_connection(store.db_path)
        try:
            with pytest.raises(sqlite3.IntegrityError, match="append-only"):
                conn.execute("UPDATE mileage_audit_entry SET reason = 'edited' WHERE id = 'audit_1'")
        finally:
            conn.close()

    async def test_entries_cannot_be_deleted(self, store):
        await store.append_audit(create_entry("audit_1"))

        conn = get_connection(store.db_path)
        try:
            with pytest.raises(sqlite3.IntegrityError, match="append-only"):
                conn.execute("DELETE FROM mileage_audit_entry")
        finally:
            conn.close()

        assert len(await store.get_audit_log("mileage_1")) == 1

    async def test_duplicate_entry_id_rejected(self, store):
        await store.append_audit(create_entry("audit_1"))

        with pytest.raises(sqlite3.IntegrityError):
            await store.append_audit(create_entry("audit_1"))

    async def test_entry_appended_before_record_exists(self, store):
        """A CREATE entry is written before the record row it describes."""
        await store.append_audit(create_entry("audit_1"))
        assert await store.get_by_id("mileage_1") is None

        await store.upsert(create_record())

        record = await store.get_by_id("mileage_1")
        assert [e.id for e in record.audit_log] == ["audit_1"]
