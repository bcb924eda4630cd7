"""
Repository pattern for data access.

Stores one mileage record per calendar date and the append-only audit
ledger that explains every change to it.
"""

import asyncio
import json
import sqlite3
from dataclasses import replace
from datetime import date, datetime
from typing import List, Optional, Protocol

from .db import DEFAULT_DB_PATH, get_connection
from .models import (
    AuditAction,
    GPSTrackingRecord,
    MileageAuditEntry,
    MileageRecord,
    MileageSource,
)


class RecordStore(Protocol):
    """Persistence contract consumed by the mileage service."""

    async def get_by_date(self, day: date) -> Optional[MileageRecord]:
        ...

    async def get_by_id(self, record_id: str) -> Optional[MileageRecord]:
        ...

    async def upsert(self, record: MileageRecord) -> None:
        ...

    async def append_audit(self, entry: MileageAuditEntry) -> None:
        ...

    async def query_range(self, start: date, end: date) -> List[MileageRecord]:
        ...

    async def get_audit_log(self, record_id: str) -> List[MileageAuditEntry]:
        ...


_RECORD_COLUMNS = """
    id, date, start_mileage, end_mileage, distance, source,
    gps_tracking, created_at, updated_at
"""

_AUDIT_COLUMNS = """
    id, record_id, timestamp, action, old_value, new_value,
    reason, user_id, device_info
"""


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the mileage tables if they don't exist.

    ``mileage_record`` holds at most one row per calendar date.
    ``mileage_audit_entry`` is an append-only ledger; triggers abort any
    UPDATE or DELETE against it.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS mileage_record (
                id TEXT PRIMARY KEY,
                date TEXT NOT NULL UNIQUE,
                start_mileage REAL NOT NULL,
                end_mileage REAL,
                distance REAL,
                source TEXT NOT NULL,
                gps_tracking TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS mileage_audit_entry (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                record_id TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                action TEXT NOT NULL,
                old_value REAL,
                new_value REAL,
                reason TEXT NOT NULL,
                user_id TEXT,
                device_info TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_audit_record
                ON mileage_audit_entry (record_id, seq);

            CREATE TRIGGER IF NOT EXISTS mileage_audit_no_update
                BEFORE UPDATE ON mileage_audit_entry
                BEGIN
                    SELECT RAISE(ABORT, 'mileage audit entries are append-only');
                END;

            CREATE TRIGGER IF NOT EXISTS mileage_audit_no_delete
                BEFORE DELETE ON mileage_audit_entry
                BEGIN
                    SELECT RAISE(ABORT, 'mileage audit entries are append-only');
                END;
        """)
        conn.commit()
    finally:
        conn.close()


def _row_to_record(row: tuple) -> MileageRecord:
    return MileageRecord(
        id=row[0],
        date=date.fromisoformat(row[1]),
        start_mileage=row[2],
        end_mileage=row[3],
        distance=row[4],
        source=MileageSource(row[5]),
        gps_tracking=GPSTrackingRecord.from_dict(json.loads(row[6])) if row[6] else None,
        created_at=datetime.fromisoformat(row[7]),
        updated_at=datetime.fromisoformat(row[8]),
    )


def _row_to_audit_entry(row: tuple) -> MileageAuditEntry:
    return MileageAuditEntry(
        id=row[0],
        record_id=row[1],
        timestamp=datetime.fromisoformat(row[2]),
        action=AuditAction(row[3]),
        old_value=row[4],
        new_value=row[5],
        reason=row[6],
        user_id=row[7],
        device_info=row[8],
    )


class SqliteRecordStore:
    """SQLite-backed RecordStore.

    Each operation opens its own connection and runs in a worker thread so
    the event loop is never blocked on disk I/O. Errors propagate unchanged.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the store with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def initialize(self) -> None:
        initialize_schema(self.db_path)

    async def get_by_date(self, day: date) -> Optional[MileageRecord]:
        return await asyncio.to_thread(self._fetch_one, "date = ?", day.isoformat())

    async def get_by_id(self, record_id: str) -> Optional[MileageRecord]:
        return await asyncio.to_thread(self._fetch_one, "id = ?", record_id)

    async def upsert(self, record: MileageRecord) -> None:
        """Insert the record or replace the stored row with the same id.

        The audit log is not written here; it is only ever appended through
        ``append_audit``.
        """
        await asyncio.to_thread(self._upsert, record)

    async def append_audit(self, entry: MileageAuditEntry) -> None:
        await asyncio.to_thread(self._append_audit, entry)

    async def query_range(self, start: date, end: date) -> List[MileageRecord]:
        """Records whose date lies in [start, end], ascending by date."""
        return await asyncio.to_thread(self._query_range, start, end)

    async def get_audit_log(self, record_id: str) -> List[MileageAuditEntry]:
        """Ledger entries for one record in the order they were appended."""
        return await asyncio.to_thread(self._fetch_audit_log, record_id)

    def _fetch_one(self, condition: str, value: str) -> Optional[MileageRecord]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"SELECT {_RECORD_COLUMNS} FROM mileage_record WHERE {condition}",
                (value,),
            )
            row = cursor.fetchone()
            if row is None:
                return None
            return self._hydrate(conn, _row_to_record(row))
        finally:
            conn.close()

    def _query_range(self, start: date, end: date) -> List[MileageRecord]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"SELECT {_RECORD_COLUMNS} FROM mileage_record "
                "WHERE date >= ? AND date <= ? ORDER BY date ASC",
                (start.isoformat(), end.isoformat()),
            )
            return [self._hydrate(conn, _row_to_record(row)) for row in cursor.fetchall()]
        finally:
            conn.close()

    def _upsert(self, record: MileageRecord) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(f"""
                INSERT INTO mileage_record ({_RECORD_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    date = excluded.date,
                    start_mileage = excluded.start_mileage,
                    end_mileage = excluded.end_mileage,
                    distance = excluded.distance,
                    source = excluded.source,
                    gps_tracking = excluded.gps_tracking,
                    updated_at = excluded.updated_at
            """, (
                record.id,
                record.date.isoformat(),
                record.start_mileage,
                record.end_mileage,
                record.distance,
                record.source.value,
                json.dumps(record.gps_tracking.to_dict()) if record.gps_tracking else None,
                record.created_at.isoformat(),
                record.updated_at.isoformat(),
            ))
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _append_audit(self, entry: MileageAuditEntry) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(f"""
                INSERT INTO mileage_audit_entry ({_AUDIT_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                entry.id,
                entry.record_id,
                entry.timestamp.isoformat(),
                entry.action.value,
                entry.old_value,
                entry.new_value,
                entry.reason,
                entry.user_id,
                entry.device_info,
            ))
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _fetch_audit_log(self, record_id: str) -> List[MileageAuditEntry]:
        conn = get_connection(self.db_path)
        try:
            return self._audit_entries(conn, record_id)
        finally:
            conn.close()

    def _hydrate(self, conn: sqlite3.Connection, record: MileageRecord) -> MileageRecord:
        return replace(record, audit_log=tuple(self._audit_entries(conn, record.id)))

    @staticmethod
    def _audit_entries(conn: sqlite3.Connection, record_id: str) -> List[MileageAuditEntry]:
        cursor = conn.execute(
            f"SELECT {_AUDIT_COLUMNS} FROM mileage_audit_entry "
            "WHERE record_id = ? ORDER BY seq ASC",
            (record_id,),
        )
        return [_row_to_audit_entry(row) for row in cursor.fetchall()]
