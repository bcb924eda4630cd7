"""
Database connection management.

Mileage records and the audit ledger live in one SQLite file. The ledger is
keyed by record id but carries no foreign key: audit entries are appended
before the record they describe is first written.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "mileage_guard.db"


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Open the mileage database, creating its parent directory if needed.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection
    """
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    return sqlite3.connect(str(path))
