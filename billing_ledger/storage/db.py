"""
Database connection management.

Connections are opened per operation; callers commit or roll back and
always close.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "billing_ledger.db"

# Seconds a writer waits on a locked database before giving up
BUSY_TIMEOUT_SECONDS = 30.0


def get_connection(db_path: str = DEFAULT_DB_PATH, rows: bool = False) -> sqlite3.Connection:
    """Open a ledger database connection with foreign keys enforced.

    Args:
        db_path: Path to SQLite database file
        rows: Return sqlite3.Row objects (name-addressable) instead of tuples

    Returns:
        SQLite connection
    """
    conn = sqlite3.connect(str(Path(db_path)), timeout=BUSY_TIMEOUT_SECONDS)
    conn.execute("PRAGMA foreign_keys = ON")
    if rows:
        conn.row_factory = sqlite3.Row
    return conn
