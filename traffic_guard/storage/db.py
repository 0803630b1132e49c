"""
Database connection management.

Provides SQLite connections for the traffic cache and usage ledger.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "traffic_guard.db"

# Seconds a connection waits on a locked database before failing
BUSY_TIMEOUT_SECONDS = 5.0


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite connection safe for concurrent writers.

    Each call returns a fresh connection; callers close it when done so no
    connection is ever shared between threads.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with WAL journaling and a busy timeout
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=BUSY_TIMEOUT_SECONDS)
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
