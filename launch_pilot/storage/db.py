"""
Database connection management.

Provides the SQLite connection that backs the local key-value store and
the usage audit log.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "launch_pilot.db"


def get_connection(db_path: str = DEFAULT_DB_PATH, timeout: float = 10.0) -> sqlite3.Connection:
    """Create and return a SQLite database connection.

    Args:
        db_path: Path to SQLite database file
        timeout: Seconds to wait on a locked database

    Returns:
        SQLite connection
    """
    return sqlite3.connect(str(Path(db_path)), timeout=timeout)
