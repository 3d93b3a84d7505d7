"""
Database connection management.

Provides SQLite connections for data persistence.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "ai_request_router.db"

# Writers from several worker threads (or processes) share one file.
BUSY_TIMEOUT_SECONDS = 30.0


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite database connection.

    Connections run in autocommit mode so callers open explicit
    ``BEGIN IMMEDIATE`` transactions around read-modify-write sequences.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign keys and WAL journaling enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(
        str(path),
        timeout=BUSY_TIMEOUT_SECONDS,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA journal_mode = WAL")
    return conn
