"""
Database connection management.

Provides SQLite connections for the cost ledger.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "cost_governor.db"


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite connection for the ledger.

    Connections are short-lived: every repository call opens one and closes
    it before returning, so concurrent agents never share a handle.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path).expanduser()
    conn = sqlite3.connect(str(path), timeout=30)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
