"""
Database connection management.

Provides SQLite connections for the ledger, balance projections and usage
facts.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "ai_credit_engine.db"


def get_connection(db_path: str = DEFAULT_DB_PATH, busy_timeout_ms: int = 5000) -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.

    The connection runs in autocommit mode so callers open transactions
    explicitly (``BEGIN IMMEDIATE`` for credit mutations).

    Args:
        db_path: Path to SQLite database file
        busy_timeout_ms: How long a writer waits for the write lock

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=busy_timeout_ms / 1000.0, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute(f"PRAGMA busy_timeout = {int(busy_timeout_ms)}")
    return conn


def is_busy_error(error: sqlite3.Error) -> bool:
    """True for lock contention errors that are safe to retry."""
    message = str(error).lower()
    return "locked" in message or "busy" in message
