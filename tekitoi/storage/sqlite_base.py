# tekitoi/storage/sqlite_base.py
import sqlite3
import logging
from pathlib import Path

logger = logging.getLogger(__name__)

IN_MEMORY_DB = ":memory:"


def open_sqlite_connection(db_path: str) -> sqlite3.Connection:
    """
    Open a SQLite connection for the correlation store and ensure its schema.

    The connection runs in autocommit mode; multi-statement operations open
    their own ``BEGIN IMMEDIATE`` transaction.

    Args:
        db_path: Database file path, or ":memory:"

    Returns:
        sqlite3.Connection: The database connection instance

    Raises:
        sqlite3.Error: If database connection fails
    """
    if db_path != IN_MEMORY_DB:
        resolved = Path(db_path).resolve()
        # Ensure the database directory structure exists
        resolved.parent.mkdir(parents=True, exist_ok=True)
        db_path = str(resolved)

    logger.info(f"Attempting to connect to SQLite DB at: {db_path}")
    try:
        # Enable thread-safe access for async/FastAPI compatibility
        conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        conn.row_factory = sqlite3.Row
        init_sqlite_db(conn)
    except sqlite3.Error as e:
        logger.error(f"Error connecting to SQLite database at {db_path}: {e}", exc_info=True)
        raise
    logger.info(f"Successfully connected to SQLite DB: {db_path}")
    return conn


def init_sqlite_db(conn: sqlite3.Connection) -> None:
    """
    Create the correlation table and its expiry index. Safe to call repeatedly.
    """
    # Pending requests, provider requests, issued codes and access tokens share one table
    conn.execute('''
    CREATE TABLE IF NOT EXISTS correlation_records (
        record_key TEXT PRIMARY KEY,
        payload TEXT NOT NULL,
        expires_at TEXT
    )
    ''')
    conn.execute('''
    CREATE INDEX IF NOT EXISTS correlation_records_expires_at
        ON correlation_records (expires_at)
    ''')
    logger.info("Ensured 'correlation_records' table exists.")
