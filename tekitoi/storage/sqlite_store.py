# tekitoi/storage/sqlite_store.py
import asyncio
import sqlite3
import logging
from datetime import datetime, timezone
from typing import Optional

from ..oauth.models import Clock, utc_now
from .interfaces import AbstractCorrelationStore, storage_error
from .sqlite_base import open_sqlite_connection

logger = logging.getLogger(__name__)


def _to_db_timestamp(value: datetime) -> str:
    # fixed width so that text comparison orders like time
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


class SQLiteCorrelationStore(AbstractCorrelationStore):
    """
    Relational correlation store.

    A record is consumed by a SELECT and a DELETE inside one
    ``BEGIN IMMEDIATE`` transaction, which takes the database write lock
    before reading. Two consumers of the same key are therefore serialized
    and the second one finds no row. Expired rows are ignored on read and
    removed by ``purge_expired``.
    """

    def __init__(self, db_path: str, clock: Clock = utc_now):
        super().__init__(clock)
        self.db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        if self._conn is None:
            self._conn = open_sqlite_connection(self.db_path)
        logger.info("SQLiteCorrelationStore initialized.")

    async def teardown(self) -> None:
        if self._conn is not None:
            logger.info("Closing SQLite DB connection.")
            self._conn.close()
            self._conn = None
        logger.info("SQLiteCorrelationStore teardown.")

    def _get_connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("SQLiteCorrelationStore not initialized.")
        return self._conn

    async def ping(self) -> None:
        conn = self._get_connection()
        try:
            conn.execute("SELECT 1").fetchone()
        except sqlite3.Error as e:
            raise storage_error("SQLite", e) from e

    async def store_payload(self, key: str, payload: str, expires_at: Optional[datetime]) -> None:
        query = '''
            INSERT OR REPLACE INTO correlation_records (record_key, payload, expires_at)
            VALUES (?, ?, ?)
        '''
        expires_at_db = _to_db_timestamp(expires_at) if expires_at is not None else None
        conn = self._get_connection()
        async with self._lock:
            try:
                conn.execute(query, (key, payload, expires_at_db))
            except sqlite3.Error as e:
                raise storage_error("SQLite", e) from e

    async def take_payload(self, key: str) -> Optional[str]:
        conn = self._get_connection()
        now_db = _to_db_timestamp(self.clock())
        async with self._lock:
            try:
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute(
                    "SELECT payload FROM correlation_records "
                    "WHERE record_key = ? AND (expires_at IS NULL OR expires_at > ?)",
                    (key, now_db)
                ).fetchone()
                # expired rows are dropped as well, they can never be consumed
                conn.execute("DELETE FROM correlation_records WHERE record_key = ?", (key,))
                conn.commit()
            except sqlite3.Error as e:
                if conn.in_transaction:
                    conn.rollback()
                raise storage_error("SQLite", e) from e
        return row["payload"] if row else None

    async def load_payload(self, key: str) -> Optional[str]:
        conn = self._get_connection()
        now_db = _to_db_timestamp(self.clock())
        try:
            row = conn.execute(
                "SELECT payload FROM correlation_records "
                "WHERE record_key = ? AND (expires_at IS NULL OR expires_at > ?)",
                (key, now_db)
            ).fetchone()
        except sqlite3.Error as e:
            raise storage_error("SQLite", e) from e
        return row["payload"] if row else None

    async def purge_expired(self) -> int:
        conn = self._get_connection()
        now_db = _to_db_timestamp(self.clock())
        async with self._lock:
            try:
                cursor = conn.execute(
                    "DELETE FROM correlation_records WHERE expires_at IS NOT NULL AND expires_at <= ?",
                    (now_db,)
                )
            except sqlite3.Error as e:
                raise storage_error("SQLite", e) from e
        if cursor.rowcount:
            logger.info(f"Purged {cursor.rowcount} expired correlation record(s).")
        return cursor.rowcount
