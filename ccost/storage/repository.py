"""
Repository pattern for data access.

Handles persistence of the dedup ledger and the exchange-rate cache.
"""

import sqlite3
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional, Set, Tuple

from ccost.config.logger import get_logger
from ccost.core.errors import LedgerWriteError
from ccost.storage.db import DEFAULT_DB_PATH, get_connection
from ccost.storage.models import ExchangeRateRow

LOGGER = get_logger("ccost.storage")


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the ledger and exchange-rate tables if they don't exist.

    ``dedup_ledger`` is append-only: rows are inserted once and never
    updated or deleted. ``exchange_rates`` holds one row per pair and is
    replaced on every successful refresh.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        _create_tables(conn)
    finally:
        conn.close()


def _create_tables(conn: sqlite3.Connection) -> None:
    conn.execute("""
        CREATE TABLE IF NOT EXISTS dedup_ledger (
            canonical_key TEXT PRIMARY KEY,
            project TEXT,
            record_timestamp TEXT,
            accepted_at TEXT NOT NULL
        )
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS exchange_rates (
            base_currency TEXT NOT NULL,
            target_currency TEXT NOT NULL,
            rate TEXT NOT NULL,
            fetched_at TEXT NOT NULL,
            PRIMARY KEY (base_currency, target_currency)
        )
    """)
    conn.commit()


class LedgerStore:
    """Persistent set of accepted canonical keys.

    Opening the store creates the schema; ``load_keys`` returns every key
    accepted by earlier runs. Inserts are buffered in a transaction until
    ``flush`` is called, and nothing is flushed implicitly: callers must
    flush (or close) before the process exits.

    The store holds one connection usable from worker threads. It does no
    locking of its own; the deduplicator serializes every call.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH, flush_every: int = 500):
        if flush_every <= 0:
            raise ValueError("flush_every must be > 0")
        self.db_path = db_path
        self.flush_every = flush_every
        self._pending = 0
        self._conn: Optional[sqlite3.Connection] = get_connection(db_path, shared=True)
        _create_tables(self._conn)

    def load_keys(self) -> Set[str]:
        """Return all canonical keys already in the ledger."""
        cursor = self._connection().execute("SELECT canonical_key FROM dedup_ledger")
        return {row[0] for row in cursor.fetchall()}

    def count(self) -> int:
        cursor = self._connection().execute("SELECT COUNT(*) FROM dedup_ledger")
        return cursor.fetchone()[0]

    def insert_key(
        self,
        key: str,
        project: Optional[str] = None,
        record_timestamp: Optional[datetime] = None,
    ) -> None:
        """Insert a newly accepted key.

        Raises:
            LedgerWriteError: If the row cannot be written or committed
        """
        try:
            self._connection().execute(
                """
                INSERT OR IGNORE INTO dedup_ledger
                (canonical_key, project, record_timestamp, accepted_at)
                VALUES (?, ?, ?, ?)
                """,
                (
                    key,
                    project,
                    record_timestamp.isoformat() if record_timestamp else None,
                    datetime.now().isoformat(),
                ),
            )
            self._pending += 1
            if self._pending >= self.flush_every:
                self._commit()
        except sqlite3.Error as e:
            LOGGER.error("Ledger insert failed", extra={"key": key, "error": str(e)})
            raise LedgerWriteError(key, e) from e

    def flush(self) -> None:
        """Commit buffered inserts.

        Raises:
            LedgerWriteError: If the commit fails
        """
        if self._conn is None or self._pending == 0:
            return
        try:
            self._commit()
        except sqlite3.Error as e:
            LOGGER.error("Ledger flush failed", extra={"error": str(e)})
            raise LedgerWriteError("<flush>", e) from e

    def close(self, commit: bool = True) -> None:
        """Release the connection, flushing first unless ``commit`` is False.

        With ``commit=False`` buffered inserts are rolled back; keys already
        flushed stay in the ledger.
        """
        if self._conn is None:
            return
        try:
            if commit:
                self.flush()
            else:
                self._conn.rollback()
                self._pending = 0
        finally:
            self._conn.close()
            self._conn = None

    def _commit(self) -> None:
        self._connection().commit()
        LOGGER.debug("Ledger committed", extra={"rows": self._pending})
        self._pending = 0

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("LedgerStore is closed")
        return self._conn

    def __enter__(self) -> "LedgerStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close(commit=exc_type is None)


class ExchangeRateStore:
    """Get/put access to cached exchange rates keyed by (base, target)."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path
        conn = get_connection(db_path)
        try:
            _create_tables(conn)
        finally:
            conn.close()

    def get(self, base: str, target: str) -> Optional[ExchangeRateRow]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                """
                SELECT base_currency, target_currency, rate, fetched_at
                FROM exchange_rates
                WHERE base_currency = ? AND target_currency = ?
                """,
                (base.upper(), target.upper()),
            )
            row = cursor.fetchone()
            if row is None:
                return None
            return ExchangeRateRow(
                base=row[0],
                target=row[1],
                rate=Decimal(row[2]),
                fetched_at=datetime.fromisoformat(row[3]),
            )
        finally:
            conn.close()

    def put(self, base: str, target: str, rate: Decimal, fetched_at: datetime) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                """
                INSERT OR REPLACE INTO exchange_rates
                (base_currency, target_currency, rate, fetched_at)
                VALUES (?, ?, ?, ?)
                """,
                (base.upper(), target.upper(), str(rate), fetched_at.isoformat()),
            )
            conn.commit()
        finally:
            conn.close()

    def all(self) -> Dict[Tuple[str, str], ExchangeRateRow]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "SELECT base_currency, target_currency, rate, fetched_at FROM exchange_rates"
            )
            return {
                (row[0], row[1]): ExchangeRateRow(
                    base=row[0],
                    target=row[1],
                    rate=Decimal(row[2]),
                    fetched_at=datetime.fromisoformat(row[3]),
                )
                for row in cursor.fetchall()
            }
        finally:
            conn.close()


class MemoryExchangeRateStore:
    """In-process exchange-rate store with the same interface as ExchangeRateStore."""

    def __init__(self):
        self._rows: Dict[Tuple[str, str], ExchangeRateRow] = {}

    def get(self, base: str, target: str) -> Optional[ExchangeRateRow]:
        return self._rows.get((base.upper(), target.upper()))

    def put(self, base: str, target: str, rate: Decimal, fetched_at: datetime) -> None:
        key = (base.upper(), target.upper())
        self._rows[key] = ExchangeRateRow(base=key[0], target=key[1], rate=rate, fetched_at=fetched_at)

    def all(self) -> Dict[Tuple[str, str], ExchangeRateRow]:
        return dict(self._rows)
