"""
Ledger Storage Module

Provides the append-only ledger store interface and implementations for
in-memory (testing), SQLite (persistence) and PostgreSQL. Entries are keyed
by sequence and always read back in ascending sequence order. All monetary
values are stored as Decimal strings or NUMERIC.
"""

from abc import ABC, abstractmethod
from typing import List, Optional, Union
from decimal import Decimal
from pathlib import Path
import sqlite3
import threading

from .ledger import LedgerEntry, ZERO


TABLE_NAME = "ledger_entries"


class StoreError(Exception):
    """Base class for ledger store failures"""
    pass


class StoreUnavailableError(StoreError):
    """The durable medium could not be written or read; nothing was committed"""
    pass


class StoreTimeoutError(StoreError):
    """The write did not complete in time; whether it committed is unknown"""
    pass


class SequenceConflictError(StoreError):
    """An append would leave a gap or duplicate a sequence"""
    pass


class LedgerStore(ABC):
    """
    Abstract append-only ledger store

    Backends implement the raw medium access; this class owns the cached head
    entry so that current_balance() and count() stay O(1), and serializes
    access so a read sees the ledger entirely before or after any append.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._head: Optional[LedgerEntry] = None
        self._closed = False

    @abstractmethod
    def _write(self, entry: LedgerEntry) -> None:
        """Durably persist one entry"""
        pass

    @abstractmethod
    def _read_all(self) -> List[LedgerEntry]:
        """Read every entry in ascending sequence order"""
        pass

    @abstractmethod
    def _read_last(self) -> Optional[LedgerEntry]:
        """Read the entry with the highest sequence"""
        pass

    def _close(self) -> None:
        """Release backend resources (default no-op)"""
        pass

    def _ensure_open(self) -> None:
        if self._closed:
            raise StoreUnavailableError("Ledger store is closed")

    def append(self, entry: LedgerEntry) -> LedgerEntry:
        """
        Persist an entry at the end of the ledger

        Args:
            entry: Entry whose sequence must follow the current head

        Returns:
            The committed entry

        Raises:
            SequenceConflictError: If the sequence is not head + 1
            StoreUnavailableError: If the medium could not be written
            StoreTimeoutError: If the commit outcome is unknown
        """
        with self._lock:
            self._ensure_open()

            expected = self._head.sequence + 1 if self._head else 1
            if entry.sequence != expected:
                raise SequenceConflictError(
                    f"Cannot append sequence {entry.sequence}, expected {expected}"
                )

            self._write(entry)
            self._head = entry
            return entry

    def read_all(self) -> List[LedgerEntry]:
        """Return the full ledger, oldest first"""
        with self._lock:
            self._ensure_open()
            return self._read_all()

    def last_entry(self) -> Optional[LedgerEntry]:
        """Return the most recently committed entry, if any"""
        with self._lock:
            self._ensure_open()
            return self._head

    def current_balance(self) -> Decimal:
        """Balance after the last entry, zero for an empty ledger"""
        head = self.last_entry()
        return head.balance if head else ZERO

    def count(self) -> int:
        """Number of committed entries (sequences are gap-free from 1)"""
        head = self.last_entry()
        return head.sequence if head else 0

    def refresh(self) -> Optional[LedgerEntry]:
        """Reload the cached head from the durable medium"""
        with self._lock:
            self._ensure_open()
            self._head = self._read_last()
            return self._head

    def close(self) -> None:
        """Close the store; later operations raise StoreUnavailableError"""
        with self._lock:
            if not self._closed:
                self._close()
                self._closed = True


class InMemoryLedgerStore(LedgerStore):
    """In-memory ledger store for testing"""

    def __init__(self):
        super().__init__()
        self._entries: List[LedgerEntry] = []

    def _write(self, entry: LedgerEntry) -> None:
        self._entries.append(entry)

    def _read_all(self) -> List[LedgerEntry]:
        # Entries are frozen, so a shallow copy is a full snapshot
        return list(self._entries)

    def _read_last(self) -> Optional[LedgerEntry]:
        return self._entries[-1] if self._entries else None


def _entry_from_row(row) -> LedgerEntry:
    return LedgerEntry.from_dict({
        'sequence': row['sequence'],
        'kind': row['kind'],
        'amount': row['amount'],
        'balance': row['balance'],
        'timestamp': row['timestamp']
    })


class SQLiteLedgerStore(LedgerStore):
    """SQLite ledger store for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:", timeout: float = 5.0):
        super().__init__()
        self.db_path = str(db_path)
        try:
            self._connection = sqlite3.connect(
                self.db_path, check_same_thread=False, timeout=timeout, isolation_level='DEFERRED'
            )
            self._connection.row_factory = sqlite3.Row

            # Enable WAL mode for better concurrent access
            if self.db_path != ":memory:":
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = FULL")

            self._connection.execute(f"""
                CREATE TABLE IF NOT EXISTS {TABLE_NAME} (
                    sequence INTEGER PRIMARY KEY,
                    kind TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    balance TEXT NOT NULL,
                    timestamp TEXT NOT NULL
                )
            """)
            self._connection.commit()
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Could not open SQLite ledger at {self.db_path}: {e}") from e
        self.refresh()

    def _rollback(self) -> None:
        try:
            self._connection.rollback()
        except sqlite3.Error:
            # The original error is the one worth reporting
            pass

    def _write(self, entry: LedgerEntry) -> None:
        data = entry.to_dict()
        try:
            self._connection.execute(f"""
                INSERT INTO {TABLE_NAME} (sequence, kind, amount, balance, timestamp)
                VALUES (?, ?, ?, ?, ?)
            """, (data['sequence'], data['kind'], data['amount'], data['balance'], data['timestamp']))
        except sqlite3.IntegrityError as e:
            self._rollback()
            raise SequenceConflictError(f"Sequence {entry.sequence} already stored") from e
        except sqlite3.Error as e:
            self._rollback()
            raise StoreUnavailableError(f"Could not write entry {entry.sequence}: {e}") from e

        try:
            self._connection.commit()
        except sqlite3.Error as e:
            self._rollback()
            raise StoreTimeoutError(f"Commit of entry {entry.sequence} did not complete: {e}") from e

    def _read_all(self) -> List[LedgerEntry]:
        try:
            cursor = self._connection.execute(f"""
                SELECT sequence, kind, amount, balance, timestamp
                FROM {TABLE_NAME} ORDER BY sequence ASC
            """)
            return [_entry_from_row(row) for row in cursor.fetchall()]
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Could not read ledger: {e}") from e

    def _read_last(self) -> Optional[LedgerEntry]:
        try:
            cursor = self._connection.execute(f"""
                SELECT sequence, kind, amount, balance, timestamp
                FROM {TABLE_NAME} ORDER BY sequence DESC LIMIT 1
            """)
            row = cursor.fetchone()
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Could not read ledger head: {e}") from e
        return _entry_from_row(row) if row else None

    def _close(self) -> None:
        self._connection.close()


class PostgreSQLLedgerStore(LedgerStore):
    """PostgreSQL ledger store with ACID transaction support"""

    def __init__(self, connection_string: str, timeout: float = 5.0):
        try:
            import psycopg2
            import psycopg2.extras
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        super().__init__()
        self.connection_string = connection_string
        self.timeout = timeout
        self._connection = None
        self._connect()
        self.refresh()

    def _connect(self) -> None:
        """Establish database connection and ensure the schema"""
        try:
            self._connection = self.psycopg2.connect(
                self.connection_string,
                connect_timeout=max(1, int(self.timeout)),
                cursor_factory=self.extras.RealDictCursor
            )
        except self.psycopg2.Error as e:
            raise StoreUnavailableError(f"Could not connect to PostgreSQL: {e}") from e
        self._connection.autocommit = False

        cursor = self._connection.cursor()
        try:
            cursor.execute(f"""
                CREATE TABLE IF NOT EXISTS {TABLE_NAME} (
                    sequence BIGINT PRIMARY KEY,
                    kind TEXT NOT NULL,
                    amount NUMERIC NOT NULL,
                    balance NUMERIC NOT NULL,
                    timestamp TIMESTAMPTZ NOT NULL
                )
            """)
            self._connection.commit()
        finally:
            cursor.close()

    def _rollback(self) -> None:
        try:
            self._connection.rollback()
        except self.psycopg2.Error:
            pass

    def _write(self, entry: LedgerEntry) -> None:
        cursor = self._connection.cursor()
        try:
            cursor.execute(f"""
                INSERT INTO {TABLE_NAME} (sequence, kind, amount, balance, timestamp)
                VALUES (%s, %s, %s, %s, %s)
            """, (entry.sequence, entry.kind.value, entry.amount, entry.balance, entry.timestamp))
        except self.psycopg2.IntegrityError as e:
            self._rollback()
            raise SequenceConflictError(f"Sequence {entry.sequence} already stored") from e
        except self.psycopg2.Error as e:
            self._rollback()
            raise StoreUnavailableError(f"Could not write entry {entry.sequence}: {e}") from e
        finally:
            cursor.close()

        try:
            self._connection.commit()
        except self.psycopg2.Error as e:
            self._rollback()
            raise StoreTimeoutError(f"Commit of entry {entry.sequence} did not complete: {e}") from e

    def _query(self, sql: str) -> list:
        cursor = self._connection.cursor()
        try:
            cursor.execute(sql)
            rows = cursor.fetchall()
            self._connection.commit()
            return rows
        except self.psycopg2.Error as e:
            self._rollback()
            raise StoreUnavailableError(f"Could not read ledger: {e}") from e
        finally:
            cursor.close()

    def _read_all(self) -> List[LedgerEntry]:
        rows = self._query(f"""
            SELECT sequence, kind, amount, balance, timestamp
            FROM {TABLE_NAME} ORDER BY sequence ASC
        """)
        return [_entry_from_row(row) for row in rows]

    def _read_last(self) -> Optional[LedgerEntry]:
        rows = self._query(f"""
            SELECT sequence, kind, amount, balance, timestamp
            FROM {TABLE_NAME} ORDER BY sequence DESC LIMIT 1
        """)
        return _entry_from_row(rows[0]) if rows else None

    def _close(self) -> None:
        if self._connection:
            try:
                self._connection.close()
            except self.psycopg2.Error:
                pass
            self._connection = None


def create_store(database_url: str, timeout: float = 5.0) -> LedgerStore:
    """
    Build a ledger store from a database URL

    Supported forms: memory://, sqlite:// (in-memory SQLite),
    sqlite:///relative/or/absolute/path.db and postgresql://...
    """
    if database_url in ("memory", "memory://"):
        return InMemoryLedgerStore()

    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteLedgerStore(path or ":memory:", timeout=timeout)

    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLLedgerStore(database_url, timeout=timeout)

    raise ValueError(f"Unsupported database URL: {database_url}")
