"""
Database module for EmergencyCash.

SQLite storage shared by the replay ledger and the revocation registry.
Several processes may open the same database file; every check-and-set
runs inside BEGIN IMMEDIATE, which takes the database write lock, so the
pair is atomic across processes as well as threads.
"""

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Union

from .errors import StorageError

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS replay_ledger (
        replay_key TEXT PRIMARY KEY,
        state TEXT NOT NULL CHECK (state IN ('claimed', 'used')),
        claim_expires_at REAL,
        tx_hash TEXT,
        updated_at INTEGER DEFAULT (strftime('%s', 'now'))
    );""",
    """
    CREATE INDEX IF NOT EXISTS idx_replay_ledger_state
    ON replay_ledger(state);""",
    """
    CREATE TABLE IF NOT EXISTS revoked_uids (
        uid TEXT PRIMARY KEY,
        revoked_at INTEGER DEFAULT (strftime('%s', 'now'))
    );""",
)


class SqliteStore:
    """
    Thread-local SQLite connections to one database file.

    Connections are opened in autocommit mode so transactions are explicit
    and always start with BEGIN IMMEDIATE.
    """

    def __init__(self, path: Union[str, Path], timeout: float = 10.0):
        self.path = Path(path)
        self.timeout = timeout
        self._local = threading.local()
        self.init_schema()

    def _get_connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, 'conn', None)
        if conn is None:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                conn = sqlite3.connect(
                    str(self.path),
                    timeout=self.timeout,
                    isolation_level=None,
                    check_same_thread=False,
                )
                conn.execute("PRAGMA journal_mode=WAL;")
                conn.execute("PRAGMA synchronous=FULL;")
                conn.row_factory = sqlite3.Row
            except (sqlite3.Error, OSError) as e:
                raise StorageError(f"Cannot open database {self.path}: {e}") from e
            self._local.conn = conn
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Exclusive write transaction.
        Commits on success, rolls back on failure; sqlite errors surface
        as StorageError.
        """
        conn = self._get_connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            raise StorageError(f"Cannot lock database {self.path}: {e}") from e
        try:
            yield conn
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            conn.execute("ROLLBACK")
            raise StorageError(f"Database error on {self.path}: {e}") from e
        except BaseException:
            conn.execute("ROLLBACK")
            raise

    @contextmanager
    def reading(self) -> Iterator[sqlite3.Connection]:
        """Plain read; sqlite errors surface as StorageError."""
        conn = self._get_connection()
        try:
            yield conn
        except sqlite3.Error as e:
            raise StorageError(f"Database error on {self.path}: {e}") from e

    def init_schema(self) -> None:
        """Safe to call multiple times (uses IF NOT EXISTS)."""
        with self.transaction() as conn:
            for statement in SCHEMA:
                conn.execute(statement)

    def close(self) -> None:
        """Close this thread's connection."""
        conn = getattr(self._local, 'conn', None)
        if conn is not None:
            conn.close()
            self._local.conn = None
