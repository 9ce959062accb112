from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Union

from .errors import PersistenceError

logger = logging.getLogger(__name__)

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS conversations (
        conversation_id TEXT PRIMARY KEY,
        document_id TEXT NOT NULL,
        document_name TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        message_id TEXT PRIMARY KEY,
        conversation_id TEXT NOT NULL,
        role TEXT NOT NULL CHECK (role IN ('user', 'assistant')),
        content TEXT NOT NULL,
        created_at TEXT NOT NULL,
        FOREIGN KEY (conversation_id) REFERENCES conversations(conversation_id)
    );
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_messages_conversation
        ON messages (conversation_id, created_at);
    """,
    """
    CREATE TABLE IF NOT EXISTS documents (
        document_id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        primary_json TEXT NOT NULL,
        fallback_json TEXT,
        registered_at TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS annotations (
        annotation_id TEXT PRIMARY KEY,
        document_id TEXT NOT NULL,
        keyword TEXT NOT NULL,
        text TEXT NOT NULL,
        page INTEGER NOT NULL,
        rects_json TEXT NOT NULL,
        source_text TEXT NOT NULL CHECK (source_text IN ('primary', 'fallback')),
        created_at TEXT NOT NULL
    );
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_annotations_document
        ON annotations (document_id);
    """,
)


class Database:
    """Owns the sqlite file, its schema migration and transaction boundaries.

    Build one per process and hand it to the stores. The schema is created
    lazily on first use; every caller that arrives while the migration runs
    blocks on the same lock, and nothing else touches the file until it has
    succeeded.
    """

    def __init__(self, path: Union[str, Path], timeout: float = 5.0) -> None:
        self.path = Path(path)
        self.timeout = timeout
        self._migration_lock = threading.Lock()
        self._migrated = False

    def _open(self) -> sqlite3.Connection:
        # isolation_level=None: transactions are opened explicitly below.
        conn = sqlite3.connect(
            self.path,
            timeout=self.timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn

    def ensure_schema(self) -> None:
        if self._migrated:
            return
        with self._migration_lock:
            if self._migrated:
                return
            try:
                conn = self._open()
            except sqlite3.Error as exc:
                raise PersistenceError(f"Unable to open database {self.path}: {exc}") from exc
            try:
                conn.execute("BEGIN IMMEDIATE")
                for statement in SCHEMA:
                    conn.execute(statement)
                conn.execute("COMMIT")
            except sqlite3.Error as exc:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise PersistenceError(f"Schema migration failed: {exc}") from exc
            finally:
                conn.close()
            self._migrated = True
            logger.info("Database schema ready at %s", self.path)

    @contextmanager
    def connect(self, *, write: bool = False) -> Iterator[sqlite3.Connection]:
        """Yield a connection; with ``write=True`` the block is one transaction.

        sqlite failures surface as ``PersistenceError`` and any open
        transaction is rolled back, including when the block raises one of
        the engine's own errors.
        """
        self.ensure_schema()
        try:
            conn = self._open()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Unable to open database {self.path}: {exc}") from exc
        try:
            if write:
                # Take the write lock up front so read-then-write sequences
                # inside the block are serialized across connections.
                conn.execute("BEGIN IMMEDIATE")
            yield conn
            if write:
                conn.execute("COMMIT")
        except sqlite3.Error as exc:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise PersistenceError(str(exc)) from exc
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()
