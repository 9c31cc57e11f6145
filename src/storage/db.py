# src/storage/db.py — v2
"""Per-book SQLite databases with a schema-version gate.

Uses stdlib sqlite3. One connection per book label is cached by the
BookDatabase service; closing a label marks it deleted so any later access
fails with ScopeDeleted until undelete() is called (reimport flow).
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path

from bookweb.storage import layout

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 7

_SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL);

CREATE TABLE IF NOT EXISTS book_metadata (
    source TEXT PRIMARY KEY CHECK (source IN ('stub', 'llm')),
    data TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS pdf_metadata (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    data TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS pages (
    page_id TEXT PRIMARY KEY,
    page_number INTEGER NOT NULL,
    text TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS node_data (
    node TEXT NOT NULL,
    item_id TEXT NOT NULL,
    version INTEGER NOT NULL,
    data TEXT,
    PRIMARY KEY (node, item_id, version)
);

CREATE TABLE IF NOT EXISTS images (
    image_id TEXT PRIMARY KEY,
    page_id TEXT NOT NULL,
    path TEXT NOT NULL,
    hash TEXT NOT NULL DEFAULT '',
    width INTEGER NOT NULL,
    height INTEGER NOT NULL,
    source TEXT NOT NULL CHECK (source IN ('page', 'extract', 'crop'))
);

CREATE TABLE IF NOT EXISTS llm_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL,
    data TEXT NOT NULL
);
"""


class ScopeDeleted(Exception):
    """Raised when a soft-deleted book is accessed."""

    def __init__(self, label: str):
        self.label = label
        super().__init__(f'Book "{label}" has been deleted')


class SchemaMismatch(Exception):
    """Raised when a book database was written by an incompatible schema."""

    def __init__(self, found: int, expected: int):
        self.found = found
        self.expected = expected
        super().__init__(
            f"Database schema version mismatch: found v{found}, "
            f"expected v{expected}. Delete the book and reimport it."
        )


class BookDatabase:
    """Connection registry for all book databases.

    Owns the open-connection map and the deleted-label set; created once by
    the service and torn down with close_all().
    """

    def __init__(self, books_root: Path) -> None:
        self._root = Path(books_root)
        self._connections: dict[str, sqlite3.Connection] = {}
        self._deleted: set[str] = set()

    @property
    def books_root(self) -> Path:
        return self._root

    def connect(self, label: str) -> sqlite3.Connection:
        """Return the open connection for a book, opening it on first use.

        Raises:
            ScopeDeleted: If the label was closed and not undeleted.
            SchemaMismatch: If the stored schema version differs.
        """
        self.ensure_active(label)

        conn = self._connections.get(label)
        if conn is not None:
            return conn

        path = layout.db_path(self._root, label)
        path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(path))
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        _init_schema(conn)

        self._connections[label] = conn
        logger.debug("Opened database %s", path)
        return conn

    def close(self, label: str) -> None:
        """Close a book's connection and mark the label deleted."""
        conn = self._connections.pop(label, None)
        if conn is not None:
            conn.close()
        self._deleted.add(label)

    def undelete(self, label: str) -> None:
        """Re-allow access for a label (e.g. after reimport)."""
        self._deleted.discard(label)

    def is_deleted(self, label: str) -> bool:
        return label in self._deleted

    def ensure_active(self, label: str) -> None:
        """Raise ScopeDeleted if the label is marked deleted."""
        if label in self._deleted:
            raise ScopeDeleted(label)

    def close_all(self) -> None:
        """Close every open connection without marking labels deleted."""
        for label, conn in list(self._connections.items()):
            conn.close()
            logger.debug("Closed database for %s", label)
        self._connections.clear()


def _init_schema(conn: sqlite3.Connection) -> None:
    row = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name='schema_version'"
    ).fetchone()

    if row is None:
        # Fresh database
        conn.executescript(_SCHEMA)
        with conn:
            conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,)
            )
        return

    version_row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
    found = version_row[0] if version_row is not None else 0
    if found != SCHEMA_VERSION:
        conn.close()
        raise SchemaMismatch(found, SCHEMA_VERSION)
