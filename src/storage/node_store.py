# src/storage/node_store.py — v1
"""Versioned node store over the per-book ``node_data`` table.

Every step output is stored under ``(scope, node, item_id, version)``.
Versions are assigned here, start at 1 and grow by one per put_next().
A ``None`` payload is a valid tombstone and is stored as SQL NULL.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass
from typing import Any

from bookweb.storage.db import BookDatabase

logger = logging.getLogger(__name__)


class VersionConflict(Exception):
    """Raised when put_next collides with an existing version row."""

    def __init__(self, scope: str, node: str, item_id: str, version: int):
        self.scope = scope
        self.node = node
        self.item_id = item_id
        self.version = version
        super().__init__(
            f"Version {version} of {node}/{item_id} in {scope!r} already exists"
        )


@dataclass(frozen=True)
class VersionedRecord:
    """One stored version. ``data`` is None for tombstones."""

    data: Any
    version: int


class NodeStore:
    """Versioned get/put over all book scopes held by a BookDatabase."""

    def __init__(self, database: BookDatabase) -> None:
        self._db = database

    async def get_latest(self, scope: str, node: str, item_id: str) -> VersionedRecord | None:
        """Return the highest version, or None when nothing was stored."""
        row = self._db.connect(scope).execute(
            "SELECT data, version FROM node_data WHERE node = ? AND item_id = ? "
            "ORDER BY version DESC LIMIT 1",
            (node, item_id),
        ).fetchone()
        if row is None:
            return None
        return VersionedRecord(data=_decode(row["data"]), version=row["version"])

    async def get_version(
        self, scope: str, node: str, item_id: str, version: int
    ) -> VersionedRecord | None:
        """Return a specific version, or None when that version does not exist."""
        row = self._db.connect(scope).execute(
            "SELECT data, version FROM node_data WHERE node = ? AND item_id = ? AND version = ?",
            (node, item_id, version),
        ).fetchone()
        if row is None:
            return None
        return VersionedRecord(data=_decode(row["data"]), version=row["version"])

    async def put_next(self, scope: str, node: str, item_id: str, data: Any) -> int:
        """Insert ``data`` as the next version and return that version.

        The insert is a plain INSERT: a concurrent writer that grabbed the
        same version makes this call fail with VersionConflict instead of
        overwriting its row.
        """
        conn = self._db.connect(scope)
        payload = None if data is None else json.dumps(data)
        try:
            with conn:
                row = conn.execute(
                    "SELECT MAX(version) FROM node_data WHERE node = ? AND item_id = ?",
                    (node, item_id),
                ).fetchone()
                version = (row[0] or 0) + 1
                conn.execute(
                    "INSERT INTO node_data (node, item_id, version, data) VALUES (?, ?, ?, ?)",
                    (node, item_id, version, payload),
                )
        except sqlite3.IntegrityError as e:
            raise VersionConflict(scope, node, item_id, version) from e

        logger.debug("Stored %s/%s v%d in %s", node, item_id, version, scope)
        return version

    async def list_versions(self, scope: str, node: str, item_id: str) -> list[int]:
        """Return all stored versions in ascending order."""
        rows = self._db.connect(scope).execute(
            "SELECT version FROM node_data WHERE node = ? AND item_id = ? ORDER BY version",
            (node, item_id),
        ).fetchall()
        return [r["version"] for r in rows]

    async def reset_versions(self, scope: str, node: str, item_id: str) -> int:
        """Drop the whole history of one item. Returns the number of rows removed."""
        conn = self._db.connect(scope)
        with conn:
            cursor = conn.execute(
                "DELETE FROM node_data WHERE node = ? AND item_id = ?", (node, item_id)
            )
        logger.info("Reset %d versions of %s/%s in %s", cursor.rowcount, node, item_id, scope)
        return cursor.rowcount

    async def list_items(self, scope: str, node: str, prefix: str = "") -> list[str]:
        """Return item ids that have at least one version, optionally by prefix."""
        rows = self._db.connect(scope).execute(
            "SELECT DISTINCT item_id FROM node_data WHERE node = ? AND item_id LIKE ? "
            "ORDER BY item_id",
            (node, f"{prefix}%"),
        ).fetchall()
        return [r["item_id"] for r in rows]


def _decode(raw: str | None) -> Any:
    return None if raw is None else json.loads(raw)
