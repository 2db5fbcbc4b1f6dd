"""SQLiteStore — local file-based state store for power users and CI caching.

Why SQLite as the local store:
- Batteries included: ships with Python, no extra dependencies.
- Real compare-and-swap: the conditional UPDATE runs atomically inside the
  database, so two runs racing on the same PR cannot both win.
- Can also serve as a CI cache (write to a path shared between jobs).

Schema:
  markers: one row per change-set host id holding the serialized review
           state and its integer revision counter.
"""

from __future__ import annotations

import logging
import sqlite3

from prsentry_store.base import BaseMarkerStore, StoredRecord, next_revision

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS markers (
    host_id     TEXT PRIMARY KEY,
    payload     TEXT NOT NULL,
    revision    INTEGER NOT NULL
);
"""


class SQLiteStore(BaseMarkerStore):
    """Stores review state in a local SQLite database file.

    The database file path defaults to `.prsentry.db` in the current working
    directory. Configure via .prsentry.yml: `store_path: /path/to/prsentry.db`.
    """

    def __init__(self, db_path: str = ".prsentry.db"):
        # Calls arrive from asyncio.to_thread workers.
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(_SCHEMA)
        self._conn.commit()

    def read_marker_record(self, host_id: str) -> StoredRecord | None:
        row = self._conn.execute("SELECT payload, revision FROM markers WHERE host_id=?", (host_id,)).fetchone()
        if row is None:
            return None
        return StoredRecord(payload=row["payload"], revision=str(row["revision"]))

    def write_marker_record(self, host_id: str, payload: str, expected_revision: str | None) -> str | None:
        revision = next_revision(expected_revision)
        with self._conn:
            if expected_revision is None:
                cursor = self._conn.execute(
                    "INSERT OR IGNORE INTO markers (host_id, payload, revision) VALUES (?, ?, ?)",
                    (host_id, payload, int(revision)),
                )
            else:
                cursor = self._conn.execute(
                    "UPDATE markers SET payload=?, revision=? WHERE host_id=? AND revision=?",
                    (payload, int(revision), host_id, int(expected_revision)),
                )
        if cursor.rowcount == 0:
            logger.info("SQLiteStore: revision conflict for %s (expected %s)", host_id, expected_revision)
            return None
        return revision

    def close(self) -> None:
        self._conn.close()
