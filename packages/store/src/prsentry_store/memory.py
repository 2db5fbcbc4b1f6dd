"""In-process store — used for shadow runs and tests.

Nothing survives the process. Shadow mode seeds one from the real record
so a dry run sees the same review state without ever writing it back.
"""

from __future__ import annotations

import threading

from prsentry_store.base import BaseMarkerStore, StoredRecord, next_revision


class MemoryStore(BaseMarkerStore):
    def __init__(self, records: dict[str, StoredRecord] | None = None):
        self._records: dict[str, StoredRecord] = dict(records or {})
        # Writes arrive from worker threads (asyncio.to_thread); the check and
        # the swap must be one step.
        self._lock = threading.Lock()

    def read_marker_record(self, host_id: str) -> StoredRecord | None:
        return self._records.get(host_id)

    def write_marker_record(self, host_id: str, payload: str, expected_revision: str | None) -> str | None:
        with self._lock:
            current = self._records.get(host_id)
            if (current.revision if current else None) != expected_revision:
                return None
            revision = next_revision(expected_revision)
            self._records[host_id] = StoredRecord(payload=payload, revision=revision)
            return revision
