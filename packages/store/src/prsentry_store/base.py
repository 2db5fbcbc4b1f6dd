"""Abstract marker-record store interface.

A marker record is the single opaque review-state blob kept per change-set
host id (e.g. "owner/repo#42"). Backends (PR comment, Gist, SQLite,
memory) implement this interface; prsentry_core never imports a concrete
backend, so they are swappable without touching the engine.

Writes are compare-and-swap: the caller passes the revision marker it read,
and the write only lands if the stored record still carries that marker.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class StoredRecord:
    payload: str
    revision: str


class BaseMarkerStore(ABC):
    """Pluggable persistence layer for review state.

    Implementations must be safe to call from CI environments where no
    interactive credentials are available; all auth must happen via
    constructor arguments or environment variables resolved at init time.
    """

    @abstractmethod
    def read_marker_record(self, host_id: str) -> StoredRecord | None:
        """Return the stored record, or None when there is none. Never raises on "not found"."""

    @abstractmethod
    def write_marker_record(self, host_id: str, payload: str, expected_revision: str | None) -> str | None:
        """Replace the record if its revision still equals `expected_revision`.

        `expected_revision=None` means "no record exists yet". Returns the new
        revision marker on success and None on conflict.
        """

    def close(self) -> None:
        """Release any resources held by the store (connections, file handles).

        Optional. Subclasses that need cleanup should override this.
        Default is a no-op so callers can always call close() safely.
        """


def next_revision(current: str | None) -> str:
    """Revision markers are decimal counters; a missing record counts as 0."""
    return str(int(current or 0) + 1)
