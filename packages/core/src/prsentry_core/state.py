"""Persisted review state and fingerprint comparison.

One record per change set (pull request). It remembers, per file, the
fingerprint of the patch that was last reviewed successfully, so a new push
only costs inference for files whose patch actually changed.

The record is read once at the start of a run and written at most once at
the end. The write is guarded by the revision marker seen at load time: if
another run saved in between, the save fails with PersistConflictError
instead of clobbering the other run's fingerprints.

prsentry_core does not import prsentry_store. StateStore accepts any object
with read_marker_record()/write_marker_record() (see
prsentry_store.base.BaseMarkerStore).
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field, replace
from typing import Callable

from prsentry_core.diff import ChangeSet, FilePatch
from prsentry_core.errors import PersistConflictError, StateFormatError

logger = logging.getLogger(__name__)

SCHEMA_TAG = "prsentry-review-state"
STATE_VERSION = 1

# version -> function upgrading a decoded record of that version by one step.
_MIGRATIONS: dict[int, Callable[[dict], dict]] = {}


@dataclass(frozen=True)
class FileState:
    fingerprint: str
    summary: str = ""
    # The review only covered the leading part of an oversized hunk.
    partial: bool = False


@dataclass
class ReviewState:
    last_revision: str | None = None
    files: dict[str, FileState] = field(default_factory=dict)
    skip_paths: set[str] = field(default_factory=set)
    overall_summary: str = ""
    # Opaque marker of the stored record this state was loaded from; None
    # when nothing was stored yet. Not part of the serialized payload.
    revision_marker: str | None = None

    def copy(self) -> ReviewState:
        return replace(self, files=dict(self.files), skip_paths=set(self.skip_paths))


def serialize_state(state: ReviewState) -> str:
    data = {
        "schema": SCHEMA_TAG,
        "version": STATE_VERSION,
        "last_revision": state.last_revision,
        "overall_summary": state.overall_summary,
        "files": {
            path: {"fingerprint": fs.fingerprint, "summary": fs.summary, "partial": fs.partial}
            for path, fs in sorted(state.files.items())
        },
        "skip_paths": sorted(state.skip_paths),
    }
    return json.dumps(data, sort_keys=True, separators=(",", ":"))


def deserialize_state(payload: str) -> ReviewState:
    """Decode a stored record, migrating older schema versions.

    Raises StateFormatError for records from a newer schema and ValueError
    for anything that is not a prsentry state record at all.
    """
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise ValueError(f"state record is not JSON: {e}") from e
    if not isinstance(data, dict) or data.get("schema") != SCHEMA_TAG:
        raise ValueError("record is not tagged as prsentry review state")
    version = data.get("version")
    if not isinstance(version, int):
        raise ValueError("state record has no version tag")
    if version > STATE_VERSION:
        raise StateFormatError(
            f"Review state was written by schema version {version}; this prsentry understands up to {STATE_VERSION}."
        )
    while version < STATE_VERSION:
        if version not in _MIGRATIONS:
            raise ValueError(f"no migration from state version {version}")
        data = _MIGRATIONS[version](data)
        version = data["version"]

    files = {
        path: FileState(
            fingerprint=entry["fingerprint"],
            summary=entry.get("summary", ""),
            partial=bool(entry.get("partial", False)),
        )
        for path, entry in (data.get("files") or {}).items()
    }
    return ReviewState(
        last_revision=data.get("last_revision"),
        files=files,
        skip_paths=set(data.get("skip_paths") or ()),
        overall_summary=data.get("overall_summary", ""),
    )


def unreviewed_files(state: ReviewState, change_set: ChangeSet, force_full: bool = False) -> list[FilePatch]:
    """Files whose patch changed since the last review, in change-set order.

    A file needs review when its path is not in the state or its stored
    fingerprint differs from the current one. Skip-listed paths never do.
    """
    pending = []
    for patch in change_set.patches:
        if patch.path in state.skip_paths:
            continue
        stored = state.files.get(patch.path)
        if force_full or stored is None or stored.fingerprint != patch.fingerprint:
            pending.append(patch)
    return pending


class StateStore:
    """Load/save the review state of one change set through a marker-record backend."""

    def __init__(self, backend, host_id: str):
        self.backend = backend
        self.host_id = host_id

    async def load(self) -> ReviewState:
        record = await asyncio.to_thread(self.backend.read_marker_record, self.host_id)
        if record is None:
            return ReviewState()
        try:
            state = deserialize_state(record.payload)
        except (ValueError, KeyError, TypeError) as e:
            # Unreadable record: start over, but keep the marker so the
            # eventual overwrite still goes through the revision check.
            logger.warning("Ignoring unreadable review state for %s: %s", self.host_id, e)
            state = ReviewState()
        state.revision_marker = record.revision
        return state

    async def save(self, state: ReviewState) -> ReviewState:
        """Write `state`; return it with its new revision marker.

        Raises PersistConflictError when the stored record no longer carries
        the marker `state` was loaded with.
        """
        payload = serialize_state(state)
        revision = await asyncio.to_thread(
            self.backend.write_marker_record, self.host_id, payload, state.revision_marker
        )
        if revision is None:
            raise PersistConflictError(self.host_id, state.revision_marker)
        logger.debug("Saved review state for %s at revision %s", self.host_id, revision)
        return replace(state, revision_marker=revision)
