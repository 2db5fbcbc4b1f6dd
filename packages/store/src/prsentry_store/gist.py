"""GistStore — zero-infrastructure shared review state via GitHub Gist.

Why Gist as a team store:
- Zero infra: no DB to provision, no server to maintain, no S3 bucket to manage.
- Built-in access control: Gist ACL == GitHub org membership.
- One JSON document for every PR the team reviews, readable with any
  GitHub client.

Data format: a single JSON file named `prsentry_state.json` inside the Gist,
mapping host id → {"payload": <serialized state>, "revision": "<n>"}.

The Gist API has no conditional update, so the revision check here is
read-compare-write: it catches a writer that finished before our read of
the current revision, but two writes landing in the same instant can still
race. Use SQLiteStore or the PR comment store when that matters.
"""

from __future__ import annotations

import json
import logging

from prsentry_store.base import BaseMarkerStore, StoredRecord, next_revision

logger = logging.getLogger(__name__)

_GIST_FILENAME = "prsentry_state.json"


class GistStore(BaseMarkerStore):
    def __init__(self, gist_id: str, token: str, client=None):
        if client is None:
            try:
                from github import Auth, Github
            except ImportError:
                raise ImportError("PyGithub is required for GistStore. Install prsentry.")
            client = Github(auth=Auth.Token(token))
        self._gist_id = gist_id
        self._gh = client

    def _get_gist(self):
        return self._gh.get_gist(self._gist_id)

    def _read_records(self, gist) -> dict:
        """Read the current JSON mapping from the Gist file, or return {}."""
        file_obj = gist.files.get(_GIST_FILENAME)
        if file_obj is None:
            return {}
        try:
            data = json.loads(file_obj.content or "{}")
        except json.JSONDecodeError:
            logger.warning("GistStore: %s is not valid JSON; treating it as empty.", _GIST_FILENAME)
            return {}
        return data if isinstance(data, dict) else {}

    def read_marker_record(self, host_id: str) -> StoredRecord | None:
        entry = self._read_records(self._get_gist()).get(host_id)
        if not isinstance(entry, dict) or "payload" not in entry:
            return None
        return StoredRecord(payload=entry["payload"], revision=str(entry.get("revision", "0")))

    def write_marker_record(self, host_id: str, payload: str, expected_revision: str | None) -> str | None:
        gist = self._get_gist()
        records = self._read_records(gist)
        current = records.get(host_id)
        current_revision = str(current.get("revision", "0")) if isinstance(current, dict) else None
        if current_revision != expected_revision:
            logger.info("GistStore: revision conflict for %s (%s != %s)", host_id, current_revision, expected_revision)
            return None
        revision = next_revision(expected_revision)
        records[host_id] = {"payload": payload, "revision": revision}
        gist.edit(files={_GIST_FILENAME: {"content": json.dumps(records, indent=2, sort_keys=True)}})
        return revision
