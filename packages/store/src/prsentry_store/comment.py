"""PullRequestCommentStore — review state kept on the pull request itself.

The default store. The record lives in one PR conversation comment
authored by the bot, inside an HTML comment that GitHub does not render:

    _prsentry review state — do not edit._
    <!-- prsentry-state rev=3
    eyJ2ZXJzaW9uIjogMSwgLi4ufQ==
    -->

The payload is base64 so it can never contain "-->". The revision counter
sits next to it and is checked again immediately before the edit. Only
comments written by the store's own account count; anyone can post text
that looks like a marker.
"""

from __future__ import annotations

import base64
import logging
import re

from prsentry_store.base import BaseMarkerStore, StoredRecord, next_revision

logger = logging.getLogger(__name__)

_MARKER_RE = re.compile(r"<!-- prsentry-state rev=(?P<rev>\d+)\n(?P<payload>[A-Za-z0-9+/=\n]*?)\n?-->")
_VISIBLE_LINE = "_prsentry review state — do not edit._"


def parse_host_id(host_id: str) -> tuple[str, int]:
    """Split "owner/repo#42" into ("owner/repo", 42)."""
    repo, sep, number = host_id.rpartition("#")
    if not sep or not repo or not number.isdigit():
        raise ValueError(f"Invalid change-set host id: {host_id!r} (expected 'owner/repo#number').")
    return repo, int(number)


def render_marker(payload: str, revision: str) -> str:
    encoded = base64.b64encode(payload.encode("utf-8")).decode("ascii")
    wrapped = "\n".join(encoded[i : i + 76] for i in range(0, len(encoded), 76))
    return f"{_VISIBLE_LINE}\n<!-- prsentry-state rev={revision}\n{wrapped}\n-->"


def parse_marker(body: str | None) -> StoredRecord | None:
    match = _MARKER_RE.search(body or "")
    if match is None:
        return None
    encoded = match.group("payload").replace("\n", "")
    return StoredRecord(payload=base64.b64decode(encoded).decode("utf-8"), revision=match.group("rev"))


class PullRequestCommentStore(BaseMarkerStore):
    def __init__(self, token: str | None = None, client=None, author: str | None = None):
        if client is None:
            from github import Auth, Github

            client = Github(auth=Auth.Token(token)) if token else Github()
        self._gh = client
        self._author = author

    def _issue(self, host_id: str):
        repo_name, number = parse_host_id(host_id)
        return self._gh.get_repo(repo_name).get_issue(number)

    @property
    def author(self) -> str:
        """Login whose comments hold the state. Defaults to the token's own user."""
        if self._author is None:
            self._author = self._gh.get_user().login
        return self._author

    def _find(self, issue):
        """Return (comment, record) for the newest state comment, or (None, None)."""
        found = (None, None)
        for comment in issue.get_comments():
            if comment.user is None or comment.user.login != self.author:
                continue
            record = parse_marker(comment.body)
            if record is not None:
                found = (comment, record)
        return found

    def read_marker_record(self, host_id: str) -> StoredRecord | None:
        _, record = self._find(self._issue(host_id))
        return record

    def write_marker_record(self, host_id: str, payload: str, expected_revision: str | None) -> str | None:
        issue = self._issue(host_id)
        comment, record = self._find(issue)
        current_revision = record.revision if record else None
        if current_revision != expected_revision:
            logger.info("Comment store: revision conflict for %s (%s != %s)", host_id, current_revision, expected_revision)
            return None
        revision = next_revision(expected_revision)
        body = render_marker(payload, revision)
        if comment is None:
            issue.create_comment(body)
        else:
            comment.edit(body)
        return revision
