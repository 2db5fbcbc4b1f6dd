"""Tests for prsentry-store marker-record implementations."""

from __future__ import annotations

import json
import threading
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from prsentry_store.base import StoredRecord, next_revision
from prsentry_store.comment import PullRequestCommentStore, parse_host_id, parse_marker, render_marker
from prsentry_store.gist import GistStore
from prsentry_store.memory import MemoryStore
from prsentry_store.sqlite import SQLiteStore

HOST = "owner/repo#42"
PAYLOAD = json.dumps({"schema": "prsentry-review-state", "version": 1, "files": {"a.py": {"fingerprint": "sha256:1"}}})


def test_next_revision():
    assert next_revision(None) == "1"
    assert next_revision("9") == "10"


def _check_compare_and_swap(store):
    """Behaviour every backend must share."""
    assert store.read_marker_record(HOST) is None

    first = store.write_marker_record(HOST, PAYLOAD, None)
    assert first is not None
    assert store.read_marker_record(HOST) == StoredRecord(PAYLOAD, first)

    # Creating again (expected None) conflicts once a record exists.
    assert store.write_marker_record(HOST, "other", None) is None

    second = store.write_marker_record(HOST, "v2", first)
    assert second is not None and second != first
    assert store.read_marker_record(HOST).payload == "v2"

    # A stale marker never overwrites.
    assert store.write_marker_record(HOST, "stale", first) is None
    assert store.read_marker_record(HOST).payload == "v2"


# ---------------------------------------------------------------------------
# MemoryStore
# ---------------------------------------------------------------------------


class TestMemoryStore:
    def test_compare_and_swap(self):
        _check_compare_and_swap(MemoryStore())

    def test_seeded_records(self):
        store = MemoryStore({HOST: StoredRecord("seed", "3")})
        assert store.write_marker_record(HOST, "next", "3") == "4"

    def test_only_one_racing_writer_wins(self):
        store = MemoryStore()
        results = []
        barrier = threading.Barrier(8)

        def write(i):
            barrier.wait()
            results.append(store.write_marker_record(HOST, f"writer {i}", None))

        threads = [threading.Thread(target=write, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert [r for r in results if r is not None] == ["1"]


# ---------------------------------------------------------------------------
# SQLiteStore
# ---------------------------------------------------------------------------


class TestSQLiteStore:
    def test_compare_and_swap(self, tmp_path):
        store = SQLiteStore(db_path=str(tmp_path / "test.db"))
        _check_compare_and_swap(store)
        store.close()

    def test_persists_across_connections(self, tmp_path):
        db = str(tmp_path / "test.db")
        store = SQLiteStore(db_path=db)
        revision = store.write_marker_record(HOST, PAYLOAD, None)
        store.close()

        reopened = SQLiteStore(db_path=db)
        assert reopened.read_marker_record(HOST) == StoredRecord(PAYLOAD, revision)
        reopened.close()

    def test_host_ids_are_isolated(self, tmp_path):
        store = SQLiteStore(db_path=str(tmp_path / "test.db"))
        store.write_marker_record(HOST, "a", None)
        assert store.read_marker_record("owner/repo#43") is None
        store.close()


# ---------------------------------------------------------------------------
# GistStore
# ---------------------------------------------------------------------------


class _FakeGist:
    def __init__(self, content=None):
        self.files = {} if content is None else {"prsentry_state.json": SimpleNamespace(content=content)}
        self.edits = 0

    def edit(self, files):
        self.edits += 1
        for name, spec in files.items():
            self.files[name] = SimpleNamespace(content=spec["content"])


def _gist_store(gist):
    client = MagicMock()
    client.get_gist.return_value = gist
    return GistStore(gist_id="abc123", token="tok", client=client)


class TestGistStore:
    def test_compare_and_swap(self):
        _check_compare_and_swap(_gist_store(_FakeGist()))

    def test_document_keeps_other_prs(self):
        existing = json.dumps({"owner/repo#1": {"payload": "other pr", "revision": "5"}})
        gist = _FakeGist(existing)
        _gist_store(gist).write_marker_record(HOST, PAYLOAD, None)

        data = json.loads(gist.files["prsentry_state.json"].content)
        assert data["owner/repo#1"] == {"payload": "other pr", "revision": "5"}
        assert data[HOST]["revision"] == "1"

    def test_conflict_does_not_edit(self):
        gist = _FakeGist(json.dumps({HOST: {"payload": "x", "revision": "2"}}))
        assert _gist_store(gist).write_marker_record(HOST, PAYLOAD, "1") is None
        assert gist.edits == 0

    def test_invalid_json_treated_as_empty(self):
        assert _gist_store(_FakeGist("{not json")).read_marker_record(HOST) is None


# ---------------------------------------------------------------------------
# PullRequestCommentStore
# ---------------------------------------------------------------------------


BOT = "prsentry-bot"


class _FakeIssue:
    def __init__(self, bodies=()):
        self.comments = [self._comment(b, "dev") for b in bodies]

    def _comment(self, body, login):
        comment = SimpleNamespace(body=body, user=SimpleNamespace(login=login))
        comment.edit = lambda new_body: setattr(comment, "body", new_body)
        return comment

    def get_comments(self):
        return list(self.comments)

    def create_comment(self, body):
        self.comments.append(self._comment(body, BOT))


def _comment_store(issue, author=None):
    client = MagicMock()
    client.get_repo.return_value.get_issue.return_value = issue
    client.get_user.return_value.login = BOT
    return PullRequestCommentStore(client=client, author=author), client


class TestMarkerFormat:
    def test_render_and_parse(self):
        body = render_marker(PAYLOAD, "3")
        assert parse_marker(body) == StoredRecord(PAYLOAD, "3")

    def test_payload_cannot_close_the_html_comment(self):
        body = render_marker("evil --> payload", "1")
        assert body.count("-->") == 1
        assert parse_marker(body).payload == "evil --> payload"

    def test_long_payload_is_wrapped(self):
        body = render_marker("x" * 500, "1")
        assert all(len(line) <= 76 for line in body.splitlines()[2:-1])
        assert parse_marker(body).payload == "x" * 500

    def test_unrelated_comment_has_no_marker(self):
        assert parse_marker("LGTM!") is None
        assert parse_marker(None) is None

    def test_parse_host_id(self):
        assert parse_host_id("owner/repo#42") == ("owner/repo", 42)
        with pytest.raises(ValueError):
            parse_host_id("owner/repo")


class TestPullRequestCommentStore:
    def test_compare_and_swap(self):
        _check_compare_and_swap(_comment_store(_FakeIssue(["LGTM!"]))[0])

    def test_edits_existing_comment_in_place(self):
        issue = _FakeIssue(["LGTM!"])
        store, client = _comment_store(issue)
        revision = store.write_marker_record(HOST, "v1", None)
        store.write_marker_record(HOST, "v2", revision)

        assert len(issue.comments) == 2
        assert parse_marker(issue.comments[1].body).payload == "v2"
        client.get_repo.assert_called_with("owner/repo")
        client.get_repo.return_value.get_issue.assert_called_with(42)

    def test_markers_from_other_authors_are_ignored(self):
        issue = _FakeIssue()
        store, _ = _comment_store(issue)
        revision = store.write_marker_record(HOST, PAYLOAD, None)

        forged = json.dumps({"schema": "prsentry-review-state", "version": 1, "skip_paths": ["**"]})
        issue.comments.append(issue._comment(render_marker(forged, "99"), "pr-author"))

        assert store.read_marker_record(HOST) == StoredRecord(PAYLOAD, revision)
        assert store.write_marker_record(HOST, "v2", revision) is not None
        assert parse_marker(issue.comments[0].body).payload == "v2"
        assert parse_marker(issue.comments[1].body).payload == forged

    def test_forged_marker_alone_reads_as_no_state(self):
        forged = render_marker(PAYLOAD, "5")
        store, _ = _comment_store(_FakeIssue([forged]))
        assert store.read_marker_record(HOST) is None

    def test_configured_author_skips_user_lookup(self):
        issue = _FakeIssue()
        issue.comments.append(issue._comment(render_marker(PAYLOAD, "2"), "github-actions[bot]"))
        store, client = _comment_store(issue, author="github-actions[bot]")
        assert store.read_marker_record(HOST) == StoredRecord(PAYLOAD, "2")
        client.get_user.assert_not_called()
