from __future__ import annotations

import logging

from github import Auth, Github

from prsentry_core.conversation import Message, Transcript
from prsentry_core.diff import ChangeSet, FilePatch, get_diff_positions
from prsentry_core.sink import CommentSink, PostLineFinding, PostReply, PostSummary, determine_event

logger = logging.getLogger(__name__)

# Appended to everything the bot posts so thread replay can tell its own
# messages from human ones.
BOT_MARKER = "<!-- prsentry -->"

# GitHub reports a few statuses beyond the four the engine knows about.
_STATUS_MAP = {"copied": "added", "changed": "modified", "unchanged": "modified"}


def get_repo(repo_name: str, token: str):
    return Github(auth=Auth.Token(token)).get_repo(repo_name)


def get_pull(repo, pr_number: int):
    return repo.get_pull(pr_number)


def get_pull_requests(repo, state: str = "open"):
    return repo.get_pulls(state=state)


def host_id(repo_name: str, pr_number: int) -> str:
    return f"{repo_name}#{pr_number}"


def fetch_change_set(pr) -> ChangeSet:
    """Snapshot the PR's files at its head SHA, sorted by path."""
    patches = []
    for f in sorted(pr.get_files(), key=lambda f: f.filename):
        status = _STATUS_MAP.get(f.status, f.status)
        previous = getattr(f, "previous_filename", None) if status == "renamed" else None
        patches.append(FilePatch.from_patch(f.filename, status, f.patch, previous_path=previous))
    return ChangeSet(revision=pr.head.sha, patches=tuple(patches))


def fetch_thread(pr, comment_id: int) -> Transcript:
    """Rebuild the review thread containing `comment_id` as a transcript.

    GitHub threads are flat: every reply points at the thread's root comment
    through in_reply_to_id.
    """
    comments = list(pr.get_review_comments())
    by_id = {c.id: c for c in comments}
    if comment_id not in by_id:
        raise ValueError(f"Review comment {comment_id} not found on PR #{pr.number}.")
    root_id = getattr(by_id[comment_id], "in_reply_to_id", None) or comment_id
    root = by_id.get(root_id, by_id[comment_id])
    thread = [c for c in comments if c.id == root.id or getattr(c, "in_reply_to_id", None) == root.id]
    thread.sort(key=lambda c: (c.created_at, c.id))

    transcript = Transcript(thread_id=root.id, path=root.path, line=root.line or getattr(root, "original_line", None))
    for c in thread:
        body = c.body or ""
        role = "assistant" if BOT_MARKER in body else "user"
        text = body.replace(BOT_MARKER, "").strip()
        author = c.user.login if getattr(c, "user", None) else ""
        transcript = transcript.append(Message(role=role, text=text, author=author, comment_id=c.id))
    return transcript


def already_commented(existing_comments, file_path: str, file_line: int, comment_text: str) -> bool:
    """Check whether an identical comment already exists on the PR for this file+line."""
    text = comment_text.strip()
    for c in existing_comments:
        # c.line is None for comments whose line no longer exists in the current diff
        # (e.g. after a force-push). Fall back to original_line in that case.
        comment_line = c.line if c.line is not None else getattr(c, "original_line", None)
        if c.path == file_path and comment_line == file_line and text in (c.body or "").strip():
            return True
    return False


class GitHubCommentSink(CommentSink):
    """Delivers operations to a pull request.

    The summary and all line findings go out as review(s): one review per
    batch of `batch_limit` comments, with the summary and the final event
    on the last batch. Replies go to their thread directly.
    """

    def __init__(self, pr, change_set: ChangeSet, batch_limit: int = 60):
        self.pr = pr
        self.batch_limit = batch_limit
        self._positions = {p.path: get_diff_positions(p.patch) for p in change_set.patches}
        self._hunk_spans = {
            p.path: [(h.new_start, h.new_start + h.new_count - 1) for h in p.hunks] for p in change_set.patches
        }

    def _in_one_hunk(self, path: str, start_line: int, end_line: int) -> bool:
        return any(lo <= start_line and end_line <= hi for lo, hi in self._hunk_spans.get(path, ()))

    def _anchor(self, op: PostLineFinding, position: int) -> dict:
        """Multi-line findings inside one hunk become a line range; the rest anchor on end_line."""
        if op.start_line < op.end_line and self._in_one_hunk(op.path, op.start_line, op.end_line):
            return {"start_line": op.start_line, "start_side": "RIGHT", "line": op.end_line, "side": "RIGHT"}
        return {"position": position}

    def deliver(self, operations) -> None:
        summaries = [op for op in operations if isinstance(op, PostSummary)]
        findings = [op for op in operations if isinstance(op, PostLineFinding)]
        replies = [op for op in operations if isinstance(op, PostReply)]

        if summaries or findings:
            self._post_review("\n\n".join(s.text for s in summaries), findings)
        for reply in replies:
            self.pr.create_review_comment_reply(reply.parent_id, f"{reply.text}\n{BOT_MARKER}")

    def _post_review(self, summary: str, findings: list[PostLineFinding]) -> None:
        existing = list(self.pr.get_review_comments()) if findings else []
        comments = []
        for op in findings:
            position = self._positions.get(op.path, {}).get(op.end_line)
            if position is None:
                logger.warning("No diff position for %s:%d; comment not posted.", op.path, op.end_line)
                continue
            if already_commented(existing, op.path, op.end_line, op.text):
                logger.debug("Skipping duplicate comment for %s:%d", op.path, op.end_line)
                continue
            comments.append({"path": op.path, **self._anchor(op, position), "body": f"{op.text}\n{BOT_MARKER}"})

        body = f"{summary}\n{BOT_MARKER}"
        if not comments:
            # Nothing anchorable left (or all duplicates): post the summary on its own.
            self.pr.create_review(body=body, event="COMMENT")
            return

        event = determine_event(findings)
        batches = [comments[i : i + self.batch_limit] for i in range(0, len(comments), self.batch_limit)]
        total_posted = 0
        for idx, batch in enumerate(batches):
            is_last = idx == len(batches) - 1
            batch_body = body if is_last else f"Review in progress ({total_posted + len(batch)}/{len(comments)} comments)..."
            self.pr.create_review(body=batch_body, event=event if is_last else "COMMENT", comments=batch)
            total_posted += len(batch)
