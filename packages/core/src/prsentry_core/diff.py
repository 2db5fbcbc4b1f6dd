"""Change-set data model and unified-diff hunk parsing.

A FilePatch holds the hunk-only patch text GitHub returns per file (no
`diff --git` / `---` / `+++` headers) plus the parsed hunks. Everything
downstream addresses lines by their new-file line number, which is what
review comments and model findings refer to.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field

_HUNK_HEADER_RE = re.compile(
    r"^@@ -(?P<old_start>\d+)(?:,(?P<old_count>\d+))?"
    r" \+(?P<new_start>\d+)(?:,(?P<new_count>\d+))?"
    r" @@(?P<section>.*)$"
)

PATCH_STATUSES = ("added", "modified", "removed", "renamed")


@dataclass(frozen=True)
class DiffLine:
    kind: str  # "+" | "-" | " "
    text: str
    old_lineno: int | None
    new_lineno: int | None

    def render(self) -> str:
        return f"{self.kind}{self.text}"


@dataclass(frozen=True)
class Hunk:
    old_start: int
    old_count: int
    new_start: int
    new_count: int
    section: str = ""
    lines: tuple[DiffLine, ...] = ()

    @property
    def header(self) -> str:
        return f"@@ -{self.old_start},{self.old_count} +{self.new_start},{self.new_count} @@{self.section}"

    @property
    def changed_lines(self) -> frozenset[int]:
        """New-file line numbers of the lines this hunk adds."""
        return frozenset(line.new_lineno for line in self.lines if line.kind == "+" and line.new_lineno is not None)

    def render(self) -> str:
        return "\n".join([self.header, *(line.render() for line in self.lines)])

    def head(self, count: int) -> Hunk:
        """Return a copy keeping only the first `count` diff lines."""
        return Hunk(self.old_start, self.old_count, self.new_start, self.new_count, self.section, self.lines[:count])


@dataclass(frozen=True)
class FilePatch:
    path: str
    status: str
    patch: str = ""
    hunks: tuple[Hunk, ...] = ()
    previous_path: str | None = None

    @classmethod
    def from_patch(cls, path: str, status: str, patch: str | None, previous_path: str | None = None) -> FilePatch:
        patch = patch or ""
        return cls(path=path, status=status, patch=patch, hunks=parse_hunks(patch), previous_path=previous_path)

    @property
    def fingerprint(self) -> str:
        return fingerprint(self.patch)

    @property
    def is_empty(self) -> bool:
        return not self.hunks


@dataclass(frozen=True)
class ChangeSet:
    revision: str
    patches: tuple[FilePatch, ...] = field(default_factory=tuple)

    def get(self, path: str) -> FilePatch | None:
        for patch in self.patches:
            if patch.path == path:
                return patch
        return None

    @property
    def paths(self) -> list[str]:
        return [p.path for p in self.patches]


def fingerprint(patch_text: str) -> str:
    return "sha256:" + hashlib.sha256(patch_text.encode("utf-8")).hexdigest()


def parse_hunks(patch_text: str) -> tuple[Hunk, ...]:
    """Parse hunk-only patch text into Hunks.

    Lines before the first well-formed @@ header are ignored, as are the
    "\\ No newline at end of file" markers. A malformed @@ line ends the
    current hunk without starting a new one.
    """
    hunks: list[Hunk] = []
    header: re.Match | None = None
    lines: list[DiffLine] = []
    old_no = new_no = 0

    def flush():
        if header is not None:
            hunks.append(
                Hunk(
                    old_start=int(header["old_start"]),
                    old_count=int(header["old_count"] or 1),
                    new_start=int(header["new_start"]),
                    new_count=int(header["new_count"] or 1),
                    section=header["section"],
                    lines=tuple(lines),
                )
            )

    for raw in patch_text.splitlines():
        if raw.startswith("@@"):
            flush()
            header = _HUNK_HEADER_RE.match(raw)
            lines = []
            if header is not None:
                old_no = int(header["old_start"])
                new_no = int(header["new_start"])
            continue
        if header is None or raw.startswith("\\"):
            continue
        kind, text = (raw[0], raw[1:]) if raw else (" ", "")
        if kind == "+":
            lines.append(DiffLine("+", text, None, new_no))
            new_no += 1
        elif kind == "-":
            lines.append(DiffLine("-", text, old_no, None))
            old_no += 1
        else:
            lines.append(DiffLine(" ", text if kind == " " else raw, old_no, new_no))
            old_no += 1
            new_no += 1
    flush()
    return tuple(hunks)


def get_diff_positions(patch_text: str) -> dict[int, int]:
    """
    Maps new-file line numbers to their cumulative GitHub diff positions.

    GitHub's review comment API requires positions that are cumulative across
    the entire patch, not reset per hunk. Position 1 is the first line below
    the first @@ header; every later @@ header takes a position of its own.
    """
    positions: dict[int, int] = {}
    diff_position = 0
    file_line: int | None = None

    for line in patch_text.splitlines():
        if line.startswith("@@"):
            match = _HUNK_HEADER_RE.match(line)
            file_line = int(match["new_start"]) if match else None
            if diff_position:
                diff_position += 1
            continue

        diff_position += 1

        if line.startswith("+") and not line.startswith("+++"):
            if file_line is not None:
                positions[file_line] = diff_position
                file_line += 1
        elif line.startswith("-") and not line.startswith("---"):
            pass  # Removed line — does not advance the new-file line counter
        else:
            if file_line is not None:
                file_line += 1

    return positions
