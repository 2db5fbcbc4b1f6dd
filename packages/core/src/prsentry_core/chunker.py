"""Split a change set into review units that fit a model's input budget.

Units are built greedily at hunk boundaries and hunks are never reordered,
so findings can be reassembled in file line order. A hunk is only cut when
it does not fit in a unit on its own; it is then truncated to its leading
lines and the unit is flagged partial.

Output is a pure function of (change set, paths, model, budget, tokenizer):
the same inputs always produce byte-identical payloads and the same unit
ids. The fingerprint-based skip logic relies on this.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from prsentry_core.budget import BudgetTable
from prsentry_core.diff import ChangeSet, FilePatch, Hunk
from prsentry_core.tokens import Tokenizer

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "<<<PRSENTRY:TRUNCATED>>>"


class Tier(str, Enum):
    LIGHT = "light"  # change-set summarization, multi-file units
    HEAVY = "heavy"  # detailed line-level review, single-file units


@dataclass(frozen=True)
class UnitSegment:
    """The part of one file's diff carried by a unit."""

    path: str
    status: str
    hunks: tuple[Hunk, ...]
    previous_path: str | None = None
    # Set when the last hunk was truncated: the last new-file line that was
    # kept, or None when no new-file line survived the cut.
    truncated: bool = False
    truncated_after: int | None = None

    @property
    def changed_lines(self) -> frozenset[int]:
        lines: set[int] = set()
        for hunk in self.hunks:
            lines |= hunk.changed_lines
        return frozenset(lines)


@dataclass(frozen=True)
class ReviewUnit:
    unit_id: str
    tier: Tier
    model: str
    segments: tuple[UnitSegment, ...]
    payload: str
    token_count: int
    partial: bool = False

    @property
    def paths(self) -> list[str]:
        return [s.path for s in self.segments]


def _file_header(patch: FilePatch) -> str:
    if patch.previous_path and patch.previous_path != patch.path:
        return f"### File: {patch.path} ({patch.status}, was {patch.previous_path})"
    return f"### File: {patch.path} ({patch.status})"


def serialize_segments(segments, patches: dict[str, FilePatch]) -> str:
    """Render segments as the text sent to the model.

    Each segment is a file header followed by its hunks; a truncated segment
    ends with TRUNCATION_MARKER on its own line.
    """
    blocks = []
    for segment in segments:
        parts = [_file_header(patches[segment.path]), *(h.render() for h in segment.hunks)]
        if segment.truncated:
            parts.append(TRUNCATION_MARKER)
        blocks.append("\n".join(parts))
    return "\n\n".join(blocks) + "\n"


def _truncate(
    patch: FilePatch,
    hunk: Hunk,
    prefix: tuple[UnitSegment, ...],
    patches: dict[str, FilePatch],
    tokenizer: Tokenizer,
    budget: int,
) -> UnitSegment:
    """Keep as many leading lines of `hunk` as fit after `prefix`.

    Binary search over the retained-line count using the real token count of
    the rendered unit, so the result never depends on per-line estimates.
    """

    def segment(keep: int) -> UnitSegment:
        cut = hunk.head(keep)
        kept_new = [line.new_lineno for line in cut.lines if line.new_lineno is not None]
        return UnitSegment(
            path=patch.path,
            status=patch.status,
            hunks=(cut,),
            previous_path=patch.previous_path,
            truncated=True,
            truncated_after=kept_new[-1] if kept_new else None,
        )

    lo, hi = 0, len(hunk.lines) - 1
    while lo < hi:
        mid = (lo + hi + 1) // 2
        if tokenizer.fits(serialize_segments((*prefix, segment(mid)), patches), budget):
            lo = mid
        else:
            hi = mid - 1
    logger.warning(
        "Hunk %s in %s exceeds the %d-token budget; kept %d of %d lines.",
        hunk.header,
        patch.path,
        budget,
        lo,
        len(hunk.lines),
    )
    return segment(lo)


class _UnitBuilder:
    """Accumulates segments for one tier and cuts units when the budget is reached."""

    def __init__(self, tier: Tier, model: str, budget: int, tokenizer: Tokenizer, patches: dict[str, FilePatch]):
        self.tier = tier
        self.model = model
        self.budget = budget
        self.tokenizer = tokenizer
        self.patches = patches
        self.units: list[ReviewUnit] = []
        self._segments: list[UnitSegment] = []
        self._counter: dict[str, int] = {}

    def _candidate(self, patch: FilePatch, hunk: Hunk) -> list[UnitSegment]:
        segments = list(self._segments)
        if segments and segments[-1].path == patch.path and not segments[-1].truncated:
            last = segments[-1]
            segments[-1] = UnitSegment(last.path, last.status, (*last.hunks, hunk), last.previous_path)
        else:
            segments.append(UnitSegment(patch.path, patch.status, (hunk,), patch.previous_path))
        return segments

    def add(self, patch: FilePatch, hunk: Hunk) -> None:
        candidate = self._candidate(patch, hunk)
        if self.tokenizer.fits(serialize_segments(candidate, self.patches), self.budget):
            self._segments = candidate
            return
        self.flush()
        candidate = self._candidate(patch, hunk)
        if self.tokenizer.fits(serialize_segments(candidate, self.patches), self.budget):
            self._segments = candidate
            return
        # The hunk alone is over budget: it gets a unit of its own.
        self._segments = [_truncate(patch, hunk, (), self.patches, self.tokenizer, self.budget)]
        self.flush()

    def flush(self) -> None:
        if not self._segments:
            return
        segments = tuple(self._segments)
        payload = serialize_segments(segments, self.patches)
        if self.tier is Tier.HEAVY:
            key = segments[0].path
            index = self._counter.get(key, 0)
            unit_id = f"heavy:{key}:{index}"
        else:
            key = ""
            index = self._counter.get(key, 0)
            unit_id = f"light:{index}"
        self._counter[key] = index + 1
        self.units.append(
            ReviewUnit(
                unit_id=unit_id,
                tier=self.tier,
                model=self.model,
                segments=segments,
                payload=payload,
                token_count=self.tokenizer.count(payload),
                partial=any(s.truncated for s in segments),
            )
        )
        self._segments = []


def chunk(
    change_set: ChangeSet,
    paths,
    model: str,
    tier: Tier,
    budgets: BudgetTable,
    tokenizer: Tokenizer,
    reserve_tokens: int = 0,
) -> list[ReviewUnit]:
    """Decompose the selected files of a change set into review units.

    Files are visited in change-set order regardless of the order of `paths`.
    Heavy units never span files; removed files are skipped at the heavy tier
    because there is no new-file line to anchor a finding to. Files without
    hunks (pure renames) produce no units at either tier.
    """
    budget = budgets.available_input_budget(model) - reserve_tokens
    if budget <= 0:
        raise ValueError(f"Prompt reserve of {reserve_tokens} tokens leaves no input budget for {model!r}.")

    wanted = set(paths)
    patches = {p.path: p for p in change_set.patches}
    builder = _UnitBuilder(tier, model, budget, tokenizer, patches)

    for patch in change_set.patches:
        if patch.path not in wanted or patch.is_empty:
            continue
        if tier is Tier.HEAVY and patch.status == "removed":
            continue
        for hunk in patch.hunks:
            builder.add(patch, hunk)
        if tier is Tier.HEAVY:
            builder.flush()
    builder.flush()
    return builder.units
