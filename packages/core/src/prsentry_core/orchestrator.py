"""Core review orchestration.

One run per push to a pull request:

    load state → pick files whose patch fingerprint changed → chunk per tier
    → invoke every unit (both tiers at once, each under its own pool)
    → reconcile findings and summaries → save state → return comment ops

A run never posts anything itself. It returns the operations and the caller
hands them to a CommentSink, after the state save went through. A run that
loses the save race raises PersistConflictError and returns nothing, so the
winning run is the only one that posts.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field

from prsentry_core.budget import BudgetTable
from prsentry_core.chunker import ReviewUnit, Tier, chunk
from prsentry_core.config import ReviewConfig
from prsentry_core.conversation import Transcript
from prsentry_core.diff import ChangeSet
from prsentry_core.errors import PromptBudgetError, TruncationWarning
from prsentry_core.findings import SEVERITIES, Finding, UnparsableOutputError, extract_findings, extract_summaries
from prsentry_core.invoker import Deadline, InvocationResult, InvocationStatus, ModelInvoker
from prsentry_core.prompts import (
    BUILTIN_GUIDELINES,
    build_reply_prompt,
    build_review_prompt,
    build_summary_prompt,
    review_prompt,
    summary_prompt,
)
from prsentry_core.providers.anthropic import AnthropicProvider
from prsentry_core.providers.openai import OpenAIProvider
from prsentry_core.sink import CommentOp, PostLineFinding, PostReply, PostSummary
from prsentry_core.state import FileState, ReviewState, StateStore, unreviewed_files
from prsentry_core.tokens import Tokenizer
from prsentry_core.utils.code import reviewable

logger = logging.getLogger(__name__)

# A PR description is cut to 1/DESCRIPTION_SHARE of a model's input budget.
DESCRIPTION_SHARE = 4


def get_provider(config: dict):
    provider = config["provider"]
    if provider == "anthropic":
        return AnthropicProvider(api_key=config["anthropic_api_key"])
    if provider == "openai":
        return OpenAIProvider(api_key=config["openai_api_key"])
    raise ValueError(f"Unknown model provider: {provider!r}. Choose 'anthropic' or 'openai'.")


@dataclass
class FileOutcome:
    path: str
    status: str  # "reviewed" | "failed" | "unchanged"
    findings: list[Finding] = field(default_factory=list)
    partial: bool = False
    error: str | None = None


@dataclass
class RunOutcome:
    """Everything a run produced. Operations are not delivered yet."""

    revision: str
    operations: list[CommentOp] = field(default_factory=list)
    state: ReviewState = field(default_factory=ReviewState)
    saved: bool = False
    files: list[FileOutcome] = field(default_factory=list)
    skipped_files: list[str] = field(default_factory=list)
    results: list[InvocationResult] = field(default_factory=list)
    diagnostics: list[str] = field(default_factory=list)
    warnings: list[TruncationWarning] = field(default_factory=list)
    elapsed_seconds: float = 0.0

    @property
    def invocations(self) -> int:
        return sum(1 for r in self.results if r.status is not InvocationStatus.SKIPPED)

    @property
    def reviewed_files(self) -> list[str]:
        return [f.path for f in self.files if f.status == "reviewed"]

    @property
    def failed_files(self) -> list[str]:
        return [f.path for f in self.files if f.status == "failed"]

    @property
    def findings(self) -> list[Finding]:
        return [finding for f in self.files for finding in f.findings]


@dataclass
class ReplyOutcome:
    operation: PostReply | None
    result: InvocationResult | None = None


def _build_summary(outcome: RunOutcome, overview: str) -> str:
    """Build the top-level review body posted as the review description."""
    reviewed = [f for f in outcome.files if f.status == "reviewed"]
    failed = [f for f in outcome.files if f.status == "failed"]

    # Per-file severity counts.
    file_counts: dict[str, dict[str, int]] = {}
    for finding in outcome.findings:
        counts = file_counts.setdefault(finding.path, {s: 0 for s in SEVERITIES})
        counts[finding.severity] += 1

    totals = {s: sum(c[s] for c in file_counts.values()) for s in SEVERITIES}
    total_comments = sum(totals.values())

    elapsed = outcome.elapsed_seconds
    time_str = f"{int(elapsed)}s" if elapsed < 60 else f"{elapsed / 60:.1f} min"

    lines = ["## Review summary\n", f"_Revision `{outcome.revision[:7]}`_\n"]

    if overview:
        lines.append(f"{overview}\n")

    # Short auto-generated verdict.
    if total_comments == 0:
        verdict = "No issues found in the reviewed changes."
    else:
        issue_str = ", ".join(f"{totals[s]} {s}" for s in SEVERITIES if totals[s])
        flagged = sorted(file_counts, key=lambda p: sum(file_counts[p].values()), reverse=True)
        top = f"`{flagged[0]}`"
        if totals["critical"] or totals["major"]:
            verdict = f"{issue_str} issue(s) — changes required. Most flagged: {top}."
        else:
            verdict = f"{issue_str} suggestion(s). Most flagged: {top}."
    lines.append(f"> {verdict}\n")

    lines.append(
        f"**{len(reviewed)}** file(s) reviewed"
        + (f", **{len(outcome.skipped_files)}** skipped" if outcome.skipped_files else "")
        + (f", **{len(failed)}** failed" if failed else "")
        + f" · **{total_comments}** comment(s) · reviewed in {time_str}\n"
    )

    files_with_comments = [f for f in reviewed if f.path in file_counts]
    if files_with_comments:
        lines.append("| File | Critical | Major | Minor | Nitpick | Total |")
        lines.append("|------|:--------:|:-----:|:-----:|:-------:|:-----:|")
        for f in files_with_comments:
            fc = file_counts[f.path]
            cells = " ".join(f"| {fc[s] or '—'}" for s in SEVERITIES)
            lines.append(f"| `{f.path}` {cells} | {sum(fc.values())} |")

    clean_files = [f for f in reviewed if f.path not in file_counts]
    if clean_files:
        lines.append(f"\n_Clean: {len(clean_files)} file(s) with no issues._")

    if outcome.warnings:
        lines.append("\n**Partially reviewed (diff too large):**")
        for warning in outcome.warnings:
            lines.append(f"- {warning}")

    if failed:
        lines.append("\n**Not reviewed this time (will retry on the next push):**")
        for f in failed:
            lines.append(f"- `{f.path}`: {f.error}")

    return "\n".join(lines)


class ReviewOrchestrator:
    def __init__(
        self,
        config: ReviewConfig,
        invoker: ModelInvoker,
        state_store: StateStore,
        budgets: BudgetTable | None = None,
        tokenizer: Tokenizer | None = None,
        guidelines: str = BUILTIN_GUIDELINES,
    ):
        self.config = config
        self.invoker = invoker
        self.state_store = state_store
        self.budgets = budgets or BudgetTable.from_overrides(config.budget_overrides)
        self.tokenizer = tokenizer or Tokenizer(encoding=config.tokenizer_encoding)
        self.guidelines = guidelines

    @classmethod
    def build(cls, config: ReviewConfig, provider, state_store: StateStore, guidelines: str = BUILTIN_GUIDELINES):
        budgets = BudgetTable.from_overrides(config.budget_overrides)
        invoker = ModelInvoker(provider, {Tier.LIGHT: config.light, Tier.HEAVY: config.heavy}, budgets)
        return cls(config, invoker, state_store, budgets=budgets, guidelines=guidelines)

    def _validate_models(self) -> None:
        # Raises UnknownModelError before anything is loaded or invoked.
        self.budgets.require(self.config.light.model)
        self.budgets.require(self.config.heavy.model)

    def _fit_description(self, description: str, model: str) -> str:
        return self.tokenizer.truncate(description, self.budgets.available_input_budget(model) // DESCRIPTION_SHARE)

    def prompt_overhead(self, tier: Tier, description: str = "", path: str = "") -> int:
        """Tokens a prompt for `tier` costs before any diff is put into it."""
        if tier is Tier.HEAVY:
            prompt = review_prompt(path, "", self.guidelines, description)
        else:
            prompt = summary_prompt("", description)
        return self.tokenizer.count(prompt.text)

    def _reserve(self, tier: Tier, model: str, description: str, path: str = "") -> int:
        reserve = self.config.prompt_reserve_tokens + self.prompt_overhead(tier, description, path)
        available = self.budgets.available_input_budget(model)
        if reserve >= available:
            raise PromptBudgetError(model, reserve, available)
        return reserve

    async def run(self, change_set: ChangeSet, description: str = "", force_full: bool = False) -> RunOutcome:
        self._validate_models()
        started = time.monotonic()
        deadline = Deadline(self.config.run_timeout_seconds)
        state = await self.state_store.load()

        outcome = RunOutcome(revision=change_set.revision, state=state)
        excluded = {p.path for p in change_set.patches if not reviewable(p.path, self.config.exclude)}
        pending = [p for p in unreviewed_files(state, change_set, force_full) if p.path not in excluded]
        outcome.skipped_files = [p for p in change_set.paths if p in excluded or p in state.skip_paths]

        if not pending:
            logger.info("No changed files since the last review of %s.", state.last_revision)
            outcome.operations = [
                PostSummary(f"No new changes to review at `{change_set.revision[:7]}`; all files are up to date.")
            ]
            outcome.elapsed_seconds = time.monotonic() - started
            return outcome

        paths = [p.path for p in pending]
        light_model, heavy_model = self.config.light.model, self.config.heavy.model
        light_description = self._fit_description(description, light_model)
        heavy_description = self._fit_description(description, heavy_model)
        light_reserve = self._reserve(Tier.LIGHT, light_model, light_description)
        heavy_reserve = self._reserve(Tier.HEAVY, heavy_model, heavy_description, max(paths, key=len))
        light_units = chunk(change_set, paths, light_model, Tier.LIGHT, self.budgets, self.tokenizer, light_reserve)
        heavy_units = chunk(change_set, paths, heavy_model, Tier.HEAVY, self.budgets, self.tokenizer, heavy_reserve)
        logger.info(
            "Reviewing %d file(s): %d summary unit(s), %d review unit(s).", len(paths), len(light_units), len(heavy_units)
        )

        jobs = [
            self.invoker.invoke(u, Tier.LIGHT, build_summary_prompt(u, light_description), deadline)
            for u in light_units
        ] + [
            self.invoker.invoke(u, Tier.HEAVY, build_review_prompt(u, self.guidelines, heavy_description), deadline)
            for u in heavy_units
        ]
        outcome.results = list(await asyncio.gather(*jobs))
        by_id = {r.unit.unit_id: r for r in outcome.results}

        summaries, overview = self._reconcile_summaries(light_units, by_id, outcome)
        self._reconcile_findings(pending, heavy_units, by_id, outcome)

        new_state = state.copy()
        changed = False
        for file_outcome in outcome.files:
            if file_outcome.status != "reviewed":
                continue
            patch = change_set.get(file_outcome.path)
            entry = FileState(patch.fingerprint, summaries.get(patch.path, ""), file_outcome.partial)
            if new_state.files.get(patch.path) != entry:
                new_state.files[patch.path] = entry
                changed = True
        if changed:
            new_state.last_revision = change_set.revision
            if overview:
                new_state.overall_summary = overview
            outcome.state = await self.state_store.save(new_state)
            outcome.saved = True
        else:
            logger.warning("No file was reviewed successfully; review state left untouched.")

        outcome.elapsed_seconds = time.monotonic() - started
        outcome.operations = [PostSummary(_build_summary(outcome, overview or state.overall_summary))] + [
            PostLineFinding(f.path, f.line, f.end_line, f.severity, f.body) for f in outcome.findings
        ]
        return outcome

    def _reconcile_summaries(self, units: list[ReviewUnit], by_id: dict[str, InvocationResult], outcome: RunOutcome):
        summaries: dict[str, str] = {}
        overviews: list[str] = []
        for unit in units:
            result = by_id[unit.unit_id]
            if not result.succeeded:
                outcome.diagnostics.append(f"{unit.unit_id}: summary unavailable ({result.error})")
                continue
            files, text = extract_summaries(unit, result.output)
            for path, summary in files.items():
                summaries[path] = f"{summaries[path]} {summary}" if path in summaries else summary
            if text:
                overviews.append(text)
        return summaries, "\n\n".join(overviews)

    def _reconcile_findings(self, pending, units: list[ReviewUnit], by_id: dict[str, InvocationResult], outcome):
        units_by_path: dict[str, list[ReviewUnit]] = {}
        for unit in units:
            units_by_path.setdefault(unit.segments[0].path, []).append(unit)

        for patch in pending:
            file_outcome = FileOutcome(path=patch.path, status="reviewed")
            # Units for a file are already in hunk order; results are looked
            # up by unit id so completion order does not matter.
            for unit in units_by_path.get(patch.path, []):
                result = by_id[unit.unit_id]
                outcome.warnings.extend(result.warnings)
                file_outcome.partial = file_outcome.partial or unit.partial
                if not result.succeeded:
                    file_outcome.status = "failed"
                    file_outcome.error = result.error
                    continue
                try:
                    findings, diagnostics = extract_findings(unit, result.output)
                except UnparsableOutputError as e:
                    # Never guess where a finding belongs: the unit counts as
                    # failed and the file is retried on the next run.
                    file_outcome.status = "failed"
                    file_outcome.error = f"unreadable model response ({e})"
                    outcome.diagnostics.append(f"{unit.unit_id}: {e}")
                    continue
                file_outcome.findings.extend(findings)
                outcome.diagnostics.extend(diagnostics)
            if file_outcome.status == "failed":
                # Findings from the units that did succeed are still posted.
                logger.warning("%s not fully reviewed: %s", patch.path, file_outcome.error)
            outcome.files.append(file_outcome)

    async def reply(self, transcript: Transcript, change_set: ChangeSet | None = None) -> ReplyOutcome:
        """Answer the latest human message in a review thread.

        The transcript is replayed as chat turns, trimmed to the heavy model's
        budget (the opening message and the newest message are always kept).
        When the thread is anchored to a line of the change set, the hunk
        around it is sent along as context.
        """
        self._validate_models()
        if not transcript.awaiting_reply:
            return ReplyOutcome(operation=None)

        context = ""
        if change_set is not None and transcript.path and transcript.line is not None:
            patch = change_set.get(transcript.path)
            for hunk in patch.hunks if patch else ():
                if hunk.new_start <= transcript.line < hunk.new_start + max(hunk.new_count, 1):
                    context = f"### File: {patch.path}\n{hunk.render()}"
                    break

        model = self.config.heavy.model
        available = self.budgets.available_input_budget(model) - self.config.prompt_reserve_tokens
        context = self.tokenizer.truncate(context, available // DESCRIPTION_SHARE)
        empty = build_reply_prompt(Transcript(transcript.thread_id), self.guidelines, context)
        overhead = self.tokenizer.count(empty.text)
        if overhead >= available:
            raise PromptBudgetError(model, overhead, available)
        budget = available - overhead
        trimmed = transcript.trimmed(self.tokenizer.count, budget)
        prompt = build_reply_prompt(trimmed, self.guidelines, context)
        # Author prefixes and merged turns are not part of the message texts.
        while self.tokenizer.count(prompt.text) > available and len(trimmed.messages) > 2:
            budget -= self.tokenizer.count(prompt.text) - available
            trimmed = transcript.trimmed(self.tokenizer.count, budget)
            prompt = build_reply_prompt(trimmed, self.guidelines, context)
        unit = ReviewUnit(
            unit_id=f"reply:{transcript.thread_id}",
            tier=Tier.HEAVY,
            model=model,
            segments=(),
            payload=prompt.text,
            token_count=self.tokenizer.count(prompt.text),
        )
        result = await self.invoker.invoke(unit, Tier.HEAVY, prompt, Deadline(self.config.run_timeout_seconds))
        if not result.succeeded or not (result.output or "").strip():
            logger.error("Could not reply in thread %s: %s", transcript.thread_id, result.error or "empty response")
            return ReplyOutcome(operation=None, result=result)
        return ReplyOutcome(operation=PostReply(transcript.thread_id, result.output.strip()), result=result)
