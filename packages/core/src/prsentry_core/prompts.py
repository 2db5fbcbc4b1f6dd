"""Prompt construction for both tiers and for thread replies.

Prompts are provider-agnostic: a system string plus an ordered list of
chat messages. Providers only translate this shape into their SDK call.
The wording here is replaceable; what matters structurally is that the
heavy tier asks for line-tagged JSON and the light tier for a JSON object
of per-file summaries.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from prsentry_core.chunker import TRUNCATION_MARKER

if TYPE_CHECKING:
    from prsentry_core.chunker import ReviewUnit
    from prsentry_core.conversation import Transcript

BUILTIN_GUIDELINES = """\
## Review guidelines
- Correctness first: logic errors, unhandled failure paths, resource leaks.
- Security: injection, secrets in code, missing authorization checks.
- Concurrency: shared mutable state, missing awaits, unbounded fan-out.
- Maintainability: unclear naming, duplicated logic, dead code.
- Tests: new behaviour without coverage, assertions that cannot fail."""


@dataclass(frozen=True)
class Prompt:
    system: str
    messages: tuple[dict, ...]

    @property
    def text(self) -> str:
        """Everything sent to the model, for token accounting."""
        return "\n\n".join([self.system, *(m["content"] for m in self.messages)])


def _system_prompt(guidelines: str) -> str:
    return f"""You are a strict and precise senior code reviewer.
Review the patch below and identify issues according to the guidelines.

{guidelines}

Rules:
- Focus on added lines (starting with '+') for direct violations.
- Also consider implications of removed lines (starting with '-') — e.g. deleted null checks,
  removed error handling, dropped permission guards.
- Do not comment on code that already follows best practices.
- Avoid assumptions when context is unclear. Be concise and actionable.
- A line containing only {TRUNCATION_MARKER} means the diff was cut there; do not guess what follows."""


def review_prompt(path: str, payload: str, guidelines: str, description: str = "") -> Prompt:
    user = f"""You are reviewing `{path}`.

## PR Description
{description}

## Diff
{payload}
### Output Format:
Respond with **only** a valid JSON list:

[
  {{
    "line": <line number in the new file (integer)>,
    "end_line": <optional last line of a multi-line range (integer)>,
    "severity": "<critical|major|minor|nitpick>",
    "comment": "<concise, actionable comment in GitHub-flavored markdown>"
  }},
  ...
]

Severity guide:
- critical: security vulnerability, data loss risk, crash
- major: logic bug, missing error handling, significant performance issue
- minor: code smell, unclear naming, missing type hint
- nitpick: style preference, minor formatting

Only reference line numbers of added lines shown in the diff.
If there are no issues, return: []
Do not return any text outside the JSON block."""
    return Prompt(system=_system_prompt(guidelines), messages=({"role": "user", "content": user},))


def summary_prompt(payload: str, description: str = "") -> Prompt:
    system = (
        "You summarize code changes for reviewers. Be factual and brief; "
        "describe what changed and why it matters, not how to fix it."
    )
    user = f"""## PR Description
{description}

## Changes
{payload}
### Output Format:
Respond with **only** a valid JSON object:

{{
  "files": {{"<path>": "<one or two sentence summary of the change to this file>"}},
  "overview": "<two to four sentence summary of the changes shown>"
}}

Do not return any text outside the JSON block."""
    return Prompt(system=system, messages=({"role": "user", "content": user},))


def build_review_prompt(unit: ReviewUnit, guidelines: str, description: str = "") -> Prompt:
    return review_prompt(unit.segments[0].path, unit.payload, guidelines, description)


def build_summary_prompt(unit: ReviewUnit, description: str = "") -> Prompt:
    return summary_prompt(unit.payload, description)


def build_reply_prompt(transcript: Transcript, guidelines: str, context: str = "") -> Prompt:
    """Replay a review thread as alternating chat turns.

    `context` carries the diff excerpt the thread is anchored to. It is
    folded into the first user turn so the transcript itself stays exactly
    as it was written.
    """
    messages: list[dict] = []
    for message in transcript.messages:
        content = message.text
        if message.role == "user" and message.author:
            content = f"@{message.author}: {content}"
        if messages and messages[-1]["role"] == message.role:
            messages[-1] = {"role": message.role, "content": messages[-1]["content"] + "\n\n" + content}
        else:
            messages.append({"role": message.role, "content": content})
    if not messages or messages[0]["role"] != "user":
        messages.insert(0, {"role": "user", "content": "(review thread follows)"})
    if context:
        messages[0] = {"role": "user", "content": f"## Diff under discussion\n{context}\n\n{messages[0]['content']}"}
    system = (
        _system_prompt(guidelines)
        + "\n\nYou are continuing a review discussion. Answer the latest message directly, "
        "in GitHub-flavored markdown, without repeating earlier comments."
    )
    return Prompt(system=system, messages=tuple(messages))
