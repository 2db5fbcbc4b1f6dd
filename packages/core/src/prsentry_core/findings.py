"""Turn model output into line-anchored findings.

Line references from the model are only trusted when they land exactly on
a line the unit's hunks add. Anything else (out of range, a removed or
context line, a non-integer tag) is dropped with a diagnostic; we never
snap a finding to a nearby line.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from prsentry_core.chunker import ReviewUnit

logger = logging.getLogger(__name__)

SEVERITIES = ("critical", "major", "minor", "nitpick")
_SEVERITY_RANK = {"critical": 3, "major": 2, "minor": 1, "nitpick": 0}


class UnparsableOutputError(ValueError):
    """The model's response is not the JSON shape that was asked for."""


@dataclass(frozen=True)
class Finding:
    path: str
    line: int
    end_line: int
    severity: str
    comment: str

    @property
    def body(self) -> str:
        return f"**[{self.severity.upper()}]**\n\n{self.comment}"


def parse_json_output(raw: str):
    """Parse a JSON response, tolerating an outer ```json fence.

    Strips only the outer fence the model wraps the response in — NOT
    backticks inside comment string values.
    """
    cleaned = re.sub(r"^```(?:json)?\s*", "", (raw or "").strip())
    cleaned = re.sub(r"\s*```$", "", cleaned.strip())
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise UnparsableOutputError(f"response is not valid JSON: {raw[:200]!r}") from e


def _as_line(value) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def extract_findings(unit: ReviewUnit, raw: str) -> tuple[list[Finding], list[str]]:
    """Map a heavy-tier response onto the unit's hunks.

    Returns (findings, diagnostics). Findings come back sorted by line so
    they read in file order no matter how the model ordered them. Raises
    UnparsableOutputError when the response as a whole cannot be read.
    """
    items = parse_json_output(raw)
    if not isinstance(items, list):
        raise UnparsableOutputError(f"expected a JSON list, got {type(items).__name__}")

    segment = unit.segments[0]
    anchorable = segment.changed_lines
    findings: list[Finding] = []
    diagnostics: list[str] = []

    for item in items:
        if not isinstance(item, dict):
            diagnostics.append(f"{unit.unit_id}: dropped non-object entry {item!r:.80}")
            continue
        line = _as_line(item.get("line"))
        text = str(item.get("comment") or "").strip()
        if line is None or not text:
            diagnostics.append(f"{unit.unit_id}: dropped entry without a usable line or comment")
            continue
        if line not in anchorable:
            diagnostics.append(f"{segment.path}:{line} is not an added line in {unit.unit_id}; finding dropped")
            continue
        end_line = _as_line(item.get("end_line"))
        if end_line is None or end_line < line or end_line not in anchorable:
            end_line = line
        severity = str(item.get("severity", "minor")).lower()
        if severity not in _SEVERITY_RANK:
            severity = "minor"
        findings.append(Finding(segment.path, line, end_line, severity, text))

    for message in diagnostics:
        logger.debug(message)
    findings.sort(key=lambda f: (f.line, f.end_line))
    return findings, diagnostics


def extract_summaries(unit: ReviewUnit, raw: str) -> tuple[dict[str, str], str]:
    """Read a light-tier response into (per-file summaries, overview).

    Summaries for paths the unit does not carry are ignored. A response
    that is not the expected JSON object is used verbatim as the overview.
    """
    try:
        data = parse_json_output(raw)
    except UnparsableOutputError:
        logger.debug("%s: summary is not JSON; using it as plain text", unit.unit_id)
        return {}, (raw or "").strip()
    if not isinstance(data, dict):
        return {}, (raw or "").strip()

    paths = set(unit.paths)
    files = data.get("files") if isinstance(data.get("files"), dict) else {}
    summaries = {path: str(text).strip() for path, text in files.items() if path in paths and str(text).strip()}
    return summaries, str(data.get("overview") or "").strip()


def highest_severity(findings) -> str | None:
    ranked = sorted((f.severity for f in findings), key=lambda s: _SEVERITY_RANK[s], reverse=True)
    return ranked[0] if ranked else None
