"""Outbound comment operations and the sink interface that delivers them.

The orchestrator only produces an ordered list of operations; delivering
them (GitHub API, terminal, anything else) is the sink's job.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Union

from rich.console import Console
from rich.markup import escape

console = Console()


@dataclass(frozen=True)
class PostSummary:
    text: str


@dataclass(frozen=True)
class PostLineFinding:
    path: str
    start_line: int
    end_line: int
    severity: str
    text: str


@dataclass(frozen=True)
class PostReply:
    parent_id: int
    text: str


CommentOp = Union[PostSummary, PostLineFinding, PostReply]


def determine_event(operations) -> str:
    """Choose the GitHub review event based on the highest severity present."""
    severities = {op.severity for op in operations if isinstance(op, PostLineFinding)}
    if not severities:
        return "APPROVE"
    if severities & {"critical", "major"}:
        return "REQUEST_CHANGES"
    return "COMMENT"


class CommentSink(ABC):
    @abstractmethod
    def deliver(self, operations: list[CommentOp]) -> None:
        """Deliver operations in order."""


class ConsoleSink(CommentSink):
    """Print operations to the terminal without posting anything (shadow mode)."""

    _severity_color = {"critical": "red", "major": "yellow", "minor": "blue", "nitpick": "dim"}

    def __init__(self, out: Console | None = None):
        self.console = out or console

    def deliver(self, operations: list[CommentOp]) -> None:
        findings = [op for op in operations if isinstance(op, PostLineFinding)]
        if not operations:
            self.console.print("[yellow]Shadow mode: nothing to post.[/yellow]")
            return
        self.console.print(f"\n[bold]Shadow review — {len(findings)} comment(s) (not posted)[/bold]\n")
        for op in operations:
            if isinstance(op, PostLineFinding):
                color = self._severity_color.get(op.severity, "white")
                lines = f"{op.start_line}" if op.start_line == op.end_line else f"{op.start_line}-{op.end_line}"
                self.console.print(
                    f"[bold cyan]{op.path}[/bold cyan]  line [bold]{lines}[/bold]  "
                    f"[{color}]{op.severity.upper()}[/{color}]"
                )
                self.console.print(f"  {escape(op.text)}")
                self.console.print()
            elif isinstance(op, PostReply):
                self.console.print(f"[bold]Reply to #{op.parent_id}[/bold]\n{escape(op.text)}\n")
            else:
                self.console.print(escape(op.text))
