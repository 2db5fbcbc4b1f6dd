"""Review-thread transcripts.

A thread is an append-only sequence of messages keyed by the id of the
comment that started it. Appending returns a new Transcript; nothing is
mutated in place, so a transcript can be replayed as context on every
invocation without any shared state between runs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable


@dataclass(frozen=True)
class Message:
    role: str  # "user" | "assistant"
    text: str
    author: str = ""
    comment_id: int | None = None


@dataclass(frozen=True)
class Transcript:
    thread_id: int
    path: str | None = None
    line: int | None = None
    messages: tuple[Message, ...] = field(default_factory=tuple)

    def append(self, message: Message) -> Transcript:
        return Transcript(self.thread_id, self.path, self.line, (*self.messages, message))

    @property
    def last(self) -> Message | None:
        return self.messages[-1] if self.messages else None

    @property
    def awaiting_reply(self) -> bool:
        """True when the latest message is from a human."""
        return self.last is not None and self.last.role == "user"

    def trimmed(self, count_tokens: Callable[[str], int], budget: int) -> Transcript:
        """Drop the oldest messages after the opening one until the texts fit `budget`.

        The opening message anchors the thread (usually the original finding)
        and the newest message is what needs answering, so both are always
        kept even if together they exceed the budget.
        """
        messages = list(self.messages)
        total = sum(count_tokens(m.text) for m in messages)
        while total > budget and len(messages) > 2:
            dropped = messages.pop(1)
            total -= count_tokens(dropped.text)
        return Transcript(self.thread_id, self.path, self.line, tuple(messages))
