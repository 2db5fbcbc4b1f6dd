"""Token counting.

Wraps whatever counting primitive the run is configured with. Production
runs use a tiktoken encoding; cl100k_base tracks Claude's tokenizer closely
enough for budgeting and is what the OpenAI chat models use. The encoding is
resolved lazily because tiktoken fetches its BPE tables on first use.
"""

from __future__ import annotations

import re
from typing import Callable

DEFAULT_ENCODING = "cl100k_base"


class Tokenizer:
    def __init__(self, count_fn: Callable[[str], int] | None = None, encoding: str = DEFAULT_ENCODING):
        self._count_fn = count_fn
        self.encoding = encoding

    def _resolve(self) -> Callable[[str], int]:
        if self._count_fn is None:
            import tiktoken

            encoder = tiktoken.get_encoding(self.encoding)
            self._count_fn = lambda text: len(encoder.encode(text, disallowed_special=()))
        return self._count_fn

    def count(self, text: str) -> int:
        if not text:
            return 0
        return self._resolve()(text)

    def fits(self, text: str, budget: int) -> bool:
        return self.count(text) <= budget

    def truncate(self, text: str, budget: int, marker: str = "\n[truncated]") -> str:
        """Return the longest leading run of words of `text` that fits `budget`.

        A cut text ends with `marker`; the marker counts toward the budget.
        """
        if self.fits(text, budget):
            return text
        words = re.findall(r"\s*\S+", text)
        lo, hi = 0, len(words) - 1
        while lo < hi:
            mid = (lo + hi + 1) // 2
            if self.fits("".join(words[:mid]) + marker, budget):
                lo = mid
            else:
                hi = mid - 1
        return "".join(words[:lo]) + marker if lo else ""
