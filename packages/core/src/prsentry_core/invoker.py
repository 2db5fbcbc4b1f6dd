"""Bounded-concurrency, rate-limited, retrying calls to the inference service.

There is one TierPool per tier. A pool caps requests in flight with a
semaphore, spaces request starts with a fixed-delay limiter, and retries
throttling and timeout failures with exponential backoff plus jitter. The
semaphore is held for a single attempt only; backoff sleeps happen outside
it so a unit waiting to retry never blocks a fresh one. Pools share nothing,
so the two tiers run fully in parallel.

invoke() never raises for a per-unit failure. Whatever goes wrong comes
back as an InvocationResult and the orchestrator decides what it means.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable

from tenacity import (
    AsyncRetrying,
    RetryError,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from prsentry_core.chunker import Tier
from prsentry_core.errors import InferenceError, InferenceTimeoutError, TruncationWarning

if TYPE_CHECKING:
    from prsentry_core.budget import BudgetTable
    from prsentry_core.chunker import ReviewUnit
    from prsentry_core.config import TierConfig
    from prsentry_core.prompts import Prompt
    from prsentry_core.providers.base import BaseProvider

logger = logging.getLogger(__name__)


class InvocationStatus(str, Enum):
    OK = "ok"
    FAILED = "failed"
    SKIPPED = "skipped"  # never dispatched: the run deadline had passed


@dataclass
class InvocationResult:
    unit: ReviewUnit
    status: InvocationStatus
    output: str | None = None
    error: str | None = None
    attempts: int = 0
    warnings: list[TruncationWarning] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status is InvocationStatus.OK

    @property
    def retries(self) -> int:
        return max(self.attempts - 1, 0)


class Deadline:
    """Monotonic cut-off for dispatching new work. `None` seconds means no deadline."""

    def __init__(self, seconds: float | None, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._expires_at = None if seconds is None else clock() + seconds

    def expired(self) -> bool:
        return self._expires_at is not None and self._clock() >= self._expires_at


class FixedDelayLimiter:
    """Enforces a minimum interval between consecutive request starts."""

    def __init__(self, min_interval: float, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.min_interval = min_interval
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last_start: float | None = None

    async def acquire(self) -> None:
        if self.min_interval <= 0:
            return
        async with self._lock:
            now = time.monotonic()
            if self._last_start is not None:
                wait_s = self._last_start + self.min_interval - now
                if wait_s > 0:
                    await self._sleep(wait_s)
            self._last_start = time.monotonic()


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, InferenceError) and error.retryable


class _DeadlinePassed(Exception):
    pass


class TierPool:
    def __init__(
        self,
        tier: Tier,
        config: TierConfig,
        provider: BaseProvider,
        max_output_tokens: int,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.tier = tier
        self.config = config
        self.provider = provider
        self.max_output_tokens = max_output_tokens
        self._sleep = sleep
        self._semaphore = asyncio.Semaphore(config.max_concurrency)
        self._limiter = FixedDelayLimiter(config.min_interval_seconds, sleep=sleep)
        self.in_flight = 0
        self.peak_in_flight = 0

    async def _call(self, prompt: Prompt) -> str:
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            call = self.provider.call(self.config.model, prompt, self.max_output_tokens)
            if self.config.request_timeout_seconds is None:
                return await call
            try:
                return await asyncio.wait_for(call, timeout=self.config.request_timeout_seconds)
            except asyncio.TimeoutError:
                raise InferenceTimeoutError(f"no response within {self.config.request_timeout_seconds}s") from None
        finally:
            self.in_flight -= 1

    async def submit(self, unit: ReviewUnit, prompt: Prompt, deadline: Deadline | None = None) -> InvocationResult:
        warnings = [TruncationWarning(s.path, s.truncated_after) for s in unit.segments if s.truncated]
        attempts = 0
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.config.max_attempts),
            wait=wait_exponential_jitter(
                initial=self.config.backoff_initial_seconds,
                max=self.config.backoff_max_seconds,
                jitter=self.config.backoff_jitter_seconds,
            ),
            retry=retry_if_exception(_is_retryable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=self._sleep,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    # The deadline is checked once a slot is free, right before dispatch.
                    async with self._semaphore:
                        await self._limiter.acquire()
                        if deadline is not None and deadline.expired():
                            raise _DeadlinePassed()
                        attempts += 1
                        output = await self._call(prompt)
        except RetryError as e:
            error = e.last_attempt.exception()
            logger.error("%s failed after %d attempts: %s", unit.unit_id, attempts, error)
            return InvocationResult(unit, InvocationStatus.FAILED, error=str(error), attempts=attempts, warnings=warnings)
        except _DeadlinePassed:
            if not attempts:
                logger.info("Deadline passed; not dispatching %s.", unit.unit_id)
                return InvocationResult(unit, InvocationStatus.SKIPPED, error="run deadline passed", warnings=warnings)
            logger.warning("%s: deadline passed while backing off; giving up after %d attempts.", unit.unit_id, attempts)
            return InvocationResult(
                unit, InvocationStatus.FAILED, error="run deadline passed during retry", attempts=attempts, warnings=warnings
            )
        except InferenceError as e:
            logger.error("%s failed (not retryable): %s", unit.unit_id, e)
            return InvocationResult(unit, InvocationStatus.FAILED, error=str(e), attempts=attempts, warnings=warnings)

        return InvocationResult(unit, InvocationStatus.OK, output=output, attempts=attempts, warnings=warnings)


class ModelInvoker:
    """Dispatches review units to the pool for their tier."""

    def __init__(
        self,
        provider: BaseProvider,
        tiers: dict[Tier, TierConfig],
        budgets: BudgetTable,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.pools = {
            tier: TierPool(tier, config, provider, budgets.max_output_tokens(config.model), sleep=sleep)
            for tier, config in tiers.items()
        }

    def pool(self, tier: Tier) -> TierPool:
        return self.pools[Tier(tier)]

    async def invoke(
        self, unit: ReviewUnit, tier: Tier, prompt: Prompt, deadline: Deadline | None = None
    ) -> InvocationResult:
        return await self.pool(tier).submit(unit, prompt, deadline)
