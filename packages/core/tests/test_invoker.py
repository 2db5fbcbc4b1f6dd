"""Tests for the tiered model invoker: retries, concurrency caps, deadlines."""

import asyncio

from prsentry_core.budget import BudgetTable, ModelBudget
from prsentry_core.chunker import ReviewUnit, Tier, UnitSegment
from prsentry_core.config import TierConfig
from prsentry_core.errors import InvalidInputError, ThrottledError
from prsentry_core.invoker import Deadline, FixedDelayLimiter, InvocationStatus, ModelInvoker, TierPool
from prsentry_core.prompts import Prompt
from prsentry_core.providers.base import BaseProvider

PROMPT = Prompt(system="system", messages=({"role": "user", "content": "review this"},))
BUDGETS = BudgetTable({"light-m": ModelBudget(1000, 100, 100), "heavy-m": ModelBudget(1000, 200, 200)})


class ScriptedProvider(BaseProvider):
    """Replays a list of outcomes: strings are returned, exceptions raised."""

    def __init__(self, script=None, delay: float = 0.0):
        self.script = list(script or [])
        self.delay = delay
        self.calls = []

    async def _call_api(self, model, prompt, max_output_tokens):
        self.calls.append((model, max_output_tokens))
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.script.pop(0) if self.script else "[]"
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class RecordingSleep:
    def __init__(self):
        self.waits = []

    async def __call__(self, seconds):
        self.waits.append(seconds)


def unit(unit_id="heavy:a.py:0", segments=()):
    return ReviewUnit(unit_id, Tier.HEAVY, "heavy-m", segments, "payload", 1)


def pool(provider, sleep=None, **overrides):
    config = TierConfig(model="heavy-m", backoff_jitter_seconds=0.0, **overrides)
    return TierPool(Tier.HEAVY, config, provider, 200, sleep=sleep or RecordingSleep())


class TestRetries:
    def test_success_on_first_attempt(self):
        provider = ScriptedProvider(["ok"])
        result = asyncio.run(pool(provider).submit(unit(), PROMPT))
        assert result.status is InvocationStatus.OK
        assert result.output == "ok"
        assert result.attempts == 1
        assert result.retries == 0
        assert provider.calls == [("heavy-m", 200)]

    def test_retries_throttling_with_growing_backoff(self):
        provider = ScriptedProvider([ThrottledError("429"), ThrottledError("429"), "done"])
        sleep = RecordingSleep()
        result = asyncio.run(pool(provider, sleep=sleep, max_attempts=4).submit(unit(), PROMPT))
        assert result.succeeded
        assert result.output == "done"
        assert result.attempts == 3
        assert len(sleep.waits) == 2
        assert sleep.waits[1] > sleep.waits[0]

    def test_gives_up_after_max_attempts(self):
        provider = ScriptedProvider([ThrottledError("slow down")] * 5)
        result = asyncio.run(pool(provider, max_attempts=3).submit(unit(), PROMPT))
        assert result.status is InvocationStatus.FAILED
        assert result.attempts == 3
        assert "slow down" in result.error
        assert len(provider.calls) == 3

    def test_does_not_retry_invalid_input(self):
        provider = ScriptedProvider([InvalidInputError("too large"), "never"])
        result = asyncio.run(pool(provider).submit(unit(), PROMPT))
        assert result.status is InvocationStatus.FAILED
        assert result.attempts == 1
        assert len(provider.calls) == 1

    def test_unknown_sdk_error_is_not_retried(self):
        provider = ScriptedProvider([RuntimeError("boom"), "never"])
        result = asyncio.run(pool(provider).submit(unit(), PROMPT))
        assert result.status is InvocationStatus.FAILED
        assert "boom" in result.error
        assert len(provider.calls) == 1

    def test_slow_response_times_out(self):
        provider = ScriptedProvider(["late"], delay=1.0)
        result = asyncio.run(pool(provider, max_attempts=1, request_timeout_seconds=0.01).submit(unit(), PROMPT))
        assert result.status is InvocationStatus.FAILED
        assert "no response" in result.error


class TestDeadline:
    def test_expired_deadline_skips_dispatch(self):
        provider = ScriptedProvider(["ok"])
        result = asyncio.run(pool(provider).submit(unit(), PROMPT, Deadline(0)))
        assert result.status is InvocationStatus.SKIPPED
        assert provider.calls == []

    def test_deadline_passing_during_backoff_stops_retries(self):
        now = [0.0]
        deadline = Deadline(5, clock=lambda: now[0])

        class AdvancingSleep(RecordingSleep):
            async def __call__(self, seconds):
                now[0] += 10

        provider = ScriptedProvider([ThrottledError("429"), "never"])
        result = asyncio.run(pool(provider, sleep=AdvancingSleep()).submit(unit(), PROMPT, deadline))
        assert result.status is InvocationStatus.FAILED
        assert result.attempts == 1
        assert "deadline" in result.error

    def test_units_queued_behind_the_cap_are_skipped_after_deadline(self):
        provider = ScriptedProvider(delay=0.2)
        tier_pool = pool(provider, max_concurrency=1)

        async def run_all():
            deadline = Deadline(0.1)
            units = [unit(f"heavy:f{i}.py:0") for i in range(3)]
            return await asyncio.gather(*(tier_pool.submit(u, PROMPT, deadline) for u in units))

        results = asyncio.run(run_all())
        assert len(provider.calls) == 1
        assert [r.status for r in results] == [
            InvocationStatus.OK,
            InvocationStatus.SKIPPED,
            InvocationStatus.SKIPPED,
        ]
        assert all(r.attempts == 0 for r in results[1:])

    def test_no_deadline_never_expires(self):
        assert not Deadline(None).expired()


class TestConcurrency:
    def test_in_flight_never_exceeds_cap(self):
        provider = ScriptedProvider(delay=0.01)
        tier_pool = pool(provider, max_concurrency=2)

        async def run_all():
            units = [unit(f"heavy:f{i}.py:0") for i in range(6)]
            return await asyncio.gather(*(tier_pool.submit(u, PROMPT) for u in units))

        results = asyncio.run(run_all())
        assert all(r.succeeded for r in results)
        assert tier_pool.peak_in_flight == 2
        assert tier_pool.in_flight == 0

    def test_tiers_have_independent_pools(self):
        provider = ScriptedProvider(delay=0.01)
        invoker = ModelInvoker(
            provider,
            {
                Tier.LIGHT: TierConfig(model="light-m", max_concurrency=3),
                Tier.HEAVY: TierConfig(model="heavy-m", max_concurrency=1),
            },
            BUDGETS,
        )

        async def run_all():
            light = [ReviewUnit(f"light:{i}", Tier.LIGHT, "light-m", (), "p", 1) for i in range(4)]
            heavy = [unit(f"heavy:f{i}.py:0") for i in range(4)]
            jobs = [invoker.invoke(u, Tier.LIGHT, PROMPT) for u in light]
            jobs += [invoker.invoke(u, Tier.HEAVY, PROMPT) for u in heavy]
            return await asyncio.gather(*jobs)

        results = asyncio.run(run_all())
        assert all(r.succeeded for r in results)
        assert invoker.pool(Tier.LIGHT).peak_in_flight == 3
        assert invoker.pool(Tier.HEAVY).peak_in_flight == 1
        assert ("light-m", 100) in provider.calls
        assert ("heavy-m", 200) in provider.calls


class TestLimiter:
    def test_spaces_consecutive_starts(self):
        sleep = RecordingSleep()
        limiter = FixedDelayLimiter(0.5, sleep=sleep)

        async def twice():
            await limiter.acquire()
            await limiter.acquire()

        asyncio.run(twice())
        assert len(sleep.waits) == 1
        assert 0.4 < sleep.waits[0] <= 0.5

    def test_zero_interval_never_waits(self):
        sleep = RecordingSleep()
        limiter = FixedDelayLimiter(0, sleep=sleep)
        asyncio.run(limiter.acquire())
        assert sleep.waits == []


class TestTruncationWarnings:
    def test_truncated_segment_surfaces_warning(self):
        segment = UnitSegment("big.py", "modified", (), truncated=True, truncated_after=42)
        result = asyncio.run(pool(ScriptedProvider(["[]"])).submit(unit(segments=(segment,)), PROMPT))
        assert result.succeeded
        assert len(result.warnings) == 1
        assert result.warnings[0].path == "big.py"
        assert "42" in str(result.warnings[0])
