"""Tests for the retry/error policy engine."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from conveyor.engine.dag import RetryConfig, Step
from conveyor.engine.errors import (
    AccessDeniedError,
    ExecutionTimeoutError,
    QuotaExceededError,
    ToolError,
    UnknownToolError,
)
from conveyor.engine.policy import Disposition, PolicyEngine, attempt_budget, backoff_delay_ms
from conveyor.engine.run import StepStatus


def _failing(n_failures: int, exc_factory=lambda: ToolError("flaky"), result="ok"):
    """Return a call that fails *n_failures* times, then returns *result*."""
    calls = {"n": 0}

    async def call():
        calls["n"] += 1
        if calls["n"] <= n_failures:
            raise exc_factory()
        return result

    call.calls = calls
    return call


@pytest.fixture
def engine():
    return PolicyEngine(default_timeout_ms=2000, backoff_cap_ms=60000, sleep=AsyncMock())


class TestBackoff:
    def test_fixed(self):
        retry = RetryConfig(delay_ms=100, backoff="fixed")
        assert [backoff_delay_ms(n, retry) for n in (1, 2, 3)] == [100, 100, 100]

    def test_linear(self):
        retry = RetryConfig(delay_ms=100, backoff="linear")
        assert [backoff_delay_ms(n, retry) for n in (1, 2, 3)] == [100, 200, 300]

    def test_exponential(self):
        retry = RetryConfig(delay_ms=100, backoff="exponential")
        assert [backoff_delay_ms(n, retry) for n in (1, 2, 3, 4)] == [100, 200, 400, 800]

    def test_capped(self):
        retry = RetryConfig(delay_ms=1000, backoff="exponential")
        assert backoff_delay_ms(10, retry, cap_ms=5000) == 5000


class TestSuccess:
    @pytest.mark.asyncio
    async def test_first_attempt(self, engine):
        outcome = await engine.run_step(Step(id="s", tool="t"), _failing(0))
        assert outcome.result.status == StepStatus.SUCCEEDED
        assert outcome.result.output == "ok"
        assert outcome.result.attempt_count == 1
        assert outcome.result.final is True
        assert outcome.disposition == Disposition.CONTINUE

    @pytest.mark.asyncio
    async def test_success_after_retries(self, engine):
        step = Step(id="s", tool="t", on_error="retry", retry=RetryConfig(max_attempts=3, delay_ms=10))
        failed_attempts = []

        async def record(result):
            failed_attempts.append(result)

        outcome = await engine.run_step(step, _failing(2), on_attempt_failed=record)
        assert outcome.result.succeeded
        assert outcome.result.attempt_count == 3
        assert [r.attempt_count for r in failed_attempts] == [1, 2]
        assert all(r.final is False and r.status == StepStatus.FAILED for r in failed_attempts)
        assert engine._sleep.await_count == 2


class TestRetryExhaustion:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("max_attempts", [1, 2, 5])
    async def test_attempt_count_equals_max_attempts(self, engine, max_attempts):
        """Every attempt failing with on_error=retry records exactly max_attempts."""
        step = Step(id="s", tool="t", on_error="retry",
                    retry=RetryConfig(max_attempts=max_attempts, delay_ms=1))
        call = _failing(100)
        outcome = await engine.run_step(step, call)
        assert outcome.result.status == StepStatus.FAILED
        assert outcome.result.attempt_count == max_attempts
        assert call.calls["n"] == max_attempts
        assert outcome.disposition == Disposition.HALT

    @pytest.mark.asyncio
    async def test_continue_on_exhaust(self, engine):
        step = Step(id="s", tool="t", on_error="retry",
                    retry=RetryConfig(max_attempts=2, delay_ms=1, continue_on_exhaust=True))
        outcome = await engine.run_step(step, _failing(100))
        assert outcome.result.attempt_count == 2
        assert outcome.disposition == Disposition.CONTINUE

    @pytest.mark.asyncio
    async def test_backoff_delays_passed_to_sleep(self, engine):
        step = Step(id="s", tool="t", on_error="retry",
                    retry=RetryConfig(max_attempts=4, delay_ms=100, backoff="linear"))
        await engine.run_step(step, _failing(100))
        delays = [c.args[0] for c in engine._sleep.await_args_list]
        assert delays == [0.1, 0.2, 0.3]


class TestOnError:
    @pytest.mark.asyncio
    async def test_stop_halts(self, engine):
        outcome = await engine.run_step(Step(id="s", tool="t"), _failing(1))
        assert outcome.result.status == StepStatus.FAILED
        assert outcome.result.error.kind == "tool_error"
        assert outcome.disposition == Disposition.HALT

    @pytest.mark.asyncio
    async def test_continue_proceeds(self, engine):
        outcome = await engine.run_step(Step(id="s", tool="t", on_error="continue"), _failing(1))
        assert outcome.result.status == StepStatus.FAILED
        assert outcome.result.attempt_count == 1
        assert outcome.disposition == Disposition.CONTINUE

    @pytest.mark.asyncio
    @pytest.mark.parametrize("exc_factory", [
        lambda: UnknownToolError("ghost"),
        lambda: AccessDeniedError("/etc/passwd"),
    ])
    async def test_stop_class_overrides_continue_and_retry(self, engine, exc_factory):
        for on_error in ("continue", "retry"):
            step = Step(id="s", tool="t", on_error=on_error, retry=RetryConfig(max_attempts=5))
            call = _failing(100, exc_factory)
            outcome = await engine.run_step(step, call)
            assert outcome.disposition == Disposition.HALT
            assert call.calls["n"] == 1

    @pytest.mark.asyncio
    async def test_plain_exception_wrapped(self, engine):
        outcome = await engine.run_step(Step(id="s", tool="t"), _failing(1, lambda: ValueError("bad")))
        assert outcome.result.error.kind == "tool_error"
        assert outcome.result.error.message == "bad"


class TestTimeout:
    @pytest.mark.asyncio
    async def test_attempt_timeout_consumes_attempt(self):
        engine = PolicyEngine(sleep=AsyncMock())
        step = Step(id="s", tool="t", timeout_ms=50, on_error="retry",
                    retry=RetryConfig(max_attempts=2, delay_ms=1))

        async def slow():
            await asyncio.sleep(5)

        outcome = await engine.run_step(step, slow)
        assert outcome.result.error.kind == "timeout"
        assert outcome.result.attempt_count == 2

    @pytest.mark.asyncio
    async def test_default_timeout_applies(self):
        engine = PolicyEngine(default_timeout_ms=50, sleep=AsyncMock())

        async def slow():
            await asyncio.sleep(5)

        outcome = await engine.run_step(Step(id="s", tool="t"), slow)
        assert outcome.result.error.kind == "timeout"
        assert outcome.result.error.details["timeout_ms"] == 50

    @pytest.mark.asyncio
    async def test_timeout_keeps_output_left_in_budget(self):
        engine = PolicyEngine(sleep=AsyncMock())
        seen = {}

        async def chatty():
            budget = attempt_budget.get()
            seen["remaining"] = budget.remaining_ms()
            budget.stdout = "so far"
            await asyncio.sleep(5)

        outcome = await engine.run_step(Step(id="s", tool="t", timeout_ms=100), chatty)
        assert outcome.result.error.kind == "timeout"
        assert outcome.result.error.details["stdout"] == "so far"
        assert 0 < seen["remaining"] <= 100
        assert attempt_budget.get() is None

    @pytest.mark.asyncio
    async def test_stop_on_timeout(self, engine):
        step = Step(id="s", tool="t", on_error="continue", stop_on_timeout=True)
        outcome = await engine.run_step(step, _failing(1, lambda: ExecutionTimeoutError(100)))
        assert outcome.disposition == Disposition.HALT

    @pytest.mark.asyncio
    async def test_timeout_retryable_by_default(self, engine):
        step = Step(id="s", tool="t", on_error="retry", retry=RetryConfig(max_attempts=3, delay_ms=1))
        outcome = await engine.run_step(step, _failing(1, lambda: ExecutionTimeoutError(100)))
        assert outcome.result.succeeded
        assert outcome.result.attempt_count == 2


class TestQuota:
    @pytest.mark.asyncio
    async def test_quota_veto_halts_without_consuming_attempt(self, engine):
        step = Step(id="s", tool="t", on_error="retry", retry=RetryConfig(max_attempts=3))
        call = _failing(100, lambda: QuotaExceededError("t", 1, 1))
        outcome = await engine.run_step(step, call)
        assert outcome.disposition == Disposition.HALT
        assert outcome.result.error.kind == "quota_exceeded"
        assert outcome.result.attempt_count == 1
        assert call.calls["n"] == 1


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancellation_propagates(self):
        engine = PolicyEngine(sleep=AsyncMock())
        started = asyncio.Event()

        async def slow():
            started.set()
            await asyncio.sleep(10)

        task = asyncio.create_task(engine.run_step(Step(id="s", tool="t", on_error="continue"), slow))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
