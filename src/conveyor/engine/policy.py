"""Retry and error policy for a single step.

Each attempt runs under ``asyncio.wait_for`` with the step's timeout. What
happens after a failure depends on the error class and the step's
``on_error``:

- stop-class errors halt the run whatever ``on_error`` says,
- ``retry`` tries again while attempts remain and the error is retryable,
- ``continue`` records the failure and lets the run proceed,
- ``stop`` records the failure and halts the run.

Quota vetoes do not consume an attempt. The running attempt's deadline is
published through ``attempt_budget`` for tools that time out on their own.
"""

from __future__ import annotations

import asyncio
import contextvars
import enum
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from conveyor.engine.dag import RetryConfig, Step
from conveyor.engine.errors import (
    ConveyorError,
    ExecutionTimeoutError,
    QuotaExceededError,
    as_conveyor_error,
)
from conveyor.engine.run import StepError, StepResult, StepStatus

logger = logging.getLogger(__name__)


@dataclass
class AttemptBudget:
    """Wall-clock budget of the attempt currently running in this context.

    Tools that enforce their own timeout (the code executor) clamp it to the
    remaining budget and leave partial output here, so the timeout error
    carries it even when the policy's own timer fires first.
    """

    timeout_ms: int
    deadline: float
    stdout: str = ""
    stderr: str = ""

    def remaining_ms(self) -> int:
        return max(0, int((self.deadline - time.monotonic()) * 1000))


attempt_budget: contextvars.ContextVar[AttemptBudget | None] = contextvars.ContextVar(
    "attempt_budget", default=None
)


class Disposition(str, enum.Enum):
    """What the runner does after a step's final result."""

    CONTINUE = "continue"
    HALT = "halt"


@dataclass(frozen=True)
class PolicyOutcome:
    result: StepResult
    disposition: Disposition
    error: ConveyorError | None = None

    @property
    def halted(self) -> bool:
        return self.disposition == Disposition.HALT


def backoff_delay_ms(attempt: int, retry: RetryConfig, cap_ms: int = 60000) -> int:
    """Delay before retrying after failed attempt number *attempt* (1-based)."""
    if retry.backoff == "exponential":
        delay = retry.delay_ms * 2 ** (attempt - 1)
    elif retry.backoff == "linear":
        delay = retry.delay_ms * attempt
    else:
        delay = retry.delay_ms
    return int(min(delay, cap_ms))


def is_stop_class(step: Step, error: ConveyorError) -> bool:
    if isinstance(error, ExecutionTimeoutError):
        return step.stop_on_timeout
    return error.stop_class


class PolicyEngine:
    """Runs one step's attempts and decides the run's next move."""

    def __init__(
        self,
        default_timeout_ms: int = 30000,
        backoff_cap_ms: int = 60000,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.default_timeout_ms = default_timeout_ms
        self.backoff_cap_ms = backoff_cap_ms
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Any) -> PolicyEngine:
        return cls(
            default_timeout_ms=settings.default_timeout_ms,
            backoff_cap_ms=settings.retry_backoff_cap_ms,
        )

    async def run_step(
        self,
        step: Step,
        call: Callable[[], Awaitable[Any]],
        on_attempt_failed: Callable[[StepResult], Awaitable[None]] | None = None,
    ) -> PolicyOutcome:
        """Attempt *call* under the step's policy and return the final result.

        Failed attempts that will be retried are passed to
        *on_attempt_failed* (with ``final=False``) before the backoff sleep.
        Cancellation propagates to the caller.
        """
        timeout_ms = step.timeout_ms or self.default_timeout_ms
        max_attempts = step.max_attempts
        retry = step.effective_retry
        started_at = datetime.now(timezone.utc)
        t0 = time.monotonic()
        consumed = 0

        while True:
            attempt_t0 = time.monotonic()
            consumed += 1
            budget = AttemptBudget(timeout_ms, attempt_t0 + timeout_ms / 1000.0)
            token = attempt_budget.set(budget)
            try:
                output = await asyncio.wait_for(call(), timeout=timeout_ms / 1000.0)
            except asyncio.TimeoutError:
                error: ConveyorError = ExecutionTimeoutError(timeout_ms, budget.stdout, budget.stderr)
            except ConveyorError as e:
                error = e
            except Exception as e:
                error = as_conveyor_error(e)
            else:
                result = StepResult(
                    step_id=step.id,
                    tool=step.tool,
                    status=StepStatus.SUCCEEDED,
                    attempt_count=consumed,
                    duration_ms=_elapsed_ms(t0),
                    output=output,
                    started_at=started_at,
                )
                return PolicyOutcome(result, Disposition.CONTINUE)
            finally:
                attempt_budget.reset(token)

            if isinstance(error, QuotaExceededError):
                consumed -= 1

            stop = is_stop_class(step, error)
            if (
                step.on_error == "retry"
                and not stop
                and error.retryable
                and consumed < max_attempts
            ):
                delay_ms = backoff_delay_ms(consumed, retry, self.backoff_cap_ms)
                logger.warning(
                    "Step '%s' attempt %d/%d failed (%s), retrying in %dms",
                    step.id, consumed, max_attempts, error.kind, delay_ms,
                )
                if on_attempt_failed is not None:
                    await on_attempt_failed(
                        StepResult(
                            step_id=step.id,
                            tool=step.tool,
                            status=StepStatus.FAILED,
                            attempt_count=consumed,
                            duration_ms=_elapsed_ms(attempt_t0),
                            error=StepError.from_exception(error),
                            final=False,
                            started_at=started_at,
                        )
                    )
                await self._sleep(delay_ms / 1000.0)
                continue

            result = StepResult(
                step_id=step.id,
                tool=step.tool,
                status=StepStatus.FAILED,
                attempt_count=max(consumed, 1),
                duration_ms=_elapsed_ms(t0),
                error=StepError.from_exception(error),
                started_at=started_at,
            )
            disposition = self._disposition(step, retry, stop)
            log = logger.error if disposition == Disposition.HALT else logger.warning
            log(
                "Step '%s' failed after %d attempt(s): [%s] %s",
                step.id, result.attempt_count, error.kind, error.message,
            )
            return PolicyOutcome(result, disposition, error)

    @staticmethod
    def _disposition(step: Step, retry: RetryConfig, stop: bool) -> Disposition:
        if stop:
            return Disposition.HALT
        if step.on_error == "continue":
            return Disposition.CONTINUE
        if step.on_error == "retry" and retry.continue_on_exhaust:
            return Disposition.CONTINUE
        return Disposition.HALT


def _elapsed_ms(since: float) -> int:
    return int((time.monotonic() - since) * 1000)
