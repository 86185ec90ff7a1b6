"""Workflow runner.

Walks a validated workflow's steps in declared order. For each step it
evaluates the optional ``when`` condition, resolves templates against the
run input and earlier outputs, hands the dispatch to the policy engine and
appends the result to the run log. A halting failure finalizes the run as
failed immediately; later steps never run.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable

from conveyor.engine.builtins import evaluate_condition
from conveyor.engine.dag import Step, Workflow, ensure_valid
from conveyor.engine.errors import ConveyorError, RunCancelledError
from conveyor.engine.events import EventBus
from conveyor.engine.policy import Disposition, PolicyEngine, PolicyOutcome
from conveyor.engine.recorder import RunRecorder
from conveyor.engine.run import Run, RunStatus, StepError, StepResult, StepStatus
from conveyor.engine.templates import build_namespace, resolve
from conveyor.engine.tools import ToolRegistry

logger = logging.getLogger(__name__)


class RunHandle:
    """Handle on a run executing in the background."""

    def __init__(self, run: Run, task: asyncio.Task) -> None:
        self._run = run
        self._task = task

    @property
    def run(self) -> Run:
        return self._run

    @property
    def run_id(self) -> str:
        return self._run.run_id

    async def wait(self) -> Run:
        """Wait for the run to reach a terminal status and return it."""
        await asyncio.wait([self._task])
        return self._run

    def cancel(self) -> bool:
        return self._task.cancel()

    def done(self) -> bool:
        return self._task.done()

    def add_done_callback(self, fn: Callable[[RunHandle], Any]) -> None:
        """Call *fn* with this handle once the run's task has finished."""
        self._task.add_done_callback(lambda _task: fn(self))


class WorkflowRunner:
    """Executes workflows against a tool registry."""

    def __init__(
        self,
        registry: ToolRegistry,
        recorder: RunRecorder | None = None,
        settings: Any = None,
        event_bus: EventBus | None = None,
        policy: PolicyEngine | None = None,
    ) -> None:
        if settings is None:
            from conveyor.config import settings as default_settings

            settings = default_settings
        self.registry = registry
        self.recorder = recorder
        self.event_bus = event_bus
        self.policy = policy or PolicyEngine.from_settings(settings)
        self._tasks: set[asyncio.Task] = set()

    async def run(
        self,
        workflow: Workflow,
        input: dict[str, Any] | None = None,
        run_id: str | None = None,
    ) -> RunHandle:
        """Validate *workflow* and start executing it in the background.

        Raises ``InvalidWorkflowError`` before any run is created.
        """
        ensure_valid(workflow)
        if input is not None and not isinstance(input, dict):
            raise TypeError("Run input must be a mapping")

        run = Run(
            run_id=run_id or str(uuid.uuid4()),
            workflow_id=workflow.id,
            workflow_name=workflow.name,
            input={**workflow.variables, **(input or {})},
        )
        await self._notify("run_created", run)

        task = asyncio.create_task(self._execute(run, workflow), name=f"run-{run.run_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        # Let the task enter _execute so a cancel always lands inside it
        try:
            await asyncio.sleep(0)
        except asyncio.CancelledError:
            task.cancel()
            raise
        return RunHandle(run, task)

    async def execute(self, workflow: Workflow, input: dict[str, Any] | None = None) -> Run:
        """Run *workflow* to completion. Cancelling the caller cancels the run."""
        handle = await self.run(workflow, input)
        try:
            return await handle.wait()
        except asyncio.CancelledError:
            handle.cancel()
            await asyncio.wait([handle._task])
            raise

    async def _execute(self, run: Run, workflow: Workflow) -> Run:
        failed_step_id: str | None = None
        error: StepError | None = None
        current: Step | None = None
        step_t0 = time.monotonic()
        try:
            run.start()
            logger.info(
                "Run %s started (workflow=%s, steps=%d)",
                run.run_id, workflow.name, len(workflow.steps),
            )
            for step in workflow.steps:
                current = step
                step_t0 = time.monotonic()
                outcome = await self._run_step(run, step)
                run.append(outcome.result)
                current = None
                await self._notify("step_appended", run, outcome.result)
                if outcome.disposition == Disposition.HALT:
                    failed_step_id = step.id
                    error = outcome.result.error
                    break
        except asyncio.CancelledError:
            step_id = current.id if current is not None else ""
            cancel_error = StepError.from_exception(RunCancelledError(step_id))
            if current is not None:
                attempts = sum(1 for r in run.log if r.step_id == current.id and not r.final)
                result = StepResult(
                    step_id=current.id,
                    tool=current.tool,
                    status=StepStatus.FAILED,
                    attempt_count=attempts + 1,
                    duration_ms=int((time.monotonic() - step_t0) * 1000),
                    error=cancel_error,
                )
                run.append(result)
                await self._notify("step_appended", run, result)
            run.finalize(RunStatus.FAILED, failed_step_id=step_id or None, error=cancel_error)
            logger.warning("Run %s cancelled during step '%s'", run.run_id, step_id)
            await self._notify("run_finalized", run)
            raise

        if error is not None:
            run.finalize(RunStatus.FAILED, failed_step_id=failed_step_id, error=error)
            logger.error(
                "Run %s failed at step '%s': [%s] %s",
                run.run_id, failed_step_id, error.kind, error.message,
            )
        else:
            run.finalize(RunStatus.COMPLETED)
            logger.info("Run %s completed in %sms", run.run_id, run.duration_ms)
        await self._notify("run_finalized", run)
        return run

    async def _run_step(self, run: Run, step: Step) -> PolicyOutcome:
        namespace = build_namespace(run.input, run.outputs)
        started_at = datetime.now(timezone.utc)
        t0 = time.monotonic()
        try:
            if step.when is not None and not self._condition_holds(step.when, namespace):
                logger.info("Step '%s' skipped (condition is false)", step.id)
                result = StepResult(
                    step_id=step.id,
                    tool=step.tool,
                    status=StepStatus.SKIPPED,
                    attempt_count=1,
                    duration_ms=int((time.monotonic() - t0) * 1000),
                    started_at=started_at,
                )
                return PolicyOutcome(result, Disposition.CONTINUE)
            resolved_input = resolve(step.input, namespace)
        except ConveyorError as e:
            result = StepResult(
                step_id=step.id,
                tool=step.tool,
                status=StepStatus.FAILED,
                attempt_count=1,
                duration_ms=int((time.monotonic() - t0) * 1000),
                error=StepError.from_exception(e),
                started_at=started_at,
            )
            return PolicyOutcome(result, Disposition.HALT, e)

        async def record_attempt(attempt: StepResult) -> None:
            run.append(attempt)
            await self._notify("step_appended", run, attempt)

        logger.debug("Step '%s' dispatching to tool '%s'", step.id, step.tool)
        return await self.policy.run_step(
            step,
            lambda: self.registry.dispatch(step.tool, resolved_input),
            on_attempt_failed=record_attempt,
        )

    @staticmethod
    def _condition_holds(when: Any, namespace: dict[str, Any]) -> bool:
        value = resolve(when, namespace)
        if isinstance(value, str):
            return bool(evaluate_condition(value, namespace))
        return bool(value)

    async def _notify(self, hook: str, run: Run, result: StepResult | None = None) -> None:
        """Publish a lifecycle event and forward it to the recorder."""
        if self.event_bus is not None:
            data: dict[str, Any] = {"run_id": run.run_id, "status": run.status.value}
            if result is not None:
                data["step"] = result.to_dict()
            self.event_bus.publish(hook.replace("_", ".", 1), data)

        if self.recorder is None:
            return
        args = (run, result) if result is not None else (run,)
        try:
            await getattr(self.recorder, hook)(*args)
        except Exception:
            logger.warning("Recorder %s failed for run %s", hook, run.run_id, exc_info=True)
