"""Persistence hooks for runs.

The runner calls a ``RunRecorder`` when a run is created, after every step
log append and once the run is finalized. Recorders observe; they never
influence execution.
"""

from __future__ import annotations

import json
import logging
from collections import OrderedDict, deque
from datetime import datetime, timezone
from typing import Any, Protocol

from conveyor.engine.run import Run, RunStatus, StepResult

logger = logging.getLogger(__name__)


class RunRecorder(Protocol):
    async def run_created(self, run: Run) -> None: ...

    async def step_appended(self, run: Run, result: StepResult) -> None: ...

    async def run_finalized(self, run: Run) -> None: ...


class MemoryRecorder:
    """Keeps recent runs keyed by run id. Used by the API and tests.

    Holds at most *max_runs*; once over the limit the oldest finished runs are
    dropped. Runs still in flight are never evicted.
    """

    def __init__(self, max_runs: int = 1000, max_calls: int = 10_000) -> None:
        self.max_runs = max_runs
        self.runs: OrderedDict[str, Run] = OrderedDict()
        self.calls: deque[tuple[str, str]] = deque(maxlen=max_calls)

    def _evict(self) -> None:
        excess = len(self.runs) - self.max_runs
        if excess <= 0:
            return
        stale = [run_id for run_id, run in self.runs.items() if run.is_terminal][:excess]
        for run_id in stale:
            del self.runs[run_id]

    async def run_created(self, run: Run) -> None:
        self.runs[run.run_id] = run
        self.calls.append(("run_created", run.run_id))
        self._evict()

    async def step_appended(self, run: Run, result: StepResult) -> None:
        self.calls.append(("step_appended", result.step_id))

    async def run_finalized(self, run: Run) -> None:
        self.calls.append(("run_finalized", run.run_id))
        self._evict()

    def get(self, run_id: str) -> Run | None:
        return self.runs.get(run_id)


def _jsonable(value: Any) -> Any:
    """Coerce *value* into something a JSON column accepts."""
    return json.loads(json.dumps(value, default=str))


class SqlRecorder:
    """Writes runs and step logs through SQLAlchemy async sessions.

    Also maintains per-workflow execution / success / failure counters.
    """

    def __init__(self, session_factory: Any = None) -> None:
        if session_factory is None:
            from conveyor.models.db import async_session

            session_factory = async_session
        self._session_factory = session_factory

    async def run_created(self, run: Run) -> None:
        from conveyor.models.db import RunRecord, WorkflowStats

        async with self._session_factory() as session:
            session.add(
                RunRecord(
                    id=run.run_id,
                    workflow_id=run.workflow_id,
                    workflow_name=run.workflow_name,
                    status=run.status,
                    input_data=_jsonable(run.input),
                    started_at=run.started_at,
                )
            )
            stats = await session.get(WorkflowStats, run.workflow_id)
            if stats is None:
                stats = WorkflowStats(
                    workflow_id=run.workflow_id,
                    execution_count=0,
                    success_count=0,
                    failure_count=0,
                )
                session.add(stats)
            stats.execution_count += 1
            stats.last_run_at = datetime.now(timezone.utc)
            await session.commit()

    async def step_appended(self, run: Run, result: StepResult) -> None:
        from conveyor.models.db import StepRecord

        async with self._session_factory() as session:
            session.add(
                StepRecord(
                    run_id=run.run_id,
                    seq=len(run.log) - 1,
                    step_id=result.step_id,
                    tool=result.tool,
                    status=result.status,
                    attempt=result.attempt_count,
                    final=result.final,
                    duration_ms=result.duration_ms,
                    output_data=_jsonable(result.output) if result.succeeded else None,
                    error_kind=result.error.kind if result.error else None,
                    error=result.error.message if result.error else None,
                    started_at=result.started_at,
                )
            )
            await session.commit()

    async def run_finalized(self, run: Run) -> None:
        from conveyor.models.db import RunRecord, WorkflowStats

        async with self._session_factory() as session:
            record = await session.get(RunRecord, run.run_id)
            if record is None:
                logger.warning("Run %s finalized but was never recorded", run.run_id)
                return
            record.status = run.status
            record.output_data = _jsonable(run.outputs)
            record.failed_step_id = run.failed_step_id
            record.error_kind = run.error.kind if run.error else None
            record.error = run.error.message if run.error else None
            record.started_at = run.started_at
            record.completed_at = run.ended_at

            stats = await session.get(WorkflowStats, run.workflow_id)
            if stats is not None:
                if run.status == RunStatus.COMPLETED:
                    stats.success_count += 1
                else:
                    stats.failure_count += 1
            await session.commit()


class MultiRecorder:
    """Forwards every hook to several recorders; one failing does not stop the others."""

    def __init__(self, *recorders: RunRecorder) -> None:
        self.recorders = list(recorders)

    async def _each(self, hook: str, *args: Any) -> None:
        for recorder in self.recorders:
            try:
                await getattr(recorder, hook)(*args)
            except Exception:
                logger.warning(
                    "%s.%s failed", type(recorder).__name__, hook, exc_info=True
                )

    async def run_created(self, run: Run) -> None:
        await self._each("run_created", run)

    async def step_appended(self, run: Run, result: StepResult) -> None:
        await self._each("step_appended", run, result)

    async def run_finalized(self, run: Run) -> None:
        await self._each("run_finalized", run)
