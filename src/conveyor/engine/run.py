"""Run and step result records."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from conveyor.engine.errors import ConveyorError


class RunStatus(str, enum.Enum):
    """Possible statuses for a workflow run."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class StepStatus(str, enum.Enum):
    """Possible statuses for a step result."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_RUN_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.FAILED})


@dataclass(frozen=True)
class StepError:
    """Kind and message of a recorded failure."""

    kind: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_exception(cls, exc: ConveyorError) -> StepError:
        return cls(kind=exc.kind, message=exc.message, details=dict(exc.details))

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "details": self.details}


@dataclass(frozen=True)
class StepResult:
    """Result of one step attempt.

    ``final`` is False for failed attempts that were followed by a retry.
    """

    step_id: str
    status: StepStatus
    attempt_count: int
    duration_ms: int
    tool: str = ""
    output: Any = None
    error: StepError | None = None
    final: bool = True
    started_at: datetime | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == StepStatus.SUCCEEDED

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "tool": self.tool,
            "status": self.status.value,
            "attempt_count": self.attempt_count,
            "duration_ms": self.duration_ms,
            "output": self.output,
            "error": self.error.to_dict() if self.error else None,
            "final": self.final,
            "started_at": self.started_at.isoformat() if self.started_at else None,
        }


class RunFinalizedError(RuntimeError):
    """Raised when mutating a run that already reached a terminal status."""


@dataclass
class Run:
    """A single execution instance of a workflow.

    Mutated only by the runner that owns it.
    """

    run_id: str
    workflow_id: str
    input: dict[str, Any]
    workflow_name: str = ""
    status: RunStatus = RunStatus.PENDING
    outputs: dict[str, Any] = field(default_factory=dict)
    log: list[StepResult] = field(default_factory=list)
    started_at: datetime | None = None
    ended_at: datetime | None = None
    failed_step_id: str | None = None
    error: StepError | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES

    def _check_open(self) -> None:
        if self.is_terminal:
            raise RunFinalizedError(
                f"Run {self.run_id} is {self.status.value} and can no longer change"
            )

    def start(self) -> None:
        self._check_open()
        self.status = RunStatus.RUNNING
        self.started_at = datetime.now(timezone.utc)

    def append(self, result: StepResult) -> None:
        """Append a step result; succeeded final results also land in ``outputs``."""
        self._check_open()
        self.log.append(result)
        if result.final and result.succeeded:
            self.outputs[result.step_id] = result.output

    def finalize(
        self,
        status: RunStatus,
        failed_step_id: str | None = None,
        error: StepError | None = None,
    ) -> None:
        self._check_open()
        if status not in TERMINAL_RUN_STATUSES:
            raise ValueError(f"Cannot finalize run with status {status.value}")
        self.status = status
        self.failed_step_id = failed_step_id
        self.error = error
        self.ended_at = datetime.now(timezone.utc)

    def final_results(self) -> list[StepResult]:
        """The terminal result of each step that ran, in execution order."""
        return [r for r in self.log if r.final]

    def result_for(self, step_id: str) -> StepResult | None:
        for result in reversed(self.log):
            if result.step_id == step_id and result.final:
                return result
        return None

    @property
    def duration_ms(self) -> int | None:
        if self.started_at is None or self.ended_at is None:
            return None
        return int((self.ended_at - self.started_at).total_seconds() * 1000)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "workflow_id": self.workflow_id,
            "workflow_name": self.workflow_name,
            "status": self.status.value,
            "input": self.input,
            "outputs": self.outputs,
            "log": [r.to_dict() for r in self.log],
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "duration_ms": self.duration_ms,
            "failed_step_id": self.failed_step_id,
            "error": self.error.to_dict() if self.error else None,
        }
