"""Workflow definitions, YAML parsing and static validation."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from conveyor.engine.errors import InvalidWorkflowError
from conveyor.engine.templates import find_references

ON_ERROR_VALUES = frozenset({"stop", "continue", "retry"})
BACKOFF_VALUES = frozenset({"fixed", "linear", "exponential"})

# Template root that addresses the run input; cannot be used as a step id.
INPUT_NAMESPACE = "input"


@dataclass(frozen=True)
class RetryConfig:
    """Retry configuration for a step."""

    max_attempts: int = 3
    delay_ms: int = 1000
    backoff: str = "fixed"  # "fixed" | "linear" | "exponential"
    continue_on_exhaust: bool = False


@dataclass(frozen=True)
class Step:
    """Definition of a single workflow step."""

    id: str
    tool: str
    input: Any = None
    on_error: str = "stop"  # "stop" | "continue" | "retry"
    retry: RetryConfig | None = None
    timeout_ms: int | None = None
    stop_on_timeout: bool = False
    when: Any = None
    name: str = ""

    @property
    def effective_retry(self) -> RetryConfig:
        """Retry settings that apply when ``on_error == "retry"``."""
        return self.retry or RetryConfig()

    @property
    def max_attempts(self) -> int:
        if self.on_error != "retry":
            return 1
        return max(1, self.effective_retry.max_attempts)


@dataclass(frozen=True)
class Workflow:
    """Immutable workflow definition."""

    id: str
    name: str
    steps: tuple[Step, ...]
    description: str = ""
    variables: dict[str, Any] = field(default_factory=dict)

    def get_step(self, step_id: str) -> Step:
        """Get a step by its ID."""
        for step in self.steps:
            if step.id == step_id:
                return step
        raise KeyError(f"Step '{step_id}' not found in workflow '{self.name}'")

    @property
    def step_ids(self) -> list[str]:
        return [s.id for s in self.steps]


def _resolve_env_vars(value: Any) -> Any:
    """Replace ${ENV_VAR} patterns in string variables with environment values."""
    if not isinstance(value, str):
        return value

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))

    return re.sub(r"\$\{(\w+)\}", _replace, value)


def _parse_retry(data: Any, errors: list[str], step_label: str) -> RetryConfig | None:
    """Parse retry configuration; problems are collected into *errors*."""
    if data is None:
        return None
    if isinstance(data, int) and not isinstance(data, bool):
        data = {"max_attempts": data}
    if not isinstance(data, dict):
        errors.append(f"{step_label}: 'retry' must be a mapping")
        return None

    max_attempts = data.get("max_attempts", 3)
    delay_ms = data.get("delay_ms", 1000)
    backoff = data.get("backoff", "fixed")

    if not isinstance(max_attempts, int) or isinstance(max_attempts, bool) or max_attempts < 1:
        errors.append(f"{step_label}: retry.max_attempts must be an integer >= 1")
        max_attempts = 1
    if not isinstance(delay_ms, (int, float)) or isinstance(delay_ms, bool) or delay_ms < 0:
        errors.append(f"{step_label}: retry.delay_ms must be a number >= 0")
        delay_ms = 0
    if backoff not in BACKOFF_VALUES:
        errors.append(
            f"{step_label}: retry.backoff must be one of {sorted(BACKOFF_VALUES)}"
        )
        backoff = "fixed"

    return RetryConfig(
        max_attempts=max_attempts,
        delay_ms=int(delay_ms),
        backoff=backoff,
        continue_on_exhaust=bool(data.get("continue_on_exhaust", False)),
    )


def _parse_step(data: Any, index: int, errors: list[str]) -> Step | None:
    """Parse a single step definition."""
    if not isinstance(data, dict):
        errors.append(f"Step #{index + 1} must be a mapping")
        return None

    step_id = data.get("id")
    label = f"Step '{step_id}'" if step_id else f"Step #{index + 1}"
    if not isinstance(step_id, str) or not step_id:
        errors.append(f"{label}: 'id' is required")
        return None

    tool = data.get("tool")
    if not isinstance(tool, str) or not tool:
        errors.append(f"{label}: 'tool' is required")
        tool = ""

    on_error = data.get("on_error", "stop")
    if on_error not in ON_ERROR_VALUES:
        errors.append(f"{label}: on_error must be one of {sorted(ON_ERROR_VALUES)}")
        on_error = "stop"

    timeout_ms = data.get("timeout_ms")
    if timeout_ms is not None and (
        not isinstance(timeout_ms, int) or isinstance(timeout_ms, bool) or timeout_ms <= 0
    ):
        errors.append(f"{label}: timeout_ms must be a positive integer")
        timeout_ms = None

    return Step(
        id=step_id,
        tool=tool,
        input=data.get("input", {}),
        on_error=on_error,
        retry=_parse_retry(data.get("retry"), errors, label),
        timeout_ms=timeout_ms,
        stop_on_timeout=bool(data.get("stop_on_timeout", False)),
        when=data.get("when"),
        name=data.get("name", ""),
    )


def parse_dict(data: Any) -> Workflow:
    """Build a Workflow from an already-decoded mapping.

    Raises ``InvalidWorkflowError`` on structural problems. Reference checks
    are done separately by ``validate``.
    """
    if not isinstance(data, dict):
        raise InvalidWorkflowError(["Workflow must be a mapping"])

    errors: list[str] = []
    raw_steps = data.get("steps") or []
    if not isinstance(raw_steps, list):
        raise InvalidWorkflowError(["'steps' must be a list"])

    steps = [_parse_step(s, i, errors) for i, s in enumerate(raw_steps)]

    variables = data.get("variables") or {}
    if not isinstance(variables, dict):
        errors.append("'variables' must be a mapping")
        variables = {}

    if errors:
        raise InvalidWorkflowError(errors)

    name = data.get("name", "")
    return Workflow(
        id=str(data.get("id") or name),
        name=name,
        description=data.get("description", ""),
        variables={k: _resolve_env_vars(v) for k, v in variables.items()},
        steps=tuple(s for s in steps if s is not None),
    )


def parse_yaml_string(yaml_content: str) -> Workflow:
    """Parse a workflow from a YAML string (for API submissions)."""
    try:
        data = yaml.safe_load(yaml_content)
    except yaml.YAMLError as e:
        raise InvalidWorkflowError([f"Invalid YAML: {e}"]) from e
    return parse_dict(data)


def parse(yaml_path: str) -> Workflow:
    """Parse a workflow YAML file into a Workflow."""
    path = Path(yaml_path)
    with path.open() as f:
        return parse_yaml_string(f.read())


def validate(workflow: Workflow) -> list[str]:
    """Validate a workflow definition. Returns list of error messages (empty = valid).

    A single pass over the steps in declared order: each step may reference
    ``input`` or steps that appear strictly earlier.
    """
    errors: list[str] = []

    if not workflow.name:
        errors.append("Workflow name is required")

    if not workflow.steps:
        errors.append("Workflow must have at least one step")

    all_ids = {s.id for s in workflow.steps}
    seen: set[str] = set()
    for step in workflow.steps:
        if step.id == INPUT_NAMESPACE:
            errors.append(f"Step ID '{INPUT_NAMESPACE}' is reserved")
        if step.id in seen:
            errors.append(f"Duplicate step ID: '{step.id}'")

        refs = find_references(step.input) + find_references(step.when)
        for path in refs:
            root = path.split(".")[0]
            if root == INPUT_NAMESPACE or root in seen:
                continue
            if root == step.id:
                errors.append(f"Step '{step.id}' references itself via '{{{{{path}}}}}'")
            elif root in all_ids:
                errors.append(
                    f"Step '{step.id}' references later step '{root}' via '{{{{{path}}}}}'"
                )
            else:
                errors.append(
                    f"Step '{step.id}' references unknown step '{root}' via '{{{{{path}}}}}'"
                )
        seen.add(step.id)

    return errors


def ensure_valid(workflow: Workflow) -> None:
    """Raise ``InvalidWorkflowError`` if ``validate`` reports problems."""
    errors = validate(workflow)
    if errors:
        raise InvalidWorkflowError(errors)
