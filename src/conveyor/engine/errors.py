"""Error taxonomy for workflow execution.

Every failure the engine can record on a step carries a ``kind`` string plus
two flags consulted by the policy engine:

- ``retryable``: the step's retry policy may try again.
- ``stop_class``: the run halts regardless of the step's ``on_error``.
"""

from __future__ import annotations

from typing import Any


class ConveyorError(Exception):
    """Base class for all engine errors."""

    kind: str = "error"
    retryable: bool = False
    stop_class: bool = True

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class InvalidWorkflowError(ConveyorError):
    """Workflow definition failed static validation. Raised before a run exists."""

    kind = "invalid_workflow"

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("\n".join(f"Validation error: {e}" for e in errors))


class UnresolvedReferenceError(ConveyorError):
    """A template placeholder points at a missing step output or field."""

    kind = "unresolved_reference"

    def __init__(self, path: str, reason: str = ""):
        self.path = path
        message = f"Unresolved reference '{{{{{path}}}}}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, path=path)


class UnknownToolError(ConveyorError):
    """No handler is registered under the requested tool name."""

    kind = "unknown_tool"

    def __init__(self, tool_name: str):
        self.tool_name = tool_name
        super().__init__(f"Tool not found: {tool_name}", tool=tool_name)


class UnsupportedLanguageError(ConveyorError):
    """Code execution requested for a language with no configured interpreter."""

    kind = "unsupported_language"

    def __init__(self, language: str, supported: list[str] | None = None):
        self.language = language
        supported = sorted(supported or [])
        super().__init__(
            f"Unsupported language '{language}'. "
            f"Supported: {', '.join(supported) or 'none'}",
            language=language,
        )


class AccessDeniedError(ConveyorError):
    """A path resolved outside every allowed sandbox root."""

    kind = "access_denied"

    def __init__(self, path: str, resolved: str | None = None):
        self.path = path
        message = f"Access denied: '{path}' is outside the sandbox"
        if resolved:
            message = f"{message} (resolved: {resolved})"
        super().__init__(message, path=path)


class QuotaExceededError(ConveyorError):
    """The resource guard vetoed a dispatch. Never consumes a retry attempt."""

    kind = "quota_exceeded"

    def __init__(self, tool_name: str, used: int = 0, limit: int = 0):
        self.tool_name = tool_name
        super().__init__(
            f"Quota exceeded for tool '{tool_name}' ({used}/{limit})",
            tool=tool_name,
            used=used,
            limit=limit,
        )


class ToolError(ConveyorError):
    """Transient failure reported by a tool handler."""

    kind = "tool_error"
    retryable = True
    stop_class = False


class ExecutionTimeoutError(ToolError):
    """A step attempt or code execution exceeded its wall-clock budget."""

    kind = "timeout"

    def __init__(
        self,
        timeout_ms: int,
        stdout: str = "",
        stderr: str = "",
    ):
        self.timeout_ms = timeout_ms
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(
            f"Execution timed out after {timeout_ms}ms",
            timeout_ms=timeout_ms,
            stdout=stdout,
            stderr=stderr,
        )


class RunCancelledError(ConveyorError):
    """The surrounding run was cancelled while a step was in flight."""

    kind = "cancelled"

    def __init__(self, step_id: str):
        super().__init__(f"Run cancelled during step '{step_id}'", step=step_id)


def as_conveyor_error(exc: BaseException) -> ConveyorError:
    """Map an arbitrary handler exception onto the taxonomy."""
    if isinstance(exc, ConveyorError):
        return exc
    message = str(exc) or type(exc).__name__
    return ToolError(message, exception=type(exc).__name__)


class ConditionError(ConveyorError):
    """A ``when`` or ``condition`` expression could not be evaluated."""

    kind = "invalid_condition"

    def __init__(self, expression: str, reason: str = ""):
        self.expression = expression
        message = f"Cannot evaluate condition '{expression}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, expression=expression)
