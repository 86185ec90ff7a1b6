"""Built-in tools registered on every default registry."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

import httpx
from simpleeval import InvalidExpression, simple_eval

from conveyor.engine.errors import ConditionError, ToolError
from conveyor.engine.sandbox import CodeExecutor, SandboxConfig, confine_path

logger = logging.getLogger(__name__)

_HTTP_METHODS = frozenset({"GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"})


def _require_mapping(tool: str, tool_input: Any) -> dict[str, Any]:
    if tool_input is None:
        return {}
    if not isinstance(tool_input, dict):
        raise ToolError(f"{tool}: input must be a mapping, got {type(tool_input).__name__}")
    return tool_input


def evaluate_condition(expression: str, names: dict[str, Any]) -> Any:
    """Safely evaluate an expression using simpleeval.

    Supports comparisons, dot access on mappings, len(), basic math and
    and/or/not. Never uses Python eval/exec.
    """
    functions = {"len": len, "str": str, "int": int, "float": float, "bool": bool}
    try:
        return simple_eval(expression, names=names, functions=functions)
    except (InvalidExpression, SyntaxError, TypeError, ValueError, KeyError,
            AttributeError, IndexError, ZeroDivisionError) as e:
        raise ConditionError(expression, str(e) or type(e).__name__) from e


def extract_path(data: Any, path: str | None) -> Any:
    """Walk a dotted *path* into *data*; missing segments yield None."""
    if not path:
        return data
    current = data
    for segment in str(path).split("."):
        if isinstance(current, dict):
            current = current.get(segment)
        elif isinstance(current, (list, tuple)):
            try:
                current = current[int(segment)]
            except (ValueError, IndexError):
                return None
        else:
            return None
    return current


class ExecuteCodeTool:
    """Run a code snippet in the sandbox. Returns stdout, stderr, exit_code and timing."""

    def __init__(self, executor: CodeExecutor, language: str | None = None) -> None:
        self.executor = executor
        self.language = language
        if language:
            self.description = f"Run a {language} snippet in the sandbox"
        else:
            self.description = "Run a code snippet in the sandbox (language, code)"

    async def invoke(self, tool_input: Any) -> dict[str, Any]:
        data = _require_mapping("execute_code", tool_input)
        language = self.language or data.get("language")
        if not language:
            raise ToolError("execute_code: 'language' is required")
        if "code" not in data:
            raise ToolError("execute_code: 'code' is required")
        result = await self.executor.execute(
            language=language,
            code=data["code"],
            timeout_ms=data.get("timeout_ms"),
            cwd=data.get("cwd"),
            env=data.get("env"),
            stdin=data.get("stdin"),
        )
        return result.to_dict()


class ReadFileTool:
    """Read a text file inside the sandbox."""

    description = "Read a text file inside the sandbox (path, encoding)"

    def __init__(self, config: SandboxConfig) -> None:
        self.config = config

    async def invoke(self, tool_input: Any) -> dict[str, Any]:
        data = _require_mapping("read_file", tool_input)
        path = data.get("path")
        if not path:
            raise ToolError("read_file: 'path' is required")
        resolved = confine_path(path, self.config.roots, base=self.config.work_root)
        if not resolved.is_file():
            raise ToolError(f"read_file: no such file: {path}")
        encoding = data.get("encoding", "utf-8")
        try:
            content = await asyncio.to_thread(resolved.read_text, encoding=encoding)
        except (OSError, UnicodeDecodeError, LookupError) as e:
            raise ToolError(f"read_file: cannot read {path}: {e}") from e
        return {"path": str(resolved), "content": content, "size": len(content)}


class WriteFileTool:
    """Write (or append) a text file inside the sandbox."""

    description = "Write a text file inside the sandbox (path, content, append)"

    def __init__(self, config: SandboxConfig) -> None:
        self.config = config

    def _write(self, resolved: Path, content: str, append: bool) -> None:
        resolved.parent.mkdir(parents=True, exist_ok=True)
        with resolved.open("a" if append else "w", encoding="utf-8") as f:
            f.write(content)

    async def invoke(self, tool_input: Any) -> dict[str, Any]:
        data = _require_mapping("write_file", tool_input)
        path = data.get("path")
        if not path:
            raise ToolError("write_file: 'path' is required")
        content = data.get("content", "")
        if not isinstance(content, str):
            content = json.dumps(content, default=str)
        resolved = confine_path(path, self.config.roots, base=self.config.work_root)
        try:
            await asyncio.to_thread(
                self._write, resolved, content, bool(data.get("append", False))
            )
        except OSError as e:
            raise ToolError(f"write_file: cannot write {path}: {e}") from e
        return {"path": str(resolved), "bytes_written": len(content.encode("utf-8"))}


class HttpRequestTool:
    """Perform an HTTP request. Status codes are returned, transport errors raised."""

    description = "Perform an HTTP request (url, method, headers, params, body)"

    def __init__(self, timeout_seconds: float = 30.0, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    async def invoke(self, tool_input: Any) -> dict[str, Any]:
        data = _require_mapping("http_request", tool_input)
        url = data.get("url")
        if not url:
            raise ToolError("http_request: 'url' is required")
        method = str(data.get("method", "GET")).upper()
        if method not in _HTTP_METHODS:
            raise ToolError(f"http_request: unsupported method '{method}'")

        kwargs: dict[str, Any] = {
            "headers": data.get("headers") or {},
            "params": data.get("params") or None,
        }
        body = data.get("body")
        if isinstance(body, (dict, list)):
            kwargs["json"] = body
        elif body is not None:
            kwargs["content"] = str(body)

        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_seconds), transport=self.transport
            ) as client:
                response = await client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise ToolError(f"http_request: {method} {url} failed: {e}", url=url) from e

        try:
            payload: Any = response.json()
        except ValueError:
            payload = response.text
        return {
            "status": response.status_code,
            "headers": dict(response.headers),
            "body": payload,
        }


async def transform_data(tool_input: Any) -> dict[str, Any]:
    """Apply extract / map / filter operations to data."""
    data = _require_mapping("transform_data", tool_input)
    result = data.get("data")
    for op in data.get("operations") or []:
        if not isinstance(op, dict):
            raise ToolError("transform_data: each operation must be a mapping")
        op_type = op.get("type")
        if op_type == "extract":
            result = extract_path(result, op.get("path"))
        elif op_type == "map":
            if isinstance(result, list):
                result = [extract_path(item, op.get("path")) for item in result]
        elif op_type == "filter":
            if isinstance(result, list):
                condition = op.get("condition", "True")
                result = [
                    item for item in result
                    if evaluate_condition(condition, item if isinstance(item, dict) else {"item": item})
                ]
        else:
            raise ToolError(f"transform_data: unknown operation type '{op_type}'")
    return {"result": result}


async def conditional_branch(tool_input: Any) -> dict[str, Any]:
    """Evaluate a condition against a context mapping."""
    data = _require_mapping("conditional_branch", tool_input)
    condition = data.get("condition")
    if isinstance(condition, str):
        result = bool(evaluate_condition(condition, data.get("context") or {}))
    else:
        result = bool(condition)
    return {"result": result, "branch": "true" if result else "false"}


async def wait_delay(tool_input: Any) -> dict[str, Any]:
    """Sleep for duration_ms without blocking the event loop."""
    data = _require_mapping("wait_delay", tool_input)
    duration = data.get("duration_ms", data.get("duration", 0))
    if not isinstance(duration, (int, float)) or isinstance(duration, bool) or duration < 0:
        raise ToolError("wait_delay: 'duration_ms' must be a number >= 0")
    await asyncio.sleep(duration / 1000.0)
    return {"waited": duration}


async def loop_iteration(tool_input: Any) -> dict[str, Any]:
    """Report the items of a list and how many there are."""
    data = _require_mapping("loop_iteration", tool_input)
    items = data.get("items") or []
    if not isinstance(items, list):
        raise ToolError("loop_iteration: 'items' must be a list")
    return {"iterations": len(items), "results": items}


def register_builtins(registry: Any, settings: Any) -> CodeExecutor:
    """Register every built-in tool on *registry*; returns the shared executor."""
    config = SandboxConfig.from_settings(settings)
    executor = CodeExecutor(config)

    registry.register("execute_code", ExecuteCodeTool(executor))
    for language in executor.supported_languages:
        registry.register(f"execute_{language}", ExecuteCodeTool(executor, language))
    registry.register("read_file", ReadFileTool(config))
    registry.register("write_file", WriteFileTool(config))
    registry.register("http_request", HttpRequestTool(settings.http_timeout_seconds))
    registry.register("transform_data", transform_data)
    registry.register("conditional_branch", conditional_branch)
    registry.register("wait_delay", wait_delay)
    registry.register("loop_iteration", loop_iteration)

    logger.debug("Registered built-in tools (languages: %s)", ", ".join(executor.supported_languages))
    return executor
