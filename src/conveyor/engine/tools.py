"""Tool registry and dispatcher.

A tool is anything with an ``async invoke(input) -> output`` method. Plain
callables are wrapped on registration; synchronous ones run in a worker
thread so they never block the event loop.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, Protocol, runtime_checkable

from conveyor.engine.errors import ConveyorError, UnknownToolError, as_conveyor_error

logger = logging.getLogger(__name__)


@runtime_checkable
class ToolHandler(Protocol):
    """Interface every registered tool implements."""

    async def invoke(self, tool_input: Any) -> Any: ...


class ResourceGuard(Protocol):
    """Pre-dispatch hook. Raises ``QuotaExceededError`` to veto a call."""

    async def check(self, tool_name: str, tool_input: Any) -> None: ...


@dataclass
class FunctionTool:
    """Adapter turning a plain function into a ``ToolHandler``."""

    func: Callable[[Any], Any]
    description: str = ""

    async def invoke(self, tool_input: Any) -> Any:
        if inspect.iscoroutinefunction(self.func):
            return await self.func(tool_input)
        result = await asyncio.to_thread(self.func, tool_input)
        if inspect.isawaitable(result):
            return await result
        return result


def _describe(handler: Any) -> str:
    text = getattr(handler, "description", "") or inspect.getdoc(handler) or ""
    return text.strip().splitlines()[0] if text.strip() else ""


class ToolRegistry:
    """Named tool handlers plus an optional resource guard.

    Read-mostly: registration happens at startup, dispatch from many runs.
    """

    def __init__(self, guard: ResourceGuard | None = None) -> None:
        self._tools: dict[str, ToolHandler] = {}
        self.guard = guard

    def register(self, name: str, handler: ToolHandler | Callable[[Any], Any]) -> None:
        """Register *handler* under *name*. A later registration replaces an earlier one."""
        if not name:
            raise ValueError("Tool name must be a non-empty string")
        if not isinstance(handler, ToolHandler):
            if not callable(handler):
                raise TypeError(f"Tool '{name}' handler must be callable or define invoke()")
            handler = FunctionTool(handler, description=_describe(handler))
        if name in self._tools:
            logger.info("Tool '%s' re-registered, replacing previous handler", name)
        self._tools[name] = handler

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def get(self, name: str) -> ToolHandler:
        try:
            return self._tools[name]
        except KeyError:
            raise UnknownToolError(name) from None

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def names(self) -> list[str]:
        return sorted(self._tools)

    def describe(self) -> list[dict[str, str]]:
        """Name and one-line description of every registered tool."""
        return [{"name": n, "description": _describe(self._tools[n])} for n in self.names()]

    async def dispatch(self, name: str, tool_input: Any) -> Any:
        """Invoke the tool registered under *name*.

        The guard is consulted before the handler runs. Any exception the
        handler raises comes back as a ``ConveyorError``; cancellation is
        propagated untouched.
        """
        handler = self.get(name)
        if self.guard is not None:
            await self.guard.check(name, tool_input)
        try:
            return await handler.invoke(tool_input)
        except ConveyorError:
            raise
        except Exception as e:
            logger.debug("Tool '%s' raised %s", name, type(e).__name__, exc_info=True)
            raise as_conveyor_error(e) from e


def create_default_registry(settings: Any = None, guard: ResourceGuard | None = None) -> ToolRegistry:
    """Build a registry with every built-in tool registered."""
    from conveyor.config import settings as default_settings
    from conveyor.engine.builtins import register_builtins
    from conveyor.engine.quota import QuotaGuard

    settings = settings or default_settings
    if guard is None and settings.tool_quotas:
        guard = QuotaGuard.from_settings(settings)
    registry = ToolRegistry(guard=guard)
    register_builtins(registry, settings)
    return registry
