"""In-memory per-tool dispatch quotas.

Uses a sliding window counter per tool name. A warning is logged once usage
crosses the warning ratio; dispatches beyond the limit are vetoed.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

from conveyor.engine.errors import QuotaExceededError

logger = logging.getLogger(__name__)


@dataclass
class _Window:
    """Dispatch timestamps for one tool."""

    timestamps: list[float] = field(default_factory=list)

    def count_in_window(self, window_seconds: float) -> int:
        """Count dispatches within the sliding window."""
        cutoff = time.monotonic() - window_seconds
        self.timestamps = [t for t in self.timestamps if t > cutoff]
        return len(self.timestamps)

    def add(self) -> None:
        """Record a new dispatch."""
        self.timestamps.append(time.monotonic())


class QuotaGuard:
    """Resource guard enforcing ``limits`` (tool name -> max dispatches per window).

    Tools without a limit are never vetoed.
    """

    def __init__(
        self,
        limits: dict[str, int] | None = None,
        window_seconds: float = 30 * 24 * 3600.0,
        warning_ratio: float = 0.8,
    ) -> None:
        self.limits = dict(limits or {})
        self.window_seconds = window_seconds
        self.warning_ratio = warning_ratio
        self._windows: dict[str, _Window] = defaultdict(_Window)
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Any) -> QuotaGuard:
        return cls(
            limits=settings.tool_quotas,
            window_seconds=settings.quota_window_seconds,
            warning_ratio=settings.quota_warning_ratio,
        )

    async def check(self, tool_name: str, tool_input: Any) -> None:
        """Count one dispatch of *tool_name*. Raises QuotaExceededError if over limit."""
        limit = self.limits.get(tool_name)
        if limit is None:
            return
        async with self._lock:
            window = self._windows[tool_name]
            used = window.count_in_window(self.window_seconds)
            if used >= limit:
                logger.warning("Quota exceeded for tool '%s' (%d/%d)", tool_name, used, limit)
                raise QuotaExceededError(tool_name, used=used, limit=limit)
            window.add()
            used += 1
            if limit and used / limit >= self.warning_ratio:
                logger.warning(
                    "Tool '%s' at %d%% of quota (%d/%d)",
                    tool_name, int(used * 100 / limit), used, limit,
                )

    def usage(self, tool_name: str) -> dict[str, Any]:
        """Return current usage for debugging."""
        window = self._windows.get(tool_name)
        used = window.count_in_window(self.window_seconds) if window else 0
        return {"tool": tool_name, "used": used, "limit": self.limits.get(tool_name)}
