"""Shared test fixtures - in-memory SQLite and throwaway sandbox roots.

IMPORTANT: environment variables are set at module level, BEFORE any
conveyor module is imported during test collection.
"""

import asyncio
import os
import tempfile

# Force in-memory SQLite and a temporary sandbox for all tests
_SANDBOX_TMP = tempfile.mkdtemp(prefix="conveyor-tests-")
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["SANDBOX_ROOT"] = os.path.join(_SANDBOX_TMP, "workspace")
os.environ["SANDBOX_SCRATCH_ROOT"] = os.path.join(_SANDBOX_TMP, "scratch")

import pytest  # noqa: E402

from conveyor.engine.sandbox import CodeExecutor, SandboxConfig  # noqa: E402
from conveyor.engine.tools import ToolRegistry  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def _create_test_tables():
    """Create all DB tables in the in-memory SQLite database."""
    from conveyor.models.db import Base, engine

    loop = asyncio.new_event_loop()

    async def _create():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    loop.run_until_complete(_create())
    loop.close()


@pytest.fixture
def sandbox_config(tmp_path) -> SandboxConfig:
    return SandboxConfig.build(
        work_root=tmp_path / "workspace",
        scratch_root=tmp_path / "scratch",
        languages={
            "python": ["python3", "-I", "{file}"],
            "sh": ["sh", "{file}"],
        },
        default_timeout_ms=10000,
    )


@pytest.fixture
def executor(sandbox_config) -> CodeExecutor:
    return CodeExecutor(sandbox_config)


@pytest.fixture
def sandbox_registry(executor) -> ToolRegistry:
    """Registry with the code and file tools bound to the test sandbox."""
    from conveyor.engine.builtins import ExecuteCodeTool, ReadFileTool, WriteFileTool

    registry = ToolRegistry()
    registry.register("execute_code", ExecuteCodeTool(executor))
    registry.register("execute_python", ExecuteCodeTool(executor, "python"))
    registry.register("read_file", ReadFileTool(executor.config))
    registry.register("write_file", WriteFileTool(executor.config))
    return registry
