"""FastAPI application entrypoint for Conveyor."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from conveyor import __version__
from conveyor.api.routes import router
from conveyor.config import settings
from conveyor.engine.events import EventBus
from conveyor.engine.recorder import MemoryRecorder, MultiRecorder, SqlRecorder
from conveyor.engine.runner import WorkflowRunner
from conveyor.engine.tools import create_default_registry

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Wire the registry, recorders and runner on startup; stop runs on shutdown."""
    registry = create_default_registry(settings)
    memory = MemoryRecorder(max_runs=settings.memory_run_limit)
    recorders = [memory]

    if settings.persist_runs:
        from conveyor.models.db import init_db

        await init_db()
        recorders.append(SqlRecorder())
        logger.info("Run persistence enabled (%s)", "local SQLite" if settings.is_local_mode else "database")

    app.state.registry = registry
    app.state.executor = registry.get("execute_code").executor
    app.state.memory = memory
    app.state.events = EventBus()
    app.state.handles = {}
    app.state.runner = WorkflowRunner(
        registry,
        recorder=MultiRecorder(*recorders),
        settings=settings,
        event_bus=app.state.events,
    )
    logger.info("Conveyor started with %d tools", len(registry.names()))

    yield

    # Shutdown: stop in-flight runs so sandboxed processes are killed
    for handle in list(app.state.handles.values()):
        if not handle.done():
            handle.cancel()
            await handle.wait()

    if settings.persist_runs:
        from conveyor.models.db import engine

        await engine.dispose()
    logger.info("Conveyor shut down")


app = FastAPI(
    title="Conveyor",
    description="Sequential workflow runner with sandboxed code execution",
    version=__version__,
    lifespan=lifespan,
    docs_url="/api/docs",
    openapi_url="/api/openapi.json",
)

app.include_router(router, prefix="/api")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("conveyor.main:app", host="0.0.0.0", port=8080)
