"""API route handlers."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import StreamingResponse
from sqlalchemy import select
from sqlalchemy.orm import selectinload

from conveyor import __version__
from conveyor.api.schemas import ApiResponse, ErrorResponse, HealthResponse, RunRequest, ToolInfo
from conveyor.config import settings
from conveyor.engine.dag import parse_dict, parse_yaml_string
from conveyor.engine.errors import InvalidWorkflowError

logger = logging.getLogger(__name__)

router = APIRouter()

_SSE_KEEPALIVE_SECONDS = 15.0


def _error(status_code: int, code: str, message: str, details: list[str] | None = None) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail=ApiResponse(
            error=ErrorResponse(code=code, message=message, details=details)
        ).model_dump(),
    )


async def _load_persisted_run(run_id: str) -> dict[str, Any] | None:
    """Rebuild a run dict from the database (runs from earlier processes)."""
    from conveyor.models.db import RunRecord, async_session

    async with async_session() as session:
        stmt = (
            select(RunRecord)
            .where(RunRecord.id == run_id)
            .options(selectinload(RunRecord.steps))
        )
        record = await session.scalar(stmt)
        if record is None:
            return None
        return {
            "run_id": record.id,
            "workflow_id": record.workflow_id,
            "workflow_name": record.workflow_name,
            "status": record.status.value,
            "input": record.input_data,
            "outputs": record.output_data or {},
            "log": [
                {
                    "step_id": s.step_id,
                    "tool": s.tool,
                    "status": s.status.value,
                    "attempt_count": s.attempt,
                    "duration_ms": s.duration_ms,
                    "output": s.output_data,
                    "error": {"kind": s.error_kind, "message": s.error} if s.error_kind else None,
                    "final": s.final,
                    "started_at": s.started_at.isoformat() if s.started_at else None,
                }
                for s in record.steps
            ],
            "started_at": record.started_at.isoformat() if record.started_at else None,
            "ended_at": record.completed_at.isoformat() if record.completed_at else None,
            "failed_step_id": record.failed_step_id,
            "error": (
                {"kind": record.error_kind, "message": record.error}
                if record.error_kind else None
            ),
        }


# --- Health ---


@router.get("/health")
async def health_check(request: Request) -> ApiResponse:
    """Report service status and the configured sandbox languages."""
    executor = request.app.state.executor
    db_ok = None
    if settings.persist_runs:
        from conveyor.models.db import async_session

        db_ok = False
        try:
            async with async_session() as session:
                await session.execute(select(1))
                db_ok = True
        except Exception:
            logger.warning("Database health check failed", exc_info=True)

    return ApiResponse(
        data=HealthResponse(
            status="ok" if db_ok is not False else "degraded",
            version=__version__,
            languages=executor.supported_languages,
            database=db_ok,
        )
    )


# --- Tools ---


@router.get("/tools")
async def list_tools(request: Request) -> ApiResponse:
    registry = request.app.state.registry
    return ApiResponse(data=[ToolInfo(**info) for info in registry.describe()])


# --- Runs ---


@router.post("/runs")
async def create_run(body: RunRequest, request: Request) -> ApiResponse:
    """Start a run of an inline workflow. With ``wait`` the final run is returned."""
    runner = request.app.state.runner
    try:
        if isinstance(body.workflow, str):
            workflow = parse_yaml_string(body.workflow)
        else:
            workflow = parse_dict(body.workflow)
        handle = await runner.run(workflow, body.input)
    except InvalidWorkflowError as e:
        raise _error(400, "INVALID_WORKFLOW", "Workflow is invalid", e.errors)

    handles = request.app.state.handles
    handles[handle.run_id] = handle
    handle.add_done_callback(lambda h: handles.pop(h.run_id, None))
    if body.wait:
        run = await handle.wait()
        return ApiResponse(data=run.to_dict())
    return ApiResponse(data={"run_id": handle.run_id, "status": handle.run.status.value})


@router.get("/runs/{run_id}")
async def get_run(run_id: str, request: Request) -> ApiResponse:
    run = request.app.state.memory.get(run_id)
    if run is not None:
        return ApiResponse(data=run.to_dict())
    if settings.persist_runs:
        data = await _load_persisted_run(run_id)
        if data is not None:
            return ApiResponse(data=data)
    raise _error(404, "NOT_FOUND", f"Run '{run_id}' not found")


@router.get("/runs/{run_id}/events")
async def stream_run_events(run_id: str, request: Request) -> StreamingResponse:
    """Stream a run's progress via SSE: status, each step, then the result."""
    run = request.app.state.memory.get(run_id)
    if run is None:
        raise _error(404, "NOT_FOUND", f"Run '{run_id}' not found")

    bus = request.app.state.events
    # Subscribe before the snapshot so no step slips between the two
    queue = bus.subscribe()

    async def event_generator():
        sent = 0
        try:
            yield _sse_event("status", {"run_id": run.run_id, "status": run.status.value})
            while True:
                for result in run.log[sent:]:
                    yield _sse_event("step", result.to_dict())
                sent = len(run.log)
                if run.is_terminal:
                    yield _sse_event("result", run.to_dict())
                    return

                # Bus events only wake us up; the run object is the source of truth
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=_SSE_KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    continue
                if event["data"].get("run_id") != run_id:
                    continue
        finally:
            bus.unsubscribe(queue)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


def _sse_event(event: str, data: dict[str, Any]) -> str:
    """Format a server-sent event."""
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


@router.post("/runs/{run_id}/cancel")
async def cancel_run(run_id: str, request: Request) -> ApiResponse:
    handle = request.app.state.handles.get(run_id)
    if handle is None or handle.done():
        run = handle.run if handle is not None else request.app.state.memory.get(run_id)
        if run is None:
            raise _error(404, "NOT_FOUND", f"Run '{run_id}' not found")
        raise _error(409, "RUN_FINISHED", f"Run '{run_id}' is already {run.status.value}")
    handle.cancel()
    run = await handle.wait()
    return ApiResponse(data=run.to_dict())
