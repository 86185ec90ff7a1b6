"""Request and response bodies for the HTTP API."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


# --- Requests ---


class RunRequest(BaseModel):
    """Request to run an inline workflow.

    `workflow` is either YAML text or an already-decoded mapping.
    """

    workflow: str | dict[str, Any] = Field(..., description="Workflow YAML content or mapping")
    input: dict[str, Any] = Field(default_factory=dict, description="Input data for the workflow")
    wait: bool = Field(True, description="Block until the run reaches a terminal status")


# --- Responses ---


class ToolInfo(BaseModel):
    name: str
    description: str = ""


class HealthResponse(BaseModel):
    status: str
    version: str
    languages: list[str] = Field(default_factory=list)
    database: bool | None = None


class ErrorResponse(BaseModel):
    """Machine-readable error code plus a human message."""

    code: str
    message: str
    details: list[str] | None = None


class ApiResponse(BaseModel):
    """Envelope for every response: either data or error is set."""

    data: Any | None = None
    error: ErrorResponse | None = None
