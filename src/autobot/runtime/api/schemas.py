"""Pydantic response schemas for the runtime API routes."""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field


class SpawnResponse(BaseModel):
    run_id: str
    job_id: str


class StopResponse(BaseModel):
    job_id: str
    run_id: str
    status: str = "stopped"


class JobStatusResponse(BaseModel):
    """Job status derived from its latest run."""

    job_id: str
    status: str
    active_run_id: Optional[str] = None
    last_run: Optional[str] = None


class JobSummary(BaseModel):
    id: str
    name: str
    job_type: str
    project_id: str
    status: str
    last_run: Optional[str] = None


class ActiveRunResponse(BaseModel):
    job_id: str
    run_id: str
    started_at: str
    elapsed_ms: int


class RunLogEntryResponse(BaseModel):
    seq: int
    timestamp: str
    message: str
    level: str


class RunResponse(BaseModel):
    """Run record as returned to clients; ``logs`` is filled only on request."""

    id: str
    job_id: str
    status: str
    started_at: str
    completed_at: Optional[str] = None
    duration_ms: Optional[int] = None
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    log_count: int = 0
    logs: list[RunLogEntryResponse] = Field(default_factory=list)
