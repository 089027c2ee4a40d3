"""FastAPI routes for spawning, stopping and inspecting bot runs."""

from __future__ import annotations

from collections.abc import Callable

from fastapi import APIRouter, HTTPException, Query

from ..domain.models import RunRecord
from ..errors import AlreadyRunning, AutobotError, CapacityExceeded, JobNotFound, NotRunning, UnsupportedJobType
from ..orchestrator.service import OrchestratorService
from .schemas import (
    ActiveRunResponse,
    JobStatusResponse,
    JobSummary,
    RunLogEntryResponse,
    RunResponse,
    SpawnResponse,
    StopResponse,
)

_STATUS_CODES: dict[type[AutobotError], int] = {
    JobNotFound: 404,
    AlreadyRunning: 409,
    NotRunning: 409,
    CapacityExceeded: 429,
    UnsupportedJobType: 422,
}


def _http_error(exc: AutobotError) -> HTTPException:
    status_code = next((code for cls, code in _STATUS_CODES.items() if isinstance(exc, cls)), 500)
    return HTTPException(status_code=status_code, detail={"error": str(exc), "kind": exc.kind})


def _run_payload(run: RunRecord, include_logs: bool = False) -> RunResponse:
    return RunResponse(
        id=run.id,
        job_id=run.job_id,
        status=run.status,
        started_at=run.started_at,
        completed_at=run.completed_at,
        duration_ms=run.duration_ms,
        result=run.result.to_dict() if run.result else None,
        error=run.error,
        error_kind=run.error_kind,
        log_count=len(run.logs),
        logs=[RunLogEntryResponse(**entry.to_dict()) for entry in run.logs] if include_logs else [],
    )


def create_router(resolve_orchestrator: Callable[[], OrchestratorService]) -> APIRouter:
    """Build the ``/api`` router bound to one orchestrator resolver.

    Args:
        resolve_orchestrator (Callable[[], OrchestratorService]): Returns the
            orchestrator serving this app.

    Returns:
        APIRouter: Router with job and run endpoints.
    """
    router = APIRouter(prefix="/api", tags=["runs"])

    @router.get("/jobs")
    async def list_jobs() -> list[JobSummary]:
        orchestrator = resolve_orchestrator()
        return [
            JobSummary(
                id=job.id,
                name=job.name,
                job_type=job.job_type,
                project_id=job.project_id,
                status=orchestrator.query_status(job.id),
                last_run=job.last_run,
            )
            for job in orchestrator.container.jobs.list()
        ]

    @router.post("/jobs/{job_id}/spawn", status_code=202)
    async def spawn_job(job_id: str) -> SpawnResponse:
        """Admit a job and start its run in the background.

        Raises:
            HTTPException: 404 unknown job, 409 already running, 422 unsupported
                type, 429 concurrency ceiling reached.
        """
        try:
            run_id = await resolve_orchestrator().spawn(job_id)
        except AutobotError as exc:
            raise _http_error(exc) from exc
        return SpawnResponse(run_id=run_id, job_id=job_id)

    @router.post("/jobs/{job_id}/stop")
    async def stop_job(job_id: str) -> StopResponse:
        try:
            payload = await resolve_orchestrator().stop(job_id)
        except AutobotError as exc:
            raise _http_error(exc) from exc
        return StopResponse(**payload)

    @router.get("/jobs/{job_id}/status")
    async def job_status(job_id: str) -> JobStatusResponse:
        orchestrator = resolve_orchestrator()
        try:
            status = orchestrator.query_status(job_id)
        except AutobotError as exc:
            raise _http_error(exc) from exc
        ctx = orchestrator.registry.get(job_id)
        job = orchestrator.container.jobs.get(job_id)
        return JobStatusResponse(
            job_id=job_id,
            status=status,
            active_run_id=ctx.run_id if ctx else None,
            last_run=job.last_run if job else None,
        )

    @router.get("/jobs/{job_id}/runs")
    async def job_runs(job_id: str, include_logs: bool = Query(False)) -> list[RunResponse]:
        try:
            runs = resolve_orchestrator().list_runs(job_id)
        except AutobotError as exc:
            raise _http_error(exc) from exc
        return [_run_payload(run, include_logs) for run in reversed(runs)]

    @router.get("/runs/active")
    async def active_runs() -> list[ActiveRunResponse]:
        return [ActiveRunResponse(**item) for item in resolve_orchestrator().list_active()]

    @router.get("/runs/{run_id}")
    async def get_run(run_id: str, include_logs: bool = Query(True)) -> RunResponse:
        run = resolve_orchestrator().get_run(run_id)
        if run is None:
            raise HTTPException(status_code=404, detail={"error": f"Run not found: {run_id}", "kind": "RunNotFound"})
        return _run_payload(run, include_logs)

    return router
