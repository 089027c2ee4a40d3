"""Run orchestrator: admission control, supervision, and guaranteed finalization."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from ..domain.models import RUN_TO_JOB_STATUS, Project, RunRecord
from ..errors import JobNotFound, NotRunning
from ..events.bus import EventBus
from ..events.ws import EventHub
from ..llm.text_generation import TextGenerator, create_text_generator
from ..storage.container import Container
from ..strategies import build_strategy
from .pipeline import RunPipeline
from .registry import ActiveRunRegistry, ExecutionContext
from .repository_client import GitRepositoryClient
from .run_records import RunRecordStore
from .settings import OrchestratorSettings
from .workspace_manager import WorkspaceManager

logger = logging.getLogger(__name__)


class OrchestratorService:
    """Admit bot jobs under a concurrency ceiling and run each one to a terminal state.

    At most one execution exists per job, at most ``max_concurrent_runs``
    overall. Each admitted run gets its own asyncio task; tasks are tracked
    so :meth:`shutdown` can cancel and await every one of them.
    """

    def __init__(
        self,
        container: Container,
        *,
        generator: Optional[TextGenerator] = None,
        git: Optional[GitRepositoryClient] = None,
        hub: Optional[EventHub] = None,
        settings: Optional[OrchestratorSettings] = None,
    ) -> None:
        """Initialize the OrchestratorService.

        Args:
            container (Container): File-backed repositories for the state root.
            generator (Optional[TextGenerator]): Text generator handed to strategies;
                built from configuration when omitted.
            git (Optional[GitRepositoryClient]): Git capability; built from configuration
                when omitted.
            hub (Optional[EventHub]): Subscriber hub; a private one is created when omitted.
            settings (Optional[OrchestratorSettings]): Overrides the configured settings.
        """
        self.container = container
        config = container.config.load()
        self.settings = settings or OrchestratorSettings.from_config(config, state_root=container.state_root)
        self.hub = hub or EventHub()
        self.bus = EventBus(container.events, self.hub)
        self.git = git or GitRepositoryClient(
            author_name=self.settings.author_name,
            author_email=self.settings.author_email,
        )
        self.workspaces = WorkspaceManager(self.settings.workspace_root or container.state_root / "workspaces")
        self.store = RunRecordStore(
            container.runs,
            container.jobs,
            self.bus,
            history_limit=self.settings.run_history_limit,
        )
        self.generator = generator or create_text_generator(config)
        self.registry = ActiveRunRegistry(self.settings.max_concurrent_runs)
        self._tasks: set[asyncio.Task] = set()
        self._run_tasks: dict[str, asyncio.Task] = {}

    async def start(self) -> dict[str, int]:
        """Recover state left behind by a previous process.

        Runs still marked ``running`` are failed as interrupted, and workspace
        directories with no active owner are removed.

        Returns:
            dict[str, int]: Counts of recovered runs and removed workspaces.
        """
        self.hub.attach_loop(asyncio.get_running_loop())
        recovered = 0
        async with self.registry.lock:
            active = {ctx.run_id for ctx in self.registry.contexts()}
            for run in await asyncio.to_thread(self.container.runs.list):
                if run.status == "running" and run.id not in active:
                    if await self.store.offload(
                        self.store.update_status,
                        run.id,
                        "failed",
                        error="Interrupted by orchestrator restart",
                        error_kind="Interrupted",
                    ):
                        recovered += 1
            removed = await asyncio.to_thread(self.workspaces.sweep_orphans, active)
        if recovered:
            logger.warning("Marked %d interrupted run(s) as failed", recovered)
        return {"recovered_runs": recovered, "removed_workspaces": len(removed)}

    async def spawn(self, job_id: str) -> str:
        """Admit ``job_id`` and launch its pipeline in the background.

        Args:
            job_id (str): Job to run.

        Returns:
            str: Identifier of the new run.

        Raises:
            JobNotFound: The job does not exist.
            UnsupportedJobType: No strategy exists for the job's type.
            AlreadyRunning: The job already has an active run.
            CapacityExceeded: The concurrency ceiling is reached; no run is recorded.
        """
        self.hub.attach_loop(asyncio.get_running_loop())
        job = await asyncio.to_thread(self.container.jobs.get, job_id)
        if job is None:
            raise JobNotFound(job_id)
        strategy = build_strategy(job.job_type, self.generator)
        project = await asyncio.to_thread(self.container.projects.get, job.project_id)
        if project is None:
            project = Project(id=job.project_id, name="", repository_url="")

        async with self.registry.lock:
            self.registry.check_admission(job_id)
            run = await self.store.offload(self.store.create, job_id)
            ctx = ExecutionContext(job=job, run_id=run.id, started_at=run.started_at)
            self.registry.add(ctx)
            pipeline = RunPipeline(
                ctx,
                project,
                strategy,
                store=self.store,
                git=self.git,
                workspaces=self.workspaces,
                settings=self.settings,
            )
            task = asyncio.create_task(self._supervise(ctx, pipeline), name=f"autobot-run-{run.id}")
            ctx.task = task
            self._tasks.add(task)
            self._run_tasks[run.id] = task
            task.add_done_callback(self._on_task_done)
        logger.info("Spawned run %s for job %s (%s)", run.id, job.id, job.job_type)
        return run.id

    async def _supervise(self, ctx: ExecutionContext, pipeline: RunPipeline) -> str:
        try:
            return await pipeline.run()
        finally:
            # stop() may have removed the workspace while a git thread was still
            # writing into it; the directory can reappear until the thread returns.
            if ctx.workspace is not None:
                await asyncio.to_thread(self.workspaces.release, ctx.workspace)
            async with self.registry.lock:
                self.registry.remove(ctx.job_id, ctx.run_id)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        for run_id, tracked in list(self._run_tasks.items()):
            if tracked is task:
                self._run_tasks.pop(run_id, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Run task %s crashed", task.get_name(), exc_info=exc)

    async def stop(self, job_id: str) -> dict[str, Any]:
        """Cancel the active run of ``job_id`` and free its slot.

        Args:
            job_id (str): Job whose run should stop.

        Returns:
            dict[str, Any]: ``job_id``, ``run_id`` and the resulting job status.

        Raises:
            NotRunning: The job has no active run.
        """
        async with self.registry.lock:
            ctx = self.registry.get(job_id)
            if ctx is None:
                raise NotRunning(job_id)
            ctx.token.request_cancel("Stopped by user")
            await self.store.offload(self.store.append_log, ctx.run_id, "Stop requested; cancelling run", "warning")
            if ctx.workspace is not None and not await asyncio.to_thread(self.workspaces.release, ctx.workspace):
                logger.warning("Workspace %s for run %s could not be removed on stop", ctx.workspace, ctx.run_id)
            await self.store.offload(self.store.update_status, ctx.run_id, "cancelled", error="Stopped by user")
            self.registry.remove(job_id, ctx.run_id)
        logger.info("Stopped run %s for job %s", ctx.run_id, job_id)
        return {"job_id": job_id, "run_id": ctx.run_id, "status": "stopped"}

    def query_status(self, job_id: str) -> str:
        """Report a job's status from its latest run.

        Returns:
            str: ``idle`` when the job never ran, otherwise the latest run's
            status in job vocabulary (``cancelled`` reads as ``stopped``).

        Raises:
            JobNotFound: The job does not exist.
        """
        if self.container.jobs.get(job_id) is None:
            raise JobNotFound(job_id)
        runs = self.container.runs.for_job(job_id, with_logs=False)
        if not runs:
            return "idle"
        return RUN_TO_JOB_STATUS.get(runs[-1].status, runs[-1].status)

    get_status = query_status

    def list_active(self) -> list[dict[str, Any]]:
        return [ctx.to_summary() for ctx in self.registry.contexts()]

    get_active_runs = list_active

    def get_run(self, run_id: str) -> Optional[RunRecord]:
        return self.container.runs.get(run_id)

    def list_runs(self, job_id: str) -> list[RunRecord]:
        if self.container.jobs.get(job_id) is None:
            raise JobNotFound(job_id)
        return self.container.runs.for_job(job_id)

    async def wait_for_run(self, run_id: str, timeout: Optional[float] = None) -> Optional[RunRecord]:
        """Wait until the pipeline task of ``run_id`` has finished.

        Args:
            run_id (str): Run to wait for.
            timeout (Optional[float]): Seconds to wait; `None` waits indefinitely.

        Returns:
            Optional[RunRecord]: The run record as persisted after waiting.
        """
        task = self._run_tasks.get(run_id)
        if task is not None:
            await asyncio.wait({task}, timeout=timeout)
        return await asyncio.to_thread(self.get_run, run_id)

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Cancel every active run and await all pipeline tasks."""
        for ctx in self.registry.contexts():
            ctx.token.request_cancel("Orchestrator shutting down")
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=timeout)
            if pending:
                logger.warning("%d run task(s) did not finish within %.1fs of shutdown", len(pending), timeout)
        # Tasks cancelled before their first step never reach the pipeline's own finalization.
        async with self.registry.lock:
            for ctx in self.registry.contexts():
                if ctx.workspace is not None:
                    await asyncio.to_thread(self.workspaces.release, ctx.workspace)
                await self.store.offload(
                    self.store.update_status, ctx.run_id, "cancelled", error="Interrupted by orchestrator shutdown"
                )
                self.registry.remove(ctx.job_id, ctx.run_id)
