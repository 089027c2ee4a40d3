"""Stage-by-stage execution of one admitted run."""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Optional

from ..domain.models import Project, RunResult
from ..errors import AutobotError, BranchError, PushError, RepositoryUnavailable, TransformationError
from ..strategies.base import LOG_EXCERPT_CHARS, StrategyResult, TransformationStrategy, excerpt
from .registry import ExecutionContext, RunCancelled
from .repository_client import GitRepositoryClient
from .run_records import RunRecordStore
from .settings import OrchestratorSettings
from .workspace_manager import WorkspaceManager

logger = logging.getLogger(__name__)

STAGE_ERRORS: dict[str, type[AutobotError]] = {
    "cloning": RepositoryUnavailable,
    "branching": BranchError,
    "transforming": TransformationError,
    "committing": PushError,
}

# Upper bound for command output and error text copied into a run log line.
LOG_DETAIL_CHARS = 500


def branch_name(namespace: str, job_type: str, now_ms: Optional[int] = None) -> str:
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"{namespace}/{job_type}-{stamp}"


class RunPipeline:
    """Drive one run through initializing, cloning, branching, transforming,
    committing and finalizing.

    Failures never escape :meth:`run`; they end up in the run record. The
    workspace is released before the terminal status is written, on every
    exit path.
    """

    def __init__(
        self,
        ctx: ExecutionContext,
        project: Project,
        strategy: TransformationStrategy,
        *,
        store: RunRecordStore,
        git: GitRepositoryClient,
        workspaces: WorkspaceManager,
        settings: OrchestratorSettings,
    ) -> None:
        self.ctx = ctx
        self.project = project
        self.strategy = strategy
        self.store = store
        self.git = git
        self.workspaces = workspaces
        self.settings = settings
        self.stage = "initializing"

    async def log(self, message: str, level: str = "info") -> None:
        await self.store.offload(self.store.append_log, self.ctx.run_id, message, level)

    def log_nowait(self, message: str) -> None:
        self.store.enqueue_log(self.ctx.run_id, message)

    def _checkpoint(self) -> None:
        self.ctx.token.raise_if_cancelled()

    async def _transform(self, workdir: Path) -> StrategyResult:
        """Run the strategy, abandoning it on cancellation or stage timeout."""
        timeout = self.settings.timeout_for("transforming")
        work = asyncio.ensure_future(self.strategy.execute(workdir, self.ctx.job.configuration, log=self.log_nowait))
        cancel_wait = asyncio.ensure_future(self.ctx.token.wait())
        try:
            done, _ = await asyncio.wait({work, cancel_wait}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            cancel_wait.cancel()
        if work in done:
            return work.result()
        work.cancel()
        await asyncio.gather(work, return_exceptions=True)
        if cancel_wait in done:
            raise RunCancelled(self.ctx.token.reason or "Cancelled")
        raise TransformationError(f"transforming stage timed out after {timeout}s")

    async def _execute(self) -> RunResult:
        ctx = self.ctx
        job = ctx.job
        ctx.workspace = await asyncio.to_thread(self.workspaces.allocate, ctx.run_id)
        await self.log(f"Run started for job {job.name or job.id} ({job.job_type})")
        self._checkpoint()

        self.stage = "cloning"
        workdir = ctx.workspace / "repo"
        await self.log(f"Cloning {self.project.repository_url}")
        await self.git.clone(self.project.repository_url, workdir, timeout=self.settings.timeout_for("cloning"))
        await self.log("Repository cloned successfully")
        self._checkpoint()

        self.stage = "branching"
        branch = branch_name(self.settings.branch_namespace, job.job_type)
        await self.git.create_branch(
            workdir, branch, self.project.default_branch, timeout=self.settings.timeout_for("branching")
        )
        await self.log(f"Created branch: {branch}")
        self._checkpoint()

        self.stage = "transforming"
        outcome = await self._transform(workdir)
        await self.log(f"Transformation finished: {excerpt(outcome.summary, LOG_EXCERPT_CHARS)}")
        self._checkpoint()

        self.stage = "committing"
        commit_sha: Optional[str] = None
        if await self.git.has_changes(workdir):
            commit_sha = await self.git.commit_and_push(
                workdir,
                self.strategy.commit_message(outcome.analysis),
                branch,
                timeout=self.settings.timeout_for("committing"),
            )
        if commit_sha:
            await self.log(f"Changes committed and pushed to {branch} ({commit_sha[:12]})")
            await self._log_diff_stat(workdir, commit_sha)
        else:
            await self.log("No changes produced; skipping commit and push")
        self._checkpoint()

        self.stage = "finalizing"
        return RunResult(
            branch=branch,
            summary=outcome.summary,
            analysis=outcome.analysis,
            diff=outcome.diff,
            commit_sha=commit_sha,
        )

    async def _log_diff_stat(self, workdir: Path, commit_sha: str) -> None:
        # The push already succeeded; the stat is informational only.
        try:
            stat = (await self.git.diff_stat(workdir, commit_sha)).strip()
        except AutobotError as exc:
            await self.log(f"Could not read diff stat: {excerpt(str(exc), LOG_DETAIL_CHARS)}", level="warning")
            return
        if stat:
            await self.log(f"Diff stat:\n{excerpt(stat, LOG_DETAIL_CHARS)}")

    async def _record_terminal(self, status: str, kwargs: dict[str, object]) -> bool:
        run_id = self.ctx.run_id
        for attempt in (1, 2):
            try:
                return await self.store.offload(self.store.update_status, run_id, status, **kwargs)  # type: ignore[arg-type]
            except OSError:
                logger.exception("Recording %s for run %s failed (attempt %d)", status, run_id, attempt)
        logger.error("Run %s is stranded as running; the next start() marks it interrupted", run_id)
        return False

    async def run(self) -> str:
        """Execute the run and record its terminal status.

        Returns:
            str: The terminal status this pipeline observed for the run.
        """
        ctx = self.ctx
        status = "failed"
        kwargs: dict[str, object] = {}
        interrupted = False
        try:
            result = await self._execute()
            status, kwargs = "completed", {"result": result}
        except RunCancelled as exc:
            status, kwargs = "cancelled", {"error": str(exc)}
        except asyncio.CancelledError:
            interrupted = True
            status, kwargs = "cancelled", {"error": "Interrupted by orchestrator shutdown"}
        except AutobotError as exc:
            if ctx.token.cancelled:
                status, kwargs = "cancelled", {"error": ctx.token.reason or "Cancelled"}
            else:
                status, kwargs = "failed", {"error": str(exc), "error_kind": exc.kind}
        except Exception as exc:
            logger.exception("Unexpected failure in run %s during %s", ctx.run_id, self.stage)
            status, kwargs = "failed", {"error": f"{type(exc).__name__}: {exc}", "error_kind": "InternalError"}
        finally:
            if ctx.workspace is not None and not await asyncio.to_thread(self.workspaces.release, ctx.workspace):
                logger.warning("Workspace %s for run %s could not be removed", ctx.workspace, ctx.run_id)

        try:
            if status == "failed":
                detail = excerpt(str(kwargs.get("error")), LOG_DETAIL_CHARS)
                await self.log(f"Error during {self.stage}: {detail}", level="error")
            elif status == "cancelled":
                await self.log(f"Run cancelled during {self.stage}", level="warning")
            else:
                await self.log("Run completed")
        except OSError:
            logger.exception("Could not write the final log line of run %s", ctx.run_id)
        applied = await self._record_terminal(status, kwargs)
        if not applied:
            current = await self.store.offload(self.store.get, ctx.run_id)
            status = current.status if current else status
        if interrupted:
            raise asyncio.CancelledError()
        return status
