"""In-memory registry of active executions, guarded by one asyncio lock."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from ..domain.models import Job, now_iso
from ..errors import AlreadyRunning, CapacityExceeded


class RunCancelled(Exception):
    """Raised inside the pipeline when a cancellation request is observed."""


class CancellationToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def request_cancel(self, reason: str = "Stopped by user") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RunCancelled(self.reason or "Cancelled")

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class ExecutionContext:
    """Live state of one admitted run."""
    job: Job
    run_id: str
    started_at: str = field(default_factory=now_iso)
    started_monotonic: float = field(default_factory=time.monotonic)
    token: CancellationToken = field(default_factory=CancellationToken)
    workspace: Optional[Path] = None
    task: Optional[asyncio.Task] = None

    @property
    def job_id(self) -> str:
        return self.job.id

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started_monotonic) * 1000)

    def to_summary(self) -> dict[str, object]:
        return {
            "job_id": self.job.id,
            "run_id": self.run_id,
            "started_at": self.started_at,
            "elapsed_ms": self.elapsed_ms(),
        }


class ActiveRunRegistry:
    """At most one context per job and at most ``limit`` contexts overall.

    Mutations go through :attr:`lock`; callers hold it across the admission
    check and the insert so the two happen as one step.
    """

    def __init__(self, limit: int) -> None:
        if limit < 1:
            raise ValueError("max_concurrent_runs must be at least 1")
        self.limit = limit
        self.lock = asyncio.Lock()
        self._by_job: dict[str, ExecutionContext] = {}

    def __len__(self) -> int:
        return len(self._by_job)

    def get(self, job_id: str) -> Optional[ExecutionContext]:
        return self._by_job.get(job_id)

    def by_run(self, run_id: str) -> Optional[ExecutionContext]:
        for ctx in self._by_job.values():
            if ctx.run_id == run_id:
                return ctx
        return None

    def contexts(self) -> list[ExecutionContext]:
        return sorted(self._by_job.values(), key=lambda ctx: ctx.started_monotonic)

    def check_admission(self, job_id: str) -> None:
        """Raise when ``job_id`` may not start now.

        Raises:
            AlreadyRunning: The job already has a context.
            CapacityExceeded: The ceiling is reached.
        """
        if job_id in self._by_job:
            raise AlreadyRunning(job_id)
        if len(self._by_job) >= self.limit:
            raise CapacityExceeded(self.limit)

    def add(self, ctx: ExecutionContext) -> None:
        self.check_admission(ctx.job_id)
        self._by_job[ctx.job_id] = ctx

    def remove(self, job_id: str, run_id: str) -> Optional[ExecutionContext]:
        """Drop the context only when it still belongs to ``run_id``."""
        ctx = self._by_job.get(job_id)
        if ctx is None or ctx.run_id != run_id:
            return None
        return self._by_job.pop(job_id)
