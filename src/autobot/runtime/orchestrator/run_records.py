"""Single-writer store for run status, logs, and results."""

from __future__ import annotations

import asyncio
import functools
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, TypeVar

from ..domain.models import RUN_TO_JOB_STATUS, TERMINAL_RUN_STATUSES, RunLogEntry, RunRecord, RunResult, now_iso
from ..events.bus import EventBus, job_status_topic, run_log_topic, run_status_topic
from ..storage.interfaces import JobRepository, RunRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")

_LEVEL_MAP = {"debug": logging.DEBUG, "info": logging.INFO, "warning": logging.WARNING, "error": logging.ERROR}


def _parse_ts(value: str) -> Optional[datetime]:
    try:
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class RunRecordStore:
    """Persist run lifecycle changes and mirror each one onto the event bus.

    Runs are immutable once terminal: later log appends and status writes
    are ignored and reported as such through the return value.

    The methods themselves block on file I/O. Code running on the event loop
    goes through :meth:`offload` or :meth:`enqueue_log`, which hand the work
    to one writer thread so writes land in submission order.
    """

    def __init__(
        self,
        runs: RunRepository,
        jobs: JobRepository,
        bus: EventBus,
        *,
        history_limit: Optional[int] = None,
    ) -> None:
        self._runs = runs
        self._jobs = jobs
        self._bus = bus
        self._history_limit = history_limit
        self._writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="autobot-run-records")

    async def offload(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run a store call on the writer thread and await its result."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._writer, functools.partial(fn, *args, **kwargs))

    def enqueue_log(self, run_id: str, message: str, level: str = "info") -> None:
        """Queue a log append without waiting; used by synchronous log callbacks."""
        future = self._writer.submit(self.append_log, run_id, message, level)
        future.add_done_callback(self._report_failed_write)

    @staticmethod
    def _report_failed_write(future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error("Queued run log write failed", exc_info=exc)

    def get(self, run_id: str) -> Optional[RunRecord]:
        return self._runs.get(run_id)

    def create(self, job_id: str) -> RunRecord:
        """Persist a new ``running`` run and mark its job as running.

        Args:
            job_id (str): Job the run belongs to.

        Returns:
            RunRecord: The stored run.
        """
        run = RunRecord(job_id=job_id, status="running")
        self._runs.upsert(run)
        self._jobs.set_status(job_id, "running", last_run=run.started_at)
        self._publish_status(run)
        return run

    def append_log(self, run_id: str, message: str, level: str = "info") -> Optional[RunLogEntry]:
        """Append one log line to a running run.

        Sequence numbers and timestamps are strictly increasing per run.

        Args:
            run_id (str): Target run.
            message (str): Log text.
            level (str): One of ``debug``, ``info``, ``warning`` or ``error``.

        Returns:
            Optional[RunLogEntry]: The stored entry, or `None` when the run is
            unknown or already terminal.
        """
        run = self._runs.get(run_id, with_logs=False)
        if run is None or run.is_terminal:
            logger.debug("Dropping log for %s run %s: %s", "terminal" if run else "unknown", run_id, message)
            return None
        stamp = datetime.now(timezone.utc)
        seq = 1
        last = self._runs.last_log(run_id)
        if last is not None:
            seq = last.seq + 1
            last_ts = _parse_ts(last.timestamp)
            if last_ts is not None and stamp <= last_ts:
                stamp = last_ts + timedelta(microseconds=1)
        entry = RunLogEntry(seq=seq, timestamp=stamp.isoformat(timespec="microseconds"), message=message, level=level)
        self._runs.append_log(run_id, entry)
        logger.log(_LEVEL_MAP.get(level, logging.INFO), "[run %s] %s", run_id, message)
        self._bus.emit(
            topic=run_log_topic(run_id),
            event_type="run.log",
            entity_id=run_id,
            payload={"run_id": run_id, "job_id": run.job_id, **entry.to_dict()},
        )
        return entry

    def update_status(
        self,
        run_id: str,
        status: str,
        *,
        error: Optional[str] = None,
        error_kind: Optional[str] = None,
        result: Optional[RunResult] = None,
    ) -> bool:
        """Apply the run's status transition; the only status write path.

        A terminal transition stamps ``completed_at`` and ``duration_ms``,
        mirrors the job-level status onto the job record and trims the job's
        finished-run history to the configured limit.

        Args:
            run_id (str): Target run.
            status (str): New run status.
            error (Optional[str]): Failure description for ``failed`` runs.
            error_kind (Optional[str]): Stable error identifier.
            result (Optional[RunResult]): Outcome for ``completed`` runs.

        Returns:
            bool: `True` when the transition was applied, `False` when the run
            is unknown or already terminal.
        """
        run = self._runs.get(run_id, with_logs=False)
        if run is None:
            logger.warning("Status update for unknown run %s", run_id)
            return False
        if run.is_terminal:
            logger.debug("Ignoring %s for run %s already %s", status, run_id, run.status)
            return False
        run.status = status  # type: ignore[assignment]
        if error is not None:
            run.error = error
        if error_kind is not None:
            run.error_kind = error_kind
        if result is not None:
            run.result = result
        if status in TERMINAL_RUN_STATUSES:
            finished = datetime.now(timezone.utc)
            run.completed_at = finished.isoformat()
            started = _parse_ts(run.started_at)
            if started is not None:
                run.duration_ms = max(0, int((finished - started).total_seconds() * 1000))
        self._runs.upsert(run)
        if status in TERMINAL_RUN_STATUSES:
            self._jobs.set_status(run.job_id, RUN_TO_JOB_STATUS[status], last_run=run.completed_at or now_iso())
        self._publish_status(run)
        if status in TERMINAL_RUN_STATUSES and self._history_limit:
            removed = self._runs.prune(run.job_id, self._history_limit)
            if removed:
                logger.debug("Pruned %d finished run(s) of job %s", len(removed), run.job_id)
        return True

    def _publish_status(self, run: RunRecord) -> None:
        payload = {
            "run_id": run.id,
            "job_id": run.job_id,
            "status": run.status,
            "error": run.error,
            "error_kind": run.error_kind,
            "result": run.result.to_dict() if run.result else None,
        }
        self._bus.emit(topic=run_status_topic(run.id), event_type="run.status", entity_id=run.id, payload=payload)
        self._bus.emit(
            topic=job_status_topic(run.job_id),
            event_type="job.status",
            entity_id=run.job_id,
            payload={"job_id": run.job_id, "run_id": run.id, "status": RUN_TO_JOB_STATUS.get(run.status, run.status)},
        )
