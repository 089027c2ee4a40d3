"""File-backed repository implementations for runtime state."""

from __future__ import annotations

import json
import os
import threading
import uuid
from collections import deque
from pathlib import Path
from typing import Any, Callable, Generic, Optional, TypeVar

import yaml  # type: ignore[import-untyped]

from ...io_utils import FileLock, atomic_write_yaml, load_yaml
from ..domain.models import Job, Project, RunLogEntry, RunRecord, now_iso
from .interfaces import EventRepository, JobRepository, ProjectRepository, RunRepository


T = TypeVar("T")


class _YamlCollectionRepo(Generic[T]):
    def __init__(
        self,
        path: Path,
        lock_path: Path,
        key: str,
        loader: Callable[[dict[str, Any]], T],
        dumper: Callable[[T], dict[str, Any]],
    ) -> None:
        """Initialize the YamlCollectionRepo.

        Args:
            path (Path): YAML file path containing this repository collection.
            lock_path (Path): Lock file path used for cross-process synchronization.
            key (str): Top-level YAML key that stores serialized collection items.
            loader (Callable[[dict[str, Any]], T]): Converts raw dictionaries into models.
            dumper (Callable[[T], dict[str, Any]]): Converts models into dictionaries.
        """
        self._path = path
        self._lock = FileLock(lock_path)
        self._thread_lock = threading.RLock()
        self._key = key
        self._loader = loader
        self._dumper = dumper

    def _load(self) -> list[T]:
        items = load_yaml(self._path).get(self._key, [])
        if not isinstance(items, list):
            return []
        return [self._loader(item) for item in items if isinstance(item, dict)]

    def _save(self, items: list[T]) -> None:
        atomic_write_yaml(self._path, {"version": 1, self._key: [self._dumper(item) for item in items]})

    def list(self) -> list[T]:
        with self._thread_lock:
            with self._lock:
                return self._load()

    def replace(self, item_id: str, item: T, id_of: Callable[[T], str]) -> T:
        with self._thread_lock:
            with self._lock:
                items = self._load()
                for idx, existing in enumerate(items):
                    if id_of(existing) == item_id:
                        items[idx] = item
                        break
                else:
                    items.append(item)
                self._save(items)
        return item


class FileProjectRepository(ProjectRepository):
    """YAML-backed project repository."""
    def __init__(self, path: Path, lock_path: Path) -> None:
        self._repo = _YamlCollectionRepo[Project](
            path,
            lock_path,
            "projects",
            loader=Project.from_dict,
            dumper=lambda p: p.to_dict(),
        )

    def list(self) -> list[Project]:
        return self._repo.list()

    def get(self, project_id: str) -> Optional[Project]:
        for project in self.list():
            if project.id == project_id:
                return project
        return None

    def upsert(self, project: Project) -> Project:
        return self._repo.replace(project.id, project, lambda p: p.id)


class FileJobRepository(JobRepository):
    """YAML-backed job repository with coarse file/process locking."""
    def __init__(self, path: Path, lock_path: Path) -> None:
        """Initialize the FileJobRepository.

        Args:
            path (Path): YAML file path for job records.
            lock_path (Path): Lock file path used while mutating job data.
        """
        self._repo = _YamlCollectionRepo[Job](
            path,
            lock_path,
            "jobs",
            loader=Job.from_dict,
            dumper=lambda j: j.to_dict(),
        )

    def list(self) -> list[Job]:
        return self._repo.list()

    def get(self, job_id: str) -> Optional[Job]:
        for job in self.list():
            if job.id == job_id:
                return job
        return None

    def upsert(self, job: Job) -> Job:
        return self._repo.replace(job.id, job, lambda j: j.id)

    def set_status(self, job_id: str, status: str, *, last_run: Optional[str] = None) -> Optional[Job]:
        """Update job status in place under the repository lock.

        Args:
            job_id (str): Identifier for the target job.
            status (str): New job status.
            last_run (Optional[str]): Timestamp stored as ``last_run`` when given.

        Returns:
            Optional[Job]: Updated job, or `None` when the job is unknown.
        """
        with self._repo._thread_lock:
            with self._repo._lock:
                jobs = self._repo._load()
                for job in jobs:
                    if job.id == job_id:
                        job.status = status  # type: ignore[assignment]
                        if last_run is not None:
                            job.last_run = last_run
                        self._repo._save(jobs)
                        return job
        return None


class FileRunRepository(RunRepository):
    """YAML-backed run-record repository with one JSONL log file per run.

    ``runs.yaml`` holds run metadata only; log lines are appended to
    ``<logs_dir>/<run_id>.jsonl`` so a log append never rewrites the
    collection.
    """
    def __init__(self, path: Path, lock_path: Path, logs_dir: Optional[Path] = None) -> None:
        """Initialize the FileRunRepository.

        Args:
            path (Path): YAML file path for run records.
            lock_path (Path): Lock file path used while mutating run data.
            logs_dir (Optional[Path]): Directory for per-run log files; defaults
                to ``run_logs`` next to ``path``.
        """
        self._repo = _YamlCollectionRepo[RunRecord](
            path,
            lock_path,
            "runs",
            loader=RunRecord.from_dict,
            dumper=_run_metadata,
        )
        self._logs_dir = logs_dir or path.parent / "run_logs"
        self._log_lock = threading.RLock()

    def _log_path(self, run_id: str) -> Path:
        return self._logs_dir / f"{run_id}.jsonl"

    def _with_logs(self, run: RunRecord) -> RunRecord:
        if self._log_path(run.id).exists():
            run.logs = self.logs(run.id)
        return run

    def list(self) -> list[RunRecord]:
        """List run metadata; log entries are not loaded."""
        return self._repo.list()

    def get(self, run_id: str, *, with_logs: bool = True) -> Optional[RunRecord]:
        """Fetch a single run by identifier.

        Args:
            run_id (str): Identifier for the target run.
            with_logs (bool): Load the run's log entries as well.

        Returns:
            Optional[RunRecord]: Requested value when available; otherwise `None`.
        """
        for run in self.list():
            if run.id == run_id:
                return self._with_logs(run) if with_logs else run
        return None

    def for_job(self, job_id: str, *, with_logs: bool = True) -> list[RunRecord]:
        runs = [run for run in self.list() if run.job_id == job_id]
        runs.sort(key=lambda run: run.started_at)
        return [self._with_logs(run) for run in runs] if with_logs else runs

    def upsert(self, run: RunRecord) -> RunRecord:
        return self._repo.replace(run.id, run, lambda r: r.id)

    def append_log(self, run_id: str, entry: RunLogEntry) -> RunLogEntry:
        with self._log_lock:
            self._logs_dir.mkdir(parents=True, exist_ok=True)
            with self._log_path(run_id).open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry.to_dict(), ensure_ascii=False) + "\n")
                handle.flush()
                os.fsync(handle.fileno())
        return entry

    def logs(self, run_id: str) -> list[RunLogEntry]:
        path = self._log_path(run_id)
        if not path.exists():
            return []
        with self._log_lock:
            lines = path.read_text(encoding="utf-8").splitlines()
        return [entry for entry in (_parse_log_line(line) for line in lines) if entry is not None]

    def last_log(self, run_id: str) -> Optional[RunLogEntry]:
        path = self._log_path(run_id)
        if not path.exists():
            return None
        with self._log_lock:
            with path.open("r", encoding="utf-8") as handle:
                tail = list(deque(handle, maxlen=1))
        return _parse_log_line(tail[0]) if tail else None

    def prune(self, job_id: str, keep: int) -> list[str]:
        """Drop the oldest terminal runs of a job beyond the newest ``keep``.

        Args:
            job_id (str): Job whose history is trimmed.
            keep (int): Number of terminal runs to retain.

        Returns:
            list[str]: Identifiers of the removed runs.
        """
        with self._repo._thread_lock:
            with self._repo._lock:
                items = self._repo._load()
                finished = sorted(
                    (run for run in items if run.job_id == job_id and run.is_terminal),
                    key=lambda run: run.started_at,
                )
                doomed = {run.id for run in finished[: max(0, len(finished) - keep)]}
                if not doomed:
                    return []
                self._repo._save([run for run in items if run.id not in doomed])
        with self._log_lock:
            for run_id in doomed:
                self._log_path(run_id).unlink(missing_ok=True)
        return sorted(doomed)


def _run_metadata(run: RunRecord) -> dict[str, Any]:
    data = run.to_dict()
    data.pop("logs", None)
    return data


def _parse_log_line(line: str) -> Optional[RunLogEntry]:
    try:
        parsed = json.loads(line)
    except json.JSONDecodeError:
        return None
    return RunLogEntry.from_dict(parsed) if isinstance(parsed, dict) else None


class FileEventRepository(EventRepository):
    """JSONL-backed event stream repository."""
    def __init__(self, path: Path, lock_path: Path) -> None:
        """Initialize the FileEventRepository.

        Args:
            path (Path): JSONL file path where event envelopes are appended.
            lock_path (Path): Lock file path used while writing or reading events.
        """
        self._path = path
        self._lock = FileLock(lock_path)
        self._thread_lock = threading.RLock()

    def append(self, *, topic: str, event_type: str, entity_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Append one event envelope to the JSONL stream.

        Args:
            topic (str): Topic the event is published on.
            event_type (str): Specific event type.
            entity_id (str): Identifier for the related entity.
            payload (dict[str, Any]): JSON-serializable event payload body.

        Returns:
            dict[str, Any]: Persisted event envelope including generated id and timestamp.
        """
        event = {
            "id": f"evt-{uuid.uuid4().hex[:10]}",
            "ts": now_iso(),
            "topic": topic,
            "type": event_type,
            "entity_id": entity_id,
            "payload": payload,
        }
        with self._thread_lock:
            with self._lock:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                with self._path.open("a", encoding="utf-8") as handle:
                    handle.write(json.dumps(event, default=str) + "\n")
                    handle.flush()
                    os.fsync(handle.fileno())
        return event

    def list_recent(self, limit: int = 100) -> list[dict[str, Any]]:
        """Read the newest events up to ``limit``.

        Args:
            limit (int): Maximum number of newest events to return.

        Returns:
            list[dict[str, Any]]: Parsed event envelopes from the tail of the stream.
        """
        if limit <= 0 or not self._path.exists():
            return []
        with self._thread_lock:
            with self._lock:
                with self._path.open("r", encoding="utf-8") as handle:
                    selected = list(deque(handle, maxlen=limit))
        events: list[dict[str, Any]] = []
        for line in selected:
            try:
                parsed = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(parsed, dict):
                events.append(parsed)
        return events


class FileConfigRepository:
    """YAML-backed repository for runtime configuration."""
    def __init__(self, path: Path, lock_path: Path) -> None:
        self._path = path
        self._lock = FileLock(lock_path)
        self._thread_lock = threading.RLock()

    def load(self) -> dict[str, Any]:
        """Load configuration from disk.

        Returns:
            dict[str, Any]: Configuration mapping from disk, or an empty mapping.
        """
        with self._thread_lock:
            with self._lock:
                try:
                    return load_yaml(self._path)
                except yaml.YAMLError as exc:
                    raise ValueError(f"Invalid configuration file {self._path}: {exc}") from exc

    def save(self, config: dict[str, Any]) -> dict[str, Any]:
        with self._thread_lock:
            with self._lock:
                atomic_write_yaml(self._path, config)
        return config
