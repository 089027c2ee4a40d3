"""Repository interfaces for runtime persistence abstractions."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, List, Optional

from ..domain.models import Job, Project, RunLogEntry, RunRecord


class ProjectRepository(ABC):
    """Persistence contract for project records."""
    @abstractmethod
    def list(self) -> List[Project]:
        raise NotImplementedError

    @abstractmethod
    def get(self, project_id: str) -> Optional[Project]:
        """Fetch a project by id, or ``None`` when no record exists.

        Args:
            project_id (str): Identifier for the target project.

        Returns:
            Optional[Project]: Requested value when available; otherwise `None`.
        """
        raise NotImplementedError

    @abstractmethod
    def upsert(self, project: Project) -> Project:
        raise NotImplementedError


class JobRepository(ABC):
    """Persistence contract for bot job records."""
    @abstractmethod
    def list(self) -> List[Job]:
        raise NotImplementedError

    @abstractmethod
    def get(self, job_id: str) -> Optional[Job]:
        """Fetch a job by id, or ``None`` when no record exists.

        Args:
            job_id (str): Identifier for the target job.

        Returns:
            Optional[Job]: Requested value when available; otherwise `None`.
        """
        raise NotImplementedError

    @abstractmethod
    def upsert(self, job: Job) -> Job:
        raise NotImplementedError

    @abstractmethod
    def set_status(self, job_id: str, status: str, *, last_run: Optional[str] = None) -> Optional[Job]:
        """Update only the status and last-run stamp of a job.

        Args:
            job_id (str): Identifier for the target job.
            status (str): New job status.
            last_run (Optional[str]): Timestamp to store as ``last_run``, when given.

        Returns:
            Optional[Job]: Updated job, or `None` when the job no longer exists.
        """
        raise NotImplementedError


class RunRepository(ABC):
    """Persistence contract for run records."""
    @abstractmethod
    def list(self) -> List[RunRecord]:
        raise NotImplementedError

    @abstractmethod
    def get(self, run_id: str, *, with_logs: bool = True) -> Optional[RunRecord]:
        raise NotImplementedError

    @abstractmethod
    def for_job(self, job_id: str, *, with_logs: bool = True) -> List[RunRecord]:
        """List runs of one job ordered oldest first.

        Args:
            job_id (str): Identifier for the owning job.

        Returns:
            List[RunRecord]: Runs recorded for the job.
        """
        raise NotImplementedError

    @abstractmethod
    def upsert(self, run: RunRecord) -> RunRecord:
        raise NotImplementedError

    @abstractmethod
    def append_log(self, run_id: str, entry: RunLogEntry) -> RunLogEntry:
        raise NotImplementedError

    @abstractmethod
    def last_log(self, run_id: str) -> Optional[RunLogEntry]:
        raise NotImplementedError

    @abstractmethod
    def prune(self, job_id: str, keep: int) -> List[str]:
        """Remove the oldest terminal runs of a job, keeping the newest ``keep``.

        Args:
            job_id (str): Job whose history is trimmed.
            keep (int): Number of terminal runs to retain.

        Returns:
            List[str]: Identifiers of the removed runs.
        """
        raise NotImplementedError


class EventRepository(ABC):
    """Append-only persistence contract for published events."""
    @abstractmethod
    def append(self, *, topic: str, event_type: str, entity_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Persist one event envelope.

        Args:
            topic (str): Topic the event is published on.
            event_type (str): Specific event type.
            entity_id (str): Identifier for the related entity.
            payload (dict[str, Any]): JSON-serializable body.

        Returns:
            dict[str, Any]: Persisted envelope including generated id and timestamp.
        """
        raise NotImplementedError

    @abstractmethod
    def list_recent(self, limit: int = 100) -> list[dict[str, Any]]:
        raise NotImplementedError
