"""Error taxonomy for admission control and pipeline stages."""

from __future__ import annotations


class AutobotError(Exception):
    """Base class for every orchestrator-level failure.

    ``kind`` is the stable identifier persisted on failed runs.
    """

    kind = "AutobotError"


class AlreadyRunning(AutobotError):
    """A job already has an active execution."""

    kind = "AlreadyRunning"

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} is already running")
        self.job_id = job_id


class CapacityExceeded(AutobotError):
    """The concurrency ceiling is reached; the request is rejected, not queued."""

    kind = "CapacityExceeded"

    def __init__(self, limit: int) -> None:
        super().__init__(f"Concurrency ceiling of {limit} active runs reached")
        self.limit = limit


class NotRunning(AutobotError):
    kind = "NotRunning"

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} is not running")
        self.job_id = job_id


class JobNotFound(AutobotError):
    kind = "JobNotFound"

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class UnsupportedJobType(AutobotError, ValueError):
    """Raised when no strategy exists for a job type."""

    kind = "UnsupportedJobType"

    def __init__(self, job_type: str) -> None:
        super().__init__(f"Unsupported job type: {job_type!r}")
        self.job_type = job_type


class RepositoryUnavailable(AutobotError):
    kind = "RepositoryUnavailable"


class BranchError(AutobotError):
    kind = "BranchError"


class TransformationError(AutobotError):
    kind = "TransformationError"


class PushError(AutobotError):
    kind = "PushError"


class WorkspaceError(AutobotError):
    kind = "WorkspaceError"
