"""Domain model dataclasses and normalization helpers."""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Optional, cast


JobType = Literal["dependency_update", "security_scan", "module_update", "custom"]
JobStatus = Literal["idle", "running", "completed", "failed", "stopped"]
RunStatus = Literal["running", "completed", "failed", "cancelled"]

JOB_TYPES: tuple[str, ...] = ("dependency_update", "security_scan", "module_update", "custom")
_VALID_JOB_STATUSES = {"idle", "running", "completed", "failed", "stopped"}
_VALID_RUN_STATUSES = {"running", "completed", "failed", "cancelled"}
TERMINAL_RUN_STATUSES = frozenset({"completed", "failed", "cancelled"})

# Run statuses as reported through the job-level status vocabulary.
RUN_TO_JOB_STATUS: dict[str, JobStatus] = {
    "running": "running",
    "completed": "completed",
    "failed": "failed",
    "cancelled": "stopped",
}


def now_iso() -> str:
    """Get the current UTC timestamp formatted as ISO-8601 text."""
    return datetime.now(timezone.utc).isoformat()


def _id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:10]}"


@dataclass
class Project:
    """Repository a job operates on."""
    id: str = field(default_factory=lambda: _id("proj"))
    name: str = ""
    repository_url: str = ""
    default_branch: str = "main"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Project":
        return cls(
            id=str(data.get("id") or _id("proj")),
            name=str(data.get("name") or ""),
            repository_url=str(data.get("repository_url") or ""),
            default_branch=str(data.get("default_branch") or "main"),
        )


@dataclass
class Job:
    """Persistent bot configuration bound to a project.

    ``job_type`` is kept verbatim; an unknown value is rejected when the
    orchestrator builds the strategy, not rewritten here.
    """
    id: str = field(default_factory=lambda: _id("job"))
    name: str = ""
    job_type: str = "custom"
    project_id: str = ""
    configuration: dict[str, Any] = field(default_factory=dict)
    status: JobStatus = "idle"
    last_run: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Job":
        status = str(data.get("status") or "idle")
        if status not in _VALID_JOB_STATUSES:
            status = "idle"
        return cls(
            id=str(data.get("id") or _id("job")),
            name=str(data.get("name") or ""),
            job_type=str(data.get("job_type") or data.get("type") or ""),
            project_id=str(data.get("project_id") or ""),
            configuration=dict(data.get("configuration") or {}),
            status=cast(JobStatus, status),
            last_run=(str(data.get("last_run")) if data.get("last_run") else None),
        )


@dataclass
class RunLogEntry:
    seq: int
    timestamp: str
    message: str
    level: str = "info"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RunLogEntry":
        try:
            seq = int(data.get("seq") or 0)
        except (TypeError, ValueError):
            seq = 0
        return cls(
            seq=seq,
            timestamp=str(data.get("timestamp") or now_iso()),
            message=str(data.get("message") or ""),
            level=str(data.get("level") or "info"),
        )


@dataclass
class RunResult:
    """Outcome of a completed run."""
    branch: str
    summary: str
    analysis: str = ""
    diff: str = ""
    commit_sha: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RunResult":
        return cls(
            branch=str(data.get("branch") or ""),
            summary=str(data.get("summary") or ""),
            analysis=str(data.get("analysis") or ""),
            diff=str(data.get("diff") or ""),
            commit_sha=(str(data.get("commit_sha")) if data.get("commit_sha") else None),
        )


@dataclass
class RunRecord:
    """One execution attempt of a job, with its logs and result."""
    id: str = field(default_factory=lambda: _id("run"))
    job_id: str = ""
    status: RunStatus = "running"
    started_at: str = field(default_factory=now_iso)
    completed_at: Optional[str] = None
    duration_ms: Optional[int] = None
    logs: list[RunLogEntry] = field(default_factory=list)
    result: Optional[RunResult] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES

    def to_dict(self) -> dict[str, Any]:
        """Serialize a run record, including nested log entries and result."""
        data = asdict(self)
        data["logs"] = [entry.to_dict() for entry in self.logs]
        data["result"] = self.result.to_dict() if self.result else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RunRecord":
        """Deserialize a run record from persisted data."""
        status = str(data.get("status") or "running")
        if status not in _VALID_RUN_STATUSES:
            status = "failed"
        raw_duration = data.get("duration_ms")
        try:
            duration_ms = int(raw_duration) if raw_duration is not None else None
        except (TypeError, ValueError):
            duration_ms = None
        raw_result = data.get("result")
        return cls(
            id=str(data.get("id") or _id("run")),
            job_id=str(data.get("job_id") or ""),
            status=cast(RunStatus, status),
            started_at=str(data.get("started_at") or now_iso()),
            completed_at=(str(data.get("completed_at")) if data.get("completed_at") else None),
            duration_ms=duration_ms,
            logs=[RunLogEntry.from_dict(item) for item in list(data.get("logs") or []) if isinstance(item, dict)],
            result=RunResult.from_dict(raw_result) if isinstance(raw_result, dict) else None,
            error=(str(data.get("error")) if data.get("error") is not None else None),
            error_kind=(str(data.get("error_kind")) if data.get("error_kind") else None),
        )
