"""Domain models for orchestrator runtime state."""

from .models import JOB_TYPES, Job, Project, RunLogEntry, RunRecord, RunResult

__all__ = [
    "JOB_TYPES",
    "Job",
    "Project",
    "RunRecord",
    "RunLogEntry",
    "RunResult",
]
