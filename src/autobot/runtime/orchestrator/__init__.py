"""Run orchestration: admission, pipeline stages, git and workspace handling."""

from .pipeline import RunPipeline, branch_name
from .registry import ActiveRunRegistry, CancellationToken, ExecutionContext
from .repository_client import GitRepositoryClient
from .run_records import RunRecordStore
from .service import OrchestratorService
from .settings import OrchestratorSettings
from .workspace_manager import WorkspaceManager

__all__ = [
    "ActiveRunRegistry",
    "CancellationToken",
    "ExecutionContext",
    "GitRepositoryClient",
    "OrchestratorService",
    "OrchestratorSettings",
    "RunPipeline",
    "RunRecordStore",
    "WorkspaceManager",
    "branch_name",
]
