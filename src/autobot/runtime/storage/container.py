"""Dependency container for runtime repositories."""

from __future__ import annotations

from pathlib import Path

from .bootstrap import ensure_state_root
from .file_repos import (
    FileConfigRepository,
    FileEventRepository,
    FileJobRepository,
    FileProjectRepository,
    FileRunRepository,
)


class Container:
    """Wire file-backed repositories for one state root."""
    def __init__(self, project_dir: Path) -> None:
        """Initialize the Container.

        Args:
            project_dir (Path): Directory holding the ``.autobot`` state root.
        """
        self.project_dir = project_dir.resolve()
        self.state_root = ensure_state_root(self.project_dir)

        self.projects = FileProjectRepository(self.state_root / "projects.yaml", self.state_root / "projects.lock")
        self.jobs = FileJobRepository(self.state_root / "jobs.yaml", self.state_root / "jobs.lock")
        self.runs = FileRunRepository(
            self.state_root / "runs.yaml",
            self.state_root / "runs.lock",
            logs_dir=self.state_root / "run_logs",
        )
        self.events = FileEventRepository(self.state_root / "events.jsonl", self.state_root / "events.lock")
        self.config = FileConfigRepository(self.state_root / "config.yaml", self.state_root / "config.lock")
