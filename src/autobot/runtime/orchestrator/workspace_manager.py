"""Per-run scratch directory allocation and cleanup."""

from __future__ import annotations

import logging
import os
import shutil
import stat
import sys
from pathlib import Path
from typing import Iterable

from ..errors import WorkspaceError

logger = logging.getLogger(__name__)


def _make_writable_and_retry(func, path, _exc) -> None:  # type: ignore[no-untyped-def]
    # git marks pack files read-only
    os.chmod(path, stat.S_IWRITE)
    func(path)


class WorkspaceManager:
    """Allocate one isolated directory per run under a common root."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def path_for(self, run_id: str) -> Path:
        return self.root / run_id

    def allocate(self, run_id: str) -> Path:
        """Create a fresh, empty workspace for ``run_id``.

        Raises:
            WorkspaceError: When the directory cannot be created or already exists.
        """
        path = self.path_for(run_id)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            path.mkdir()
        except OSError as exc:
            raise WorkspaceError(f"Could not allocate workspace {path}: {exc}") from exc
        return path

    def release(self, path: Path) -> bool:
        """Remove a workspace directory; safe to call more than once.

        Failures are logged, never raised.

        Returns:
            bool: `True` when the directory is gone afterwards.
        """
        if not path.exists():
            return True
        try:
            if sys.version_info >= (3, 12):
                shutil.rmtree(path, onexc=_make_writable_and_retry)
            else:
                shutil.rmtree(path, onerror=_make_writable_and_retry)
        except OSError:
            logger.exception("Failed to remove workspace %s", path)
            return False
        return not path.exists()

    def sweep_orphans(self, active_run_ids: Iterable[str]) -> list[Path]:
        """Delete workspace directories that no active run owns."""
        if not self.root.exists():
            return []
        keep = set(active_run_ids)
        removed: list[Path] = []
        for child in sorted(self.root.iterdir()):
            if child.is_dir() and child.name not in keep and self.release(child):
                removed.append(child)
        if removed:
            logger.info("Removed %d orphaned workspace(s) under %s", len(removed), self.root)
        return removed
