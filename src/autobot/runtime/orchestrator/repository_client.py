"""Git clone, branch, and commit/push helpers used by the run pipeline."""

from __future__ import annotations

import asyncio
import logging
import os
import subprocess
from pathlib import Path
from typing import Optional

from ..errors import AutobotError, BranchError, PushError, RepositoryUnavailable

logger = logging.getLogger(__name__)


def _stderr_tail(exc: BaseException, limit: int = 500) -> str:
    stderr = getattr(exc, "stderr", None) or ""
    if isinstance(stderr, bytes):
        stderr = stderr.decode("utf-8", errors="replace")
    text = str(stderr).strip() or str(exc)
    return text[-limit:]


class GitRepositoryClient:
    """Drive the ``git`` CLI in worker threads so the event loop never blocks.

    Every method maps git failures (non-zero exit, missing binary, timeout)
    onto the error kind of the stage that called it.
    """

    def __init__(self, *, author_name: str = "AutoBot", author_email: str = "autobot@localhost") -> None:
        self.author_name = author_name
        self.author_email = author_email
        self._env = {**os.environ, "GIT_TERMINAL_PROMPT": "0"}

    def _git(self, args: list[str], cwd: Optional[Path], timeout: Optional[float]) -> subprocess.CompletedProcess[str]:
        return subprocess.run(
            ["git", *args],
            cwd=cwd,
            check=True,
            capture_output=True,
            text=True,
            timeout=timeout,
            env=self._env,
        )

    async def _run(
        self,
        args: list[str],
        cwd: Optional[Path],
        error_cls: type[AutobotError],
        what: str,
        timeout: Optional[float] = None,
    ) -> str:
        try:
            result = await asyncio.to_thread(self._git, args, cwd, timeout)
        except subprocess.TimeoutExpired as exc:
            raise error_cls(f"{what} timed out after {exc.timeout}s") from exc
        except (subprocess.CalledProcessError, OSError) as exc:
            raise error_cls(f"{what} failed: {_stderr_tail(exc)}") from exc
        return result.stdout

    async def clone(self, url: str, dest: Path, *, timeout: Optional[float] = None) -> Path:
        """Clone ``url`` into ``dest``.

        Args:
            url (str): Repository URL or local path.
            dest (Path): Target directory; must not exist or be empty.
            timeout (Optional[float]): Seconds before the clone is abandoned.

        Returns:
            Path: The cloned working directory.

        Raises:
            RepositoryUnavailable: When the remote cannot be cloned.
        """
        if not url:
            raise RepositoryUnavailable("Project has no repository_url")
        await self._run(["clone", "--quiet", url, str(dest)], None, RepositoryUnavailable, f"Clone of {url}", timeout)
        return dest

    async def create_branch(self, workdir: Path, name: str, base: str, *, timeout: Optional[float] = None) -> str:
        """Create and check out ``name`` starting at ``origin/<base>``.

        Raises:
            BranchError: When the base ref is missing or the branch cannot be created.
        """
        start = f"origin/{base}"
        await self._run(["rev-parse", "--verify", "--quiet", start], workdir, BranchError, f"Resolving {start}", timeout)
        await self._run(["checkout", "-b", name, start], workdir, BranchError, f"Creating branch {name}", timeout)
        return name

    async def has_changes(self, workdir: Path) -> bool:
        out = await self._run(["status", "--porcelain"], workdir, PushError, "Reading working tree status")
        return bool(out.strip())

    async def commit_and_push(
        self,
        workdir: Path,
        message: str,
        branch: str,
        *,
        timeout: Optional[float] = None,
    ) -> Optional[str]:
        """Stage everything (deletions included), commit, and push ``branch`` once.

        Args:
            workdir (Path): Cloned working directory.
            message (str): Commit message.
            branch (str): Branch to push to ``origin``.
            timeout (Optional[float]): Per-command timeout in seconds.

        Returns:
            Optional[str]: Commit sha, or `None` when nothing was staged.

        Raises:
            PushError: When staging, committing or pushing fails.
        """
        await self._run(["add", "--all"], workdir, PushError, "Staging changes", timeout)
        staged = await self._run(["diff", "--cached", "--name-only"], workdir, PushError, "Listing staged changes", timeout)
        if not staged.strip():
            return None
        await self._run(
            [
                "-c", f"user.name={self.author_name}",
                "-c", f"user.email={self.author_email}",
                "-c", "commit.gpgsign=false",
                "commit", "--quiet", "--no-verify", "-m", message,
            ],
            workdir,
            PushError,
            "Commit",
            timeout,
        )
        sha = (await self._run(["rev-parse", "HEAD"], workdir, PushError, "Reading commit sha", timeout)).strip()
        await self._run(["push", "--quiet", "origin", f"{branch}:{branch}"], workdir, PushError, f"Push of {branch}", timeout)
        logger.info("Pushed %s (%s)", branch, sha[:12])
        return sha

    async def diff_stat(self, workdir: Path, rev: str = "HEAD") -> str:
        """Summarize the files touched by ``rev``."""
        return await self._run(["show", "--stat", "--format=", rev], workdir, PushError, "Reading diff stat")
