from __future__ import annotations

import asyncio
import json
import subprocess
from pathlib import Path
from typing import Any, Callable, Optional, Union

import pytest

from autobot.runtime.domain.models import Job, Project
from autobot.runtime.orchestrator.repository_client import GitRepositoryClient
from autobot.runtime.orchestrator.service import OrchestratorService
from autobot.runtime.orchestrator.settings import OrchestratorSettings
from autobot.runtime.storage.container import Container

PACKAGE_JSON = {
    "name": "demo",
    "version": "1.0.0",
    "dependencies": {"left-pad": "^1.0.0", "express": "^4.17.0"},
    "devDependencies": {"jest": "^29.0.0"},
}

Reply = Union[str, Callable[[str, str], str]]


def git(cwd: Path, *args: str) -> str:
    return subprocess.run(
        ["git", *args],
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True,
    ).stdout


class ScriptedTextGenerator:
    """Text generator returning queued replies, optionally blocking until released."""

    def __init__(self, replies: Optional[list[Reply]] = None, *, default: str = "Nothing to report.", hold: bool = False) -> None:
        self.replies = list(replies or [])
        self.default = default
        self.hold = hold
        self.calls: list[dict[str, Any]] = []
        self._gate: Optional[asyncio.Event] = None
        self._entered: Optional[asyncio.Event] = None

    def _events(self) -> tuple[asyncio.Event, asyncio.Event]:
        if self._gate is None or self._entered is None:
            self._gate = asyncio.Event()
            self._entered = asyncio.Event()
        return self._gate, self._entered

    async def complete(self, *, system: str, user: str, temperature: Optional[float] = None, max_tokens: Optional[int] = None) -> str:
        self.calls.append({"system": system, "user": user, "temperature": temperature, "max_tokens": max_tokens})
        if self.hold:
            gate, entered = self._events()
            entered.set()
            await gate.wait()
        if self.replies:
            reply = self.replies.pop(0)
            return reply(system, user) if callable(reply) else reply
        return self.default

    async def wait_entered(self, timeout: float = 30.0) -> None:
        _, entered = self._events()
        await asyncio.wait_for(entered.wait(), timeout)

    def release(self) -> None:
        gate, _ = self._events()
        self.hold = False
        gate.set()


def json_reply(payload: Any, prefix: str = "Here you go.") -> str:
    return f"{prefix}\n\n```json\n{json.dumps(payload)}\n```"


@pytest.fixture
def git_remote(tmp_path: Path) -> Path:
    """Bare repository with a ``main`` branch holding a small JS/Python project."""
    remote = tmp_path / "remote.git"
    git(tmp_path, "init", "--bare", str(remote))
    git(remote, "symbolic-ref", "HEAD", "refs/heads/main")

    seed = tmp_path / "seed"
    seed.mkdir()
    git(seed, "init")
    git(seed, "checkout", "-b", "main")
    git(seed, "config", "user.email", "tests@example.com")
    git(seed, "config", "user.name", "Tests")
    git(seed, "config", "commit.gpgsign", "false")
    (seed / "package.json").write_text(json.dumps(PACKAGE_JSON, indent=2) + "\n", encoding="utf-8")
    (seed / "requirements.txt").write_text("requests==2.0.0\nflask>=2.0 ; python_version >= '3.8'\n", encoding="utf-8")
    (seed / "src").mkdir()
    (seed / "src" / "app.js").write_text("const password = 'hunter2';\nmodule.exports = { password };\n", encoding="utf-8")
    git(seed, "add", "-A")
    git(seed, "commit", "-m", "initial")
    git(seed, "push", str(remote), "main")
    return remote


@pytest.fixture
def make_service(tmp_path: Path) -> Callable[..., OrchestratorService]:
    """Factory building an orchestrator over a fresh state root with one project."""

    def _make(
        generator: Any,
        *,
        repository_url: str,
        jobs: list[tuple[str, str, dict[str, Any]]],
        max_concurrent_runs: int = 5,
        stage_timeouts: Optional[dict[str, Optional[float]]] = None,
        project_dir: Optional[Path] = None,
        git_client: Optional[GitRepositoryClient] = None,
    ) -> OrchestratorService:
        container = Container(project_dir or tmp_path / "project")
        container.projects.upsert(Project(id="proj-1", name="demo", repository_url=repository_url, default_branch="main"))
        for job_id, job_type, configuration in jobs:
            container.jobs.upsert(
                Job(id=job_id, name=job_id, job_type=job_type, project_id="proj-1", configuration=configuration)
            )
        settings = OrchestratorSettings.from_config(container.config.load(), state_root=container.state_root)
        settings.max_concurrent_runs = max_concurrent_runs
        if stage_timeouts:
            settings.stage_timeouts.update(stage_timeouts)
        return OrchestratorService(container, generator=generator, git=git_client, settings=settings)

    return _make
