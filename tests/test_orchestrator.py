from __future__ import annotations

import asyncio
import json
import re
from pathlib import Path

import pytest

from autobot.runtime.domain.models import RunRecord
from autobot.runtime.errors import AlreadyRunning, CapacityExceeded, JobNotFound, NotRunning, PushError, UnsupportedJobType
from autobot.runtime.orchestrator.repository_client import GitRepositoryClient
from autobot.runtime.strategies.base import LOG_EXCERPT_CHARS

from conftest import ScriptedTextGenerator, git, json_reply

DEP_JOB = ("job-dep", "dependency_update", {"manifest": "package.json"})
MOD_JOB = ("job-mod", "module_update", {})
CUSTOM_JOB = ("job-custom", "custom", {"prompt": "Add a CONTRIBUTING file"})


def _remote_branches(remote: Path) -> list[str]:
    out = git(remote, "for-each-ref", "--format=%(refname:short)", "refs/heads")
    return [line.strip() for line in out.splitlines() if line.strip()]


def _assert_logs_ordered(run: RunRecord) -> None:
    seqs = [entry.seq for entry in run.logs]
    stamps = [entry.timestamp for entry in run.logs]
    assert seqs == list(range(1, len(seqs) + 1))
    assert all(a < b for a, b in zip(stamps, stamps[1:]))


def test_dependency_update_run_completes_and_pushes_branch(make_service, git_remote: Path) -> None:
    generator = ScriptedTextGenerator(
        [
            "left-pad is outdated; bump to 1.3.0.",
            json_reply({"dependencies": {"left-pad": "^1.3.0"}, "devDependencies": {"jest": "^29.7.0"}}),
        ]
    )
    service = make_service(generator, repository_url=str(git_remote), jobs=[DEP_JOB])

    async def _go() -> RunRecord:
        await service.start()
        run_id = await service.spawn("job-dep")
        run = await service.wait_for_run(run_id, timeout=60)
        await service.shutdown()
        assert run is not None
        return run

    run = asyncio.run(_go())

    assert run.status == "completed"
    assert run.error is None
    assert run.result is not None
    assert re.fullmatch(r"autobot/dependency_update-\d+", run.result.branch)
    assert run.result.summary
    assert run.result.commit_sha
    assert '"left-pad": "^1.3.0"' in run.result.diff
    assert run.completed_at is not None and run.duration_ms is not None
    _assert_logs_ordered(run)

    assert run.result.branch in _remote_branches(git_remote)
    pushed = json.loads(git(git_remote, "show", f"{run.result.branch}:package.json"))
    assert pushed["dependencies"] == {"left-pad": "^1.3.0", "express": "^4.17.0"}
    assert pushed["devDependencies"] == {"jest": "^29.7.0"}
    message = git(git_remote, "log", "-1", "--format=%B", run.result.branch)
    assert message.startswith("🤖 AutoBot: Update dependencies")
    assert "left-pad is outdated" in message

    assert not service.workspaces.path_for(run.id).exists()
    assert service.query_status("job-dep") == "completed"
    job = service.container.jobs.get("job-dep")
    assert job is not None and job.status == "completed" and job.last_run
    assert service.list_active() == []


def test_unreachable_repository_fails_with_repository_unavailable(make_service, tmp_path: Path) -> None:
    service = make_service(
        ScriptedTextGenerator(),
        repository_url=str(tmp_path / "does-not-exist.git"),
        jobs=[MOD_JOB],
    )

    async def _go() -> RunRecord:
        run_id = await service.spawn("job-mod")
        run = await service.wait_for_run(run_id, timeout=60)
        assert run is not None
        return run

    run = asyncio.run(_go())

    assert run.status == "failed"
    assert run.error_kind == "RepositoryUnavailable"
    assert run.error
    assert run.result is None
    assert run.logs[-1].level == "error"
    assert not service.workspaces.path_for(run.id).exists()
    assert service.query_status("job-mod") == "failed"
    assert len(service.registry) == 0


def test_stop_during_transform_cancels_and_respawn_starts_fresh(make_service, git_remote: Path) -> None:
    generator = ScriptedTextGenerator(hold=True)
    service = make_service(generator, repository_url=str(git_remote), jobs=[CUSTOM_JOB])

    async def _go() -> tuple[RunRecord, RunRecord, bool]:
        first_id = await service.spawn("job-custom")
        await generator.wait_entered()
        ctx = service.registry.get("job-custom")
        assert ctx is not None and ctx.workspace is not None
        workspace = ctx.workspace

        result = await service.stop("job-custom")
        assert result == {"job_id": "job-custom", "run_id": first_id, "status": "stopped"}
        assert service.list_active() == []
        assert not workspace.exists()
        assert service.query_status("job-custom") == "stopped"

        first = await service.wait_for_run(first_id, timeout=30)
        assert first is not None

        generator.release()
        second_id = await service.spawn("job-custom")
        second = await service.wait_for_run(second_id, timeout=60)
        assert second is not None
        return first, second, workspace.exists()

    first, second, leftover = asyncio.run(_go())

    assert first.status == "cancelled"
    assert first.result is None
    assert not leftover
    assert second.status == "completed"
    assert second.id != first.id
    assert second.result is not None
    assert second.result.branch != ""
    assert "AUTOBOT_REPORT.md" in second.result.diff
    assert service.query_status("job-custom") == "completed"


def test_spawn_at_ceiling_raises_capacity_exceeded_without_record(make_service, git_remote: Path) -> None:
    generator = ScriptedTextGenerator(hold=True)
    service = make_service(
        generator,
        repository_url=str(git_remote),
        jobs=[CUSTOM_JOB, DEP_JOB],
        max_concurrent_runs=1,
    )

    async def _go() -> None:
        run_id = await service.spawn("job-custom")
        with pytest.raises(CapacityExceeded):
            await service.spawn("job-dep")
        assert service.container.runs.for_job("job-dep") == []
        assert service.query_status("job-dep") == "idle"
        assert [item["run_id"] for item in service.list_active()] == [run_id]
        generator.release()
        await service.wait_for_run(run_id, timeout=60)
        assert service.list_active() == []

    asyncio.run(_go())


def test_second_spawn_of_active_job_is_rejected(make_service, git_remote: Path) -> None:
    generator = ScriptedTextGenerator(hold=True)
    service = make_service(generator, repository_url=str(git_remote), jobs=[CUSTOM_JOB])

    async def _go() -> None:
        run_id = await service.spawn("job-custom")
        with pytest.raises(AlreadyRunning):
            await service.spawn("job-custom")
        assert len(service.container.runs.for_job("job-custom")) == 1
        active = service.list_active()
        assert len(active) == 1
        assert active[0]["job_id"] == "job-custom"
        assert active[0]["elapsed_ms"] >= 0
        generator.release()
        await service.wait_for_run(run_id, timeout=60)

    asyncio.run(_go())


def test_concurrent_spawns_admit_exactly_one(make_service, git_remote: Path) -> None:
    generator = ScriptedTextGenerator(hold=True)
    service = make_service(generator, repository_url=str(git_remote), jobs=[CUSTOM_JOB])

    async def _go() -> list[object]:
        results = await asyncio.gather(*(service.spawn("job-custom") for _ in range(5)), return_exceptions=True)
        generator.release()
        for item in results:
            if isinstance(item, str):
                await service.wait_for_run(item, timeout=60)
        return list(results)

    results = asyncio.run(_go())
    assert sum(isinstance(item, str) for item in results) == 1
    assert sum(isinstance(item, AlreadyRunning) for item in results) == 4


def test_unknown_job_and_unsupported_type_are_rejected_before_admission(make_service, git_remote: Path) -> None:
    service = make_service(
        ScriptedTextGenerator(),
        repository_url=str(git_remote),
        jobs=[("job-weird", "lint_everything", {})],
    )

    async def _go() -> None:
        with pytest.raises(JobNotFound):
            await service.spawn("nope")
        with pytest.raises(UnsupportedJobType):
            await service.spawn("job-weird")
        with pytest.raises(NotRunning):
            await service.stop("job-weird")

    asyncio.run(_go())
    assert service.container.runs.list() == []
    assert service.query_status("job-weird") == "idle"
    with pytest.raises(JobNotFound):
        service.query_status("nope")


def test_run_without_changes_skips_commit(make_service, git_remote: Path) -> None:
    generator = ScriptedTextGenerator(["All dependencies are current.", json_reply({})])
    service = make_service(generator, repository_url=str(git_remote), jobs=[DEP_JOB])

    async def _go() -> RunRecord:
        run_id = await service.spawn("job-dep")
        run = await service.wait_for_run(run_id, timeout=60)
        assert run is not None
        return run

    run = asyncio.run(_go())
    assert run.status == "completed"
    assert run.result is not None
    assert run.result.commit_sha is None
    assert run.result.diff == ""
    assert any("skipping commit" in entry.message for entry in run.logs)
    assert _remote_branches(git_remote) == ["main"]


def test_transform_timeout_fails_run(make_service, git_remote: Path) -> None:
    generator = ScriptedTextGenerator(hold=True)
    service = make_service(
        generator,
        repository_url=str(git_remote),
        jobs=[CUSTOM_JOB],
        stage_timeouts={"transforming": 0.2},
    )

    async def _go() -> RunRecord:
        run_id = await service.spawn("job-custom")
        run = await service.wait_for_run(run_id, timeout=60)
        assert run is not None
        return run

    run = asyncio.run(_go())
    assert run.status == "failed"
    assert run.error_kind == "TransformationError"
    assert "timed out" in (run.error or "")
    assert not service.workspaces.path_for(run.id).exists()


def test_missing_base_branch_fails_with_branch_error(make_service, git_remote: Path) -> None:
    service = make_service(ScriptedTextGenerator(), repository_url=str(git_remote), jobs=[CUSTOM_JOB])
    project = service.container.projects.get("proj-1")
    assert project is not None
    project.default_branch = "develop"
    service.container.projects.upsert(project)

    async def _go() -> RunRecord:
        run_id = await service.spawn("job-custom")
        run = await service.wait_for_run(run_id, timeout=60)
        assert run is not None
        return run

    run = asyncio.run(_go())
    assert run.status == "failed"
    assert run.error_kind == "BranchError"


def test_start_recovers_interrupted_runs_and_sweeps_orphans(make_service, git_remote: Path) -> None:
    service = make_service(ScriptedTextGenerator(), repository_url=str(git_remote), jobs=[CUSTOM_JOB])
    stale = RunRecord(job_id="job-custom", status="running")
    service.container.runs.upsert(stale)
    orphan = service.workspaces.root / "run-orphan"
    orphan.mkdir(parents=True)
    (orphan / "leftover.txt").write_text("x", encoding="utf-8")

    summary = asyncio.run(service.start())

    assert summary == {"recovered_runs": 1, "removed_workspaces": 1}
    recovered = service.get_run(stale.id)
    assert recovered is not None
    assert recovered.status == "failed"
    assert recovered.error_kind == "Interrupted"
    assert not orphan.exists()
    assert service.query_status("job-custom") == "failed"


def test_shutdown_cancels_active_runs(make_service, git_remote: Path) -> None:
    generator = ScriptedTextGenerator(hold=True)
    service = make_service(generator, repository_url=str(git_remote), jobs=[CUSTOM_JOB])

    async def _go() -> str:
        run_id = await service.spawn("job-custom")
        await generator.wait_entered()
        await service.shutdown(timeout=30)
        return run_id

    run_id = asyncio.run(_go())
    run = service.get_run(run_id)
    assert run is not None
    assert run.status == "cancelled"
    assert not service.workspaces.path_for(run_id).exists()
    assert len(service.registry) == 0


class _DiffStatFailingClient(GitRepositoryClient):
    async def diff_stat(self, workdir: Path, rev: str = "HEAD") -> str:
        raise PushError("Reading diff stat failed: simulated")


class _GatedCloneClient(GitRepositoryClient):
    def __init__(self) -> None:
        super().__init__()
        self.entered = asyncio.Event()
        self.gate = asyncio.Event()

    async def clone(self, url: str, dest: Path, *, timeout=None) -> Path:
        self.entered.set()
        await self.gate.wait()
        return await super().clone(url, dest, timeout=timeout)


def _custom_edit_reply(summary: str) -> str:
    return json_reply({"summary": summary, "files": [{"path": "CONTRIBUTING.md", "content": "# Contributing\n"}]})


def test_oversized_model_summary_is_capped_in_logs_and_result(make_service, git_remote: Path) -> None:
    generator = ScriptedTextGenerator(["Add a guide.", _custom_edit_reply("s" * 20000)])
    service = make_service(generator, repository_url=str(git_remote), jobs=[CUSTOM_JOB])

    async def _go() -> RunRecord:
        run_id = await service.spawn("job-custom")
        run = await service.wait_for_run(run_id, timeout=60)
        assert run is not None
        return run

    run = asyncio.run(_go())
    assert run.status == "completed"
    assert run.result is not None
    assert len(run.result.summary) <= LOG_EXCERPT_CHARS + 3
    assert max(len(entry.message) for entry in run.logs) < 1000
    assert any(entry.message.startswith("Transformation finished: sss") for entry in run.logs)


def test_diff_stat_failure_after_push_keeps_run_completed(make_service, git_remote: Path) -> None:
    generator = ScriptedTextGenerator(["Add a guide.", _custom_edit_reply("Added CONTRIBUTING.md")])
    service = make_service(
        generator,
        repository_url=str(git_remote),
        jobs=[CUSTOM_JOB],
        git_client=_DiffStatFailingClient(),
    )

    async def _go() -> RunRecord:
        run_id = await service.spawn("job-custom")
        run = await service.wait_for_run(run_id, timeout=60)
        assert run is not None
        return run

    run = asyncio.run(_go())
    assert run.status == "completed"
    assert run.error_kind is None
    assert run.result is not None and run.result.commit_sha
    assert run.result.branch in _remote_branches(git_remote)
    warnings = [entry for entry in run.logs if entry.message.startswith("Could not read diff stat")]
    assert len(warnings) == 1
    assert warnings[0].level == "warning"
    assert run.logs[-1].message == "Run completed"


def test_stop_during_clone_leaves_no_workspace(make_service, git_remote: Path) -> None:
    client = _GatedCloneClient()
    service = make_service(ScriptedTextGenerator(), repository_url=str(git_remote), jobs=[CUSTOM_JOB], git_client=client)

    async def _go() -> tuple[RunRecord, Path]:
        run_id = await service.spawn("job-custom")
        await asyncio.wait_for(client.entered.wait(), 30)
        ctx = service.registry.get("job-custom")
        assert ctx is not None and ctx.workspace is not None
        workspace = ctx.workspace

        await service.stop("job-custom")
        assert not workspace.exists()
        client.gate.set()

        run = await service.wait_for_run(run_id, timeout=60)
        assert run is not None
        return run, workspace

    run, workspace = asyncio.run(_go())
    assert run.status == "cancelled"
    assert not workspace.exists()
    assert len(service.registry) == 0
    assert service.generator.calls == []


def test_terminal_status_write_is_retried_once(make_service, tmp_path: Path, monkeypatch) -> None:
    service = make_service(ScriptedTextGenerator(), repository_url=str(tmp_path / "missing.git"), jobs=[CUSTOM_JOB])
    original = service.store.update_status
    failed_writes: list[str] = []

    def flaky_update_status(run_id, status, **kwargs):
        if status != "running" and not failed_writes:
            failed_writes.append(status)
            raise OSError("disk full")
        return original(run_id, status, **kwargs)

    monkeypatch.setattr(service.store, "update_status", flaky_update_status)

    async def _go() -> RunRecord:
        run_id = await service.spawn("job-custom")
        run = await service.wait_for_run(run_id, timeout=60)
        assert run is not None
        return run

    run = asyncio.run(_go())
    assert failed_writes == ["failed"]
    assert run.status == "failed"
    assert run.error_kind == "RepositoryUnavailable"
    assert service.query_status("job-custom") == "failed"
    assert len(service.registry) == 0


def test_run_stranded_by_failing_status_writes_is_recovered_on_start(make_service, tmp_path: Path, monkeypatch) -> None:
    service = make_service(ScriptedTextGenerator(), repository_url=str(tmp_path / "missing.git"), jobs=[CUSTOM_JOB])
    original = service.store.update_status

    def broken_update_status(run_id, status, **kwargs):
        raise OSError("read-only file system")

    monkeypatch.setattr(service.store, "update_status", broken_update_status)

    async def _go() -> str:
        run_id = await service.spawn("job-custom")
        await service.wait_for_run(run_id, timeout=60)
        return run_id

    run_id = asyncio.run(_go())
    stranded = service.get_run(run_id)
    assert stranded is not None and stranded.status == "running"
    assert len(service.registry) == 0
    assert not service.workspaces.path_for(run_id).exists()

    monkeypatch.setattr(service.store, "update_status", original)
    summary = asyncio.run(service.start())
    assert summary["recovered_runs"] == 1
    recovered = service.get_run(run_id)
    assert recovered is not None
    assert recovered.status == "failed"
    assert recovered.error_kind == "Interrupted"
