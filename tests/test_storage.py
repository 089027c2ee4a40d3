from __future__ import annotations

from pathlib import Path

import yaml

from autobot.runtime.domain.models import Job, RunLogEntry, RunRecord
from autobot.runtime.orchestrator.settings import OrchestratorSettings
from autobot.runtime.storage import DEFAULT_CONFIG, Container, ensure_state_root


def test_state_root_is_created_with_defaults(tmp_path: Path) -> None:
    state_root = ensure_state_root(tmp_path)

    assert state_root == tmp_path / ".autobot"
    for name in ("projects.yaml", "jobs.yaml", "runs.yaml", "config.yaml", "events.jsonl"):
        assert (state_root / name).exists()
    assert (state_root / "workspaces").is_dir()
    config = yaml.safe_load((state_root / "config.yaml").read_text(encoding="utf-8"))
    assert config["orchestrator"] == DEFAULT_CONFIG["orchestrator"]
    assert ".autobot/" in (tmp_path / ".gitignore").read_text(encoding="utf-8")


def test_state_root_keeps_overrides_and_gitignore(tmp_path: Path) -> None:
    (tmp_path / ".gitignore").write_text("node_modules/", encoding="utf-8")
    (tmp_path / ".autobot").mkdir()
    (tmp_path / ".autobot" / "config.yaml").write_text(
        "orchestrator:\n  max_concurrent_runs: 2\n  stage_timeouts:\n    cloning: 30\n", encoding="utf-8"
    )

    ensure_state_root(tmp_path)
    ensure_state_root(tmp_path)

    config = yaml.safe_load((tmp_path / ".autobot" / "config.yaml").read_text(encoding="utf-8"))
    assert config["orchestrator"]["max_concurrent_runs"] == 2
    assert config["orchestrator"]["stage_timeouts"]["cloning"] == 30
    assert config["orchestrator"]["stage_timeouts"]["transforming"] == 900
    assert config["git"]["author_name"] == "AutoBot"
    gitignore = (tmp_path / ".gitignore").read_text(encoding="utf-8").splitlines()
    assert gitignore[0] == "node_modules/"
    assert gitignore.count(".autobot/") == 1


def test_job_round_trip_and_set_status(tmp_path: Path) -> None:
    container = Container(tmp_path)
    container.jobs.upsert(
        Job(id="job-1", name="deps", job_type="dependency_update", project_id="p", configuration={"manifest": "package.json"})
    )

    updated = container.jobs.set_status("job-1", "failed", last_run="2026-01-01T00:00:00+00:00")
    assert updated is not None

    reloaded = Container(tmp_path).jobs.get("job-1")
    assert reloaded is not None
    assert reloaded.status == "failed"
    assert reloaded.last_run == "2026-01-01T00:00:00+00:00"
    assert reloaded.configuration == {"manifest": "package.json"}
    assert container.jobs.set_status("missing", "failed") is None


def test_from_dict_normalizes_unknown_values() -> None:
    job = Job.from_dict({"id": "j", "job_type": "deploy", "status": "exploded"})
    assert job.job_type == "deploy"
    assert job.status == "idle"

    run = RunRecord.from_dict({"id": "r", "job_id": "j", "status": "weird", "logs": [{"seq": "3", "message": "x"}, "junk"]})
    assert run.status == "failed"
    assert [entry.seq for entry in run.logs] == [3]
    assert run.result is None


def test_runs_for_job_are_ordered_by_start(tmp_path: Path) -> None:
    container = Container(tmp_path)
    container.runs.upsert(RunRecord(id="r2", job_id="j", started_at="2026-01-02T00:00:00+00:00"))
    container.runs.upsert(RunRecord(id="r1", job_id="j", started_at="2026-01-01T00:00:00+00:00"))
    container.runs.upsert(RunRecord(id="r3", job_id="other", started_at="2026-01-03T00:00:00+00:00"))

    assert [run.id for run in container.runs.for_job("j")] == ["r1", "r2"]


def test_run_logs_live_outside_runs_yaml(tmp_path: Path) -> None:
    container = Container(tmp_path)
    container.runs.upsert(RunRecord(id="r1", job_id="j"))
    for seq in (1, 2, 3):
        container.runs.append_log("r1", RunLogEntry(seq=seq, timestamp=f"2026-01-01T00:00:0{seq}+00:00", message=f"line {seq}"))

    raw = yaml.safe_load((container.state_root / "runs.yaml").read_text(encoding="utf-8"))
    assert "logs" not in raw["runs"][0]
    log_file = container.state_root / "run_logs" / "r1.jsonl"
    assert len(log_file.read_text(encoding="utf-8").splitlines()) == 3

    assert [entry.message for entry in container.runs.get("r1").logs] == ["line 1", "line 2", "line 3"]
    assert container.runs.get("r1", with_logs=False).logs == []
    assert container.runs.last_log("r1").seq == 3
    assert container.runs.last_log("missing") is None


def test_prune_keeps_newest_finished_runs(tmp_path: Path) -> None:
    container = Container(tmp_path)
    for day in (1, 2, 3, 4):
        run_id = f"r{day}"
        container.runs.upsert(RunRecord(id=run_id, job_id="j", status="completed", started_at=f"2026-01-0{day}T00:00:00+00:00"))
        container.runs.append_log(run_id, RunLogEntry(seq=1, timestamp=f"2026-01-0{day}T00:00:01+00:00", message="done"))
    container.runs.upsert(RunRecord(id="r0", job_id="j", status="running", started_at="2025-12-31T00:00:00+00:00"))
    container.runs.upsert(RunRecord(id="other", job_id="k", status="failed", started_at="2025-12-30T00:00:00+00:00"))

    assert container.runs.prune("j", 2) == ["r1", "r2"]
    assert [run.id for run in container.runs.for_job("j")] == ["r0", "r3", "r4"]
    assert container.runs.get("other") is not None
    assert not (container.state_root / "run_logs" / "r1.jsonl").exists()
    assert (container.state_root / "run_logs" / "r4.jsonl").exists()
    assert container.runs.prune("j", 2) == []


def test_settings_from_config(tmp_path: Path) -> None:
    config = {
        "orchestrator": {
            "max_concurrent_runs": "0",
            "branch_namespace": "/bots/",
            "stage_timeouts": {"cloning": 10, "transforming": 0},
        },
        "git": {"author_name": "Bot"},
        "workspaces": {},
    }
    settings = OrchestratorSettings.from_config(config, state_root=tmp_path)

    assert settings.max_concurrent_runs == 1
    assert settings.branch_namespace == "bots"
    assert settings.timeout_for("cloning") == 10.0
    assert settings.timeout_for("transforming") is None
    assert settings.timeout_for("branching") is None
    assert settings.author_name == "Bot"
    assert settings.author_email == "autobot@localhost"
    assert settings.workspace_root == tmp_path / "workspaces"


def test_settings_run_history_limit(tmp_path: Path) -> None:
    default = OrchestratorSettings.from_config({"orchestrator": {}}, state_root=tmp_path)
    assert default.run_history_limit == 50

    unlimited = OrchestratorSettings.from_config({"orchestrator": {"run_history_limit": 0}}, state_root=tmp_path)
    assert unlimited.run_history_limit is None

    garbage = OrchestratorSettings.from_config({"orchestrator": {"run_history_limit": "lots"}}, state_root=tmp_path)
    assert garbage.run_history_limit == 50
