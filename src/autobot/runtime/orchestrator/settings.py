from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

STAGES = ("cloning", "branching", "transforming", "committing")


def _section(config: dict[str, Any], name: str) -> dict[str, Any]:
    value = config.get(name)
    return value if isinstance(value, dict) else {}


def _positive_float(value: Any) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


@dataclass
class OrchestratorSettings:
    """Typed view over the ``orchestrator``, ``git`` and ``workspaces`` config sections.

    A missing or non-positive stage timeout disables the limit for that stage;
    a non-positive ``run_history_limit`` keeps every finished run.
    """
    max_concurrent_runs: int = 5
    run_history_limit: Optional[int] = 50
    branch_namespace: str = "autobot"
    stage_timeouts: dict[str, Optional[float]] = field(default_factory=dict)
    author_name: str = "AutoBot"
    author_email: str = "autobot@localhost"
    workspace_root: Optional[Path] = None

    def timeout_for(self, stage: str) -> Optional[float]:
        return self.stage_timeouts.get(stage)

    @classmethod
    def from_config(cls, config: dict[str, Any], *, state_root: Optional[Path] = None) -> "OrchestratorSettings":
        orch = _section(config, "orchestrator")
        git = _section(config, "git")
        workspaces = _section(config, "workspaces")
        raw_timeouts = orch.get("stage_timeouts") if isinstance(orch.get("stage_timeouts"), dict) else {}
        try:
            limit = int(orch.get("max_concurrent_runs", 5))
        except (TypeError, ValueError):
            limit = 5
        try:
            history = int(orch.get("run_history_limit", 50))
        except (TypeError, ValueError):
            history = 50
        root = workspaces.get("root")
        if root:
            workspace_root: Optional[Path] = Path(str(root)).expanduser()
        elif state_root is not None:
            workspace_root = state_root / "workspaces"
        else:
            workspace_root = None
        return cls(
            max_concurrent_runs=max(1, limit),
            run_history_limit=history if history > 0 else None,
            branch_namespace=str(orch.get("branch_namespace") or "autobot").strip("/") or "autobot",
            stage_timeouts={stage: _positive_float(raw_timeouts.get(stage)) for stage in STAGES},
            author_name=str(git.get("author_name") or "AutoBot"),
            author_email=str(git.get("author_email") or "autobot@localhost"),
            workspace_root=workspace_root,
        )
