from __future__ import annotations

import copy
from pathlib import Path
from typing import Any

from .file_repos import FileConfigRepository


STATE_DIR_NAME = ".autobot"

STATE_FILES = {
    "projects": "projects.yaml",
    "jobs": "jobs.yaml",
    "runs": "runs.yaml",
    "events": "events.jsonl",
    "config": "config.yaml",
}

DEFAULT_CONFIG: dict[str, Any] = {
    "orchestrator": {
        "max_concurrent_runs": 5,
        "run_history_limit": 50,
        "branch_namespace": "autobot",
        "stage_timeouts": {"cloning": 300, "branching": 60, "transforming": 900, "committing": 300},
    },
    "git": {"author_name": "AutoBot", "author_email": "autobot@localhost"},
    "llm": {"model": "gpt-4o-mini", "temperature": 0.1, "max_tokens": 2000, "api_base": None},
    "workspaces": {"root": None},
}


def _merge_defaults(config: dict[str, Any], defaults: dict[str, Any]) -> dict[str, Any]:
    for key, value in defaults.items():
        current = config.get(key)
        if isinstance(value, dict):
            if not isinstance(current, dict):
                current = {}
            config[key] = _merge_defaults(current, value)
        elif key not in config:
            config[key] = copy.deepcopy(value)
    return config


def _ensure_gitignored(project_dir: Path) -> None:
    """Add the state directory to the project's .gitignore if not already present."""
    gitignore = project_dir / ".gitignore"
    entry = f"{STATE_DIR_NAME}/"
    if gitignore.exists():
        content = gitignore.read_text(encoding="utf-8")
        existing = {line.strip() for line in content.splitlines()}
        if entry in existing or entry.rstrip("/") in existing:
            return
        if content and not content.endswith("\n"):
            content += "\n"
        gitignore.write_text(f"{content}\n# AutoBot runtime data\n{entry}\n", encoding="utf-8")
    else:
        gitignore.write_text(f"# AutoBot runtime data\n{entry}\n", encoding="utf-8")


def ensure_state_root(project_dir: Path) -> Path:
    """Create the runtime state directory and fill in configuration defaults.

    Existing configuration values are preserved; only missing keys are added.

    Args:
        project_dir (Path): Directory that owns the ``.autobot`` state root.

    Returns:
        Path: The state root directory.
    """
    state_root = project_dir / STATE_DIR_NAME
    state_root.mkdir(parents=True, exist_ok=True)
    _ensure_gitignored(project_dir)

    for file_name in STATE_FILES.values():
        target = state_root / file_name
        if file_name.endswith(".yaml") and not target.exists():
            target.write_text("version: 1\n", encoding="utf-8")
        if file_name.endswith(".jsonl") and not target.exists():
            target.touch()

    (state_root / "workspaces").mkdir(parents=True, exist_ok=True)
    (state_root / "run_logs").mkdir(parents=True, exist_ok=True)

    config_repo = FileConfigRepository(state_root / "config.yaml", state_root / "config.lock")
    config = _merge_defaults(config_repo.load(), DEFAULT_CONFIG)
    config.pop("version", None)
    config_repo.save(config)

    return state_root
