"""Shared plumbing for job-type transformation strategies."""

from __future__ import annotations

import difflib
import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, ClassVar, Optional

from ..errors import TransformationError
from ..llm.text_generation import TextGenerationError, TextGenerator

logger = logging.getLogger(__name__)

LOG_EXCERPT_CHARS = 200
COMMIT_EXCERPT_CHARS = 500

ANALYZE_SYSTEM_PROMPT = (
    "You are an expert code reviewer and refactorer. Analyze the code and provide improvements, "
    "fixes, or updates based on the user's request."
)
GENERATE_SYSTEM_PROMPT = (
    "You are an expert software developer. Generate clean, efficient, and well-documented code "
    "based on the user's requirements. Answer with a single ```json fenced block."
)
FILE_EDITS_FORMAT = (
    'Return a ```json block shaped as {"summary": "...", "files": [{"path": "relative/path", '
    '"content": "full new file content"}]}. Use {"path": "...", "delete": true} to remove a file. '
    'Return {"files": []} when no change is needed.'
)

SOURCE_SUFFIXES = {
    ".py", ".js", ".jsx", ".ts", ".tsx", ".mjs", ".cjs", ".go", ".rb", ".java", ".kt",
    ".rs", ".php", ".cs", ".c", ".h", ".cpp", ".sql", ".sh", ".yaml", ".yml", ".toml", ".json",
}
SKIP_DIRS = {".git", "node_modules", "__pycache__", ".venv", "venv", "dist", "build", ".autobot"}

_JSON_BLOCK_RE = re.compile(r"```json\s*\n(.*?)\n?```", re.DOTALL)

LogFn = Callable[[str], None]


def excerpt(text: str, limit: int) -> str:
    """Truncate ``text`` to ``limit`` characters, marking the cut with an ellipsis."""
    text = text.strip()
    return text if len(text) <= limit else f"{text[:limit]}..."


def extract_json_block(text: str, default: Any = None) -> Any:
    """Parse the first fenced ```json block in a model reply.

    Args:
        text (str): Model reply.
        default (Any): Value returned when no block is present.

    Returns:
        Any: Decoded JSON value, or ``default`` when the reply has no block.

    Raises:
        TransformationError: When a block is present but is not valid JSON.
    """
    match = _JSON_BLOCK_RE.search(text or "")
    if not match:
        return default
    try:
        return json.loads(match.group(1))
    except json.JSONDecodeError as exc:
        raise TransformationError(f"Model returned malformed JSON: {exc}") from exc


@dataclass
class StrategyResult:
    summary: str
    analysis: str = ""
    diff: str = ""
    changed_files: list[str] = field(default_factory=list)


class TransformationStrategy(ABC):
    """One job type's transformation, applied inside a freshly cloned workspace.

    Subclasses read their inputs from the workspace, consult the text
    generator with bounded prompts, write their edits through
    :meth:`write_file` or :meth:`delete_file`, and return a
    :class:`StrategyResult`.
    """

    job_type: ClassVar[str] = ""
    commit_title: ClassVar[str] = "AutoBot changes"
    commit_icon: ClassVar[str] = "🤖"

    def __init__(self, generator: TextGenerator) -> None:
        self.generator = generator
        self._diffs: list[str] = []
        self._changed: list[str] = []

    @abstractmethod
    async def transform(self, workspace: Path, config: dict[str, Any], log: LogFn) -> StrategyResult:
        raise NotImplementedError

    async def execute(self, workspace: Path, config: dict[str, Any], log: Optional[LogFn] = None) -> StrategyResult:
        """Run the transformation and attach the accumulated diff.

        Args:
            workspace (Path): Root of the cloned repository.
            config (dict[str, Any]): The job's configuration mapping.
            log (Optional[LogFn]): Receives progress lines for the run log.

        Returns:
            StrategyResult: Summary, analysis, unified diff and changed paths.

        Raises:
            TransformationError: On any failure inside the transformation.
        """
        self._diffs = []
        self._changed = []
        sink: LogFn = log or (lambda message: logger.info("%s", message))
        try:
            result = await self.transform(workspace, dict(config or {}), sink)
        except TransformationError:
            raise
        except (OSError, ValueError, TypeError, KeyError) as exc:
            raise TransformationError(f"{self.job_type} transformation failed: {exc}") from exc
        result.diff = "".join(self._diffs)
        result.changed_files = list(self._changed)
        return result

    def commit_message(self, analysis: str) -> str:
        """Commit message embedding at most 500 characters of the analysis."""
        body = excerpt(analysis, COMMIT_EXCERPT_CHARS) if analysis.strip() else "No analysis produced."
        return f"{self.commit_icon} AutoBot: {self.commit_title}\n\nAnalysis:\n{body}"

    async def ask(self, *, system: str, user: str, temperature: float, max_tokens: int) -> str:
        try:
            return await self.generator.complete(system=system, user=user, temperature=temperature, max_tokens=max_tokens)
        except TextGenerationError as exc:
            raise TransformationError(str(exc)) from exc

    async def analyze(self, context: str, request: str) -> str:
        return await self.ask(
            system=ANALYZE_SYSTEM_PROMPT,
            user=f"{context}\n\nRequest: {request}",
            temperature=0.1,
            max_tokens=2000,
        )

    async def generate(self, context: str, request: str) -> str:
        return await self.ask(
            system=GENERATE_SYSTEM_PROMPT,
            user=f"{context}\n\nRequest: {request}",
            temperature=0.2,
            max_tokens=3000,
        )

    @staticmethod
    def resolve_path(workspace: Path, relative: str) -> Path:
        """Resolve ``relative`` inside the workspace, refusing anything that escapes it."""
        root = workspace.resolve()
        if not relative or Path(relative).is_absolute():
            raise TransformationError(f"Refusing to edit path outside workspace: {relative!r}")
        target = (root / relative).resolve()
        if target != root and root not in target.parents:
            raise TransformationError(f"Refusing to edit path outside workspace: {relative!r}")
        if ".git" in target.relative_to(root).parts:
            raise TransformationError(f"Refusing to edit git metadata: {relative!r}")
        return target

    def write_file(self, workspace: Path, relative: str, content: str) -> bool:
        """Write a file and record its diff; returns ``False`` when content is unchanged."""
        target = self.resolve_path(workspace, relative)
        existed = target.is_file()
        before = target.read_text(encoding="utf-8", errors="replace") if existed else ""
        if existed and before == content:
            return False
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        self._record_diff(target.relative_to(workspace.resolve()).as_posix(), before, content, existed=existed)
        return True

    def delete_file(self, workspace: Path, relative: str) -> bool:
        target = self.resolve_path(workspace, relative)
        if not target.is_file():
            return False
        before = target.read_text(encoding="utf-8", errors="replace")
        target.unlink()
        self._record_diff(target.relative_to(workspace.resolve()).as_posix(), before, "", existed=True, deleted=True)
        return True

    def _record_diff(self, rel: str, before: str, after: str, *, existed: bool, deleted: bool = False) -> None:
        diff = difflib.unified_diff(
            before.splitlines(keepends=True),
            after.splitlines(keepends=True),
            fromfile=f"a/{rel}" if existed else "/dev/null",
            tofile="/dev/null" if deleted else f"b/{rel}",
        )
        text = "".join(line if line.endswith("\n") else f"{line}\n" for line in diff)
        self._diffs.append(text)
        if rel not in self._changed:
            self._changed.append(rel)

    def apply_file_edits(self, workspace: Path, payload: Any) -> list[str]:
        """Apply a ``{"files": [...]}`` payload and return the paths actually changed."""
        if payload is None:
            return []
        if not isinstance(payload, dict):
            raise TransformationError("File edit payload must be a JSON object")
        files = payload.get("files") or []
        if not isinstance(files, list):
            raise TransformationError("File edit payload 'files' must be a list")
        changed: list[str] = []
        for item in files:
            if not isinstance(item, dict) or not item.get("path"):
                raise TransformationError(f"Invalid file edit entry: {item!r}")
            path = str(item["path"])
            if item.get("delete"):
                if self.delete_file(workspace, path):
                    changed.append(path)
                continue
            if not isinstance(item.get("content"), str):
                raise TransformationError(f"File edit for {path!r} has no content")
            if self.write_file(workspace, path, item["content"]):
                changed.append(path)
        return changed

    @staticmethod
    def collect_sources(
        workspace: Path,
        paths: Optional[list[str]] = None,
        *,
        max_files: int = 20,
        max_chars_per_file: int = 4000,
        max_total_chars: int = 24000,
    ) -> str:
        """Gather bounded source excerpts for a prompt.

        Args:
            workspace (Path): Root of the cloned repository.
            paths (Optional[list[str]]): Relative directories or files to scan; defaults
                to ``src`` when it exists, otherwise the repository root.
            max_files (int): Maximum number of files included.
            max_chars_per_file (int): Per-file excerpt limit.
            max_total_chars (int): Overall context limit.

        Returns:
            str: Concatenated ``File: <path>`` sections.
        """
        root = workspace.resolve()
        if isinstance(paths, str):
            paths = [paths]
        if not paths:
            paths = ["src"] if (root / "src").is_dir() else ["."]
        candidates: list[Path] = []
        for raw in paths:
            base = TransformationStrategy.resolve_path(root, raw) if raw not in {".", ""} else root
            if base.is_file():
                candidates.append(base)
            elif base.is_dir():
                for item in sorted(base.rglob("*")):
                    rel_parts = item.relative_to(root).parts
                    if any(part in SKIP_DIRS for part in rel_parts):
                        continue
                    if item.is_file() and item.suffix in SOURCE_SUFFIXES:
                        candidates.append(item)
        sections: list[str] = []
        total = 0
        for item in candidates[:max_files]:
            text = item.read_text(encoding="utf-8", errors="replace")[:max_chars_per_file]
            section = f"File: {item.relative_to(root).as_posix()}\n```\n{text}\n```\n"
            if total + len(section) > max_total_chars:
                break
            sections.append(section)
            total += len(section)
        return "\n".join(sections)

    def write_report(
        self,
        workspace: Path,
        file_name: str,
        title: str,
        *,
        analysis: str,
        details: str = "",
        changed: Optional[list[str]] = None,
    ) -> bool:
        """Write a Markdown report of the run's findings at the repository root."""
        lines = [f"# {title}", "", "## Analysis", "", analysis.strip() or "_No analysis produced._", ""]
        if details.strip():
            lines += ["## Proposed changes", "", details.strip(), ""]
        lines += ["## Files changed", ""]
        lines += [f"- `{path}`" for path in changed] if changed else ["_None_"]
        return self.write_file(workspace, file_name, "\n".join(lines) + "\n")
