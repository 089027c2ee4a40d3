"""Dependency manifest updates for ``package.json`` and ``requirements.txt``."""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any

from ..errors import TransformationError
from .base import LOG_EXCERPT_CHARS, LogFn, StrategyResult, TransformationStrategy, excerpt, extract_json_block

SUPPORTED_MANIFESTS = ("package.json", "requirements.txt")

ANALYSIS_REQUEST = """Analyze this dependency manifest and suggest dependency updates. Focus on:
1. Outdated dependencies that need updates
2. Security vulnerabilities
3. Performance improvements
4. Newer versions of major dependencies

Provide specific version updates with reasoning."""

PACKAGE_JSON_UPDATE_REQUEST = """Based on the analysis, produce the updates to apply to package.json.
Return a ```json block holding only the changed keys, e.g.
{"dependencies": {"name": "^1.2.3"}, "devDependencies": {"name": "^4.5.6"}}.
Return {} when nothing should change."""

REQUIREMENTS_UPDATE_REQUEST = """Based on the analysis, produce the updates to apply to requirements.txt.
Return a ```json block mapping package names to versions or specifiers, e.g.
{"requests": "2.32.3", "urllib3": ">=2.2.2"}. Return {} when nothing should change."""

_REQ_NAME_RE = re.compile(r"^\s*([A-Za-z0-9][A-Za-z0-9._-]*)(\[[^\]]*\])?")
_SPECIFIER_PREFIXES = ("==", ">=", "<=", "~=", "!=", ">", "<", "===")


def _normalize(name: str) -> str:
    return re.sub(r"[-_.]+", "-", name).lower()


def merge_package_json(package: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    """Merge an update set into a parsed ``package.json``.

    ``dependencies`` and ``devDependencies`` are merged key by key; any other
    top-level key replaces the existing value.
    """
    merged = dict(package)
    for section in ("dependencies", "devDependencies"):
        if isinstance(updates.get(section), dict):
            merged[section] = {**dict(package.get(section) or {}), **updates[section]}
    for key, value in updates.items():
        if key not in {"dependencies", "devDependencies"}:
            merged[key] = value
    return merged


def merge_requirements(text: str, updates: dict[str, str]) -> str:
    """Re-pin matching requirement lines and append packages that were not listed."""
    pending = {_normalize(name): (name, str(spec).strip()) for name, spec in updates.items() if str(spec).strip()}
    out: list[str] = []
    for line in text.splitlines():
        match = _REQ_NAME_RE.match(line)
        stripped = line.strip()
        if match and not stripped.startswith(("#", "-")):
            key = _normalize(match.group(1))
            if key in pending:
                _, spec = pending.pop(key)
                name = match.group(1) + (match.group(2) or "")
                marker = ""
                if ";" in line:
                    marker = " ;" + line.split(";", 1)[1].rstrip()
                out.append(f"{name}{_as_specifier(spec)}{marker}")
                continue
        out.append(line)
    for name, spec in pending.values():
        out.append(f"{name}{_as_specifier(spec)}")
    return "\n".join(out) + "\n"


def _updated_names(updates: dict[str, Any]) -> list[str]:
    names: set[str] = set()
    for key, value in updates.items():
        if key in {"dependencies", "devDependencies"} and isinstance(value, dict):
            names.update(str(name) for name in value)
        else:
            names.add(str(key))
    return sorted(names)


def _as_specifier(spec: str) -> str:
    return spec if spec.startswith(_SPECIFIER_PREFIXES) else f"=={spec}"


class DependencyUpdateStrategy(TransformationStrategy):
    job_type = "dependency_update"
    commit_title = "Update dependencies"

    async def transform(self, workspace: Path, config: dict[str, Any], log: LogFn) -> StrategyResult:
        manifest = str(config.get("manifest") or "")
        if not manifest:
            manifest = next((name for name in SUPPORTED_MANIFESTS if (workspace / name).is_file()), "")
        if not manifest:
            raise TransformationError("No dependency manifest found (expected package.json or requirements.txt)")
        path = self.resolve_path(workspace, manifest)
        if not path.is_file():
            raise TransformationError(f"Dependency manifest not found: {manifest}")
        content = path.read_text(encoding="utf-8")
        file_context = f"File: {manifest}\n\nCode:\n```\n{content}\n```"

        analysis = await self.analyze(file_context, ANALYSIS_REQUEST)
        log(f"Dependency analysis completed: {excerpt(analysis, LOG_EXCERPT_CHARS)}")

        is_package_json = path.name == "package.json"
        request = PACKAGE_JSON_UPDATE_REQUEST if is_package_json else REQUIREMENTS_UPDATE_REQUEST
        reply = await self.generate(f"{file_context}\n\nAnalysis:\n{analysis}", request)
        updates = extract_json_block(reply, default={})
        if not isinstance(updates, dict):
            raise TransformationError("Dependency update set must be a JSON object")
        log(f"Generated {len(updates)} update entr{'y' if len(updates) == 1 else 'ies'} for {manifest}")

        if is_package_json:
            try:
                package = json.loads(content)
            except json.JSONDecodeError as exc:
                raise TransformationError(f"{manifest} is not valid JSON: {exc}") from exc
            if not isinstance(package, dict):
                raise TransformationError(f"{manifest} must contain a JSON object")
            new_content = json.dumps(merge_package_json(package, updates), indent=2, ensure_ascii=False) + "\n"
            changed = self.write_file(workspace, manifest, new_content) if updates else False
        else:
            pins = {str(k): str(v) for k, v in updates.items() if not isinstance(v, (dict, list))}
            changed = self.write_file(workspace, manifest, merge_requirements(content, pins)) if pins else False

        if changed:
            log(f"Applied dependency updates to {manifest}")
            summary = excerpt(f"Updated {manifest}: {', '.join(_updated_names(updates))}", LOG_EXCERPT_CHARS)
        else:
            summary = f"No dependency changes needed in {manifest}"
        return StrategyResult(summary=summary, analysis=analysis)
