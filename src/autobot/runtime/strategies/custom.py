from __future__ import annotations

from pathlib import Path
from typing import Any

from ..errors import TransformationError
from .base import FILE_EDITS_FORMAT, LOG_EXCERPT_CHARS, LogFn, StrategyResult, TransformationStrategy, excerpt, extract_json_block

REPORT_FILE = "AUTOBOT_REPORT.md"


class CustomPromptStrategy(TransformationStrategy):
    """Free-form transformation driven by the job's ``prompt`` setting."""

    job_type = "custom"
    commit_title = "Custom changes"

    async def transform(self, workspace: Path, config: dict[str, Any], log: LogFn) -> StrategyResult:
        prompt = str(config.get("prompt") or "").strip()
        if not prompt:
            raise TransformationError("Custom jobs require a 'prompt' in their configuration")
        sources = self.collect_sources(workspace, config.get("paths"))
        analysis = await self.analyze(sources or "(no source files)", prompt)
        log(f"Analysis completed: {excerpt(analysis, LOG_EXCERPT_CHARS)}")

        reply = await self.generate(f"{sources}\n\nAnalysis:\n{analysis}", f"{prompt}\n\n{FILE_EDITS_FORMAT}")
        payload = extract_json_block(reply, default={})
        changed = self.apply_file_edits(workspace, payload)
        if changed:
            log(f"Applied custom edits to {len(changed)} file(s)")
            summary = excerpt(str(payload.get("summary") or f"Changed {len(changed)} file(s)"), LOG_EXCERPT_CHARS)
        else:
            self.write_report(workspace, REPORT_FILE, "AutoBot Report", analysis=analysis, details=prompt)
            log(f"No edits returned; wrote {REPORT_FILE}")
            summary = f"No edits proposed; wrote {REPORT_FILE}"
        return StrategyResult(summary=summary, analysis=analysis)
