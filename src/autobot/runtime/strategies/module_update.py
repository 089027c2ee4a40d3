from __future__ import annotations

from pathlib import Path
from typing import Any

from .base import FILE_EDITS_FORMAT, LOG_EXCERPT_CHARS, LogFn, StrategyResult, TransformationStrategy, excerpt, extract_json_block

REPORT_FILE = "MODULE_UPDATE_REPORT.md"

ANALYSIS_REQUEST = """Analyze this codebase and suggest module improvements:
1. Code refactoring opportunities
2. Performance optimizations
3. Better error handling
4. Code organization improvements
5. Modern language features
6. Accessibility improvements

Provide specific file locations and suggested changes."""

UPDATE_REQUEST = """Based on the analysis, generate improved code modules.
Focus on better code organization, performance, error handling and modern best practices. """


class ModuleUpdateStrategy(TransformationStrategy):
    """Refactoring and modernization pass over the configured source paths."""

    job_type = "module_update"
    commit_title = "Module updates and improvements"
    commit_icon = "🔧"

    async def transform(self, workspace: Path, config: dict[str, Any], log: LogFn) -> StrategyResult:
        sources = self.collect_sources(workspace, config.get("paths") or config.get("modules"))
        analysis = await self.analyze(sources or "(no source files)", ANALYSIS_REQUEST)
        log(f"Module analysis completed: {excerpt(analysis, LOG_EXCERPT_CHARS)}")

        reply = await self.generate(f"{sources}\n\nModule analysis:\n{analysis}", UPDATE_REQUEST + FILE_EDITS_FORMAT)
        payload = extract_json_block(reply, default={})
        changed = self.apply_file_edits(workspace, payload)
        log(f"Applied module updates to {len(changed)} file(s)")

        details = str(payload.get("summary") or "") if isinstance(payload, dict) else ""
        self.write_report(workspace, REPORT_FILE, "Module Update Report", analysis=analysis, details=details, changed=changed)
        return StrategyResult(
            summary=f"Module update complete; changed {len(changed)} file(s) and wrote {REPORT_FILE}",
            analysis=analysis,
        )
