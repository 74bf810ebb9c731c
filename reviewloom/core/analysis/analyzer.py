"""Analyzer capability invoked by the orchestrator.

An analyzer receives an AnalysisRequest and an AnalysisContext and either
returns an AnalysisResult, raises CancellationSignal once it notices its job
was cancelled, or raises anything else to fail the job.

LeveledAnalyzer runs the independent levels concurrently and the synthesis
level after they settle. CommandAnalyzer implements each level by piping a
prompt into an external provider CLI and parsing JSON from its stdout.
"""

import asyncio
import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, List, Optional

from ..constants import (
    ANALYSIS_LEVELS,
    DEFAULT_SUGGESTION_CONFIDENCE,
    LEVEL_NAMES,
    MIN_SUGGESTION_CONFIDENCE,
    SYNTHESIS_LEVEL,
)
from ..exceptions import AnalyzerFailure, CancellationSignal
from .cancellation import CancellationCoordinator
from .models import AnalysisResult, AnalysisTarget, LevelResult, LevelState, LevelStatus, Suggestion
from .progress import JobProgressSink

logger = logging.getLogger(__name__)


@dataclass
class AnalysisRequest:
    """Inputs of one analyzer invocation."""
    job_id: str
    target: AnalysisTarget
    review_id: int
    workspace_path: str
    provider: str
    model: str
    tier: str
    instructions: Optional[str] = None
    head_sha: Optional[str] = None
    skipped_levels: FrozenSet[int] = frozenset()

    @property
    def levels(self) -> List[int]:
        return [level for level in ANALYSIS_LEVELS if level not in self.skipped_levels]


class AnalysisContext:
    """Capabilities an analyzer gets for one job: progress, process tracking, cancellation."""

    def __init__(self, job_id: str, sink: JobProgressSink, coordinator: CancellationCoordinator):
        self.job_id = job_id
        self.sink = sink
        self._coordinator = coordinator

    def report(self, level: int, status: LevelStatus, message: str) -> bool:
        return self.sink.report(level, LevelState(status, message))

    def register_process(self, process: Any) -> bool:
        return self._coordinator.register(self.job_id, process)

    def unregister_process(self, process: Any) -> None:
        self._coordinator.unregister(self.job_id, process)

    def is_cancelled(self) -> bool:
        return self._coordinator.is_cancelled(self.job_id)

    def check_cancelled(self) -> None:
        if self.is_cancelled():
            raise CancellationSignal(f"Analysis {self.job_id} was cancelled")


class Analyzer(ABC):
    """Produces review suggestions for one job."""

    @abstractmethod
    async def analyze(self, request: AnalysisRequest, context: AnalysisContext) -> AnalysisResult:
        ...


class LeveledAnalyzer(Analyzer):
    """Runs analysis levels concurrently, then the synthesis level.

    A failed level does not fail the job while another level succeeded. A
    failed synthesis falls back to the per-level suggestions.
    """

    @abstractmethod
    async def run_level(self, level: int, request: AnalysisRequest, context: AnalysisContext) -> LevelResult:
        ...

    @abstractmethod
    async def synthesize(
        self,
        request: AnalysisRequest,
        context: AnalysisContext,
        level_results: Dict[int, LevelResult],
    ) -> LevelResult:
        ...

    async def analyze(self, request: AnalysisRequest, context: AnalysisContext) -> AnalysisResult:
        levels = request.levels
        for level in levels:
            context.report(level, LevelStatus.RUNNING, f"Analyzing {LEVEL_NAMES[level]}...")

        outcomes = await asyncio.gather(
            *(self.run_level(level, request, context) for level in levels),
            return_exceptions=True,
        )
        context.check_cancelled()

        level_results: Dict[int, LevelResult] = {}
        errors = []
        for level, outcome in zip(levels, outcomes):
            if isinstance(outcome, CancellationSignal):
                raise outcome
            if isinstance(outcome, BaseException):
                logger.warning(f"Level {level} failed for job {request.job_id}: {outcome}")
                errors.append(f"Level {level}: {outcome}")
                context.report(level, LevelStatus.FAILED, f"Failed: {outcome}")
                continue
            level_results[level] = outcome
            context.report(level, LevelStatus.COMPLETED, f"Complete: {len(outcome.suggestions)} suggestions")

        if not level_results:
            raise AnalyzerFailure("; ".join(errors) or "No analysis level produced a result")

        context.report(SYNTHESIS_LEVEL, LevelStatus.RUNNING, "Orchestrating results...")
        orchestrated = None
        summary = None
        try:
            synthesis = await self.synthesize(request, context, level_results)
            orchestrated = synthesis.suggestions
            summary = synthesis.summary
            context.report(SYNTHESIS_LEVEL, LevelStatus.COMPLETED, f"Complete: {len(orchestrated)} suggestions")
        except CancellationSignal:
            raise
        except Exception as e:
            logger.warning(f"Synthesis failed for job {request.job_id}, using per-level suggestions: {e}")
            context.report(SYNTHESIS_LEVEL, LevelStatus.FAILED, "Orchestration failed, using per-level suggestions")

        return AnalysisResult(
            level_results=level_results,
            orchestrated_suggestions=orchestrated,
            summary=summary,
            files_analyzed=max((r.files_analyzed for r in level_results.values()), default=0),
        )


# =============================================================================
# Provider CLI analyzer
# =============================================================================

LEVEL_PROMPTS = {
    1: "Review only the changed lines of this pull request. Focus on bugs, security and performance issues introduced by the diff.",
    2: "Review each changed file as a whole. Look for issues in how the changes fit the surrounding code in the same file.",
    3: "Review the changes in the context of the whole codebase. Look for broken callers, duplicated logic and architectural inconsistencies.",
}

RESPONSE_FORMAT = """Respond with JSON only:
{"summary": "...", "suggestions": [{"file": "path", "line": 1, "lineEnd": 1, "type": "bug|security|performance|improvement|design|code-style|praise", "title": "...", "description": "...", "suggestion": "...", "confidence": 0.0}]}"""


def extract_json(text: str) -> Dict[str, Any]:
    """Pull the first JSON object out of a model response.

    Tries a fenced code block first, then the outermost braces.

    Raises:
        AnalyzerFailure: no parseable JSON object
    """
    if not text or not text.strip():
        raise AnalyzerFailure("Empty response")

    fenced = re.search(r"```(?:json)?\s*\n(.*?)\n```", text, re.DOTALL)
    candidates = []
    if fenced:
        candidates.append(fenced.group(1).strip())
    first, last = text.find("{"), text.rfind("}")
    if first != -1 and last > first:
        candidates.append(text[first:last + 1])

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    raise AnalyzerFailure("Response did not contain a JSON object")


def parse_suggestions(items: Any) -> List[Suggestion]:
    """Validate raw suggestion dicts.

    Entries without file, line, type or title are dropped (file-level entries
    need no line), as are entries below the minimum confidence.
    """
    suggestions = []
    for item in items or []:
        if not isinstance(item, dict):
            continue
        is_file_level = bool(item.get("is_file_level") or item.get("isFileLevel"))
        line = item.get("line", item.get("line_start"))
        if not item.get("file") or not item.get("type") or not item.get("title") or (not line and not is_file_level):
            logger.warning(f"Skipping invalid suggestion: {json.dumps(item)[:200]}")
            continue

        try:
            confidence = float(item.get("confidence") or DEFAULT_SUGGESTION_CONFIDENCE)
        except (TypeError, ValueError):
            confidence = DEFAULT_SUGGESTION_CONFIDENCE
        if confidence < MIN_SUGGESTION_CONFIDENCE:
            logger.info(f"Filtering low confidence suggestion: {item['title']} ({confidence})")
            continue

        line_end = item.get("lineEnd", item.get("line_end")) or line
        try:
            line_start = int(line) if line else None
            line_end = int(line_end) if line_end else None
        except (TypeError, ValueError):
            logger.warning(f"Skipping suggestion with invalid line numbers: {json.dumps(item)[:200]}")
            continue

        body = "\n\n".join(p for p in (item.get("description"), item.get("suggestion")) if p)
        suggestions.append(Suggestion(
            file=item["file"],
            line_start=line_start,
            line_end=line_end,
            type=item["type"],
            title=item["title"],
            body=body,
            confidence=float(confidence),
            is_file_level=is_file_level,
        ))
    return suggestions


class CommandAnalyzer(LeveledAnalyzer):
    """Runs each level as an external provider command in the review's working copy.

    The prompt is written to the command's stdin; the command must print a
    JSON object with ``suggestions`` (and optionally ``summary``) to stdout.
    """

    def __init__(self, provider_commands: Dict[str, List[str]], timeout: float = 300.0):
        self.provider_commands = provider_commands
        self.timeout = timeout

    def build_command(self, provider: str, model: str) -> List[str]:
        template = self.provider_commands.get(provider)
        if not template:
            raise AnalyzerFailure(f"Unknown provider: {provider}")
        return [part.replace("{model}", model or "") for part in template]

    def build_prompt(self, level: int, request: AnalysisRequest, prior: Optional[Dict[int, LevelResult]] = None) -> str:
        parts = []
        if level == SYNTHESIS_LEVEL:
            parts.append(
                "Merge the suggestions below from independent review passes into one curated, "
                "de-duplicated list. Keep the most useful suggestions and write a short summary."
            )
            for lvl, result in sorted((prior or {}).items()):
                payload = [s.__dict__ for s in result.suggestions]
                parts.append(f"<level_{lvl}_suggestions>\n{json.dumps(payload)}\n</level_{lvl}_suggestions>")
        else:
            parts.append(LEVEL_PROMPTS[level])

        if request.target.is_pull_request:
            parts.append(f"Pull request #{request.target.number} in {request.target.repository}.")
        if request.head_sha:
            parts.append(f"Head commit: {request.head_sha}")
        if request.instructions:
            parts.append(request.instructions)
        parts.append(RESPONSE_FORMAT)
        return "\n\n".join(parts)

    async def _run_command(self, level: int, request: AnalysisRequest, context: AnalysisContext, prompt: str) -> str:
        context.check_cancelled()
        cmd = self.build_command(request.provider, request.model)

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=request.workspace_path,
            )
        except FileNotFoundError:
            raise AnalyzerFailure(f"Provider command not found: {cmd[0]}")

        if not context.register_process(proc):
            raise CancellationSignal(f"Analysis {request.job_id} was cancelled")

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(prompt.encode()), timeout=self.timeout)
        except asyncio.TimeoutError:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            raise AnalyzerFailure(f"Level {level} timed out after {self.timeout:.0f}s")
        finally:
            context.unregister_process(proc)

        if context.is_cancelled():
            raise CancellationSignal(f"Analysis {request.job_id} was cancelled")
        if proc.returncode != 0:
            detail = stderr.decode(errors="replace").strip()[:200]
            raise AnalyzerFailure(f"{cmd[0]} exited with code {proc.returncode}: {detail}")
        return stdout.decode(errors="replace")

    async def run_level(self, level: int, request: AnalysisRequest, context: AnalysisContext) -> LevelResult:
        output = await self._run_command(level, request, context, self.build_prompt(level, request))
        data = extract_json(output)
        suggestions = parse_suggestions(data.get("suggestions"))
        files = data.get("filesAnalyzed") or len({s.file for s in suggestions})
        logger.info(f"Level {level} for job {request.job_id} produced {len(suggestions)} suggestions")
        return LevelResult(level=level, suggestions=suggestions, summary=data.get("summary"), files_analyzed=files)

    async def synthesize(
        self,
        request: AnalysisRequest,
        context: AnalysisContext,
        level_results: Dict[int, LevelResult],
    ) -> LevelResult:
        prompt = self.build_prompt(SYNTHESIS_LEVEL, request, prior=level_results)
        output = await self._run_command(SYNTHESIS_LEVEL, request, context, prompt)
        data = extract_json(output)
        return LevelResult(
            level=SYNTHESIS_LEVEL,
            suggestions=parse_suggestions(data.get("suggestions")),
            summary=data.get("summary"),
        )
