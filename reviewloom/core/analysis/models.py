"""Data contracts for the analysis orchestration engine.

All structured types shared by the job registry, the progress broadcaster,
the orchestrator and analyzers. Kept as dataclasses (not ORM models) for
transport between layers; ``to_dict()`` produces the camelCase wire shape.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional

from ..constants import (
    ANALYSIS_LEVELS,
    DEFAULT_TIER,
    MAX_INSTRUCTIONS_LENGTH,
    REVIEW_TYPE_LOCAL,
    REVIEW_TYPE_PR,
    SYNTHESIS_LEVEL,
    TIER_ALIASES,
    VALID_TIERS,
)
from ..exceptions import ValidationError


class JobState(str, Enum):
    """Overall status of a job."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not JobState.RUNNING


class LevelStatus(str, Enum):
    """Status of one analysis level within a job."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (LevelStatus.COMPLETED, LevelStatus.FAILED, LevelStatus.CANCELLED)

    @property
    def is_settled(self) -> bool:
        return self.is_terminal or self is LevelStatus.SKIPPED


# Levels only move forward; SKIPPED is assigned at seed time only.
# RUNNING -> RUNNING is a progress-message update.
_LEVEL_TRANSITIONS = {
    LevelStatus.PENDING: {
        LevelStatus.RUNNING, LevelStatus.COMPLETED, LevelStatus.FAILED, LevelStatus.CANCELLED,
    },
    LevelStatus.RUNNING: {
        LevelStatus.RUNNING, LevelStatus.COMPLETED, LevelStatus.FAILED, LevelStatus.CANCELLED,
    },
}


class InvalidTransition(ValueError):
    """A level or job was asked to move backwards or leave a terminal state."""


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def normalize_repository(owner: str, repo: str) -> str:
    """Return the canonical ``owner/repo`` form (trimmed, lower-cased)."""
    if not isinstance(owner, str) or not isinstance(repo, str):
        raise ValidationError("owner and repo must be non-empty strings")
    owner, repo = owner.strip(), repo.strip()
    if not owner or not repo:
        raise ValidationError("owner and repo must be non-empty strings")
    return f"{owner.lower()}/{repo.lower()}"


def normalize_tier(tier: Optional[str]) -> str:
    """Validate a tier and map aliases onto canonical tiers."""
    if not tier:
        return DEFAULT_TIER
    if tier not in VALID_TIERS:
        raise ValidationError(
            f'Invalid tier: "{tier}". Valid tiers: {", ".join(VALID_TIERS)}'
        )
    return TIER_ALIASES.get(tier, tier)


def merge_instructions(repo_instructions: Optional[str], request_instructions: Optional[str]) -> Optional[str]:
    """Merge repository and request instructions for the analyzer prompt.

    Request instructions take precedence where the two overlap; both are
    tagged so the model can tell them apart.
    """
    if not repo_instructions and not request_instructions:
        return None

    parts = []
    if repo_instructions:
        parts.append(
            "These are default instructions for this repository:\n"
            f"<repo_instructions>\n{repo_instructions}\n</repo_instructions>"
        )
    if request_instructions:
        parts.append(
            "These are custom instructions for this analysis run. The following "
            "instructions take precedence over the repo_instructions in areas where "
            "they overlap or conflict:\n"
            f"<custom_instructions>\n{request_instructions}\n</custom_instructions>"
        )
    return "\n\n".join(parts)


# =============================================================================
# Targets and request options
# =============================================================================

@dataclass(frozen=True)
class AnalysisTarget:
    """The review entity an analysis job runs against.

    Either a pull request (repository + number) or a local review (review_id).
    """
    kind: str
    repository: Optional[str] = None
    number: Optional[int] = None
    review_id: Optional[int] = None

    @classmethod
    def for_pull_request(cls, owner: str, repo: str, number: Any) -> "AnalysisTarget":
        try:
            pr_number = int(number)
        except (TypeError, ValueError):
            raise ValidationError("Invalid pull request number")
        if pr_number <= 0:
            raise ValidationError("Invalid pull request number")
        return cls(kind=REVIEW_TYPE_PR, repository=normalize_repository(owner, repo), number=pr_number)

    @classmethod
    def for_local_review(cls, review_id: Any) -> "AnalysisTarget":
        try:
            rid = int(review_id)
        except (TypeError, ValueError):
            raise ValidationError("Invalid review ID")
        if rid <= 0:
            raise ValidationError("Invalid review ID")
        return cls(kind=REVIEW_TYPE_LOCAL, review_id=rid)

    @property
    def is_pull_request(self) -> bool:
        return self.kind == REVIEW_TYPE_PR

    @property
    def key(self) -> str:
        """Normalized identity used by the target -> job index."""
        if self.is_pull_request:
            return f"{self.repository}/{self.number}"
        return f"local/{self.review_id}"

    def describe(self) -> str:
        if self.is_pull_request:
            return f"PR #{self.number} in {self.repository}"
        return f"local review #{self.review_id}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.kind,
            "repository": self.repository,
            "prNumber": self.number,
            "reviewId": self.review_id,
        }


@dataclass
class AnalysisOptions:
    """Validated per-request analysis options."""
    provider: Optional[str] = None
    model: Optional[str] = None
    tier: str = DEFAULT_TIER
    custom_instructions: Optional[str] = None
    skipped_levels: FrozenSet[int] = frozenset()

    @classmethod
    def from_request(
        cls,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        tier: Optional[str] = None,
        custom_instructions: Optional[str] = None,
        skip_level3: bool = False,
        enabled_levels: Optional[Mapping[Any, bool]] = None,
    ) -> "AnalysisOptions":
        """Validate raw request fields.

        Raises:
            ValidationError: instructions over the length cap, unknown tier,
                unknown level, or every analysis level disabled
        """
        instructions = custom_instructions.strip() if custom_instructions else None
        if instructions and len(instructions) > MAX_INSTRUCTIONS_LENGTH:
            raise ValidationError(
                f"Custom instructions exceed maximum length of {MAX_INSTRUCTIONS_LENGTH} characters"
            )

        skipped = set()
        for raw_level, enabled in (enabled_levels or {}).items():
            try:
                level = int(raw_level)
            except (TypeError, ValueError):
                raise ValidationError(f"Invalid analysis level: {raw_level!r}")
            if level not in ANALYSIS_LEVELS:
                raise ValidationError(f"Invalid analysis level: {raw_level!r}")
            if not enabled:
                skipped.add(level)
        if skip_level3:
            skipped.add(3)
        if skipped.issuperset(ANALYSIS_LEVELS):
            raise ValidationError("At least one analysis level must be enabled")

        return cls(
            provider=provider or None,
            model=model or None,
            tier=normalize_tier(tier),
            custom_instructions=instructions or None,
            skipped_levels=frozenset(skipped),
        )

    @property
    def levels_config(self) -> Dict[str, bool]:
        return {str(level): level not in self.skipped_levels for level in ANALYSIS_LEVELS}


# =============================================================================
# Analyzer results
# =============================================================================

@dataclass
class Suggestion:
    """One review suggestion produced by an analyzer."""
    file: str
    line_start: Optional[int]
    type: str
    title: str
    body: str = ""
    line_end: Optional[int] = None
    confidence: float = 0.7
    is_file_level: bool = False


@dataclass
class LevelResult:
    """Output of one analysis level."""
    level: int
    suggestions: List[Suggestion] = field(default_factory=list)
    summary: Optional[str] = None
    files_analyzed: int = 0


@dataclass
class AnalysisResult:
    """Everything an analyzer hands back for a successful job."""
    level_results: Dict[int, LevelResult] = field(default_factory=dict)
    orchestrated_suggestions: Optional[List[Suggestion]] = None
    summary: Optional[str] = None
    files_analyzed: int = 0

    @property
    def completed_level(self) -> int:
        """Highest analysis level that produced a usable result."""
        levels = [lvl for lvl in self.level_results if lvl in ANALYSIS_LEVELS]
        return max(levels) if levels else 0

    def level_suggestion_count(self, level: int) -> int:
        result = self.level_results.get(level)
        return len(result.suggestions) if result else 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.summary,
            "filesAnalyzed": self.files_analyzed,
            "levelSuggestionCounts": {
                str(level): len(res.suggestions) for level, res in sorted(self.level_results.items())
            },
            "orchestratedSuggestionCount": (
                len(self.orchestrated_suggestions) if self.orchestrated_suggestions is not None else None
            ),
        }


@dataclass
class CompletionInfo:
    completed_level: int
    total_suggestions: int
    progress_message: str


def determine_completion_info(result: AnalysisResult) -> CompletionInfo:
    """Work out the completed level and the suggestion count to report.

    Orchestrated suggestions win when synthesis produced any; otherwise the
    per-level counts are summed.
    """
    if result.orchestrated_suggestions:
        total = len(result.orchestrated_suggestions)
        message = f"Analysis complete: {total} orchestrated suggestions stored"
    else:
        counts = {level: result.level_suggestion_count(level) for level in ANALYSIS_LEVELS}
        total = sum(counts.values())
        details = ", ".join(f"Level {level}: {n}" for level, n in counts.items() if n > 0)
        message = f"Analysis complete: {total} suggestions found"
        if details:
            message += f" ({details})"

    return CompletionInfo(
        completed_level=result.completed_level,
        total_suggestions=total,
        progress_message=message,
    )


class OutcomeKind(str, Enum):
    OK = "ok"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class AnalysisOutcome:
    """Tagged result of one analyzer invocation: ok, cancelled or failed."""
    kind: OutcomeKind
    result: Optional[AnalysisResult] = None
    reason: Optional[str] = None

    @classmethod
    def ok(cls, result: AnalysisResult) -> "AnalysisOutcome":
        return cls(OutcomeKind.OK, result=result)

    @classmethod
    def cancelled(cls) -> "AnalysisOutcome":
        return cls(OutcomeKind.CANCELLED)

    @classmethod
    def failed(cls, reason: str) -> "AnalysisOutcome":
        return cls(OutcomeKind.FAILED, reason=reason)


# =============================================================================
# Job status
# =============================================================================

@dataclass
class LevelState:
    status: LevelStatus = LevelStatus.PENDING
    progress_message: str = "Pending"

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status.value, "progress": self.progress_message}


@dataclass
class JobStatus:
    """Live, in-memory state of one analysis job.

    ``status`` is terminal exactly when every non-skipped level is terminal.
    """
    job_id: str
    target: AnalysisTarget
    levels: Dict[int, LevelState]
    run_id: Optional[str] = None
    review_id: Optional[int] = None
    status: JobState = JobState.RUNNING
    progress_message: str = "Starting analysis..."
    started_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    completed_level: Optional[int] = None
    suggestions_count: Optional[int] = None
    files_analyzed: int = 0
    provider: Optional[str] = None
    model: Optional[str] = None
    tier: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @classmethod
    def seed(
        cls,
        job_id: str,
        target: AnalysisTarget,
        skipped_levels: Iterable[int] = (),
        **kwargs,
    ) -> "JobStatus":
        """Create the initial status: analysis levels running, synthesis pending."""
        skipped = set(skipped_levels)
        levels = {}
        for level in ANALYSIS_LEVELS:
            if level in skipped:
                levels[level] = LevelState(LevelStatus.SKIPPED, "Skipped")
            else:
                levels[level] = LevelState(LevelStatus.RUNNING, "Starting...")
        levels[SYNTHESIS_LEVEL] = LevelState(LevelStatus.PENDING, "Pending")
        return cls(job_id=job_id, target=target, levels=levels, **kwargs)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def levels_settled(self) -> bool:
        return all(state.status.is_settled for state in self.levels.values())

    def set_level(self, level: int, status: LevelStatus, message: Optional[str] = None) -> None:
        """Move one level forward.

        Raises:
            InvalidTransition: unknown level, skipped/terminal level, or a
                backwards move
        """
        if level not in self.levels:
            raise InvalidTransition(f"Unknown level {level}")
        current = self.levels[level]
        if status not in _LEVEL_TRANSITIONS.get(current.status, ()):
            raise InvalidTransition(
                f"Level {level} cannot move from {current.status.value} to {status.value}"
            )
        self.levels[level] = LevelState(status, message or current.progress_message)

    def settle_levels(self, status: LevelStatus, message: str, up_to: Optional[int] = None) -> List[int]:
        """Move every unsettled level (optionally only levels <= up_to) to ``status``.

        Returns:
            The levels that changed
        """
        changed = []
        for level in sorted(self.levels):
            if up_to is not None and level > up_to:
                continue
            if not self.levels[level].status.is_settled:
                self.levels[level] = LevelState(status, message)
                changed.append(level)
        return changed

    def finish(self, status: JobState, message: str, error: Optional[str] = None) -> None:
        """Mark the job terminal. All levels must already be settled."""
        if self.is_terminal:
            raise InvalidTransition(f"Job {self.job_id} is already {self.status.value}")
        if not status.is_terminal:
            raise InvalidTransition("finish() needs a terminal status")
        if not self.levels_settled:
            raise InvalidTransition(f"Job {self.job_id} still has unsettled levels")
        now = datetime.utcnow()
        self.status = status
        self.progress_message = message
        self.completed_at = now
        if status is JobState.CANCELLED:
            self.cancelled_at = now
        if error is not None:
            self.error = error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "jobId": self.job_id,
            "runId": self.run_id,
            "reviewId": self.review_id,
            "target": self.target.to_dict(),
            "status": self.status.value,
            "progress": self.progress_message,
            "levels": {str(level): state.to_dict() for level, state in sorted(self.levels.items())},
            "startedAt": _iso(self.started_at),
            "completedAt": _iso(self.completed_at),
            "cancelledAt": _iso(self.cancelled_at),
            "completedLevel": self.completed_level,
            "suggestionsCount": self.suggestions_count,
            "filesAnalyzed": self.files_analyzed,
            "provider": self.provider,
            "model": self.model,
            "tier": self.tier,
            "result": self.result,
            "error": self.error,
        }


# =============================================================================
# Persistence and API transport
# =============================================================================

@dataclass
class RunRecord:
    """Values written to ``analysis_runs`` when a job reaches a terminal state."""
    run_id: str
    review_id: int
    status: str
    started_at: datetime
    provider: Optional[str] = None
    model: Optional[str] = None
    tier: Optional[str] = None
    repo_instructions: Optional[str] = None
    request_instructions: Optional[str] = None
    head_sha: Optional[str] = None
    total_suggestions: int = 0
    files_analyzed: int = 0
    completed_level: Optional[int] = None
    levels_config: Optional[Dict[str, bool]] = None
    summary: Optional[str] = None
    error: Optional[str] = None
    completed_at: Optional[datetime] = None


@dataclass
class CancelResult:
    success: bool
    status: str
    message: str
    processes_killed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "processesKilled": self.processes_killed,
            "status": self.status,
        }


__all__ = [
    "AnalysisOptions",
    "AnalysisOutcome",
    "AnalysisResult",
    "AnalysisTarget",
    "CancelResult",
    "CompletionInfo",
    "InvalidTransition",
    "JobState",
    "JobStatus",
    "LevelResult",
    "LevelState",
    "LevelStatus",
    "OutcomeKind",
    "RunRecord",
    "Suggestion",
    "determine_completion_info",
    "merge_instructions",
    "normalize_repository",
    "normalize_tier",
]
