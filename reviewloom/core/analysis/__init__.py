"""Multi-level analysis orchestration and progress streaming.

Components:
- JobRegistry: live JobStatus table plus the target -> job index
- ProgressBroadcaster: per-job observer channels
- CancellationCoordinator: per-job process tracking and kill
- RunHistoryStore: durable analysis runs and run-scoped suggestions
- AnalysisOrchestrator: trigger, cancel and finalize jobs
"""

from .analyzer import (
    AnalysisContext,
    AnalysisRequest,
    Analyzer,
    CommandAnalyzer,
    LeveledAnalyzer,
)
from .broadcaster import ProgressBroadcaster, ProgressChannel, progress_frame, to_sse
from .cancellation import CancellationCoordinator
from .history import RunHistoryStore, parse_levels
from .models import (
    AnalysisOptions,
    AnalysisOutcome,
    AnalysisResult,
    AnalysisTarget,
    JobState,
    JobStatus,
    LevelResult,
    LevelState,
    LevelStatus,
    Suggestion,
)
from .orchestrator import AnalysisOrchestrator, TaskSupervisor
from .progress import JobProgressSink
from .registry import JobRegistry
from .targets import DirectoryWorkspaceProvider, TargetResolver, WorkspaceProvider

__all__ = [
    "AnalysisContext",
    "AnalysisOptions",
    "AnalysisOrchestrator",
    "AnalysisOutcome",
    "AnalysisRequest",
    "AnalysisResult",
    "AnalysisTarget",
    "Analyzer",
    "CancellationCoordinator",
    "CommandAnalyzer",
    "DirectoryWorkspaceProvider",
    "JobProgressSink",
    "JobRegistry",
    "JobState",
    "JobStatus",
    "LevelResult",
    "LevelState",
    "LevelStatus",
    "LeveledAnalyzer",
    "ProgressBroadcaster",
    "ProgressChannel",
    "RunHistoryStore",
    "Suggestion",
    "TargetResolver",
    "TaskSupervisor",
    "WorkspaceProvider",
    "parse_levels",
    "progress_frame",
    "to_sse",
]
