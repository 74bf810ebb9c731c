"""Analysis orchestrator.

Accepts trigger requests, seeds job state, runs the analyzer as a
supervised background task and finalizes every job exactly once:

- completed: levels settled, run + suggestions persisted, pointers updated
- failed: unsettled levels failed, failed run persisted with the error
- cancelled: terminal state set by cancel(); a cancelled run is persisted

The target -> job index entry is released in a ``finally`` on every path.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Set, Tuple
from uuid import uuid4

from ..config import Settings
from ..constants import SYNTHESIS_LEVEL
from ..db import DatabaseManager
from ..exceptions import CancellationSignal, CapacityError, NotFoundError
from .analyzer import AnalysisContext, AnalysisRequest, Analyzer, CommandAnalyzer
from .broadcaster import ProgressBroadcaster
from .cancellation import CancellationCoordinator
from .history import RunHistoryStore
from .models import (
    AnalysisOptions,
    AnalysisOutcome,
    AnalysisResult,
    AnalysisTarget,
    CancelResult,
    JobState,
    JobStatus,
    LevelStatus,
    OutcomeKind,
    RunRecord,
    Suggestion,
    determine_completion_info,
)
from .progress import JobProgressSink
from .registry import JobRegistry
from .targets import DirectoryWorkspaceProvider, ResolvedTarget, TargetResolver

logger = logging.getLogger(__name__)


class TaskSupervisor:
    """Owns background tasks so they outlive the request that started them."""

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro, name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Background task {task.get_name()} crashed: {exc}", exc_info=exc)

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Give tasks ``timeout`` seconds to finish, then cancel the rest."""
        tasks = list(self._tasks)
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        if not pending:
            return
        logger.info(f"Cancelling {len(pending)} background task(s)")
        for task in pending:
            task.cancel()
        await asyncio.wait(pending, timeout=timeout)

    def __len__(self) -> int:
        return len(self._tasks)


class AnalysisOrchestrator:
    """Job lifecycle: trigger, progress, cancel, finalize."""

    def __init__(
        self,
        registry: JobRegistry,
        broadcaster: ProgressBroadcaster,
        coordinator: CancellationCoordinator,
        history: RunHistoryStore,
        resolver: TargetResolver,
        analyzer: Analyzer,
        max_active_jobs: int = 8,
    ):
        self.registry = registry
        self.broadcaster = broadcaster
        self.coordinator = coordinator
        self.history = history
        self.resolver = resolver
        self.analyzer = analyzer
        self.max_active_jobs = max_active_jobs
        self.supervisor = TaskSupervisor()
        self._analysis_tasks: Dict[str, asyncio.Future] = {}

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        db_manager: DatabaseManager,
        analyzer: Optional[Analyzer] = None,
        resolver: Optional[TargetResolver] = None,
    ) -> "AnalysisOrchestrator":
        """Wire the engine from process settings."""
        registry = JobRegistry(max_finished_jobs=settings.max_finished_jobs)
        broadcaster = ProgressBroadcaster(
            registry,
            max_observers_per_job=settings.max_observers_per_job,
            buffer_size=settings.channel_buffer_size,
        )
        if resolver is None:
            resolver = TargetResolver(
                db_manager, settings, DirectoryWorkspaceProvider(settings.worktree_root)
            )
        if analyzer is None:
            analyzer = CommandAnalyzer(settings.provider_commands, timeout=settings.level_timeout_seconds)
        return cls(
            registry=registry,
            broadcaster=broadcaster,
            coordinator=CancellationCoordinator(),
            history=RunHistoryStore(db_manager),
            resolver=resolver,
            analyzer=analyzer,
            max_active_jobs=settings.max_active_jobs,
        )

    # =========================================================================
    # Trigger
    # =========================================================================

    async def trigger(self, target: AnalysisTarget, options: AnalysisOptions) -> Dict[str, Any]:
        """Start an analysis job and return without waiting for it.

        Raises:
            NotFoundError: target or working copy missing; no job is created
            CapacityError: ``max_active_jobs`` jobs are already running
        """
        resolved = await asyncio.to_thread(self.resolver.resolve, target, options)

        # No awaits from here until the job is registered
        if self.registry.active_count() >= self.max_active_jobs:
            raise CapacityError(
                f"Too many analyses running (max {self.max_active_jobs}). Try again later."
            )

        job_id = str(uuid4())
        status = JobStatus.seed(
            job_id,
            target,
            options.skipped_levels,
            run_id=job_id,
            review_id=resolved.review_id,
            provider=resolved.provider,
            model=resolved.model,
            tier=options.tier,
        )
        snapshot = self.registry.create(status)
        self.broadcaster.publish(job_id, snapshot)

        request = AnalysisRequest(
            job_id=job_id,
            target=target,
            review_id=resolved.review_id,
            workspace_path=resolved.workspace_path,
            provider=resolved.provider,
            model=resolved.model,
            tier=options.tier,
            instructions=resolved.instructions,
            head_sha=resolved.head_sha,
            skipped_levels=options.skipped_levels,
        )
        self.supervisor.spawn(self._run_job(request, resolved, options), name=f"analysis-{job_id}")

        logger.info(
            f"Started analysis {job_id} for {target.describe()} "
            f"(provider={resolved.provider}, model={resolved.model}, tier={options.tier})"
        )
        return {
            "jobId": job_id,
            "analysisId": job_id,
            "runId": job_id,
            "status": "started",
            "message": "AI analysis started in background",
        }

    # =========================================================================
    # Background job
    # =========================================================================

    async def _run_job(self, request: AnalysisRequest, resolved: ResolvedTarget, options: AnalysisOptions) -> None:
        job_id = request.job_id
        try:
            outcome = await self._invoke(request)
            await self._finalize(job_id, outcome, resolved, options)
        finally:
            self.registry.release_target(request.target.key, job_id)
            self.coordinator.forget(job_id)
            self._analysis_tasks.pop(job_id, None)

    async def _invoke(self, request: AnalysisRequest) -> AnalysisOutcome:
        """Run the analyzer and fold every way it can end into an AnalysisOutcome."""
        job_id = request.job_id
        if self.coordinator.is_cancelled(job_id):
            return AnalysisOutcome.cancelled()

        sink = JobProgressSink(job_id, self.registry, self.broadcaster)
        context = AnalysisContext(job_id, sink, self.coordinator)
        analysis = asyncio.ensure_future(self.analyzer.analyze(request, context))
        self._analysis_tasks[job_id] = analysis

        try:
            result = await analysis
        except CancellationSignal:
            return AnalysisOutcome.cancelled()
        except asyncio.CancelledError:
            # Only swallow our own cancel(); shutdown cancellation propagates
            if analysis.cancelled() and self.coordinator.is_cancelled(job_id):
                return AnalysisOutcome.cancelled()
            raise
        except Exception as e:
            logger.error(f"Analysis {job_id} failed: {e}", exc_info=True)
            return AnalysisOutcome.failed(str(e) or type(e).__name__)

        if self.coordinator.is_cancelled(job_id):
            return AnalysisOutcome.cancelled()
        return AnalysisOutcome.ok(result)

    async def _finalize(
        self,
        job_id: str,
        outcome: AnalysisOutcome,
        resolved: ResolvedTarget,
        options: AnalysisOptions,
    ) -> None:
        if outcome.kind is OutcomeKind.OK:
            snapshot, record, suggestions = self._complete(job_id, outcome.result, resolved, options)
            update_pointers = True
        elif outcome.kind is OutcomeKind.FAILED:
            snapshot, record = self._fail(job_id, outcome.reason, resolved, options)
            suggestions, update_pointers = [], False
        else:
            logger.info(f"Analysis {job_id} was cancelled")
            snapshot, record = self._settle_cancelled(job_id, resolved, options)
            suggestions, update_pointers = [], False

        if record is not None:
            try:
                await asyncio.to_thread(self.history.record_run, record, suggestions, update_pointers)
            except Exception as e:
                logger.error(f"Failed to persist analysis run {job_id}: {e}", exc_info=True)

        if snapshot is not None:
            self.broadcaster.publish(job_id, snapshot)

    def _complete(
        self,
        job_id: str,
        result: AnalysisResult,
        resolved: ResolvedTarget,
        options: AnalysisOptions,
    ) -> Tuple[Optional[Dict], Optional[RunRecord], List[Tuple[Optional[int], Suggestion]]]:
        info = determine_completion_info(result)

        def apply(status: JobStatus):
            if status.is_terminal:
                return
            status.settle_levels(LevelStatus.COMPLETED, "Complete", up_to=info.completed_level)
            if not status.levels[SYNTHESIS_LEVEL].status.is_settled:
                status.set_level(SYNTHESIS_LEVEL, LevelStatus.COMPLETED, "Complete")
            status.settle_levels(LevelStatus.FAILED, "No result")
            status.completed_level = info.completed_level
            status.suggestions_count = info.total_suggestions
            status.files_analyzed = result.files_analyzed
            status.result = result.to_dict()
            status.finish(JobState.COMPLETED, info.progress_message)

        snapshot = self.registry.update(job_id, apply)
        if snapshot is None or snapshot["status"] != JobState.COMPLETED.value:
            logger.info(f"Analysis {job_id} finished after reaching a terminal state, result discarded")
            return None, None, []

        logger.info(f"Analysis {job_id} complete: {info.progress_message}")
        record = self._run_record(job_id, resolved, options, JobState.COMPLETED)
        record.total_suggestions = info.total_suggestions
        record.files_analyzed = result.files_analyzed
        record.completed_level = info.completed_level
        record.summary = result.summary
        return snapshot, record, self._suggestions_to_store(result)

    def _fail(
        self,
        job_id: str,
        reason: str,
        resolved: ResolvedTarget,
        options: AnalysisOptions,
    ) -> Tuple[Optional[Dict], Optional[RunRecord]]:
        def apply(status: JobStatus):
            if status.is_terminal:
                return
            status.settle_levels(LevelStatus.FAILED, "Failed")
            status.finish(JobState.FAILED, f"Analysis failed: {reason}", error=reason)

        snapshot = self.registry.update(job_id, apply)
        if snapshot is None or snapshot["status"] != JobState.FAILED.value:
            return None, None

        record = self._run_record(job_id, resolved, options, JobState.FAILED)
        record.error = reason
        return snapshot, record

    def _settle_cancelled(
        self,
        job_id: str,
        resolved: ResolvedTarget,
        options: AnalysisOptions,
    ) -> Tuple[Optional[Dict], Optional[RunRecord]]:
        # cancel() normally set the terminal state already
        changed = False

        def apply(status: JobStatus):
            nonlocal changed
            if status.is_terminal:
                return
            status.settle_levels(LevelStatus.CANCELLED, "Cancelled")
            status.finish(JobState.CANCELLED, "Analysis cancelled")
            changed = True

        snapshot = self.registry.update(job_id, apply)
        if snapshot is None or snapshot["status"] != JobState.CANCELLED.value:
            return None, None
        record = self._run_record(job_id, resolved, options, JobState.CANCELLED)
        return (snapshot if changed else None), record

    def _run_record(
        self,
        job_id: str,
        resolved: ResolvedTarget,
        options: AnalysisOptions,
        state: JobState,
    ) -> RunRecord:
        status = self.registry.get(job_id)
        return RunRecord(
            run_id=job_id,
            review_id=resolved.review_id,
            status=state.value,
            started_at=status.started_at if status else datetime.utcnow(),
            completed_at=(status.completed_at if status else None) or datetime.utcnow(),
            provider=resolved.provider,
            model=resolved.model,
            tier=options.tier,
            repo_instructions=resolved.repo_instructions,
            request_instructions=resolved.request_instructions,
            head_sha=resolved.head_sha,
            levels_config=options.levels_config,
        )

    @staticmethod
    def _suggestions_to_store(result: AnalysisResult) -> List[Tuple[Optional[int], Suggestion]]:
        """Per-level suggestions tagged with their level, plus the final set (level None)."""
        rows: List[Tuple[Optional[int], Suggestion]] = []
        for level, level_result in sorted(result.level_results.items()):
            rows.extend((level, s) for s in level_result.suggestions)

        if result.orchestrated_suggestions:
            final = result.orchestrated_suggestions
        else:
            final = [s for _, res in sorted(result.level_results.items()) for s in res.suggestions]
        rows.extend((None, s) for s in final)
        return rows

    # =========================================================================
    # Cancel and reads
    # =========================================================================

    def cancel(self, job_id: str) -> CancelResult:
        """Cancel a running job, killing its processes.

        Idempotent: a terminal job is reported as-is without side effects.

        Raises:
            NotFoundError: unknown job id
        """
        status = self.registry.get(job_id)
        if status is None:
            raise NotFoundError("Analysis not found")
        if status.is_terminal:
            return CancelResult(
                success=True,
                status=status.status.value,
                message=f"Analysis already {status.status.value}",
            )

        killed = self._cancel_running(status, "Analysis cancelled by user")
        return CancelResult(
            success=True,
            status=JobState.CANCELLED.value,
            message="Analysis cancelled",
            processes_killed=killed,
        )

    def _cancel_running(self, status: JobStatus, message: str) -> int:
        """Kill a running job's processes and settle it as cancelled.

        Returns:
            Number of processes signalled
        """
        job_id = status.job_id
        logger.info(f"Cancelling analysis {job_id} for {status.target.describe()}")
        self.coordinator.mark_cancelled(job_id)
        killed = self.coordinator.kill_all(job_id)
        logger.info(f"Killed {killed} running process(es) for analysis {job_id}")

        def apply(s: JobStatus):
            if s.is_terminal:
                return
            s.settle_levels(LevelStatus.CANCELLED, "Cancelled")
            s.finish(JobState.CANCELLED, message)

        snapshot = self.registry.update(job_id, apply)
        if snapshot is not None:
            self.broadcaster.publish(job_id, snapshot)
        self.registry.release_target(status.target.key, job_id)

        analysis = self._analysis_tasks.get(job_id)
        if analysis is not None and not analysis.done():
            analysis.cancel()
        return killed

    def get_status(self, job_id: str) -> Dict[str, Any]:
        """Current JobStatus snapshot.

        Raises:
            NotFoundError: unknown job id
        """
        snapshot = self.registry.snapshot(job_id)
        if snapshot is None:
            raise NotFoundError("Analysis not found")
        return snapshot

    def get_active_job_for_target(self, target: AnalysisTarget) -> Dict[str, Any]:
        status = self.registry.active_job_for(target.key)
        if status is None:
            return {"running": False, "jobId": None, "analysisId": None, "status": None}
        return {
            "running": True,
            "jobId": status.job_id,
            "analysisId": status.job_id,
            "status": self.registry.snapshot(status.job_id),
        }

    async def shutdown(self) -> None:
        """Cancel every running job, then let the background tasks finalize."""
        for job_id in self.registry.active_job_ids():
            status = self.registry.get(job_id)
            if status is not None and not status.is_terminal:
                self._cancel_running(status, "Analysis cancelled: server shutting down")
        await self.supervisor.shutdown()
