"""Analysis API routes (FastAPI).

Trigger, poll, cancel and stream analysis jobs for pull requests and
local reviews. Progress is pushed over SSE; clients that cannot hold a
stream open poll the status endpoint instead.
"""

import logging
from typing import Dict

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from ...core.analysis import AnalysisOptions, AnalysisTarget, JobState, progress_frame, to_sse
from ...core.exceptions import CapacityError
from ..deps import get_app_settings, get_orchestrator

logger = logging.getLogger(__name__)

router = APIRouter(tags=["analysis"])

_TERMINAL_STATES = {state.value for state in JobState if state.is_terminal}


class AnalyzeRequest(BaseModel):
    provider: str | None = None
    model: str | None = None
    tier: str | None = None
    customInstructions: str | None = None
    skipLevel3: bool = False
    enabledLevels: Dict[str, bool] | None = None

    def to_options(self) -> AnalysisOptions:
        return AnalysisOptions.from_request(
            provider=self.provider,
            model=self.model,
            tier=self.tier,
            custom_instructions=self.customInstructions,
            skip_level3=self.skipLevel3,
            enabled_levels=self.enabledLevels,
        )


async def _start(orchestrator, settings, target: AnalysisTarget, data: AnalyzeRequest | None) -> dict:
    options = (data or AnalyzeRequest()).to_options()
    response = await orchestrator.trigger(target, options)
    response["pollIntervalSeconds"] = settings.poll_interval_seconds
    return response


@router.post("/analyze/{owner}/{repo}/{pr}")
async def analyze_pull_request(
    owner: str,
    repo: str,
    pr: str,
    data: AnalyzeRequest | None = None,
    orchestrator=Depends(get_orchestrator),
    settings=Depends(get_app_settings),
):
    """Start a background analysis for a loaded pull request."""
    target = AnalysisTarget.for_pull_request(owner, repo, pr)
    return await _start(orchestrator, settings, target, data)


@router.post("/local/{review_id}/analyses")
async def analyze_local_review(
    review_id: str,
    data: AnalyzeRequest | None = None,
    orchestrator=Depends(get_orchestrator),
    settings=Depends(get_app_settings),
):
    """Start a background analysis for a local review."""
    target = AnalysisTarget.for_local_review(review_id)
    return await _start(orchestrator, settings, target, data)


@router.get("/analyze/status/{job_id}")
async def analysis_status(job_id: str, orchestrator=Depends(get_orchestrator)):
    """Polling fallback: the job's current status."""
    return orchestrator.get_status(job_id)


@router.post("/analyze/cancel/{job_id}")
@router.post("/analyses/{job_id}/cancel")
async def cancel_analysis(job_id: str, orchestrator=Depends(get_orchestrator)):
    result = orchestrator.cancel(job_id)
    return result.to_dict()


@router.get("/analyze/progress/{job_id}")
@router.get("/pr/{job_id}/ai-suggestions/status")
async def analysis_progress(
    job_id: str,
    request: Request,
    orchestrator=Depends(get_orchestrator),
    settings=Depends(get_app_settings),
):
    """SSE progress stream for one job.

    Emits events in order:
      1. type=connected: sentinel, always first
      2. type=progress: the current snapshot (if the job exists), then
         every published update
    The stream closes after a terminal status was sent or when the client
    disconnects. Comment frames keep idle connections alive.
    """
    broadcaster = orchestrator.broadcaster
    # Reject before streaming starts; the channel itself lives only inside the generator
    broadcaster.check_capacity(job_id)
    keepalive = settings.sse_keepalive_seconds

    async def event_generator():
        channel = None
        try:
            channel = broadcaster.attach(job_id)
            yield to_sse({"type": "connected", "message": "Connected to progress stream"})
            while True:
                if await request.is_disconnected():
                    logger.debug(f"Progress client for job {job_id} disconnected")
                    break
                snapshot = await channel.get(timeout=keepalive)
                if snapshot is None:
                    yield ": keepalive\n\n"
                    continue
                yield to_sse(progress_frame(snapshot))
                if snapshot.get("status") in _TERMINAL_STATES:
                    break
        except CapacityError as e:
            # Lost a race for the last observer slot
            yield to_sse({"type": "error", "error": e.message})
        finally:
            if channel is not None:
                broadcaster.detach(channel)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.get("/pr/{owner}/{repo}/{number}/analysis-status")
async def pull_request_analysis_status(
    owner: str,
    repo: str,
    number: str,
    orchestrator=Depends(get_orchestrator),
):
    """Whether an analysis is currently running for a pull request."""
    target = AnalysisTarget.for_pull_request(owner, repo, number)
    return orchestrator.get_active_job_for_target(target)


@router.get("/local/{review_id}/analysis-status")
async def local_review_analysis_status(review_id: str, orchestrator=Depends(get_orchestrator)):
    """Whether an analysis is currently running for a local review."""
    target = AnalysisTarget.for_local_review(review_id)
    return orchestrator.get_active_job_for_target(target)
