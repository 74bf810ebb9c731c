"""Analysis run history API routes (FastAPI).

Run listings and lookups, run-scoped AI suggestions and staleness checks.
"""

import logging

from fastapi import APIRouter, Depends

from ...core.analysis import AnalysisTarget, parse_levels
from ...core.exceptions import NotFoundError
from ..deps import get_run_history, get_target_resolver

logger = logging.getLogger(__name__)

router = APIRouter(tags=["analysis-runs"])


@router.get("/analysis-runs/{review_id}")
async def list_analysis_runs(review_id: int, history=Depends(get_run_history)):
    """All runs for a review, newest first."""
    return {"runs": history.list_runs(review_id)}


@router.get("/analysis-runs/{review_id}/latest")
async def latest_analysis_run(review_id: int, history=Depends(get_run_history)):
    run = history.latest_run(review_id)
    if not run:
        raise NotFoundError("No analysis runs found")
    return {"run": run}


@router.get("/analysis-runs/{review_id}/staleness")
async def analysis_staleness(review_id: int, headSha: str | None = None, history=Depends(get_run_history)):
    """Compare the latest run's head sha with the caller's current head sha."""
    return history.check_staleness(review_id, headSha)


@router.get("/analysis-run/{run_id}")
async def get_analysis_run(run_id: str, history=Depends(get_run_history)):
    return {"run": history.get_run(run_id)}


@router.get("/reviews/{review_id}/ai-suggestions")
async def review_ai_suggestions(
    review_id: int,
    levels: str | None = None,
    runId: str | None = None,
    history=Depends(get_run_history),
):
    """AI suggestions of one run (the latest unless ``runId`` is given).

    ``levels`` is a comma list of ``final``, ``1``, ``2``, ``3``; default final.
    """
    resolved_run = history.resolve_run_id(review_id, runId)
    suggestions = history.latest_suggestions(review_id, parse_levels(levels), resolved_run)
    return {"runId": resolved_run, "suggestions": suggestions}


@router.get("/pr/{owner}/{repo}/{number}/ai-suggestions")
async def pull_request_ai_suggestions(
    owner: str,
    repo: str,
    number: str,
    levels: str | None = None,
    runId: str | None = None,
    history=Depends(get_run_history),
    resolver=Depends(get_target_resolver),
):
    """Same as the review-scoped listing, addressed by pull request."""
    target = AnalysisTarget.for_pull_request(owner, repo, number)
    if not resolver.get_pr_metadata(target):
        raise NotFoundError(f"Pull request #{target.number} not found")

    review = resolver.find_review(target)
    if not review:
        return {"runId": None, "suggestions": []}

    resolved_run = history.resolve_run_id(review["id"], runId)
    suggestions = history.latest_suggestions(review["id"], parse_levels(levels), resolved_run)
    return {"runId": resolved_run, "suggestions": suggestions}


@router.get("/pr/{owner}/{repo}/{number}/has-ai-suggestions")
async def has_ai_suggestions(
    owner: str,
    repo: str,
    number: str,
    runId: str | None = None,
    history=Depends(get_run_history),
    resolver=Depends(get_target_resolver),
):
    """Whether a PR has AI suggestions, and whether analysis has ever run for it."""
    target = AnalysisTarget.for_pull_request(owner, repo, number)
    pr = resolver.get_pr_metadata(target)
    if not pr:
        raise NotFoundError(f"Pull request #{target.number} not found")

    review = resolver.find_review(target)
    if not review:
        return {
            "hasSuggestions": False,
            "analysisHasRun": False,
            "summary": None,
            "stats": {"issues": 0, "suggestions": 0, "praise": 0},
        }

    has_suggestions = history.has_ai_suggestions(review["id"])
    if runId:
        try:
            selected_run = history.get_run(runId)
        except NotFoundError:
            selected_run = None
    else:
        selected_run = history.latest_run(review["id"])

    # Runs recorded before run history existed only left the PR pointer behind
    analysis_has_run = bool(selected_run or has_suggestions or pr["last_ai_run_id"])
    summary = (selected_run or {}).get("summary") or review["summary"]
    stats = history.suggestion_stats(review["id"], runId) if has_suggestions else {
        "issues": 0, "suggestions": 0, "praise": 0,
    }

    return {
        "hasSuggestions": has_suggestions,
        "analysisHasRun": analysis_has_run,
        "summary": summary,
        "stats": stats,
    }
