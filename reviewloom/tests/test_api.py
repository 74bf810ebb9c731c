"""HTTP-level tests for the analysis and run history routes.

Runs the real app (resolver, registry, broadcaster, run history on a
SQLite file) with an analyzer double that finishes immediately.
"""

import asyncio
import json
import time
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.responses import StreamingResponse
from fastapi.testclient import TestClient

from reviewloom.api.app import create_app
from reviewloom.api.routes.analysis import analysis_progress
from reviewloom.core.analysis import (
    AnalysisOrchestrator,
    AnalysisResult,
    AnalysisTarget,
    Analyzer,
    LevelResult,
    Suggestion,
)
from reviewloom.core.config import Settings
from reviewloom.core.db import DatabaseManager
from reviewloom.core.db.models import PRMetadata, Review


class InstantAnalyzer(Analyzer):
    async def analyze(self, request, context):
        return AnalysisResult(
            level_results={
                level: LevelResult(level, [Suggestion(file="app.py", line_start=level, type="bug", title=f"L{level}")])
                for level in request.levels
            },
            orchestrated_suggestions=[
                Suggestion(file="app.py", line_start=1, type="bug", title="Null check"),
                Suggestion(file="app.py", line_start=9, type="praise", title="Nice"),
            ],
            summary="Two findings",
            files_analyzed=1,
        )


# ── Fixtures ──────────────────────────────────────────────────────────────


@pytest.fixture
def env(tmp_path):
    """App wired against a SQLite file; PR octo/repo#1 loaded with a worktree."""
    (tmp_path / "worktrees" / "octo" / "repo" / "1").mkdir(parents=True)
    (tmp_path / "local").mkdir()

    settings = Settings(
        database_url=f"sqlite:///{tmp_path / 'test.db'}",
        worktree_root=str(tmp_path / "worktrees"),
        sse_keepalive_seconds=0.05,
    )
    db = DatabaseManager(settings.database_url)
    db.create_tables()
    with db.get_session() as session:
        session.add(PRMetadata(pr_number=1, repository="octo/repo", head_sha="abc"))
        session.add(PRMetadata(pr_number=5, repository="octo/repo", head_sha="def"))
        local = Review(
            repository="octo/repo", review_type="local", name="wip",
            local_path=str(tmp_path / "local"), local_head_sha="aaa",
        )
        session.add(local)
        session.flush()
        local_id = local.id

    orchestrator = AnalysisOrchestrator.from_settings(settings, db, analyzer=InstantAnalyzer())
    app = create_app(db, orchestrator, settings)
    with TestClient(app) as client:
        yield client, orchestrator, local_id


def _wait_terminal(client, job_id):
    for _ in range(200):
        status = client.get(f"/api/analyze/status/{job_id}").json()
        if status["status"] != "running":
            return status
        time.sleep(0.01)
    raise AssertionError(f"job {job_id} never finished")


def _wait_settled(orchestrator):
    for _ in range(200):
        if len(orchestrator.supervisor) == 0:
            return
        time.sleep(0.01)
    raise AssertionError("background jobs did not finish")


def _run_pr_analysis(client, orchestrator, **body):
    response = client.post("/api/analyze/Octo/Repo/1", json=body or None)
    assert response.status_code == 200
    job_id = response.json()["jobId"]
    status = _wait_terminal(client, job_id)
    _wait_settled(orchestrator)
    return job_id, status


def _sse_events(text):
    return [json.loads(line[len("data: "):]) for line in text.splitlines() if line.startswith("data: ")]


# ── Tests: Trigger ───────────────────────────────────────────────────────


class TestTrigger:

    def test_health(self, env):
        client, _, _ = env
        assert client.get("/api/health").json()["status"] == "ok"

    def test_unknown_pr(self, env):
        client, orchestrator, _ = env
        response = client.post("/api/analyze/octo/repo/2")
        assert response.status_code == 404
        assert response.json() == {"error": "Pull request #2 not found. Please load the PR first."}
        assert len(orchestrator.supervisor) == 0

    def test_missing_worktree_creates_nothing(self, env):
        client, orchestrator, _ = env
        response = client.post("/api/analyze/octo/repo/5")

        assert response.status_code == 404
        assert "Worktree not found" in response.json()["error"]
        assert orchestrator.registry.active_count() == 0
        # Review creation rolled back with the failed resolve
        assert orchestrator.resolver.find_review(AnalysisTarget.for_pull_request("octo", "repo", 5)) is None

    @pytest.mark.parametrize("body, fragment", [
        ({"tier": "ultra"}, "Invalid tier"),
        ({"customInstructions": "x" * 5001}, "maximum length"),
        ({"enabledLevels": {"1": False, "2": False, "3": False}}, "At least one"),
    ])
    def test_invalid_options(self, env, body, fragment):
        client, _, _ = env
        response = client.post("/api/analyze/octo/repo/1", json=body)
        assert response.status_code == 400
        assert fragment in response.json()["error"]

    def test_invalid_pr_number(self, env):
        client, _, _ = env
        assert client.post("/api/analyze/octo/repo/abc").status_code == 400

    def test_trigger_and_poll(self, env):
        client, orchestrator, _ = env
        response = client.post("/api/analyze/Octo/Repo/1", json={"tier": "premium"})
        body = response.json()

        assert body["status"] == "started"
        assert body["jobId"] == body["runId"] == body["analysisId"]
        assert body["pollIntervalSeconds"] == 1.0

        status = _wait_terminal(client, body["jobId"])
        assert status["status"] == "completed"
        assert status["tier"] == "thorough"
        assert status["suggestionsCount"] == 2
        assert status["target"]["repository"] == "octo/repo"
        _wait_settled(orchestrator)

    def test_local_review(self, env):
        client, orchestrator, local_id = env
        response = client.post(f"/api/local/{local_id}/analyses", json={"skipLevel3": True})
        assert response.status_code == 200
        status = _wait_terminal(client, response.json()["jobId"])
        _wait_settled(orchestrator)

        assert status["completedLevel"] == 2
        assert status["levels"]["3"]["status"] == "skipped"
        assert client.get(f"/api/local/{local_id}/analysis-status").json()["running"] is False

    def test_unknown_local_review(self, env):
        client, _, _ = env
        assert client.post("/api/local/999/analyses").status_code == 404


# ── Tests: Status / Cancel / Stream ──────────────────────────────────────


class TestJobEndpoints:

    def test_unknown_job(self, env):
        client, _, _ = env
        assert client.get("/api/analyze/status/nope").status_code == 404
        response = client.post("/api/analyze/cancel/nope")
        assert response.status_code == 404
        assert response.json() == {"error": "Analysis not found"}

    def test_cancel_after_completion(self, env):
        client, orchestrator, _ = env
        job_id, _ = _run_pr_analysis(client, orchestrator)

        body = client.post(f"/api/analyze/cancel/{job_id}").json()
        assert body == {
            "success": True,
            "message": "Analysis already completed",
            "processesKilled": 0,
            "status": "completed",
        }

    def test_cancel_alias_path(self, env):
        client, orchestrator, _ = env
        job_id, _ = _run_pr_analysis(client, orchestrator)

        body = client.post(f"/api/analyses/{job_id}/cancel").json()
        assert body["status"] == "completed"
        assert client.post("/api/analyses/nope/cancel").status_code == 404

    @pytest.mark.parametrize("path", ["/api/analyze/progress/{}", "/api/pr/{}/ai-suggestions/status"])
    def test_stream_of_finished_job(self, env, path):
        client, orchestrator, _ = env
        job_id, status = _run_pr_analysis(client, orchestrator)

        response = client.get(path.format(job_id))

        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.headers["cache-control"] == "no-cache"
        events = _sse_events(response.text)
        assert [e["type"] for e in events] == ["connected", "progress"]
        assert events[1]["status"] == "completed"
        assert events[1]["levels"] == status["levels"]
        assert orchestrator.broadcaster.observer_count(job_id) == 0

    def test_stream_rejected_when_observers_full(self, env):
        client, orchestrator, _ = env
        job_id, _ = _run_pr_analysis(client, orchestrator)
        orchestrator.broadcaster.max_observers_per_job = 0

        response = client.get(f"/api/analyze/progress/{job_id}")

        assert response.status_code == 429
        assert "Too many observers" in response.json()["error"]
        assert orchestrator.broadcaster.observer_count(job_id) == 0

    def test_unstarted_stream_holds_no_observer(self, env):
        client, orchestrator, _ = env
        job_id, _ = _run_pr_analysis(client, orchestrator)

        # Response built but never iterated, as when the client drops before the body
        response = asyncio.run(
            analysis_progress(job_id, MagicMock(), orchestrator=orchestrator, settings=Settings())
        )

        assert isinstance(response, StreamingResponse)
        assert orchestrator.broadcaster.observer_count(job_id) == 0

    def test_pr_analysis_status_idle(self, env):
        client, orchestrator, _ = env
        _run_pr_analysis(client, orchestrator)

        body = client.get("/api/pr/octo/repo/1/analysis-status").json()
        assert body == {"running": False, "jobId": None, "analysisId": None, "status": None}


# ── Tests: Run History ───────────────────────────────────────────────────


class TestRunHistory:

    def test_runs_and_suggestions(self, env):
        client, orchestrator, _ = env
        job_id, _ = _run_pr_analysis(client, orchestrator)
        review_id = orchestrator.get_status(job_id)["reviewId"]

        runs = client.get(f"/api/analysis-runs/{review_id}").json()["runs"]
        assert [r["id"] for r in runs] == [job_id]

        latest = client.get(f"/api/analysis-runs/{review_id}/latest").json()["run"]
        assert latest["status"] == "completed"
        assert latest["total_suggestions"] == 2
        assert client.get(f"/api/analysis-run/{job_id}").json()["run"]["id"] == job_id

        final = client.get(f"/api/reviews/{review_id}/ai-suggestions").json()
        assert final["runId"] == job_id
        assert [s["title"] for s in final["suggestions"]] == ["Null check", "Nice"]

        level1 = client.get(f"/api/reviews/{review_id}/ai-suggestions?levels=1").json()
        assert [s["title"] for s in level1["suggestions"]] == ["L1"]

    def test_pr_scoped_suggestions(self, env):
        client, orchestrator, _ = env
        before = client.get("/api/pr/octo/repo/1/ai-suggestions").json()
        assert before == {"runId": None, "suggestions": []}

        job_id, _ = _run_pr_analysis(client, orchestrator)

        final = client.get("/api/pr/octo/repo/1/ai-suggestions").json()
        assert final["runId"] == job_id
        assert [s["title"] for s in final["suggestions"]] == ["Null check", "Nice"]
        level2 = client.get("/api/pr/octo/repo/1/ai-suggestions?levels=2").json()
        assert [s["title"] for s in level2["suggestions"]] == ["L2"]
        assert client.get("/api/pr/octo/repo/42/ai-suggestions").status_code == 404

    def test_has_ai_suggestions(self, env):
        client, orchestrator, _ = env
        before = client.get("/api/pr/octo/repo/1/has-ai-suggestions").json()
        assert before["hasSuggestions"] is False
        assert before["analysisHasRun"] is False

        _run_pr_analysis(client, orchestrator)

        after = client.get("/api/pr/octo/repo/1/has-ai-suggestions").json()
        assert after["hasSuggestions"] is True
        assert after["analysisHasRun"] is True
        assert after["summary"] == "Two findings"
        assert after["stats"] == {"issues": 1, "suggestions": 0, "praise": 1}

    def test_has_ai_suggestions_unknown_pr(self, env):
        client, _, _ = env
        assert client.get("/api/pr/octo/repo/42/has-ai-suggestions").status_code == 404

    def test_missing_runs(self, env):
        client, _, local_id = env
        response = client.get(f"/api/analysis-runs/{local_id}/latest")
        assert response.status_code == 404
        assert response.json() == {"error": "No analysis runs found"}
        assert client.get(f"/api/analysis-runs/{local_id}").json() == {"runs": []}
        assert client.get("/api/analysis-run/not-a-uuid").status_code == 404

    def test_staleness(self, env):
        client, orchestrator, _ = env
        job_id, _ = _run_pr_analysis(client, orchestrator)
        review_id = orchestrator.get_status(job_id)["reviewId"]

        fresh = client.get(f"/api/analysis-runs/{review_id}/staleness?headSha=abc").json()
        stale = client.get(f"/api/analysis-runs/{review_id}/staleness?headSha=zzz").json()
        assert fresh["isStale"] is False
        assert stale["isStale"] is True
        assert stale["analyzedHeadSha"] == "abc"


# ── Tests: Lifespan ──────────────────────────────────────────────────────


class TestLifespan:

    def test_shutdown_cancels_jobs_then_disposes_db(self):
        calls = []
        db = MagicMock()
        db.dispose.side_effect = lambda: calls.append("dispose")
        orchestrator = MagicMock()
        orchestrator.shutdown = AsyncMock(side_effect=lambda: calls.append("shutdown"))

        with TestClient(create_app(db, orchestrator, Settings())):
            assert calls == []

        assert calls == ["shutdown", "dispose"]
