"""Unit tests for JobRegistry: job table, target index and retention."""

import pytest

from reviewloom.core.analysis.models import AnalysisTarget, JobState, JobStatus, LevelStatus
from reviewloom.core.analysis.registry import JobRegistry


def _job(job_id, number=1) -> JobStatus:
    return JobStatus.seed(job_id, AnalysisTarget.for_pull_request("octo", "repo", number))


def _finish(status: JobStatus):
    status.settle_levels(LevelStatus.COMPLETED, "Complete")
    status.finish(JobState.COMPLETED, "done")


# ── Tests: Create / Lookup ───────────────────────────────────────────────


class TestCreate:

    def test_create_indexes_target(self):
        registry = JobRegistry()
        snapshot = registry.create(_job("a"))

        assert snapshot["jobId"] == "a"
        assert registry.active_job_for("octo/repo/1").job_id == "a"
        assert registry.active_count() == 1

    def test_active_job_ids_excludes_finished(self):
        registry = JobRegistry()
        registry.create(_job("a"))
        registry.create(_job("b", number=2))
        registry.update("a", _finish)

        assert registry.active_job_ids() == ["b"]

    def test_duplicate_job_id_rejected(self):
        registry = JobRegistry()
        registry.create(_job("a"))
        with pytest.raises(ValueError):
            registry.create(_job("a"))

    def test_most_recent_trigger_wins_index(self):
        registry = JobRegistry()
        registry.create(_job("a"))
        registry.create(_job("b"))
        assert registry.active_job_for("octo/repo/1").job_id == "b"

    def test_snapshot_unknown_job(self):
        assert JobRegistry().snapshot("missing") is None

    def test_snapshot_is_a_copy(self):
        registry = JobRegistry()
        registry.create(_job("a"))
        snapshot = registry.snapshot("a")
        snapshot["levels"]["1"]["status"] = "completed"
        assert registry.get("a").levels[1].status is LevelStatus.RUNNING


# ── Tests: Update ─────────────────────────────────────────────────────────


class TestUpdate:

    def test_update_returns_post_mutation_snapshot(self):
        registry = JobRegistry()
        registry.create(_job("a"))
        snapshot = registry.update("a", lambda s: s.set_level(1, LevelStatus.COMPLETED, "ok"))
        assert snapshot["levels"]["1"]["status"] == "completed"

    def test_update_unknown_job(self):
        assert JobRegistry().update("missing", lambda s: None) is None


# ── Tests: Target Index ──────────────────────────────────────────────────


class TestTargetIndex:

    def test_release_only_matching_job(self):
        registry = JobRegistry()
        registry.create(_job("a"))
        registry.create(_job("b"))

        assert registry.release_target("octo/repo/1", "a") is False
        assert registry.active_job_for("octo/repo/1").job_id == "b"
        assert registry.release_target("octo/repo/1", "b") is True
        assert registry.active_job_for("octo/repo/1") is None

    def test_active_lookup_heals_terminal_entry(self):
        registry = JobRegistry()
        registry.create(_job("a"))
        registry.update("a", _finish)

        assert registry.active_job_for("octo/repo/1") is None
        # Entry is gone, the job itself is still pollable
        assert registry.release_target("octo/repo/1", "a") is False
        assert registry.snapshot("a")["status"] == "completed"

    def test_active_lookup_heals_evicted_entry(self):
        registry = JobRegistry(max_finished_jobs=0)
        registry.create(_job("a"))
        registry._active_by_target["octo/repo/1"] = "ghost"

        assert registry.active_job_for("octo/repo/1") is None
        assert "octo/repo/1" not in registry._active_by_target


# ── Tests: Retention ─────────────────────────────────────────────────────


class TestRetention:

    def test_oldest_finished_jobs_evicted(self):
        registry = JobRegistry(max_finished_jobs=2)
        for i, job_id in enumerate(["a", "b", "c"]):
            registry.create(_job(job_id, number=i + 1))
            registry.update(job_id, _finish)

        assert registry.get("a") is None
        assert registry.get("b") is not None
        assert registry.get("c") is not None

    def test_running_jobs_never_evicted(self):
        registry = JobRegistry(max_finished_jobs=0)
        registry.create(_job("a"))
        registry.create(_job("b", number=2))
        registry.update("b", _finish)

        assert registry.get("a") is not None
        assert registry.get("b") is None
        assert registry.active_count() == 1
