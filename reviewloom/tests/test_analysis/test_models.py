"""Unit tests for analysis data contracts.

Tests cover:
- Target normalization and keys
- Request option validation (instructions cap, tiers, levels)
- JobStatus seeding, forward-only level transitions, terminal invariant
- Completion info and instruction merging
"""

import random

import pytest

from reviewloom.core.analysis.models import (
    AnalysisOptions,
    AnalysisResult,
    AnalysisTarget,
    InvalidTransition,
    JobState,
    JobStatus,
    LevelResult,
    LevelStatus,
    Suggestion,
    determine_completion_info,
    merge_instructions,
    normalize_repository,
)
from reviewloom.core.constants import MAX_INSTRUCTIONS_LENGTH
from reviewloom.core.exceptions import ValidationError


# ── Fixtures ──────────────────────────────────────────────────────────────


def _suggestion(title="Issue", file="app.py", line=1, type="bug") -> Suggestion:
    return Suggestion(file=file, line_start=line, type=type, title=title)


def _seed(skipped=()) -> JobStatus:
    target = AnalysisTarget.for_pull_request("Owner", "Repo", 7)
    return JobStatus.seed("job-1", target, skipped)


# ── Tests: Targets ────────────────────────────────────────────────────────


class TestAnalysisTarget:

    def test_repository_is_trimmed_and_lowercased(self):
        assert normalize_repository("  Octo ", "Hello-World ") == "octo/hello-world"

    def test_pull_request_key(self):
        target = AnalysisTarget.for_pull_request("Octo", "Repo", "12")
        assert target.key == "octo/repo/12"
        assert target.is_pull_request

    def test_local_key(self):
        target = AnalysisTarget.for_local_review("5")
        assert target.key == "local/5"
        assert not target.is_pull_request

    @pytest.mark.parametrize("number", ["abc", "0", "-3", None])
    def test_invalid_pr_number_rejected(self, number):
        with pytest.raises(ValidationError, match="Invalid pull request number"):
            AnalysisTarget.for_pull_request("octo", "repo", number)

    def test_blank_owner_rejected(self):
        with pytest.raises(ValidationError):
            AnalysisTarget.for_pull_request("  ", "repo", 1)


# ── Tests: Options ────────────────────────────────────────────────────────


class TestAnalysisOptions:

    def test_defaults(self):
        options = AnalysisOptions.from_request()
        assert options.tier == "balanced"
        assert options.skipped_levels == frozenset()
        assert options.custom_instructions is None

    def test_instructions_trimmed(self):
        options = AnalysisOptions.from_request(custom_instructions="  be strict  ")
        assert options.custom_instructions == "be strict"

    def test_whitespace_instructions_become_none(self):
        options = AnalysisOptions.from_request(custom_instructions="   ")
        assert options.custom_instructions is None

    def test_instructions_over_cap_rejected(self):
        with pytest.raises(ValidationError, match="exceed maximum length"):
            AnalysisOptions.from_request(custom_instructions="x" * (MAX_INSTRUCTIONS_LENGTH + 1))

    def test_instructions_at_cap_accepted(self):
        options = AnalysisOptions.from_request(custom_instructions="x" * MAX_INSTRUCTIONS_LENGTH)
        assert len(options.custom_instructions) == MAX_INSTRUCTIONS_LENGTH

    @pytest.mark.parametrize("alias,canonical", [
        ("free", "fast"), ("standard", "balanced"), ("premium", "thorough"), ("thorough", "thorough"),
    ])
    def test_tier_aliases(self, alias, canonical):
        assert AnalysisOptions.from_request(tier=alias).tier == canonical

    def test_invalid_tier_rejected(self):
        with pytest.raises(ValidationError, match='Invalid tier: "turbo"'):
            AnalysisOptions.from_request(tier="turbo")

    def test_skip_level3(self):
        options = AnalysisOptions.from_request(skip_level3=True)
        assert options.skipped_levels == frozenset({3})
        assert options.levels_config == {"1": True, "2": True, "3": False}

    def test_enabled_levels(self):
        options = AnalysisOptions.from_request(enabled_levels={"1": True, "2": False, "3": True})
        assert options.skipped_levels == frozenset({2})

    def test_all_levels_disabled_rejected(self):
        with pytest.raises(ValidationError, match="At least one analysis level"):
            AnalysisOptions.from_request(enabled_levels={"1": False, "2": False}, skip_level3=True)

    def test_unknown_level_rejected(self):
        with pytest.raises(ValidationError, match="Invalid analysis level"):
            AnalysisOptions.from_request(enabled_levels={"4": False})


# ── Tests: JobStatus ──────────────────────────────────────────────────────


class TestJobStatus:

    def test_seed_levels(self):
        status = _seed()
        assert status.status is JobState.RUNNING
        assert [status.levels[l].status for l in (1, 2, 3)] == [LevelStatus.RUNNING] * 3
        assert status.levels[4].status is LevelStatus.PENDING

    def test_seed_skipped_level(self):
        status = _seed(skipped={3})
        assert status.levels[3].status is LevelStatus.SKIPPED
        assert status.levels[3].progress_message == "Skipped"

    def test_skipped_level_cannot_transition(self):
        status = _seed(skipped={3})
        with pytest.raises(InvalidTransition):
            status.set_level(3, LevelStatus.RUNNING)

    def test_terminal_level_cannot_move_backwards(self):
        status = _seed()
        status.set_level(1, LevelStatus.COMPLETED, "done")
        with pytest.raises(InvalidTransition):
            status.set_level(1, LevelStatus.RUNNING)

    def test_running_progress_update_allowed(self):
        status = _seed()
        status.set_level(2, LevelStatus.RUNNING, "Halfway")
        assert status.levels[2].progress_message == "Halfway"

    def test_pending_cannot_become_skipped(self):
        status = _seed()
        with pytest.raises(InvalidTransition):
            status.set_level(4, LevelStatus.SKIPPED)

    def test_finish_requires_settled_levels(self):
        status = _seed()
        with pytest.raises(InvalidTransition, match="unsettled"):
            status.finish(JobState.COMPLETED, "done")

    def test_finish_cancelled_sets_timestamps(self):
        status = _seed()
        changed = status.settle_levels(LevelStatus.CANCELLED, "Cancelled")
        status.finish(JobState.CANCELLED, "Analysis cancelled by user")

        assert changed == [1, 2, 3, 4]
        assert status.cancelled_at is not None
        assert status.completed_at is not None

    def test_finish_twice_rejected(self):
        status = _seed()
        status.settle_levels(LevelStatus.FAILED, "Failed")
        status.finish(JobState.FAILED, "boom", error="boom")
        with pytest.raises(InvalidTransition):
            status.finish(JobState.COMPLETED, "done")

    def test_settle_up_to_leaves_later_levels(self):
        status = _seed()
        status.settle_levels(LevelStatus.COMPLETED, "Complete", up_to=2)
        assert status.levels[3].status is LevelStatus.RUNNING
        assert status.levels[4].status is LevelStatus.PENDING

    def test_to_dict_shape(self):
        data = _seed(skipped={3}).to_dict()
        assert data["jobId"] == "job-1"
        assert data["status"] == "running"
        assert data["levels"]["3"] == {"status": "skipped", "progress": "Skipped"}
        assert data["target"]["repository"] == "owner/repo"
        assert data["completedAt"] is None

    def test_terminal_iff_all_levels_settled(self):
        """Randomized transition sequences never break the terminal invariant."""
        rng = random.Random(1234)
        statuses = list(LevelStatus)

        for _ in range(300):
            skipped = {l for l in (1, 2, 3) if rng.random() < 0.3}
            if skipped == {1, 2, 3}:
                skipped = {3}
            status = _seed(skipped=skipped)

            for _ in range(rng.randint(0, 12)):
                level = rng.choice([1, 2, 3, 4])
                try:
                    status.set_level(level, rng.choice(statuses))
                except InvalidTransition:
                    pass
                assert not status.is_terminal

            outcome = rng.choice([JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED])
            if status.levels_settled:
                status.finish(outcome, "done")
            else:
                with pytest.raises(InvalidTransition):
                    status.finish(outcome, "done")
                status.settle_levels(LevelStatus.CANCELLED, "Cancelled")
                status.finish(outcome, "done")

            assert status.is_terminal
            assert status.levels_settled
            for level in skipped:
                assert status.levels[level].status is LevelStatus.SKIPPED


# ── Tests: Completion Info ────────────────────────────────────────────────


class TestCompletionInfo:

    def test_orchestrated_count_wins(self):
        result = AnalysisResult(
            level_results={
                1: LevelResult(1, [_suggestion(), _suggestion()]),
                2: LevelResult(2, [_suggestion()]),
            },
            orchestrated_suggestions=[_suggestion()],
        )
        info = determine_completion_info(result)
        assert info.total_suggestions == 1
        assert info.completed_level == 2
        assert "orchestrated" in info.progress_message

    def test_per_level_sum_without_orchestration(self):
        result = AnalysisResult(
            level_results={
                1: LevelResult(1, [_suggestion(), _suggestion()]),
                3: LevelResult(3, [_suggestion()]),
            },
        )
        info = determine_completion_info(result)
        assert info.total_suggestions == 3
        assert info.completed_level == 3
        assert "Level 1: 2" in info.progress_message
        assert "Level 2" not in info.progress_message

    def test_empty_result(self):
        info = determine_completion_info(AnalysisResult())
        assert info.total_suggestions == 0
        assert info.completed_level == 0


class TestMergeInstructions:

    def test_none_when_both_empty(self):
        assert merge_instructions(None, "") is None

    def test_repo_only(self):
        merged = merge_instructions("Use tabs", None)
        assert "<repo_instructions>\nUse tabs\n</repo_instructions>" in merged
        assert "custom_instructions" not in merged

    def test_both_tagged_request_last(self):
        merged = merge_instructions("Use tabs", "Focus on security")
        assert merged.index("<repo_instructions>") < merged.index("<custom_instructions>")
        assert "take precedence" in merged
