"""Run History Store.

Durable record of every analysis job that reached a terminal state, and
the read paths that scope AI suggestions to a run:

- record_run(): one analysis_runs row plus the run's suggestions
- latest_run_id() / list_runs() / get_run(): run lookups, newest first
- latest_suggestions(): suggestions of one run (latest by default)
- check_staleness(): compare the latest run's head sha with the current one
"""

import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy import func, or_

from ..constants import (
    ANALYSIS_LEVELS,
    SUGGESTION_SOURCE_AI,
    VISIBLE_SUGGESTION_STATUSES,
)
from ..db import DatabaseManager
from ..db.models import AnalysisRun, Comment, PRMetadata, Review
from ..exceptions import NotFoundError
from .models import RunRecord, Suggestion

logger = logging.getLogger(__name__)

# Suggestion types counted as issues in stats; "praise" is its own bucket
ISSUE_TYPES = ("bug", "security", "performance")


def _parse_run_id(run_id) -> Optional[UUID]:
    if isinstance(run_id, UUID):
        return run_id
    try:
        return UUID(str(run_id))
    except (TypeError, ValueError):
        return None


def parse_levels(levels_param: Optional[str]) -> List[Optional[int]]:
    """Parse ``final,1,2`` into level filters (None = final/orchestrated).

    Unknown entries are ignored; an empty result means final only.
    """
    levels: List[Optional[int]] = []
    for raw in (levels_param or "final").split(","):
        raw = raw.strip()
        if raw == "final":
            levels.append(None)
        elif raw.isdigit() and int(raw) in ANALYSIS_LEVELS:
            levels.append(int(raw))
    return levels or [None]


class RunHistoryStore:
    """Analysis run persistence backed by the relational store."""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    # =========================================================================
    # Write path
    # =========================================================================

    def record_run(
        self,
        record: RunRecord,
        suggestions: Iterable[Tuple[Optional[int], Suggestion]] = (),
        update_pointers: bool = False,
    ) -> Dict:
        """Insert the run row and its suggestions in one transaction.

        Args:
            record: Terminal run values
            suggestions: (level, suggestion) pairs; level None marks the
                final/orchestrated set
            update_pointers: Also point the review summary and the PR's
                last_ai_run_id at this run

        Returns:
            The stored run as a dict
        """
        run_uuid = _parse_run_id(record.run_id)
        try:
            with self.db.get_session() as session:
                review = session.query(Review).filter(Review.id == record.review_id).first()
                if not review:
                    raise NotFoundError(f"Review #{record.review_id} not found")

                run = AnalysisRun(
                    run_id=run_uuid,
                    review_id=record.review_id,
                    provider=record.provider,
                    model=record.model,
                    tier=record.tier,
                    repo_instructions=record.repo_instructions,
                    request_instructions=record.request_instructions,
                    head_sha=record.head_sha,
                    status=record.status,
                    total_suggestions=record.total_suggestions,
                    files_analyzed=record.files_analyzed,
                    completed_level=record.completed_level,
                    levels_config=record.levels_config,
                    summary=record.summary,
                    error=record.error,
                    started_at=record.started_at,
                    completed_at=record.completed_at,
                )
                session.add(run)

                stored = 0
                for level, suggestion in suggestions:
                    session.add(Comment(
                        review_id=record.review_id,
                        source=SUGGESTION_SOURCE_AI,
                        author="AI Assistant",
                        ai_run_id=run_uuid,
                        ai_level=level,
                        ai_confidence=suggestion.confidence,
                        file=suggestion.file,
                        line_start=suggestion.line_start,
                        line_end=suggestion.line_end if suggestion.line_end is not None else suggestion.line_start,
                        type=suggestion.type,
                        title=suggestion.title,
                        body=suggestion.body,
                        status="active",
                        is_file_level=1 if suggestion.is_file_level else 0,
                    ))
                    stored += 1

                if update_pointers:
                    if record.summary:
                        review.summary = record.summary
                    if review.pr_number is not None:
                        pr = session.query(PRMetadata).filter(
                            PRMetadata.pr_number == review.pr_number,
                            PRMetadata.repository == review.repository,
                        ).first()
                        if pr:
                            pr.last_ai_run_id = run_uuid

                session.flush()
                logger.info(
                    f"Recorded analysis run {record.run_id} for review #{record.review_id} "
                    f"({record.status}, {stored} suggestions stored)"
                )
                return self._run_to_dict(run)

        except NotFoundError:
            raise
        except Exception as e:
            logger.error(f"Error recording analysis run {record.run_id}: {e}", exc_info=True)
            raise

    # =========================================================================
    # Run lookups
    # =========================================================================

    def latest_run_id(self, review_id: int) -> Optional[str]:
        """Id of the most recently started run for a review, if any."""
        with self.db.get_session() as session:
            run = session.query(AnalysisRun).filter(
                AnalysisRun.review_id == review_id,
            ).order_by(AnalysisRun.started_at.desc()).first()
            return str(run.run_id) if run else None

    def latest_run(self, review_id: int) -> Optional[Dict]:
        with self.db.get_session() as session:
            run = session.query(AnalysisRun).filter(
                AnalysisRun.review_id == review_id,
            ).order_by(AnalysisRun.started_at.desc()).first()
            return self._run_to_dict(run) if run else None

    def get_run(self, run_id: str) -> Dict:
        """Fetch one run.

        Raises:
            NotFoundError: unknown or malformed run id
        """
        run_uuid = _parse_run_id(run_id)
        if run_uuid is None:
            raise NotFoundError("Analysis run not found")
        with self.db.get_session() as session:
            run = session.query(AnalysisRun).filter(AnalysisRun.run_id == run_uuid).first()
            if not run:
                raise NotFoundError("Analysis run not found")
            return self._run_to_dict(run)

    def list_runs(self, review_id: int, limit: Optional[int] = None) -> List[Dict]:
        """All runs for a review, newest first. Each call is a fresh query."""
        with self.db.get_session() as session:
            query = session.query(AnalysisRun).filter(
                AnalysisRun.review_id == review_id,
            ).order_by(AnalysisRun.started_at.desc())
            if limit:
                query = query.limit(limit)
            return [self._run_to_dict(run) for run in query.all()]

    # =========================================================================
    # Suggestion read path
    # =========================================================================

    def _legacy_latest_run_id(self, session, review_id: int) -> Optional[UUID]:
        # Reviews analysed before runs were recorded only carry ai_run_id on comments
        row = session.query(Comment.ai_run_id).filter(
            Comment.review_id == review_id,
            Comment.source == SUGGESTION_SOURCE_AI,
            Comment.ai_run_id.isnot(None),
        ).order_by(Comment.created_at.desc(), Comment.id.desc()).first()
        return row[0] if row else None

    def resolve_run_id(self, review_id: int, run_id: Optional[str] = None) -> Optional[str]:
        """Run id used to scope suggestions: explicit, latest run, or legacy fallback."""
        if run_id:
            return run_id
        latest = self.latest_run_id(review_id)
        if latest:
            return latest
        with self.db.get_session() as session:
            legacy = self._legacy_latest_run_id(session, review_id)
            return str(legacy) if legacy else None

    def latest_suggestions(
        self,
        review_id: int,
        levels: Sequence[Optional[int]] = (None,),
        run_id: Optional[str] = None,
    ) -> List[Dict]:
        """AI suggestions of exactly one run, never a union across runs.

        Ordered final level first, then by level, file-level first, file, line.
        """
        target_run = _parse_run_id(self.resolve_run_id(review_id, run_id))
        if target_run is None:
            return []

        level_conditions = []
        for level in levels:
            if level is None:
                level_conditions.append(Comment.ai_level.is_(None))
            else:
                level_conditions.append(Comment.ai_level == level)

        with self.db.get_session() as session:
            comments = session.query(Comment).filter(
                Comment.review_id == review_id,
                Comment.source == SUGGESTION_SOURCE_AI,
                Comment.ai_run_id == target_run,
                Comment.status.in_(VISIBLE_SUGGESTION_STATUSES),
                or_(*level_conditions),
            ).all()

            comments.sort(key=lambda c: (
                0 if c.ai_level is None else c.ai_level,
                -(c.is_file_level or 0),
                c.file or "",
                c.line_start or 0,
            ))
            return [self._comment_to_dict(c) for c in comments]

    def has_ai_suggestions(self, review_id: int) -> bool:
        with self.db.get_session() as session:
            return session.query(Comment.id).filter(
                Comment.review_id == review_id,
                Comment.source == SUGGESTION_SOURCE_AI,
            ).first() is not None

    def suggestion_stats(self, review_id: int, run_id: Optional[str] = None) -> Dict[str, int]:
        """Count final-level suggestions of a run as issues, suggestions and praise."""
        stats = {"issues": 0, "suggestions": 0, "praise": 0}
        target_run = _parse_run_id(self.resolve_run_id(review_id, run_id))
        if target_run is None:
            return stats

        with self.db.get_session() as session:
            rows = session.query(Comment.type, func.count(Comment.id)).filter(
                Comment.review_id == review_id,
                Comment.source == SUGGESTION_SOURCE_AI,
                Comment.ai_level.is_(None),
                Comment.ai_run_id == target_run,
            ).group_by(Comment.type).all()

        for comment_type, count in rows:
            type_lower = (comment_type or "").lower()
            if type_lower == "praise":
                stats["praise"] += count
            elif type_lower in ISSUE_TYPES:
                stats["issues"] += count
            else:
                stats["suggestions"] += count
        return stats

    def check_staleness(self, review_id: int, head_sha: Optional[str]) -> Dict:
        """Compare the latest run's head sha with ``head_sha``.

        ``isStale`` is None when there is nothing to compare.
        """
        latest = self.latest_run(review_id)
        if not latest:
            return {"hasRun": False, "isStale": None, "runId": None, "analyzedHeadSha": None, "currentHeadSha": head_sha}

        analyzed = latest["head_sha"]
        is_stale = None
        if analyzed and head_sha:
            is_stale = analyzed != head_sha
        return {
            "hasRun": True,
            "isStale": is_stale,
            "runId": latest["id"],
            "analyzedHeadSha": analyzed,
            "currentHeadSha": head_sha,
        }

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _run_to_dict(run: AnalysisRun) -> Dict:
        """Convert an AnalysisRun ORM object to a dict."""
        return {
            "id": str(run.run_id),
            "run_id": str(run.run_id),
            "review_id": run.review_id,
            "provider": run.provider,
            "model": run.model,
            "tier": run.tier,
            "repo_instructions": run.repo_instructions,
            "request_instructions": run.request_instructions,
            "head_sha": run.head_sha,
            "status": run.status,
            "total_suggestions": run.total_suggestions or 0,
            "files_analyzed": run.files_analyzed or 0,
            "completed_level": run.completed_level,
            "levels_config": run.levels_config,
            "summary": run.summary,
            "error": run.error,
            "started_at": run.started_at.isoformat() if run.started_at else None,
            "completed_at": run.completed_at.isoformat() if run.completed_at else None,
        }

    @staticmethod
    def _comment_to_dict(comment: Comment) -> Dict:
        return {
            "id": comment.id,
            "source": comment.source,
            "author": comment.author,
            "ai_run_id": str(comment.ai_run_id) if comment.ai_run_id else None,
            "ai_level": comment.ai_level,
            "ai_confidence": comment.ai_confidence,
            "file": comment.file,
            "line_start": comment.line_start,
            "line_end": comment.line_end,
            "type": comment.type,
            "title": comment.title,
            "body": comment.body,
            "status": comment.status,
            "is_file_level": bool(comment.is_file_level),
            "created_at": comment.created_at.isoformat() if comment.created_at else None,
            "updated_at": comment.updated_at.isoformat() if comment.updated_at else None,
        }
