"""Target resolution for analysis triggers.

Turns an AnalysisTarget plus request options into everything the
orchestrator needs before a job may start: the review record, the head
sha snapshot, the effective provider/model/instructions and the working
copy the analyzer runs in.
"""

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional

from sqlalchemy import func

from ..config import Settings
from ..constants import REVIEW_TYPE_LOCAL, REVIEW_TYPE_PR
from ..db import DatabaseManager
from ..db.models import PRMetadata, RepoSettings, Review
from ..exceptions import NotFoundError
from .models import AnalysisOptions, AnalysisTarget, merge_instructions

logger = logging.getLogger(__name__)


class WorkspaceProvider(ABC):
    """Locates the working copy an analyzer should run in."""

    @abstractmethod
    def workspace_for(self, target: AnalysisTarget, review: Dict) -> str:
        """Return the working copy path for ``target``.

        Raises:
            NotFoundError: no working copy is available
        """
        ...


class DirectoryWorkspaceProvider(WorkspaceProvider):
    """PR worktrees under ``worktree_root/owner/repo/<number>``; local reviews use their own path."""

    def __init__(self, worktree_root: str):
        self.worktree_root = worktree_root

    def workspace_for(self, target: AnalysisTarget, review: Dict) -> str:
        if target.is_pull_request:
            owner, repo = target.repository.split("/", 1)
            path = os.path.join(self.worktree_root, owner, repo, str(target.number))
            if not os.path.isdir(path):
                raise NotFoundError("Worktree not found for this PR. Please reload the PR.")
            return path

        path = review.get("local_path")
        if not path or not os.path.isdir(path):
            raise NotFoundError(f"Local review path not found for review #{target.review_id}")
        return path


@dataclass
class ResolvedTarget:
    """Effective inputs of one analysis job, fixed at trigger time."""
    target: AnalysisTarget
    review_id: int
    repository: str
    workspace_path: str
    provider: str
    model: str
    head_sha: Optional[str] = None
    repo_instructions: Optional[str] = None
    request_instructions: Optional[str] = None

    @property
    def instructions(self) -> Optional[str]:
        return merge_instructions(self.repo_instructions, self.request_instructions)


class TargetResolver:
    """Database-backed lookups for analysis targets."""

    def __init__(self, db_manager: DatabaseManager, settings: Settings, workspace_provider: WorkspaceProvider):
        self.db = db_manager
        self.settings = settings
        self.workspace_provider = workspace_provider

    def resolve(self, target: AnalysisTarget, options: AnalysisOptions) -> ResolvedTarget:
        """Validate the target and compute effective job inputs.

        Provider and model precedence: request > repository settings >
        process-wide settings. Request instructions are saved on the review.
        Nothing is written when the target or its working copy is missing.

        Raises:
            NotFoundError: unknown PR/review or missing working copy
        """
        with self.db.get_session() as session:
            if target.is_pull_request:
                pr = self._find_pr(session, target)
                if not pr:
                    raise NotFoundError(
                        f"Pull request #{target.number} not found. Please load the PR first."
                    )
                review = self._get_or_create_pr_review(session, target)
                head_sha = pr.head_sha
                repository = target.repository
            else:
                review = session.query(Review).filter(
                    Review.id == target.review_id,
                    Review.review_type == REVIEW_TYPE_LOCAL,
                ).first()
                if not review:
                    raise NotFoundError(f"Local review #{target.review_id} not found")
                head_sha = review.local_head_sha
                repository = (review.repository or "").lower()

            # Raises before anything is committed
            workspace_path = self.workspace_provider.workspace_for(target, self._review_to_dict(review))

            repo_settings = session.query(RepoSettings).filter(
                func.lower(RepoSettings.repository) == repository,
            ).first()

            provider = (
                options.provider
                or (repo_settings.default_provider if repo_settings else None)
                or self.settings.default_provider
                or "claude"
            )
            model = (
                options.model
                or (repo_settings.default_model if repo_settings else None)
                or self.settings.default_model
            )
            repo_instructions = repo_settings.default_instructions if repo_settings else None

            if options.custom_instructions:
                review.custom_instructions = options.custom_instructions

            session.flush()
            resolved = ResolvedTarget(
                target=target,
                review_id=review.id,
                repository=repository,
                workspace_path=workspace_path,
                provider=provider,
                model=model,
                head_sha=head_sha,
                repo_instructions=repo_instructions or None,
                request_instructions=options.custom_instructions,
            )

        logger.info(
            f"Resolved {target.describe()} -> review #{resolved.review_id} "
            f"(provider={resolved.provider}, model={resolved.model})"
        )
        return resolved

    def find_review(self, target: AnalysisTarget) -> Optional[Dict]:
        """Look up the review for a target without creating one."""
        with self.db.get_session() as session:
            if target.is_pull_request:
                review = session.query(Review).filter(
                    Review.review_type == REVIEW_TYPE_PR,
                    Review.pr_number == target.number,
                    func.lower(Review.repository) == target.repository,
                ).first()
            else:
                review = session.query(Review).filter(Review.id == target.review_id).first()
            return self._review_to_dict(review) if review else None

    def get_pr_metadata(self, target: AnalysisTarget) -> Optional[Dict]:
        with self.db.get_session() as session:
            pr = self._find_pr(session, target)
            if not pr:
                return None
            return {
                "id": pr.id,
                "pr_number": pr.pr_number,
                "repository": pr.repository,
                "head_sha": pr.head_sha,
                "last_ai_run_id": str(pr.last_ai_run_id) if pr.last_ai_run_id else None,
            }

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _find_pr(session, target: AnalysisTarget) -> Optional[PRMetadata]:
        return session.query(PRMetadata).filter(
            PRMetadata.pr_number == target.number,
            func.lower(PRMetadata.repository) == target.repository,
        ).first()

    @staticmethod
    def _get_or_create_pr_review(session, target: AnalysisTarget) -> Review:
        review = session.query(Review).filter(
            Review.review_type == REVIEW_TYPE_PR,
            Review.pr_number == target.number,
            func.lower(Review.repository) == target.repository,
        ).first()
        if review:
            return review

        review = Review(
            pr_number=target.number,
            repository=target.repository,
            review_type=REVIEW_TYPE_PR,
        )
        session.add(review)
        session.flush()
        logger.info(f"Created review #{review.id} for {target.describe()}")
        return review

    @staticmethod
    def _review_to_dict(review: Review) -> Dict:
        """Convert a Review ORM object to a dict."""
        return {
            "id": review.id,
            "pr_number": review.pr_number,
            "repository": review.repository,
            "review_type": review.review_type,
            "name": review.name,
            "custom_instructions": review.custom_instructions,
            "summary": review.summary,
            "local_path": review.local_path,
            "local_head_sha": review.local_head_sha,
        }
