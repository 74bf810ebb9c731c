"""create review and analysis tables

Revision ID: 3c9e51a0d2b7
Revises:
Create Date: 2026-10-18 10:12:41.207316

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
import reviewloom.core.db.models

# revision identifiers, used by Alembic.
revision: str = '3c9e51a0d2b7'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'reviews',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('pr_number', sa.Integer(), nullable=True),
        sa.Column('repository', sa.String(length=512), nullable=False),
        sa.Column('review_type', sa.String(length=10), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=True),
        sa.Column('custom_instructions', sa.Text(), nullable=True),
        sa.Column('summary', sa.Text(), nullable=True),
        sa.Column('local_path', sa.String(length=2048), nullable=True),
        sa.Column('local_head_sha', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_reviews_pr', 'reviews', ['repository', 'pr_number'], unique=False)

    op.create_table(
        'pr_metadata',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('pr_number', sa.Integer(), nullable=False),
        sa.Column('repository', sa.String(length=512), nullable=False),
        sa.Column('title', sa.Text(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('author', sa.String(length=255), nullable=True),
        sa.Column('base_branch', sa.String(length=255), nullable=True),
        sa.Column('head_branch', sa.String(length=255), nullable=True),
        sa.Column('head_sha', sa.String(length=64), nullable=True),
        sa.Column('last_ai_run_id', reviewloom.core.db.models.UUID(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('pr_number', 'repository', name='uq_pr_number_repository'),
    )

    op.create_table(
        'repo_settings',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('repository', sa.String(length=512), nullable=False),
        sa.Column('default_instructions', sa.Text(), nullable=True),
        sa.Column('default_provider', sa.String(length=50), nullable=True),
        sa.Column('default_model', sa.String(length=100), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('repository'),
    )

    op.create_table(
        'analysis_runs',
        sa.Column('run_id', reviewloom.core.db.models.UUID(), nullable=False),
        sa.Column('review_id', sa.Integer(), nullable=False),
        sa.Column('provider', sa.String(length=50), nullable=True),
        sa.Column('model', sa.String(length=100), nullable=True),
        sa.Column('tier', sa.String(length=20), nullable=True),
        sa.Column('repo_instructions', sa.Text(), nullable=True),
        sa.Column('request_instructions', sa.Text(), nullable=True),
        sa.Column('head_sha', sa.String(length=64), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('total_suggestions', sa.Integer(), nullable=False),
        sa.Column('files_analyzed', sa.Integer(), nullable=False),
        sa.Column('completed_level', sa.Integer(), nullable=True),
        sa.Column('levels_config', reviewloom.core.db.models.JSONType, nullable=True),
        sa.Column('summary', sa.Text(), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('started_at', sa.TIMESTAMP(), nullable=False),
        sa.Column('completed_at', sa.TIMESTAMP(), nullable=True),
        sa.ForeignKeyConstraint(['review_id'], ['reviews.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('run_id'),
    )
    op.create_index('idx_analysis_runs_review', 'analysis_runs', ['review_id', 'started_at'], unique=False)

    op.create_table(
        'comments',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('review_id', sa.Integer(), nullable=False),
        sa.Column('source', sa.String(length=20), nullable=False),
        sa.Column('author', sa.String(length=255), nullable=True),
        sa.Column('ai_run_id', reviewloom.core.db.models.UUID(), nullable=True),
        sa.Column('ai_level', sa.Integer(), nullable=True),
        sa.Column('ai_confidence', sa.Float(), nullable=True),
        sa.Column('file', sa.String(length=1024), nullable=True),
        sa.Column('line_start', sa.Integer(), nullable=True),
        sa.Column('line_end', sa.Integer(), nullable=True),
        sa.Column('type', sa.String(length=50), nullable=True),
        sa.Column('title', sa.Text(), nullable=True),
        sa.Column('body', sa.Text(), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('is_file_level', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(), nullable=False),
        sa.ForeignKeyConstraint(['review_id'], ['reviews.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_comments_review_run', 'comments', ['review_id', 'ai_run_id'], unique=False)


def downgrade() -> None:
    op.drop_index('idx_comments_review_run', table_name='comments')
    op.drop_table('comments')
    op.drop_index('idx_analysis_runs_review', table_name='analysis_runs')
    op.drop_table('analysis_runs')
    op.drop_table('repo_settings')
    op.drop_table('pr_metadata')
    op.drop_index('idx_reviews_pr', table_name='reviews')
    op.drop_table('reviews')
