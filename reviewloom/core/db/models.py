"""
SQLAlchemy ORM Models for ReviewLoom

Review and analysis history models:
- Review: A review of a pull request or of local changes
- PRMetadata: Pull request details fetched from the code host
- RepoSettings: Per-repository analysis defaults
- AnalysisRun: Durable record of one finished analysis job
- Comment: Review comments, including AI suggestions tagged by run
"""

from sqlalchemy import (
    Column, String, Integer, Float, Text, TIMESTAMP, ForeignKey, JSON,
    Index, TypeDecorator, UniqueConstraint,
)
from sqlalchemy.orm import relationship, declarative_base
from sqlalchemy.dialects.postgresql import UUID as PostgreSQL_UUID, JSONB
import uuid
from datetime import datetime

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


# UUID type that works with both PostgreSQL and SQLite
class UUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL's UUID type when available, otherwise stores as String(36).
    """
    impl = String
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(PostgreSQL_UUID(as_uuid=True))
        else:
            return dialect.type_descriptor(String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        elif dialect.name == 'postgresql':
            return value if isinstance(value, uuid.UUID) else uuid.UUID(value)
        else:
            if isinstance(value, uuid.UUID):
                return str(value)
            else:
                return str(uuid.UUID(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(value)


# =============================================================================
# Review Models
# =============================================================================

class Review(Base):
    """A review session for a pull request or for local changes."""
    __tablename__ = "reviews"
    __table_args__ = (
        Index('idx_reviews_pr', 'repository', 'pr_number'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    pr_number = Column(Integer, nullable=True)                      # NULL for local reviews
    repository = Column(String(512), nullable=False)                # normalized owner/repo
    review_type = Column(String(10), default='pr', nullable=False)  # pr | local
    name = Column(String(255), nullable=True)
    custom_instructions = Column(Text, nullable=True)
    summary = Column(Text, nullable=True)
    local_path = Column(String(2048), nullable=True)
    local_head_sha = Column(String(64), nullable=True)
    created_at = Column(TIMESTAMP, default=datetime.utcnow, nullable=False)
    updated_at = Column(TIMESTAMP, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationships
    analysis_runs = relationship("AnalysisRun", back_populates="review", cascade="all, delete-orphan")
    comments = relationship("Comment", back_populates="review", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Review(id={self.id}, type='{self.review_type}', repository='{self.repository}', pr={self.pr_number})>"


class PRMetadata(Base):
    """Pull request details as loaded from the code host."""
    __tablename__ = "pr_metadata"
    __table_args__ = (
        UniqueConstraint('pr_number', 'repository', name='uq_pr_number_repository'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    pr_number = Column(Integer, nullable=False)
    repository = Column(String(512), nullable=False)
    title = Column(Text)
    description = Column(Text)
    author = Column(String(255))
    base_branch = Column(String(255))
    head_branch = Column(String(255))
    head_sha = Column(String(64))
    last_ai_run_id = Column(UUID(), nullable=True)                   # most recent finished run
    created_at = Column(TIMESTAMP, default=datetime.utcnow, nullable=False)
    updated_at = Column(TIMESTAMP, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<PRMetadata(id={self.id}, repository='{self.repository}', pr={self.pr_number})>"


class RepoSettings(Base):
    """Per-repository analysis defaults."""
    __tablename__ = "repo_settings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    repository = Column(String(512), unique=True, nullable=False)
    default_instructions = Column(Text, nullable=True)
    default_provider = Column(String(50), nullable=True)
    default_model = Column(String(100), nullable=True)
    created_at = Column(TIMESTAMP, default=datetime.utcnow, nullable=False)
    updated_at = Column(TIMESTAMP, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<RepoSettings(repository='{self.repository}', provider='{self.default_provider}')>"


# =============================================================================
# Analysis History Models
# =============================================================================

class AnalysisRun(Base):
    """Durable record of one analysis job that reached a terminal state."""
    __tablename__ = "analysis_runs"
    __table_args__ = (
        Index('idx_analysis_runs_review', 'review_id', 'started_at'),
    )

    run_id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    review_id = Column(Integer, ForeignKey("reviews.id", ondelete="CASCADE"), nullable=False)
    provider = Column(String(50))
    model = Column(String(100))
    tier = Column(String(20))
    repo_instructions = Column(Text)                  # from repo_settings
    request_instructions = Column(Text)               # from the analyze request
    head_sha = Column(String(64))                     # snapshot at trigger time
    status = Column(String(20), nullable=False)       # completed | failed | cancelled
    total_suggestions = Column(Integer, default=0, nullable=False)
    files_analyzed = Column(Integer, default=0, nullable=False)
    completed_level = Column(Integer, nullable=True)
    levels_config = Column(JSONType, nullable=True)   # {"1": true, "2": true, "3": false}
    summary = Column(Text)
    error = Column(Text)
    started_at = Column(TIMESTAMP, nullable=False)
    completed_at = Column(TIMESTAMP, nullable=True)

    # Relationships
    review = relationship("Review", back_populates="analysis_runs")

    def __repr__(self):
        return f"<AnalysisRun(run_id={self.run_id}, review_id={self.review_id}, status='{self.status}')>"


class Comment(Base):
    """Review comment. AI suggestions carry the run that produced them."""
    __tablename__ = "comments"
    __table_args__ = (
        Index('idx_comments_review_run', 'review_id', 'ai_run_id'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    review_id = Column(Integer, ForeignKey("reviews.id", ondelete="CASCADE"), nullable=False)
    source = Column(String(20), default='user', nullable=False)   # user | ai
    author = Column(String(255))
    ai_run_id = Column(UUID(), nullable=True)
    ai_level = Column(Integer, nullable=True)                      # NULL = final (orchestrated)
    ai_confidence = Column(Float, nullable=True)
    file = Column(String(1024))
    line_start = Column(Integer)
    line_end = Column(Integer)
    type = Column(String(50))
    title = Column(Text)
    body = Column(Text)
    status = Column(String(20), default='active', nullable=False)
    is_file_level = Column(Integer, default=0, nullable=False)
    created_at = Column(TIMESTAMP, default=datetime.utcnow, nullable=False)
    updated_at = Column(TIMESTAMP, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationships
    review = relationship("Review", back_populates="comments")

    def __repr__(self):
        return f"<Comment(id={self.id}, source='{self.source}', run={self.ai_run_id}, level={self.ai_level})>"
