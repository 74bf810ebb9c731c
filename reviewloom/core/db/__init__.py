"""
Database module for ReviewLoom.

Exports:
- DatabaseManager: Database connection and session management
- wait_for_db: Database availability checker with retry logic
- Models: Review, PRMetadata, RepoSettings, AnalysisRun, Comment
- Base: SQLAlchemy declarative base
"""

from .db import DatabaseManager, wait_for_db
from .models import (
    Base,
    Review,
    PRMetadata,
    RepoSettings,
    AnalysisRun,
    Comment,
)

__all__ = [
    # Database management
    "DatabaseManager",
    "wait_for_db",

    # ORM models
    "Base",
    "Review",
    "PRMetadata",
    "RepoSettings",
    "AnalysisRun",
    "Comment",
]
