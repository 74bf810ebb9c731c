"""Database connection and session management for ReviewLoom."""

import logging
import time
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .models import Base

logger = logging.getLogger(__name__)


class DatabaseManager:
    """Owns the SQLAlchemy engine and hands out transactional sessions."""

    def __init__(self, database_url: str, echo: bool = False):
        self.database_url = database_url

        engine_kwargs = {"echo": echo, "future": True}
        if database_url.startswith("sqlite"):
            # Sessions are used from worker threads as well as the event loop
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if ":memory:" in database_url or database_url == "sqlite://":
                engine_kwargs["poolclass"] = StaticPool
        else:
            engine_kwargs["pool_pre_ping"] = True

        self.engine = create_engine(database_url, **engine_kwargs)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)
        logger.info(f"DatabaseManager initialized ({self.engine.dialect.name})")

    def create_tables(self) -> None:
        """Create all tables that do not exist yet."""
        Base.metadata.create_all(self.engine)

    @contextmanager
    def get_session(self) -> Iterator[Session]:
        """Yield a session that commits on success and rolls back on error."""
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        self.engine.dispose()


def wait_for_db(database_url: str, retries: int = 10, delay: float = 2.0) -> bool:
    """Block until the database accepts connections.

    Returns:
        True once a connection succeeded, False after all retries failed
    """
    engine = create_engine(database_url)
    try:
        for attempt in range(1, retries + 1):
            try:
                with engine.connect() as conn:
                    conn.execute(text("SELECT 1"))
                return True
            except OperationalError as e:
                logger.warning(f"Database not ready (attempt {attempt}/{retries}): {e}")
                time.sleep(delay)
        return False
    finally:
        engine.dispose()
