"""
Database handle.

Owns the SQLAlchemy engine and session factory. Constructed explicitly and
passed to each component; ``init()`` creates tables, ``close()`` disposes the
connection pool.
"""

import logging
from contextlib import contextmanager

from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from storage.models import Base

logger = logging.getLogger(__name__)


class Database:
    """Engine + session factory with an explicit lifecycle."""

    def __init__(self, url: str, echo: bool = False) -> None:
        self.url = url
        engine_kwargs: dict = {"echo": echo}

        if url.startswith("sqlite"):
            # Sessions are used from the request threadpool and from
            # reconciler worker threads.
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if url in ("sqlite://", "sqlite:///:memory:"):
                engine_kwargs["poolclass"] = StaticPool
        else:
            engine_kwargs.update(
                pool_pre_ping=True,  # Check connections before using them
                pool_size=5,
                max_overflow=10,
                pool_recycle=3600,
            )

        self.engine = create_engine(url, **engine_kwargs)
        self._session_factory = sessionmaker(
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            bind=self.engine,
        )

    def init(self) -> None:
        """Create all tables for the registered models."""
        Base.metadata.create_all(bind=self.engine)
        logger.info("Database tables ready")

    def close(self) -> None:
        self.engine.dispose()
        logger.info("Database connections closed")

    @contextmanager
    def session(self):
        """
        Transactional session scope.
        Usage:
            with database.session() as session:
                session.add(row)
        """
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def ping(self) -> bool:
        """Test the connection; used by the health endpoint."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.warning(f"Database ping failed: {e}")
            return False
