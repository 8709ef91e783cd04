"""Engine setup and transactional sessions for the sync job"""
import logging
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.exc import SQLAlchemyError

from listening_insights.models.db import Base
from listening_insights.config import settings

logger = logging.getLogger(__name__)

class Database:
    """Owns the engine and hands out sessions bound to it"""

    def __init__(self):
        self._engine: Optional[Engine] = None
        self._session_factory: Optional[sessionmaker] = None

    def init(self, url: Optional[str] = None, **engine_kwargs) -> None:
        """
        Connect and create any missing tables.

        Args:
            url: SQLAlchemy URL, defaults to settings.DATABASE_URL
            engine_kwargs: Passed through to create_engine (pool options, connect_args)
        """
        target = url or settings.DATABASE_URL
        try:
            self._engine = create_engine(target, **engine_kwargs)
            Base.metadata.create_all(self._engine)
            # Services commit per step and keep using loaded rows afterwards
            self._session_factory = sessionmaker(bind=self._engine, expire_on_commit=False)
            logger.info(f"Database ready ({self._engine.url.get_backend_name()})")
        except SQLAlchemyError as e:
            logger.error(f"Could not initialize database: {e}")
            raise

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """Session that commits on success, rolls back on error and is always closed"""
        if self._session_factory is None:
            raise RuntimeError("Database not initialized. Call init() first.")

        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        """Release pooled connections; init() must be called again before use"""
        if self._engine is not None:
            self._engine.dispose()
        self._engine = None
        self._session_factory = None

db = Database()
