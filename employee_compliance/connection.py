"""
Engine and session management for the compliance store.

Connection settings come from the environment (DATABASE_URL, or the DB_*
variables). Engine creation and the health ping are retried on
OperationalError; every other error surfaces immediately.

The schema itself is owned by the Alembic migrations under migrations/.
"""

import os
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, Generator, Optional

from sqlalchemy import create_engine, event, text, Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log
)

logger = logging.getLogger(__name__)


@dataclass
class DatabaseSettings:
    """Connection and pool settings."""
    host: str = "localhost"
    port: int = 5432
    database: str = "employee_compliance"
    user: str = "compliance"
    password: str = "compliance"
    pool_size: int = 5
    max_overflow: int = 10
    pool_timeout: int = 30
    pool_recycle: int = 1800
    echo: bool = False
    url: Optional[str] = None

    @classmethod
    def from_env(cls) -> 'DatabaseSettings':
        env = os.getenv
        return cls(
            host=env("DB_HOST", cls.host),
            port=int(env("DB_PORT", str(cls.port))),
            database=env("DB_NAME", cls.database),
            user=env("DB_USER", cls.user),
            password=env("DB_PASSWORD", cls.password),
            pool_size=int(env("DB_POOL_SIZE", str(cls.pool_size))),
            max_overflow=int(env("DB_MAX_OVERFLOW", str(cls.max_overflow))),
            pool_timeout=int(env("DB_POOL_TIMEOUT", str(cls.pool_timeout))),
            pool_recycle=int(env("DB_POOL_RECYCLE", str(cls.pool_recycle))),
            echo=env("DB_ECHO", "false").lower() == "true",
            url=env("DATABASE_URL") or None
        )

    def get_url(self) -> str:
        """DATABASE_URL when set, otherwise a psycopg2 URL from the parts."""
        if self.url:
            return self.url
        return f"postgresql+psycopg2://{self.user}:{self.password}@{self.host}:{self.port}/{self.database}"

    def pool_options(self) -> dict:
        # SQLite uses a single-connection pool that takes none of these
        if self.get_url().startswith("sqlite"):
            return {}
        return {
            "pool_size": self.pool_size,
            "max_overflow": self.max_overflow,
            "pool_timeout": self.pool_timeout,
            "pool_recycle": self.pool_recycle,
            "pool_pre_ping": True,
        }


@lru_cache()
def get_settings() -> DatabaseSettings:
    return DatabaseSettings.from_env()


def create_retry_decorator(
    max_attempts: int = 3,
    min_wait: float = 1,
    max_wait: float = 10
) -> Callable:
    """Retry OperationalError (refused or dropped connections) with exponential backoff."""
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
        retry=retry_if_exception_type(OperationalError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True
    )


db_retry = create_retry_decorator()


class DatabaseSessionProvider:
    """
    Owns the engine and hands out sessions.

    Usage:
        provider = DatabaseSessionProvider()
        provider.init()
        with provider.session_scope() as session:
            CorrelationService(session).process_evidence_sync(...)
    """

    def __init__(
        self,
        settings: Optional[DatabaseSettings] = None,
        engine: Optional[Engine] = None
    ):
        self._settings = settings or get_settings()
        self._engine = engine
        self._session_factory: Optional[sessionmaker] = None

    def init(self, echo: Optional[bool] = None) -> None:
        """Create the engine (unless one was injected) and the session factory."""
        if self._session_factory is not None:
            return
        if echo is not None:
            self._settings.echo = echo
        if self._engine is None:
            self._engine = self._connect()

        self._session_factory = sessionmaker(
            bind=self._engine,
            autoflush=False,
            expire_on_commit=False
        )

        @event.listens_for(self._engine, "checkout")
        def on_checkout(dbapi_connection, connection_record, connection_proxy):
            logger.debug("Connection checked out from pool")

        @event.listens_for(self._engine, "checkin")
        def on_checkin(dbapi_connection, connection_record):
            logger.debug("Connection returned to pool")

        logger.info("Database session provider initialized")

    @db_retry
    def _connect(self) -> Engine:
        engine = create_engine(
            self._settings.get_url(),
            echo=self._settings.echo,
            **self._settings.pool_options()
        )
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return engine

    def get_session(self) -> Generator[Session, None, None]:
        """FastAPI dependency: one committed-or-rolled-back session per request."""
        with self.session_scope() as session:
            yield session

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """Commit on clean exit, roll back and re-raise otherwise."""
        if self._session_factory is None:
            self.init()

        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @db_retry
    def _ping(self) -> None:
        with self.session_scope() as session:
            session.execute(text("SELECT 1"))

    def health_check(self) -> bool:
        try:
            self._ping()
            return True
        except SQLAlchemyError as e:
            logger.error(f"Database health check failed: {e}")
            return False

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            logger.info("Database engine disposed")
        self._session_factory = None


_db_provider: Optional[DatabaseSessionProvider] = None


def get_db_provider() -> DatabaseSessionProvider:
    global _db_provider
    if _db_provider is None:
        _db_provider = DatabaseSessionProvider()
    return _db_provider


def init_db(echo: bool = False) -> DatabaseSessionProvider:
    """Initialize the process-wide provider at application startup."""
    provider = get_db_provider()
    provider.init(echo=echo)
    return provider


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency yielding a session from the process-wide provider."""
    yield from get_db_provider().get_session()


def close_db() -> None:
    global _db_provider
    if _db_provider is not None:
        _db_provider.close()
        _db_provider = None


def create_test_provider(
    engine: Optional[Engine] = None,
    settings: Optional[DatabaseSettings] = None
) -> DatabaseSessionProvider:
    """Provider bound to a pre-built engine (e.g. in-memory SQLite)."""
    return DatabaseSessionProvider(
        settings=settings or DatabaseSettings(url="sqlite://"),
        engine=engine
    )
