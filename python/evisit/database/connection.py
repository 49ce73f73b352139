"""
Engine and session management for the e-Visit permit system.

Every business operation runs inside DatabaseSessionProvider.run_transaction:
one session, one commit, and a full rollback if anything raises. Lost
optimistic-lock races (StaleDataError) re-run the work once on fresh state.
Connection-level failures while starting up or probing health are retried
with exponential backoff via tenacity.
"""

import os
import logging
from typing import Generator, Optional, Callable, TypeVar
from contextlib import contextmanager
from dataclasses import dataclass

from sqlalchemy import create_engine, text, Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.exc import SQLAlchemyError, OperationalError
from sqlalchemy.orm.exc import StaleDataError
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log
)

from evisit.config_manager import DatabaseConfig
from evisit.database.models import Base

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class DatabaseSettings:
    """Where the database lives and how its pool is sized."""
    host: str = "localhost"
    port: int = 5432
    database: str = "evisit_database"
    user: str = "evisit_user"
    password: str = "evisit_password"
    pool_size: int = 5
    max_overflow: int = 10
    pool_timeout: int = 30
    pool_recycle: int = 1800
    echo: bool = False
    url: Optional[str] = None

    @classmethod
    def from_env(cls, defaults: Optional[DatabaseConfig] = None) -> 'DatabaseSettings':
        """DB_* variables override config.yaml; DATABASE_URL overrides both."""
        defaults = defaults or DatabaseConfig()
        env = os.environ
        return cls(
            host=env.get("DB_HOST", defaults.host),
            port=int(env.get("DB_PORT", defaults.port)),
            database=env.get("DB_NAME", defaults.name),
            user=env.get("DB_USER", defaults.user),
            password=env.get("DB_PASSWORD", defaults.password),
            pool_size=int(env.get("DB_POOL_SIZE", 5)),
            max_overflow=int(env.get("DB_MAX_OVERFLOW", 10)),
            pool_timeout=int(env.get("DB_POOL_TIMEOUT", 30)),
            pool_recycle=int(env.get("DB_POOL_RECYCLE", 1800)),
            echo=env.get("DB_ECHO", "").lower() in ("1", "true", "yes"),
            url=env.get("DATABASE_URL") or None
        )

    def get_url(self) -> str:
        if self.url:
            return self.url
        return f"postgresql+psycopg2://{self.user}:{self.password}@{self.host}:{self.port}/{self.database}"

    @property
    def is_sqlite(self) -> bool:
        return self.get_url().startswith("sqlite")

    def engine_kwargs(self) -> dict:
        if self.is_sqlite:
            return {"connect_args": {"check_same_thread": False}}
        return {
            "pool_size": self.pool_size,
            "max_overflow": self.max_overflow,
            "pool_timeout": self.pool_timeout,
            "pool_recycle": self.pool_recycle,
            "pool_pre_ping": True,
        }


# Only OperationalError (server gone, connection refused) is worth waiting
# out; business operations are never retried here.
db_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type(OperationalError),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True
)


class DatabaseSessionProvider:
    """
    Owns the engine and hands out transactional sessions.

    Usage:
        db = DatabaseSessionProvider(DatabaseSettings.from_env())
        db.init()
        reference = db.run_transaction(lambda session: allocate(session))
    """

    def __init__(
        self,
        settings: Optional[DatabaseSettings] = None,
        engine: Optional[Engine] = None
    ):
        self._settings = settings or DatabaseSettings.from_env()
        self._engine = engine
        self._session_factory: Optional[sessionmaker] = None

    def init(self) -> None:
        if self._session_factory is not None:
            return
        if self._engine is None:
            self._engine = self._connect()
        self._session_factory = sessionmaker(
            bind=self._engine,
            autoflush=False,
            expire_on_commit=False
        )
        logger.info("Database ready (%s)", self._engine.dialect.name)

    @db_retry
    def _connect(self) -> Engine:
        engine = create_engine(
            self._settings.get_url(),
            echo=self._settings.echo,
            **self._settings.engine_kwargs()
        )
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return engine

    @property
    def engine(self) -> Engine:
        self.init()
        return self._engine

    def _new_session(self) -> Session:
        self.init()
        return self._session_factory()

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """Session that commits on clean exit and rolls back on error."""
        session = self._new_session()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def run_transaction(self, work: Callable[[Session], T], stale_retries: int = 1) -> T:
        """
        Run work(session) in a single transaction and return its result.

        When the optimistic version check on a row fails because a
        concurrent writer got there first, the transaction is discarded
        and work runs again, so the loser sees the winner's state (for
        example a second approval sees APPROVED and is refused).
        """
        attempt = 0
        while True:
            try:
                with self.session_scope() as session:
                    return work(session)
            except StaleDataError:
                attempt += 1
                if attempt > stale_retries:
                    raise
                logger.warning("Concurrent update lost the version check, retrying (%d/%d)",
                               attempt, stale_retries)

    def create_tables(self) -> None:
        Base.metadata.create_all(self.engine)
        logger.info("Database tables created")

    @db_retry
    def health_check(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.error("Database health check failed: %s", e)
            return False

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            logger.info("Database engine disposed")
        self._session_factory = None


_db_provider: Optional[DatabaseSessionProvider] = None


def get_db_provider(config: Optional[DatabaseConfig] = None) -> DatabaseSessionProvider:
    global _db_provider
    if _db_provider is None:
        _db_provider = DatabaseSessionProvider(DatabaseSettings.from_env(config))
    return _db_provider


def init_db(config: Optional[DatabaseConfig] = None) -> DatabaseSessionProvider:
    """Create (once) and connect the process-wide provider."""
    provider = get_db_provider(config)
    provider.init()
    return provider


def close_db() -> None:
    global _db_provider
    if _db_provider is not None:
        _db_provider.close()
        _db_provider = None


def create_test_provider(
    engine: Optional[Engine] = None,
    settings: Optional[DatabaseSettings] = None
) -> DatabaseSessionProvider:
    """Provider over an in-memory SQLite database unless told otherwise."""
    provider = DatabaseSessionProvider(
        settings=settings or DatabaseSettings(url="sqlite://"),
        engine=engine
    )
    provider.init()
    return provider
