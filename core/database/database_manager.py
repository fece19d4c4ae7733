"""
BarSync Database Connection Manager
Engine and session lifecycle for the bar store and job tracker
"""

import logging
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Callable, Dict, Iterator, Optional, TypeVar

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DisconnectionError, OperationalError, TimeoutError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from .models import Base

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TRANSIENT_MESSAGES = ('database is locked', 'disk i/o error', 'temporary failure')


@dataclass
class DatabaseConfig:
    """
    Engine and pool settings for one database URL.

    database_url falls back to settings.database_url. Pool sizing applies to
    server databases only; SQLite files get a single pooled connection and
    in-memory SQLite a single static one.
    """
    database_url: Optional[str] = None
    pool_size: int = 10
    max_overflow: int = 20
    pool_timeout: int = 30
    pool_recycle: int = 3600
    pool_pre_ping: bool = True
    echo: bool = False
    create_tables: bool = True
    connect_args: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.database_url:
            from config.settings import settings
            self.database_url = settings.database_url

        self.connect_args = dict(self.connect_args or {})
        if self.is_sqlite:
            # Sessions are opened from the event loop thread and from test threads
            self.connect_args.setdefault('check_same_thread', False)
            self.connect_args.setdefault('timeout', 30)

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith('sqlite')

    @property
    def is_memory(self) -> bool:
        if not self.is_sqlite:
            return False
        return ':memory:' in self.database_url or self.database_url.rstrip('/') in ('sqlite:', 'sqlite:/', 'sqlite://')


@dataclass
class RetryPolicy:
    """Exponential backoff for transient database errors (locked file, dropped connection)"""
    max_retries: int = 3
    base_delay: float = 0.5
    max_delay: float = 5.0
    backoff: float = 2.0

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay * self.backoff ** attempt, self.max_delay)

    def is_transient(self, error: Exception) -> bool:
        if isinstance(error, (DisconnectionError, TimeoutError)):
            return True
        if isinstance(error, OperationalError):
            message = str(error).lower()
            return any(fragment in message for fragment in _TRANSIENT_MESSAGES)
        return False


class DatabaseManager:
    """
    Owns the engine and hands out transactional session scopes.

    Initialization is lazy and guarded by a lock, so the first get_session()
    from any thread builds the engine exactly once.
    """

    def __init__(self, config: Optional[DatabaseConfig] = None, retry_policy: Optional[RetryPolicy] = None):
        self.config = config or DatabaseConfig()
        self.retry_policy = retry_policy or RetryPolicy()
        self.engine: Optional[Engine] = None
        self.SessionLocal: Optional[sessionmaker] = None
        self._initialized = False
        self._setup_lock = Lock()

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def _engine_options(self) -> Dict[str, Any]:
        options: Dict[str, Any] = {'echo': self.config.echo, 'connect_args': self.config.connect_args}

        if self.config.is_memory:
            # Every checkout must see the same in-memory database
            options['poolclass'] = StaticPool
            return options

        options.update(poolclass=QueuePool,
                       pool_timeout=self.config.pool_timeout,
                       pool_pre_ping=self.config.pool_pre_ping)
        if self.config.is_sqlite:
            # One writer per file; callers never hold two sessions at once
            options.update(pool_size=1, max_overflow=0)
        else:
            options.update(pool_size=self.config.pool_size,
                           max_overflow=self.config.max_overflow,
                           pool_recycle=self.config.pool_recycle)
        return options

    def initialize(self) -> None:
        """Build the engine and session factory, creating tables when configured"""
        if self._initialized:
            return

        with self._setup_lock:
            if self._initialized:
                return

            try:
                engine = create_engine(self.config.database_url, **self._engine_options())
                if self.config.is_sqlite:
                    self._install_sqlite_pragmas(engine, wal=not self.config.is_memory)

                if self.config.create_tables:
                    Base.metadata.create_all(bind=engine)
            except Exception as e:
                logger.error(f"Could not initialize database {self._mask_url(self.config.database_url)}: {e}")
                raise

            self.engine = engine
            self.SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
            self._initialized = True
            logger.info(f"Database ready at {self._mask_url(self.config.database_url)}")

    @staticmethod
    def _install_sqlite_pragmas(engine: Engine, wal: bool) -> None:
        @event.listens_for(engine, "connect")
        def _on_connect(dbapi_connection, connection_record):
            if not isinstance(dbapi_connection, sqlite3.Connection):
                return
            cursor = dbapi_connection.cursor()
            try:
                if wal:
                    cursor.execute("PRAGMA journal_mode=WAL")
                    cursor.execute("PRAGMA synchronous=NORMAL")
                cursor.execute("PRAGMA foreign_keys=ON")
            finally:
                cursor.close()

    @staticmethod
    def _mask_url(url: str) -> str:
        """Hide user and password in a database URL before logging it"""
        scheme, sep, rest = url.partition('://')
        if not sep or '@' not in rest:
            return url
        return f"{scheme}://***:***@{rest.split('@', 1)[1]}"

    @contextmanager
    def get_session(self) -> Iterator[Session]:
        """
        Transactional session scope: commit on success, rollback on error, always close

        Yields:
            SQLAlchemy session
        """
        if not self._initialized:
            self.initialize()

        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def run_with_retry(self, operation: Callable[..., T], *args, **kwargs) -> T:
        """
        Run operation(session, *args, **kwargs) in a fresh session scope,
        retrying transient failures with backoff
        """
        attempt = 0
        while True:
            try:
                with self.get_session() as session:
                    return operation(session, *args, **kwargs)
            except Exception as e:
                if not self.retry_policy.is_transient(e):
                    raise
                if attempt >= self.retry_policy.max_retries:
                    logger.error(f"Database operation failed after {attempt + 1} attempt(s): {e}")
                    raise
                delay = self.retry_policy.delay_for(attempt)
                logger.warning(f"Transient database error, retry {attempt + 1} in {delay}s: {e}")
                time.sleep(delay)
                attempt += 1

    def check_health(self) -> bool:
        """True when SELECT 1 round-trips"""
        try:
            self.initialize()
            with self.engine.connect() as conn:
                return conn.execute(text('SELECT 1')).scalar() == 1
        except Exception as e:
            logger.warning(f"Database health check failed: {e}")
            return False

    def close_all_connections(self) -> None:
        """Dispose the engine and its pool"""
        if self.engine is not None:
            self.engine.dispose()
            logger.info("Database connections closed")
        self._initialized = False


def create_database_manager(database_url: Optional[str] = None, **kwargs) -> DatabaseManager:
    """Build and initialize a DatabaseManager for the given URL"""
    manager = DatabaseManager(DatabaseConfig(database_url=database_url, **kwargs))
    manager.initialize()
    return manager
