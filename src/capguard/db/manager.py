"""Engine and transaction handling for the capguard store."""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from sqlalchemy import Engine, create_engine, event, text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from capguard.db.base import Base

logger = logging.getLogger(__name__)

# Applied to every new SQLite connection. WAL lets the sweep read while a
# suspension transaction holds the write lock.
SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA foreign_keys=ON",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA busy_timeout=5000",
)


def _apply_sqlite_pragmas(dbapi_connection, connection_record) -> None:  # type: ignore
    cursor = dbapi_connection.cursor()
    try:
        for pragma in SQLITE_PRAGMAS:
            cursor.execute(pragma)
    finally:
        cursor.close()


class DatabaseManager:
    """
    Owns the engine and hands out transactional sessions.

    The engine is built lazily so that constructing the application (for
    example in the CLI) never touches the database until it is used.
    """

    def __init__(self, database_url: str = "sqlite:///data/capguard.db", echo: bool = False) -> None:
        self._url = make_url(database_url)
        self._echo = echo
        self._engine: Engine | None = None
        self._sessions: sessionmaker[Session] | None = None

    @property
    def is_sqlite(self) -> bool:
        return self._url.get_backend_name() == "sqlite"

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            self._engine = self._build_engine()
        return self._engine

    def _build_engine(self) -> Engine:
        options: dict[str, Any] = {"echo": self._echo, "pool_pre_ping": True}

        if self.is_sqlite:
            database = self._url.database
            if database and database != ":memory:":
                Path(database).parent.mkdir(parents=True, exist_ok=True)
            else:
                # A private in-memory database must be shared by every session
                options["poolclass"] = StaticPool
                options["connect_args"] = {"check_same_thread": False}

        engine = create_engine(self._url, **options)
        if self.is_sqlite:
            event.listen(engine, "connect", _apply_sqlite_pragmas)

        logger.info(f"Database engine created for {self._url.render_as_string(hide_password=True)}")
        return engine

    @property
    def session_factory(self) -> sessionmaker[Session]:
        if self._sessions is None:
            # Detached rows stay readable after commit; services return them
            self._sessions = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)
        return self._sessions

    @contextmanager
    def get_session(self) -> Iterator[Session]:
        """
        Yield a session bound to one transaction.

        The transaction commits when the block exits normally. Any exception
        rolls it back and propagates to the caller, so a failed suspension
        never leaves a half-written history trail.

        Usage:
            with db_manager.get_session() as session:
                session.query(Suspension).filter_by(project_id=pid).first()
        """
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def init_db(self) -> None:
        """Create any missing tables and indexes."""
        Base.metadata.create_all(bind=self.engine)
        logger.info(f"Schema ready ({len(Base.metadata.tables)} tables)")

    def health_check(self) -> bool:
        """Return True when a trivial query round-trips."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            logger.error(f"Database health check failed: {e}")
            return False
        return True

    def close(self) -> None:
        if self._engine is None:
            return
        self._engine.dispose()
        self._engine = None
        self._sessions = None
        logger.info("Database engine disposed")
