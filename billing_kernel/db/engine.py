"""
Module: billing_kernel.db.engine
Responsibility: SQLAlchemy engine initialization, session factory management
    and the transactional scope used by every billing command.
Architecture position: Kernel > DB.  May import from db/base.py.  Only
    create_tables() reaches outward, to register the module ORM models.

Invariants enforced:
    - PostgreSQL sessions run at READ COMMITTED; rows that need stronger
      isolation (invoice, sequence counter) are locked with SELECT ... FOR
      UPDATE.
    - SQLite transactions are opened with BEGIN IMMEDIATE, which takes the
      database write lock up front.  FOR UPDATE is a no-op there, so this is
      what serializes concurrent writers.

Failure modes:
    - RuntimeError if get_engine/get_session/get_session_factory is called
      before init_engine_from_url().
    - OperationalError ("database is locked") on SQLite if a writer holds
      the lock longer than the connect timeout.
"""

import atexit
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool

from billing_kernel.logging_config import configure_logging, get_logger

logger = get_logger("db.engine")

_engine: Engine | None = None
_SessionFactory: sessionmaker[Session] | None = None


def _install_sqlite_locking(engine: Engine) -> None:
    """Take over pysqlite transaction control and begin IMMEDIATE."""

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # Disable pysqlite's implicit BEGIN so the "begin" hook owns it.
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def init_engine_from_url(
    database_url: str,
    echo: bool = False,
    pool_size: int = 10,
    max_overflow: int = 10,
    pool_pre_ping: bool = True,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
    sqlite_timeout: float = 30.0,
) -> Engine:
    """
    Initialize the module-level engine and session factory.

    Accepts PostgreSQL and SQLite URLs.  A second call replaces the first.

    Args:
        database_url: SQLAlchemy URL, e.g. ``postgresql://u:p@host/db`` or
            ``sqlite:///billing.db``.
        echo: If True, log all SQL statements.
        pool_size: PostgreSQL only; connections kept in the pool.
        max_overflow: PostgreSQL only; connections beyond pool_size.
        pool_pre_ping: Test connections before use.
        pool_timeout: PostgreSQL only; seconds to wait for a pooled connection.
        pool_recycle: PostgreSQL only; seconds before a connection is recycled.
        sqlite_timeout: SQLite only; seconds to wait for the write lock.

    Returns:
        SQLAlchemy Engine instance.
    """
    global _engine, _SessionFactory

    dialect = make_url(database_url).get_backend_name()

    if dialect == "sqlite":
        _engine = create_engine(
            database_url,
            echo=echo,
            pool_pre_ping=pool_pre_ping,
            connect_args={"timeout": sqlite_timeout, "check_same_thread": False},
        )
        _install_sqlite_locking(_engine)
    else:
        _engine = create_engine(
            database_url,
            echo=echo,
            poolclass=QueuePool,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_pre_ping=pool_pre_ping,
            pool_timeout=pool_timeout,
            pool_recycle=pool_recycle,
            isolation_level="READ COMMITTED",
        )

    _SessionFactory = sessionmaker(bind=_engine, expire_on_commit=False)

    configure_logging()
    logger.info(
        "engine_initialized",
        extra={"dialect": dialect, "echo": echo},
    )

    return _engine


def get_engine() -> Engine:
    """Return the current engine; RuntimeError if not initialized."""
    if _engine is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _engine


def get_session() -> Session:
    """Return a new session bound to the current engine."""
    if _SessionFactory is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _SessionFactory()


def get_session_factory() -> sessionmaker[Session]:
    """
    Return the session factory.

    Multi-threaded callers should create one session per thread from it.
    """
    if _SessionFactory is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _SessionFactory


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """
    Provide a transactional scope around a series of operations.

    Commits on normal exit, rolls back and re-raises on exception, and
    always closes the session.

    Usage:
        with session_scope() as session:
            session.add(entity)
    """
    session = get_session()
    logger.debug("transaction_started")
    try:
        yield session
        session.commit()
        logger.debug("transaction_committed")
    except Exception:
        session.rollback()
        logger.warning("transaction_rolled_back", exc_info=True)
        raise
    finally:
        session.close()


def create_tables() -> None:
    """Create every billing table (kernel sequence counters and module models)."""
    from billing_kernel.db.base import Base
    from billing_modules._orm_registry import import_all_orm_models

    engine = get_engine()
    engine.dispose()

    import_all_orm_models()
    Base.metadata.create_all(engine)
    logger.info(
        "tables_created",
        extra={"table_count": len(Base.metadata.tables)},
    )


def drop_tables() -> None:
    """Drop all tables. Use with caution - primarily for testing."""
    from billing_kernel.db.base import Base

    Base.metadata.drop_all(get_engine())


def reset_engine() -> None:
    """Dispose the engine and forget the session factory (test cleanup)."""
    global _engine, _SessionFactory

    if _engine is not None:
        _engine.dispose()
        _engine = None

    _SessionFactory = None


def _atexit_dispose():
    """Release pooled connections on interpreter exit."""
    if _engine is not None:
        _engine.dispose()


atexit.register(_atexit_dispose)


def is_postgres() -> bool:
    """Check if the current engine is PostgreSQL."""
    if _engine is None:
        return False
    return _engine.dialect.name == "postgresql"


def is_sqlite() -> bool:
    """Check if the current engine is SQLite."""
    if _engine is None:
        return False
    return _engine.dialect.name == "sqlite"
