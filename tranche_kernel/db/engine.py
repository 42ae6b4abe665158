"""
Module: tranche_kernel.db.engine
Responsibility: Build the SQLAlchemy engine and hand out transactional
    scopes.  The only place connection settings are decided.
Architecture position: Kernel > DB.  Imports db/base.py; ``create_tables``
    additionally imports the model modules so their tables are registered.

Dialects:
    - PostgreSQL (psycopg2) uses a QueuePool at READ COMMITTED.  Services
      that need more take explicit row locks (SELECT ... FOR UPDATE) or use
      compare-and-set UPDATEs.
    - SQLite file databases open one connection per session and begin every
      transaction with BEGIN IMMEDIATE, so writers are serialized by
      SQLite's database lock across threads and processes.
    - SQLite in-memory databases live on one shared connection (StaticPool);
      ``transaction_scope`` serializes transactions on it with a per-engine
      lock.

Failure modes:
    - RuntimeError from get_engine/get_session_factory before
      init_engine_from_url().
"""

import threading
import weakref
from contextlib import contextmanager, nullcontext
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import NullPool, QueuePool, StaticPool

from tranche_kernel.logging_config import configure_logging, get_logger

logger = get_logger("db.engine")

# Seconds a SQLite writer waits for the database lock before failing
SQLITE_BUSY_TIMEOUT_SECONDS = 30

_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None

# Engines whose transactions must not overlap (shared in-memory connection)
_serial_locks: "weakref.WeakKeyDictionary[Engine, threading.RLock]" = weakref.WeakKeyDictionary()


def init_engine_from_url(database_url: str, echo: bool = False, pool_size: int = 10) -> Engine:
    """
    Create the process-wide engine and session factory.

    Args:
        database_url: ``postgresql+psycopg2://...`` or ``sqlite:///path``.
        echo: Log every SQL statement.
        pool_size: Pooled connections (PostgreSQL only).  One execution uses
            one connection at a time; size for concurrent executions.
    """
    global _engine, _session_factory

    dialect = make_url(database_url).get_backend_name()
    if dialect == "sqlite":
        engine = create_sqlite_engine(database_url, echo=echo)
    else:
        engine = create_engine(
            database_url,
            echo=echo,
            poolclass=QueuePool,
            pool_size=pool_size,
            max_overflow=pool_size // 2,
            pool_pre_ping=True,
            isolation_level="READ COMMITTED",
        )

    _engine = engine
    _session_factory = sessionmaker(bind=engine, expire_on_commit=False)

    configure_logging()
    logger.info("engine_initialized", extra={"dialect": dialect, "pool_size": pool_size})
    return engine


def create_sqlite_engine(database_url: str = "sqlite://", echo: bool = False) -> Engine:
    """
    SQLite engine that is safe to share between threads.

    pysqlite's own BEGIN handling breaks SAVEPOINT; the driver is put in
    autocommit mode and SQLAlchemy emits BEGIN itself.  File databases use
    ``BEGIN IMMEDIATE`` so the write lock is taken up front: a second writer
    waits (up to SQLITE_BUSY_TIMEOUT_SECONDS) instead of failing on a
    read-to-write lock upgrade.
    """
    url = make_url(database_url)
    in_memory = url.database in (None, "", ":memory:") or url.query.get("mode") == "memory"

    if in_memory:
        engine = create_engine(
            database_url,
            echo=echo,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
        _serial_locks[engine] = threading.RLock()
        begin_statement = "BEGIN"
    else:
        engine = create_engine(
            database_url,
            echo=echo,
            poolclass=NullPool,
            connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT_SECONDS},
        )
        begin_statement = "BEGIN IMMEDIATE"

    @event.listens_for(engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql(begin_statement)

    return engine


def get_engine() -> Engine:
    if _engine is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    """Factory for the services, which open one short transaction per operation."""
    if _session_factory is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _session_factory


def _serial_lock(session: Session) -> "threading.RLock | None":
    bind = session.get_bind()
    engine = bind if isinstance(bind, Engine) else bind.engine
    return _serial_locks.get(engine)


@contextmanager
def transaction_scope(session_factory: sessionmaker[Session]) -> Iterator[Session]:
    """
    One session, one transaction: commit on normal exit, roll back and
    re-raise on error, close either way.

    On a shared in-memory SQLite connection the whole scope holds the
    engine's lock, so transactions from different threads never interleave.
    """
    session = session_factory()
    lock = _serial_lock(session)
    with lock if lock is not None else nullcontext():
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            logger.debug("transaction_rolled_back", exc_info=True)
            raise
        finally:
            session.close()


@contextmanager
def session_scope() -> Iterator[Session]:
    """``transaction_scope`` over the process-wide session factory."""
    with transaction_scope(get_session_factory()) as session:
        yield session


def create_tables(engine: Engine | None = None) -> None:
    """Create the execution, staging, idempotency and counter tables."""
    from tranche_kernel.db.base import Base
    import tranche_kernel.services.sequence_service  # noqa: F401
    import tranche_batch.models  # noqa: F401

    Base.metadata.create_all(engine or get_engine())


def reset_engine() -> None:
    """Dispose the engine and forget the session factory."""
    global _engine, _session_factory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None
