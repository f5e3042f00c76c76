"""
Module: solar_kernel.db.engine
Responsibility: SQLAlchemy engine initialization, session factory management,
    and transactional scope utilities.  This is the single point of database
    connection configuration for the entire system.
Architecture position: Kernel > DB.  May import from db/base.py.
    MUST NOT import from services/, domain/, or outer layers (except for
    create_tables which imports the models package so metadata is complete).

Invariants enforced:
    - PostgreSQL is the production backend; SQLite is accepted for tests and
      local runs.  Every conditional update the kernel relies on is plain
      ``UPDATE ... WHERE status = ...`` so both backends behave the same.
    - Bounded I/O: every engine gets a pool timeout and a per-connection
      statement (PostgreSQL) or busy (SQLite) timeout.
    - session_scope() is the only place that commits.  Storage timeouts
      inside it surface as TransientFailureError.

Failure modes:
    - RuntimeError if get_engine/get_session/get_session_factory called before
      init_engine_from_url().
    - TransientFailureError from session_scope() on OperationalError or pool
      exhaustion; safe to retry.
"""

import atexit
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from solar_kernel.exceptions import TransientFailureError
from solar_kernel.logging_config import configure_logging, get_logger

logger = get_logger("db.engine")

_engine: Engine | None = None
_SessionFactory: sessionmaker[Session] | None = None


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def init_engine_from_url(
    database_url: str,
    echo: bool = False,
    pool_size: int = 20,
    max_overflow: int = 10,
    pool_pre_ping: bool = True,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
    statement_timeout_ms: int = 15000,
) -> Engine:
    """
    Initialize the SQLAlchemy engine from a database URL.

    Postconditions: Module-level _engine and _SessionFactory are initialized.
        A second call replaces the first.

    Args:
        database_url: PostgreSQL or SQLite URL.
        echo: If True, log all SQL statements.
        pool_size: Number of connections to keep in the pool.
        max_overflow: Max connections beyond pool_size.
        pool_pre_ping: If True, test connections before use.
        pool_timeout: Seconds to wait for a pooled connection.
        pool_recycle: Seconds after which a connection is recycled.
        statement_timeout_ms: Upper bound for a single statement (PostgreSQL)
            or for waiting on a database lock (SQLite).
    """
    global _engine, _SessionFactory

    url = make_url(database_url)
    dialect = url.get_backend_name()

    if dialect == "sqlite":
        connect_args = {
            "timeout": statement_timeout_ms / 1000,
            "check_same_thread": False,
        }
        if url.database in (None, "", ":memory:"):
            _engine = create_engine(
                url,
                echo=echo,
                connect_args=connect_args,
                poolclass=StaticPool,
            )
        else:
            _engine = create_engine(
                url,
                echo=echo,
                connect_args=connect_args,
                pool_size=pool_size,
                max_overflow=max_overflow,
                pool_timeout=pool_timeout,
            )
        event.listen(_engine, "connect", _enable_sqlite_foreign_keys)
    else:
        _engine = create_engine(
            url,
            echo=echo,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_pre_ping=pool_pre_ping,
            pool_timeout=pool_timeout,
            pool_recycle=pool_recycle,
            isolation_level="READ COMMITTED",
            connect_args={"options": f"-c statement_timeout={statement_timeout_ms}"},
        )

    _SessionFactory = sessionmaker(bind=_engine, expire_on_commit=False)

    configure_logging()
    logger.info(
        "engine_initialized",
        extra={
            "dialect": dialect,
            "pool_size": pool_size,
            "statement_timeout_ms": statement_timeout_ms,
            "echo": echo,
        },
    )

    return _engine


def init_engine_from_config(config) -> Engine:
    """Initialize the engine from a ``solar_config`` DatabaseConfig."""
    return init_engine_from_url(
        config.url,
        echo=config.echo,
        pool_size=config.pool_size,
        max_overflow=config.max_overflow,
        pool_timeout=config.pool_timeout_seconds,
        statement_timeout_ms=config.statement_timeout_ms,
    )


_NOT_INITIALIZED = "Engine not initialized. Call init_engine_from_url() first."


def get_engine() -> Engine:
    if _engine is None:
        raise RuntimeError(_NOT_INITIALIZED)
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    """
    The factory itself, for callers that open one session per unit of work
    (the scheduler, worker threads in the race tests).
    """
    if _SessionFactory is None:
        raise RuntimeError(_NOT_INITIALIZED)
    return _SessionFactory


def get_session() -> Session:
    return get_session_factory()()


@contextmanager
def session_scope(operation: str = "unit_of_work") -> Generator[Session, None, None]:
    """
    Provide a transactional scope around a series of operations.

    Postconditions: On normal exit, session is committed and closed.
        On exception, session is rolled back and closed.  Storage timeouts
        and lost connections are re-raised as TransientFailureError; every
        other exception is re-raised unchanged.

    Usage:
        with session_scope("select_bid") as session:
            BidSessionService(session, clock).select_bid(bid_id, principal)
    """
    session = get_session()
    logger.debug("transaction_started", extra={"operation": operation})
    try:
        yield session
        session.commit()
        logger.debug("transaction_committed", extra={"operation": operation})
    except (OperationalError, PoolTimeoutError) as exc:
        session.rollback()
        logger.warning(
            "transaction_transient_failure",
            extra={"operation": operation},
            exc_info=True,
        )
        raise TransientFailureError(operation, type(exc).__name__) from exc
    except Exception:
        session.rollback()
        logger.warning(
            "transaction_rolled_back",
            extra={"operation": operation},
            exc_info=True,
        )
        raise
    finally:
        session.close()


def create_tables() -> None:
    """Create every table the models package registers."""
    from solar_kernel.db.base import Base
    import solar_kernel.models  # noqa: F401  (registers every table)

    engine = get_engine()
    Base.metadata.create_all(engine)
    logger.info(
        "tables_created",
        extra={"tables": sorted(Base.metadata.tables)},
    )


def drop_tables() -> None:
    """Drop every table. Tests and local resets only."""
    from solar_kernel.db.base import Base
    import solar_kernel.models  # noqa: F401

    Base.metadata.drop_all(get_engine())


def reset_engine() -> None:
    """Dispose the engine and forget the session factory."""
    global _engine, _SessionFactory

    if _engine is not None:
        _engine.dispose()
        _engine = None

    _SessionFactory = None


atexit.register(reset_engine)
