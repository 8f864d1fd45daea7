"""
Database initialization and connection management utilities.

This module provides functions for initializing the migration database,
managing connections, creating sessions and building dialect-specific
upsert statements.
"""

from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import Engine, create_engine, event, pool
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session, sessionmaker

from store_migration.client.exceptions import ConfigurationError, StateError, StoreMigrationError
from store_migration.migration.models import Base
from store_migration.utils.logging import get_logger

logger = get_logger(__name__)

# Global engine and session factory (initialized on first use)
_engine: Engine | None = None
_SessionFactory: sessionmaker | None = None
_database_url: str | None = None


def _enable_sqlite_foreign_keys(dbapi_conn, connection_record):
    """
    Enable foreign key constraints for SQLite connections.

    SQLite has foreign keys disabled by default. This event handler
    enables them for each new connection.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def to_database_url(db_path: str) -> str:
    """Turn a configured ``db_path`` into a SQLAlchemy URL.

    Full URLs are used as-is, anything else is treated as a SQLite file path.
    """
    if db_path.startswith(("postgresql://", "postgresql+", "sqlite://")):
        return db_path
    return f"sqlite:///{db_path}"


def create_database_engine(
    database_url: str,
    echo: bool = False,
    pool_size: int = 5,
    max_overflow: int = 10,
    pool_timeout: int = 30,
    pool_recycle: int = 3600,
) -> Engine:
    """
    Create a SQLAlchemy engine with appropriate settings.

    Args:
        database_url: Database connection URL (sqlite:/// or postgresql://)
        echo: Whether to log SQL statements (useful for debugging)
        pool_size: Number of connections to maintain in the pool
        max_overflow: Maximum number of connections that can be created beyond pool_size
        pool_timeout: Timeout for getting a connection from the pool (seconds)
        pool_recycle: Recycle connections after this many seconds

    Returns:
        SQLAlchemy Engine instance

    Raises:
        ConfigurationError: If database URL is invalid or unsupported
    """
    if not database_url:
        raise ConfigurationError("Database URL cannot be empty")

    is_sqlite = database_url.startswith("sqlite")
    is_postgresql = database_url.startswith("postgresql")

    if not (is_sqlite or is_postgresql):
        raise ConfigurationError(
            "Only SQLite and PostgreSQL are supported (atomic upserts are required)"
        )

    try:
        if is_sqlite:
            # NullPool avoids sharing SQLite connections across threads
            engine = create_engine(
                database_url,
                echo=echo,
                poolclass=pool.NullPool,
                connect_args={"check_same_thread": False, "timeout": 30},
            )
            event.listen(engine, "connect", _enable_sqlite_foreign_keys)
        else:
            engine = create_engine(
                database_url,
                echo=echo,
                pool_size=pool_size,
                max_overflow=max_overflow,
                pool_timeout=pool_timeout,
                pool_pre_ping=True,
                pool_recycle=pool_recycle,
            )

        logger.debug(
            "database_engine_created",
            database_type="sqlite" if is_sqlite else "postgresql",
            pool_size=pool_size if not is_sqlite else "NullPool",
        )

        return engine

    except Exception as e:
        logger.error("database_engine_failed", error=str(e))
        raise ConfigurationError(f"Failed to create database engine: {e}") from e


def init_database(
    database_url: str,
    echo: bool = False,
    pool_size: int = 5,
    max_overflow: int = 10,
    pool_timeout: int = 30,
    pool_recycle: int = 3600,
) -> Engine:
    """
    Initialize the migration database.

    Creates all tables if they don't exist. This is idempotent and safe
    to call multiple times.

    Args:
        database_url: Database connection URL
        echo: Whether to log SQL statements
        pool_size: Number of connections to maintain in the pool
        max_overflow: Maximum number of connections that can be created beyond pool_size
        pool_timeout: Timeout for getting a connection from the pool (seconds)
        pool_recycle: Recycle connections after this many seconds

    Returns:
        SQLAlchemy Engine instance

    Raises:
        ConfigurationError: If database initialization fails
    """
    global _engine, _SessionFactory, _database_url

    if _engine is not None and _database_url == database_url:
        return _engine

    engine = create_database_engine(
        database_url,
        echo=echo,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_timeout=pool_timeout,
        pool_recycle=pool_recycle,
    )

    try:
        Base.metadata.create_all(engine)
    except Exception as e:
        logger.error("database_init_failed", error=str(e))
        raise ConfigurationError(f"Failed to initialize database: {e}") from e

    if _engine is not None:
        _engine.dispose()

    _engine = engine
    _SessionFactory = sessionmaker(bind=engine, expire_on_commit=False)
    _database_url = database_url

    logger.info("database_initialized", tables=len(Base.metadata.tables))

    return engine


def get_engine(database_url: str | None = None, echo: bool = False) -> Engine:
    """
    Get the global database engine.

    If a URL is given that differs from the initialized one, the engine is
    re-initialized for that URL.

    Args:
        database_url: Database connection URL (optional if already initialized)
        echo: Whether to log SQL statements

    Returns:
        SQLAlchemy Engine instance

    Raises:
        ConfigurationError: If engine is not initialized and no URL provided
    """
    if database_url is not None and database_url != _database_url:
        init_database(database_url, echo=echo)

    if _engine is None:
        raise ConfigurationError(
            "Database engine not initialized. Call init_database() first or provide database_url."
        )

    return _engine


def get_session_factory() -> sessionmaker:
    """
    Get the global session factory.

    Returns:
        SQLAlchemy sessionmaker instance

    Raises:
        ConfigurationError: If session factory is not initialized
    """
    if _SessionFactory is None:
        raise ConfigurationError("Session factory not initialized. Call init_database() first.")

    return _SessionFactory


@contextmanager
def get_session(database_url: str | None = None) -> Generator[Session, None, None]:
    """
    Context manager for database sessions.

    Automatically commits on success and rolls back on exception.
    Always closes the session when done.

    Usage:
        with get_session() as session:
            session.add(obj)

    Args:
        database_url: Database connection URL (optional if already initialized)

    Yields:
        SQLAlchemy Session instance

    Raises:
        StateError: If a database operation fails. Errors raised by the
            application itself (StoreMigrationError subclasses) propagate
            unchanged after the rollback.
    """
    get_engine(database_url)
    session = get_session_factory()()

    try:
        yield session
        session.commit()

    except StoreMigrationError:
        session.rollback()
        raise

    except Exception as e:
        session.rollback()
        logger.error("database_session_rolled_back", error=str(e))
        raise StateError(f"Database operation failed: {e}") from e

    finally:
        session.close()


def dialect_insert(session: Session, model: Any):
    """
    Build an INSERT construct that supports ``on_conflict_do_update``.

    Args:
        session: Session bound to the migration database
        model: Mapped class to insert into

    Returns:
        Dialect-specific Insert construct

    Raises:
        StateError: If the dialect has no native upsert
    """
    dialect = session.get_bind().dialect.name
    if dialect == "sqlite":
        return sqlite.insert(model)
    if dialect == "postgresql":
        return postgresql.insert(model)
    raise StateError(f"Upsert is not supported on {dialect}")
